import ast
from ast import NodeVisitor
from setuptools import setup


class VersionExtractor(NodeVisitor):
    def __init__(self):
        super().__init__()
        self.version = None

    def visit_Assign(self, node):
        if hasattr(node.targets[0], "id") and node.targets[0].id == "__version__":
            self.version = node.value.value


def parse_version():

    with open("sqpnp.py", "r") as f:
        content = f.read()

    tree = ast.parse(content)
    visitor = VersionExtractor()
    visitor.visit(tree)
    return visitor.version


def long_description():
    with open("README.md", "r") as f:
        return f.read()


setup(
    name="sqpnp",
    version=parse_version(),
    license="Apache 2.0",
    description="A fast and globally optimal Perspective-n-Point solver based on "
    "sequential quadratic programming.",
    long_description=long_description(),
    long_description_content_type="text/markdown",
    install_requires=["numpy", "scipy>=1.4"],
    author="The sqpnp developers",
    extras_require={"test": ["pytest"]},
    py_modules=["sqpnp"],
    python_requires=">=3.7",
    classifiers=[
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: Scientific/Engineering",
    ],
)
