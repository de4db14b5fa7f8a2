import numpy as np
from scipy.spatial.transform import Rotation
from sqpnp import SolverParameters, sqpnp

# fix seed to allow for reproducible results
np.random.seed(0)

# points on the z = 0 plane, e.g. a calibration target
pts = np.zeros((8, 3))
pts[:, :2] = 0.6 * (np.random.random((8, 2)) - 0.5)

# A pose
R_gt = Rotation.from_rotvec([0.4, -0.3, 0.2]).as_matrix()
t_gt = np.array([0.05, -0.1, 1.5])

# Project points onto the normalized image plane and add some noise
pts_2d = pts @ R_gt.T + t_gt
pts_2d = pts_2d[:, :-1] / pts_2d[:, -1, None]
pts_2d += np.random.normal(scale=1e-3, size=pts_2d.shape)

# Planar targets leave the third column of R unconstrained by the cost,
# so the null space holds more than one direction
result = sqpnp(pts_2d, pts, params=SolverParameters(nearest_rotation_method="svd"))

print("Status:", result.status)
print("Null space size:", result.null_space_size)
print("Certified:", result.certified)
for i, solution in enumerate(result.solutions):
    print(
        "Solution {}: cost {:.3e}, {} SQP iterations".format(
            i, solution.cost, solution.num_iterations
        )
    )
    print(solution.R, solution.t, sep="\n")
print("R (ground truth):", R_gt, "t (ground truth):", t_gt, sep="\n")
