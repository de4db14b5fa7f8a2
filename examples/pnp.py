import numpy as np
from sqpnp import pnp

# fix seed to allow for reproducible results
np.random.seed(42)

# instantiate a couple of points centered around the origin
pts = 0.6 * (np.random.random((6, 3)) - 0.5)

# A pose
R_gt = np.array(
    [
        [-0.48048015, 0.1391384, -0.86589799],
        [-0.0333282, -0.98951829, -0.14050899],
        [-0.8763721, -0.03865296, 0.48008113],
    ]
)
t_gt = np.array([-0.10266772, 0.25450789, 1.70391109])

# Project points onto the normalized image plane
pts_2d = pts @ R_gt.T + t_gt
pts_2d = pts_2d[:, :-1] / pts_2d[:, -1, None]

# Compute pose candidates. the problem is not minimal so only one
# will be provided
poses = pnp(pts_2d=pts_2d, pts_3d=pts)
R, t = poses[0]

print("Nr of possible poses:", len(poses))
print("R (ground truth):", R_gt, "R (estimate):", R, sep="\n")
print("t (ground truth):", t_gt)
print("t (estimate):", t)
