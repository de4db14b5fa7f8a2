"""
Tests for the end to end pose solver.
"""

import unittest
import warnings

import numpy as np
from scipy.spatial.transform import Rotation

from sqpnp import (
    DEFAULT_PARAMETERS,
    Status,
    SolverParameters,
    pnp,
    sqpnp,
)

R_GT = np.array(
    [
        [-0.48048015, 0.1391384, -0.86589799],
        [-0.0333282, -0.98951829, -0.14050899],
        [-0.8763721, -0.03865296, 0.48008113],
    ]
)
T_GT = np.array([-0.10266772, 0.25450789, 1.70391109])


def make_scene(n=8, planar=False, noise=0.0, seed=42):
    """Points centered around the origin, seen through (R_GT, T_GT)"""
    rng = np.random.RandomState(seed)
    pts_3d = 0.6 * (rng.random_sample((n, 3)) - 0.5)
    if planar:
        pts_3d[:, 2] = 0

    pts_cam = pts_3d @ R_GT.T + T_GT
    pts_2d = pts_cam[:, :2] / pts_cam[:, 2, None]
    pts_2d += rng.normal(scale=noise, size=pts_2d.shape)
    return pts_2d, pts_3d


def assert_rotation(test, R, atol=1e-6):
    test.assertTrue(np.allclose(R @ R.T, np.eye(3), atol=atol))
    test.assertAlmostEqual(np.linalg.det(R), 1.0, delta=atol)


class TestGroundTruthRecovery(unittest.TestCase):
    """Noise free scenes must return the ground truth as the best solution."""

    def test_non_planar(self):
        pts_2d, pts_3d = make_scene(n=8)
        result = sqpnp(pts_2d, pts_3d)

        self.assertTrue(result.ok)
        self.assertTrue(result.certified)
        self.assertEqual(result.null_space_size, 1)

        best = result.solutions[0]
        self.assertTrue(np.allclose(best.R, R_GT, atol=1e-6))
        self.assertTrue(np.allclose(best.t, T_GT, atol=1e-6))
        self.assertLess(best.cost, 1e-10)

    def test_clean_eigenvector_skips_refinement(self):
        pts_2d, pts_3d = make_scene(n=8)
        best = sqpnp(pts_2d, pts_3d).solutions[0]
        self.assertEqual(best.num_iterations, 0)

    def test_svd_projection(self):
        pts_2d, pts_3d = make_scene(n=10, noise=1e-3)
        params = SolverParameters(nearest_rotation_method="svd")
        best = sqpnp(pts_2d, pts_3d, params=params).solutions[0]
        self.assertTrue(np.allclose(best.R, R_GT, atol=1e-2))
        self.assertTrue(np.allclose(best.t, T_GT, atol=1e-2))

    def test_noisy(self):
        pts_2d, pts_3d = make_scene(n=20, noise=1e-3)
        result = sqpnp(pts_2d, pts_3d)

        self.assertTrue(result.ok)
        best = result.solutions[0]
        self.assertTrue(np.allclose(best.R, R_GT, atol=1e-2))
        self.assertTrue(np.allclose(best.t, T_GT, atol=1e-2))

    def test_planar(self):
        pts_2d, pts_3d = make_scene(n=8, planar=True)
        result = sqpnp(pts_2d, pts_3d)

        self.assertTrue(result.ok)
        self.assertGreaterEqual(result.null_space_size, 2)

        best = result.solutions[0]
        self.assertTrue(np.allclose(best.R, R_GT, atol=1e-6))
        self.assertTrue(np.allclose(best.t, T_GT, atol=1e-6))

    def test_weighted(self):
        pts_2d, pts_3d = make_scene(n=10)
        weights = np.linspace(0.5, 2.0, 10)
        weights[3] = 0
        best = sqpnp(pts_2d, pts_3d, weights=weights).solutions[0]
        self.assertTrue(np.allclose(best.R, R_GT, atol=1e-6))
        self.assertTrue(np.allclose(best.t, T_GT, atol=1e-6))

    def test_quaternion(self):
        pts_2d, pts_3d = make_scene(n=8)
        best = sqpnp(pts_2d, pts_3d).solutions[0]
        q_gt = Rotation.from_matrix(R_GT).as_quat()
        # q and -q describe the same rotation
        self.assertAlmostEqual(abs(best.quaternion @ q_gt), 1.0, places=6)

    def test_pnp(self):
        pts_2d, pts_3d = make_scene(n=8)
        poses = pnp(pts_2d, pts_3d)
        R, t = poses[0]
        self.assertEqual(R.shape, (3, 3))
        self.assertTrue(np.allclose(R, R_GT, atol=1e-6))
        self.assertTrue(np.allclose(t, T_GT, atol=1e-6))


class TestSolutionInvariants(unittest.TestCase):
    def test_every_solution_is_a_rotation(self):
        for planar in (False, True):
            for noise in (0.0, 1e-3):
                pts_2d, pts_3d = make_scene(n=12, planar=planar, noise=noise)
                result = sqpnp(pts_2d, pts_3d)
                self.assertTrue(result.ok)
                self.assertGreater(len(result.solutions), 0)
                for solution in result.solutions:
                    assert_rotation(self, solution.R)

    def test_sorted_by_cost(self):
        pts_2d, pts_3d = make_scene(n=12, planar=True, noise=1e-3)
        costs = [s.cost for s in sqpnp(pts_2d, pts_3d).solutions]
        self.assertEqual(costs, sorted(costs))

    def test_deterministic(self):
        pts_2d, pts_3d = make_scene(n=15, noise=1e-3)
        first = sqpnp(pts_2d, pts_3d)
        second = sqpnp(pts_2d, pts_3d)

        self.assertEqual(len(first.solutions), len(second.solutions))
        for a, b in zip(first.solutions, second.solutions):
            self.assertTrue(np.array_equal(a.r_hat, b.r_hat))
            self.assertTrue(np.array_equal(a.t, b.t))
            self.assertEqual(a.cost, b.cost)
            self.assertEqual(a.num_iterations, b.num_iterations)

    def test_weight_scale_invariance(self):
        pts_2d, pts_3d = make_scene(n=15, noise=1e-3)
        weights = np.linspace(1.0, 2.0, 15)

        best = sqpnp(pts_2d, pts_3d, weights=weights).solutions[0]
        best_scaled = sqpnp(pts_2d, pts_3d, weights=5 * weights).solutions[0]

        self.assertTrue(np.allclose(best.R, best_scaled.R, atol=1e-6))
        self.assertTrue(np.allclose(best.t, best_scaled.t, atol=1e-6))
        self.assertAlmostEqual(5 * best.cost, best_scaled.cost, delta=1e-8)

    def test_iteration_cap(self):
        pts_2d, pts_3d = make_scene(n=12, planar=True, noise=1e-2)
        params = SolverParameters(sqp_max_iterations=2)
        result = sqpnp(pts_2d, pts_3d, params=params)

        self.assertTrue(result.ok)
        for solution in result.solutions:
            self.assertLessEqual(solution.num_iterations, 2)

    def test_three_points(self):
        for seed in range(8):
            pts_2d, pts_3d = make_scene(n=3, seed=seed)
            result = sqpnp(pts_2d, pts_3d)

            self.assertTrue(result.ok)
            self.assertGreaterEqual(result.null_space_size, 2)
            # P3P is ambiguous, only tied solutions survive
            self.assertGreaterEqual(len(result.solutions), 2)
            costs = [s.cost for s in result.solutions]
            self.assertLessEqual(
                max(costs) - min(costs), DEFAULT_PARAMETERS.equal_squared_errors_diff
            )

    def test_minimal_configurations_converge(self):
        cap = DEFAULT_PARAMETERS.sqp_max_iterations
        for method in ("svd", "foam"):
            params = SolverParameters(nearest_rotation_method=method)
            for n in (3, 4):
                for seed in list(range(8)) + [60]:
                    for noise in (0.0, 1e-3):
                        pts_2d, pts_3d = make_scene(n=n, noise=noise, seed=seed)
                        result = sqpnp(pts_2d, pts_3d, params=params)
                        self.assertTrue(result.ok)
                        for solution in result.solutions:
                            assert_rotation(self, solution.R, atol=1e-8)
                            self.assertLess(solution.num_iterations, cap)


class TestFailures(unittest.TestCase):
    def test_mismatched_lengths(self):
        pts_2d, pts_3d = make_scene(n=5)
        result = sqpnp(pts_2d, pts_3d[:4])
        self.assertFalse(result.ok)
        self.assertIs(result.status, Status.INPUT_ERROR)
        self.assertEqual(result.solutions, ())
        self.assertEqual(pnp(pts_2d, pts_3d[:4]), [])

    def test_too_few_points(self):
        pts_2d, pts_3d = make_scene(n=2)
        result = sqpnp(pts_2d, pts_3d)
        self.assertIs(result.status, Status.INPUT_ERROR)
        self.assertEqual(result.solutions, ())

    def test_bad_shapes(self):
        pts_2d, pts_3d = make_scene(n=5)
        self.assertIs(sqpnp(pts_3d, pts_3d).status, Status.INPUT_ERROR)
        self.assertIs(sqpnp(pts_2d, pts_2d).status, Status.INPUT_ERROR)

    def test_bad_weights(self):
        pts_2d, pts_3d = make_scene(n=5)
        weights = np.ones(5)
        weights[2] = -1
        self.assertIs(sqpnp(pts_2d, pts_3d, weights).status, Status.INPUT_ERROR)
        self.assertIs(
            sqpnp(pts_2d, pts_3d, np.ones(4)).status, Status.INPUT_ERROR
        )

    def test_verbose_failure_warns(self):
        pts_2d, pts_3d = make_scene(n=2)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            sqpnp(pts_2d, pts_3d, verbose=True)
        self.assertEqual(len(caught), 1)

    def test_coincident_world_points(self):
        pts_2d, _ = make_scene(n=6)
        pts_3d = np.tile([0.1, -0.2, 0.3], (6, 1))
        result = sqpnp(pts_2d, pts_3d)
        self.assertIs(result.status, Status.DEGENERATE_CONFIGURATION)
        self.assertGreater(result.null_space_size, 6)
        self.assertEqual(result.solutions, ())

    def test_coincident_image_points(self):
        _, pts_3d = make_scene(n=6)
        pts_2d = np.tile([0.1, -0.05], (6, 1))
        result = sqpnp(pts_2d, pts_3d)
        self.assertIs(result.status, Status.DEGENERATE_CONFIGURATION)
        self.assertEqual(result.solutions, ())

    def test_unknown_rotation_method(self):
        pts_2d, pts_3d = make_scene(n=6)
        params = SolverParameters(nearest_rotation_method="quaternion")
        with self.assertRaises(ValueError):
            sqpnp(pts_2d, pts_3d, params=params)


if __name__ == "__main__":
    unittest.main()
