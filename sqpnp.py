from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import warnings

import numpy as np
from scipy.linalg import solve_triangular
from scipy.spatial.transform import Rotation

__version__ = "1.0.0"

_SQRT3 = np.sqrt(3.0)


class Status(Enum):
    """Outcome of a call to sqpnp"""

    OK = "ok"
    INPUT_ERROR = "input_error"
    DEGENERATE_CONFIGURATION = "degenerate_configuration"


@dataclass(frozen=True)
class SolverParameters:
    """Numerical tolerances and strategy choices of the solver.

    Arguments:
    rank_tolerance -- eigenvalues of Omega below this value span its null space
    sqp_squared_tolerance -- SQP stops once the squared step norm falls below this
    sqp_det_threshold -- SQP results with a larger determinant get projected onto SO(3)
    sqp_max_iterations -- maximum number of SQP steps per candidate
    orthogonality_squared_error_threshold -- eigenvectors closer than this to an
    orthogonal matrix are accepted without refinement
    equal_vectors_squared_diff -- rotation vectors closer than this are the same solution
    equal_squared_errors_diff -- costs closer than this are considered tied
    max_solutions -- maximum number of tied solutions that are kept
    nearest_rotation_method -- either "svd" or "foam"
    """

    rank_tolerance: float = 1e-7
    sqp_squared_tolerance: float = 1e-10
    sqp_det_threshold: float = 1.001
    sqp_max_iterations: int = 15
    orthogonality_squared_error_threshold: float = 1e-8
    equal_vectors_squared_diff: float = 1e-10
    equal_squared_errors_diff: float = 1e-6
    max_solutions: int = 18
    nearest_rotation_method: str = "foam"


DEFAULT_PARAMETERS = SolverParameters()


@dataclass(frozen=True)
class AccumulatedForm:
    """Quadratic cost of the rotation vector built from the correspondences.

    omega -- 9 x 9 symmetric matrix such that the cost of r is r' Omega r
    P -- 3 x 9 matrix recovering the optimal translation t = P r
    Q -- 3 x 3 weighted sum of the per point projection matrices
    point_mean -- centroid of the 3D points
    pts_3d -- n x 3 np.array of 3D points
    """

    omega: np.ndarray
    P: np.ndarray
    Q: np.ndarray
    point_mean: np.ndarray
    pts_3d: np.ndarray


@dataclass(frozen=True)
class EigenBasis:
    """Eigenvectors of Omega stacked in columns, eigenvalues in ascending order"""

    vectors: np.ndarray
    values: np.ndarray


@dataclass(frozen=True)
class PoseSolution:
    """A candidate pose.

    r -- raw 9 x 1 rotation vector, row major and possibly not orthogonal
    r_hat -- r after sign normalization and projection onto SO(3)
    t -- translation vector
    num_iterations -- SQP iterations spent on this candidate
    cost -- r_hat' Omega r_hat
    """

    r: np.ndarray
    r_hat: np.ndarray
    t: np.ndarray
    num_iterations: int
    cost: float = np.inf

    @property
    def R(self) -> np.ndarray:
        return self.r_hat.reshape((3, 3))

    @property
    def quaternion(self) -> np.ndarray:
        """Rotation as a unit quaternion (x, y, z, w)"""
        return Rotation.from_matrix(self.R).as_quat()


@dataclass(frozen=True)
class SolutionSet:
    """Result of sqpnp.

    status -- Status.OK unless the input was rejected
    solutions -- tuple of PoseSolution sorted by ascending cost
    null_space_size -- estimated dimension of the null space of Omega, -1 if
    Omega was never decomposed
    certified -- True if the best solution is provably the global minimum
    """

    status: Status
    solutions: Tuple[PoseSolution, ...] = ()
    null_space_size: int = -1
    certified: bool = False

    @property
    def ok(self) -> bool:
        return self.status is Status.OK


def _det3(A: np.ndarray) -> float:
    """Determinant of a 3 x 3 matrix"""
    # fmt: off
    return (
        A[0, 0] * (A[1, 1] * A[2, 2] - A[1, 2] * A[2, 1])
        - A[0, 1] * (A[1, 0] * A[2, 2] - A[1, 2] * A[2, 0])
        + A[0, 2] * (A[1, 0] * A[2, 1] - A[1, 1] * A[2, 0])
    )
    # fmt: on


def _adjugate3(A: np.ndarray) -> np.ndarray:
    """Adjugate of a 3 x 3 matrix, such that A @ adj(A) = det(A) I"""
    # fmt: off
    return np.array([
        [A[1, 1]*A[2, 2] - A[1, 2]*A[2, 1], A[0, 2]*A[2, 1] - A[0, 1]*A[2, 2], A[0, 1]*A[1, 2] - A[0, 2]*A[1, 1]],
        [A[1, 2]*A[2, 0] - A[1, 0]*A[2, 2], A[0, 0]*A[2, 2] - A[0, 2]*A[2, 0], A[0, 2]*A[1, 0] - A[0, 0]*A[1, 2]],
        [A[1, 0]*A[2, 1] - A[1, 1]*A[2, 0], A[0, 1]*A[2, 0] - A[0, 0]*A[2, 1], A[0, 0]*A[1, 1] - A[0, 1]*A[1, 0]],
    ])
    # fmt: on


def _invert_symmetric3(A: np.ndarray, eps: float = 1e-12) -> Optional[np.ndarray]:
    """Closed form inverse of a symmetric 3 x 3 matrix. Returns None if the
    matrix is numerically singular.
    """
    det = _det3(A)
    scale = np.sum(A * A) ** 1.5
    if abs(det) <= eps * scale:
        return None
    inv = _adjugate3(A) / det
    return 0.5 * (inv + inv.T)


def orthogonality_error(r: np.ndarray) -> float:
    """Squared Frobenius norm of R R' - I for the 3 x 3 reshaping of r"""
    r1, r2, r3 = np.reshape(r, (3, 3))
    sq_norm_r1 = r1 @ r1
    sq_norm_r2 = r2 @ r2
    sq_norm_r3 = r3 @ r3
    dot_r1r2 = r1 @ r2
    dot_r1r3 = r1 @ r3
    dot_r2r3 = r2 @ r3
    return float(
        (sq_norm_r1 - 1) ** 2
        + (sq_norm_r2 - 1) ** 2
        + (sq_norm_r3 - 1) ** 2
        + 2 * (dot_r1r2 ** 2 + dot_r1r3 ** 2 + dot_r2r3 ** 2)
    )


def nearest_rotation_svd(e: np.ndarray) -> np.ndarray:
    """Project a 9 x 1 vector onto the closest rotation matrix using the SVD.

    Arguments:
    e -- 9 x 1 np.array with the row major entries of a 3 x 3 matrix
    """
    U, _, Vh = np.linalg.svd(np.reshape(e, (3, 3)))
    S = np.diag([1.0, 1.0, np.sign(np.linalg.det(U) * np.linalg.det(Vh))])
    return (U @ S @ Vh).ravel()


def nearest_rotation_foam(e: np.ndarray, max_iters: int = 50) -> np.ndarray:
    """Project a 9 x 1 vector onto the closest rotation matrix using FOAM, i.e.
    Markley's fast optimal attitude matrix. Falls back to the SVD whenever the
    input is close to singular.

    Arguments:
    e -- 9 x 1 np.array with the row major entries of a 3 x 3 matrix
    max_iters -- maximum number of Newton iterations on the characteristic polynomial
    """
    B = np.reshape(e, (3, 3))
    det_B = _det3(B)
    if abs(det_B) < 1e-4:
        return nearest_rotation_svd(e)

    adj_B = _adjugate3(B)
    B_sq = np.sum(B * B)
    adj_B_sq = np.sum(adj_B * adj_B)

    # Largest root of (l^2 - |B|^2)^2 - 8 l det(B) - 4 |adj(B)|^2.
    # sqrt(3) |B| bounds the sum of singular values from above, so Newton
    # descends monotonically onto the largest root.
    l = np.sqrt(3 * B_sq)
    for _ in range(max_iters):
        tmp = l * l - B_sq
        p = tmp * tmp - 8 * l * det_B - 4 * adj_B_sq
        dp = 8 * (0.5 * tmp * l - det_B)
        if dp == 0:
            break
        l_prev = l
        l = l - p / dp
        if abs(l - l_prev) <= 1e-12 * abs(l_prev):
            break

    R = (l * l + B_sq) * B + 2 * l * adj_B.T - 2 * B @ B.T @ B
    R /= l * (l * l - B_sq) - 2 * det_B
    return R.ravel()


_NEAREST_ROTATION: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "svd": nearest_rotation_svd,
    "foam": nearest_rotation_foam,
}


def _nearest_rotation_method(name: str) -> Callable[[np.ndarray], np.ndarray]:
    try:
        return _NEAREST_ROTATION[name]
    except KeyError:
        raise ValueError(
            "Unknown nearest rotation method '{}'. Expected one of {}.".format(
                name, sorted(_NEAREST_ROTATION)
            )
        ) from None


def accumulate(
    pts_2d: np.ndarray, pts_3d: np.ndarray, weights: np.ndarray
) -> Optional[AccumulatedForm]:
    """Build the quadratic form Omega and the translation map P from 2D-3D
    correspondences. Returns None if the projection matrices do not add up to
    an invertible matrix, e.g. all image points coincide.

    Arguments:
    pts_2d -- n x 2 np.array of calibrated image points
    pts_3d -- n x 3 np.array of 3D points
    weights -- n np.array of non negative weights
    """
    x, y = pts_2d.T
    w = weights
    wx = w * x
    wy = w * y
    wsq_norm_m = w * (x * x + y * y)

    # Second moments of the 3D points, M_i M_i'
    XXt = pts_3d[:, :, None] * pts_3d[:, None, :]
    S = np.tensordot(w, XXt, axes=1)
    Sx = np.tensordot(wx, XXt, axes=1)
    Sy = np.tensordot(wy, XXt, axes=1)
    Sr = np.tensordot(wsq_norm_m, XXt, axes=1)

    # Omega = Sum kron(Q_i, M_i M_i'). Fill the upper triangle only.
    omega = np.zeros((9, 9))
    omega[:3, :3] = S
    omega[:3, 6:] = -Sx
    omega[3:6, 6:] = -Sy
    omega[6:, 6:] = Sr
    omega[3:6, 3:6] = omega[:3, :3]
    omega = np.triu(omega) + np.triu(omega, 1).T

    # Sum Q_i A_i
    wX = w @ pts_3d
    wxX = wx @ pts_3d
    wyX = wy @ pts_3d
    QA = np.zeros((3, 9))
    QA[0, :3] = wX
    QA[0, 6:] = -wxX
    QA[1, 3:6] = wX
    QA[1, 6:] = -wyX
    QA[2, :3] = -wxX
    QA[2, 3:6] = -wyX
    QA[2, 6:] = wsq_norm_m @ pts_3d

    sum_w = np.sum(w)
    sum_wx = np.sum(wx)
    sum_wy = np.sum(wy)
    # fmt: off
    Q = np.array([
        [sum_w, 0, -sum_wx],
        [0, sum_w, -sum_wy],
        [-sum_wx, -sum_wy, np.sum(wsq_norm_m)],
    ])
    # fmt: on

    Qinv = _invert_symmetric3(Q)
    if Qinv is None:
        return None

    # Eliminate the translation: t = P r
    P = -Qinv @ QA
    omega = omega + QA.T @ P
    omega = 0.5 * (omega + omega.T)

    return AccumulatedForm(
        omega=omega, P=P, Q=Q, point_mean=np.mean(pts_3d, axis=0), pts_3d=pts_3d
    )


def eigen_basis(omega: np.ndarray) -> EigenBasis:
    """Eigendecomposition of Omega with eigenvalues in ascending order"""
    vals, vecs = np.linalg.eigh(omega)
    return EigenBasis(vectors=vecs, values=vals)


def null_space_size(values: np.ndarray, tolerance: float) -> int:
    """Estimate the dimension of the null space of Omega.

    The direction of the smallest eigenvalue is always a candidate, so the count
    starts at one and grows with every following eigenvalue below tolerance.

    Arguments:
    values -- eigenvalues of Omega in ascending order
    tolerance -- eigenvalues below it are treated as zero
    """
    size = 1
    while size < len(values) and values[size] < tolerance:
        size += 1
    return size


def _orthogonality_constraints(r: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Jacobian of the six orthogonality constraints of r and the negated
    constraint values.
    """
    r1, r2, r3 = np.reshape(r, (3, 3))
    z = np.zeros(3)
    # fmt: off
    J = np.array([
        np.concatenate((2 * r1, z, z)),
        np.concatenate((z, 2 * r2, z)),
        np.concatenate((z, z, 2 * r3)),
        np.concatenate((r2, r1, z)),
        np.concatenate((z, r3, r2)),
        np.concatenate((r3, z, r1)),
    ])
    g = np.array([
        1 - r1 @ r1, 1 - r2 @ r2, 1 - r3 @ r3,
        -r1 @ r2, -r2 @ r3, -r1 @ r3,
    ])
    # fmt: on
    return J, g


def _sqp_step(
    r: np.ndarray,
    omega: np.ndarray,
    tolerance: float = DEFAULT_PARAMETERS.rank_tolerance,
) -> np.ndarray:
    """Solve the linearized SQP system at r.

    The step is split as delta = H x + N y, where H spans the row space of the
    constraint Jacobian J and N its null space. x restores the constraints to
    first order and y minimizes the cost along the tangent directions. Tangent
    directions whose curvature is below tolerance are flat and take no step.
    """
    J, g = _orthogonality_constraints(r)

    # J' = [H N] [T; 0], hence J H = T' is lower triangular and J N = 0
    HN, T = np.linalg.qr(J.T, mode="complete")
    H = HN[:, :6]
    N = HN[:, 6:]

    x = solve_triangular(T[:6].T, g, lower=True)
    delta = H @ x

    NtOmega = N.T @ omega
    vals, vecs = np.linalg.eigh(NtOmega @ N)
    curved = vals > tolerance
    V = vecs[:, curved]
    y = -V @ ((V.T @ (NtOmega @ (r + delta))) / vals[curved])
    return delta + N @ y


def _run_sqp(
    r0: np.ndarray,
    omega: np.ndarray,
    nearest_rotation: Callable[[np.ndarray], np.ndarray],
    params: SolverParameters = DEFAULT_PARAMETERS,
    verbose: bool = False,
) -> PoseSolution:
    """Sequential quadratic programming on orthogonal matrices, started at r0.
    The translation and the cost of the returned solution are left unset.
    """
    r = r0
    delta_squared_norm = np.inf
    step = 0
    while (
        delta_squared_norm > params.sqp_squared_tolerance
        and step < params.sqp_max_iterations
    ):
        delta = _sqp_step(r, omega, params.rank_tolerance)
        r = r + delta
        delta_squared_norm = delta @ delta
        step += 1

    if verbose and delta_squared_norm > params.sqp_squared_tolerance:
        warnings.warn(
            "SQP did not converge after {} iterations (squared step norm {:.3e}).".format(
                step, delta_squared_norm
            )
        )

    # flip the sign and/or clean up the estimate
    det_r = _det3(r.reshape((3, 3)))
    if det_r < 0:
        r = -r
        det_r = -det_r
    if (
        det_r > params.sqp_det_threshold
        or orthogonality_error(r) > params.orthogonality_squared_error_threshold
    ):
        r_hat = nearest_rotation(r)
    else:
        r_hat = r

    return PoseSolution(r=r, r_hat=r_hat, t=np.zeros(3), num_iterations=step)


def _positive_depth(solution: PoseSolution, form: AccumulatedForm) -> bool:
    """Cheirality of the 3D centroid, or of the majority of the points if the
    centroid lies behind the camera.
    """
    r3 = solution.r_hat[6:]
    tz = solution.t[2]
    if r3 @ form.point_mean + tz > 0:
        return True

    depths = form.pts_3d @ r3 + tz
    return bool(np.sum(depths > 0) >= np.sum(depths < 0))


def _handle_solution(
    solutions: List[PoseSolution],
    min_cost: float,
    candidate: PoseSolution,
    form: AccumulatedForm,
    params: SolverParameters = DEFAULT_PARAMETERS,
) -> Tuple[List[PoseSolution], float]:
    """Fold a candidate into the current set of best solutions.

    Arguments:
    solutions -- the best solutions so far, all with tied costs
    min_cost -- the smallest cost seen so far
    candidate -- the new solution, its translation already recovered
    form -- the accumulated quadratic form
    params -- solver parameters

    Returns the updated solutions and minimum cost. The inputs are not modified.
    """
    if not _positive_depth(candidate, form):
        return solutions, min_cost

    r_hat = candidate.r_hat
    candidate = replace(candidate, cost=float(r_hat @ form.omega @ r_hat))
    if not np.isfinite(candidate.cost):
        return solutions, min_cost

    if abs(min_cost - candidate.cost) > params.equal_squared_errors_diff:
        if candidate.cost < min_cost:
            return [candidate], candidate.cost
        return solutions, min_cost

    # Tie. Replace an equivalent solution or keep both.
    solutions = list(solutions)
    for i, solution in enumerate(solutions):
        diff = solution.r_hat - r_hat
        if diff @ diff < params.equal_vectors_squared_diff:
            if solution.cost > candidate.cost:
                solutions[i] = candidate
            break
    else:
        if len(solutions) < params.max_solutions:
            solutions.append(candidate)

    return solutions, min(min_cost, candidate.cost)


def _refine_both_signs(
    e: np.ndarray,
    form: AccumulatedForm,
    nearest_rotation: Callable[[np.ndarray], np.ndarray],
    params: SolverParameters,
    verbose: bool,
) -> List[PoseSolution]:
    """Run SQP from the nearest rotations of e and -e"""
    candidates = []
    for sign in (1, -1):
        solution = _run_sqp(
            nearest_rotation(sign * e), form.omega, nearest_rotation, params, verbose
        )
        candidates.append(replace(solution, t=form.P @ solution.r_hat))
    return candidates


def _validate_input(
    pts_2d: np.ndarray, pts_3d: np.ndarray, weights: Optional[np.ndarray]
) -> Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]]:
    pts_2d = np.asarray(pts_2d, dtype=float)
    pts_3d = np.asarray(pts_3d, dtype=float)
    if pts_2d.ndim != 2 or pts_2d.shape[1] != 2:
        return None
    if pts_3d.ndim != 2 or pts_3d.shape[1] != 3:
        return None

    n = len(pts_3d)
    if len(pts_2d) != n or n < 3:
        return None

    if weights is None:
        weights = np.ones(n)
    weights = np.asarray(weights, dtype=float)
    if weights.shape != (n,) or np.any(weights < 0):
        return None

    if not (
        np.all(np.isfinite(pts_2d))
        and np.all(np.isfinite(pts_3d))
        and np.all(np.isfinite(weights))
    ):
        return None

    return pts_2d, pts_3d, weights


def sqpnp(
    pts_2d: np.ndarray,
    pts_3d: np.ndarray,
    weights: Optional[np.ndarray] = None,
    params: SolverParameters = DEFAULT_PARAMETERS,
    verbose: bool = False,
) -> SolutionSet:
    """Compute the globally optimal camera poses from point 2D-3D correspondences.

    Arguments:
    pts_2d -- n x 2 np.array of calibrated image points, i.e. K^-1 applied to the pixels
    pts_3d -- n x 3 np.array of 3D points
    weights -- n np.array of non negative weights. Defaults to uniform weights.
    params -- numerical tolerances and nearest rotation method
    verbose -- warn about rejected input and SQP runs that hit the iteration cap
    """
    nearest_rotation = _nearest_rotation_method(params.nearest_rotation_method)

    validated = _validate_input(pts_2d, pts_3d, weights)
    if validated is None:
        if verbose:
            warnings.warn(
                "Invalid correspondences. Expected at least 3 matching 2D and 3D "
                "points and as many non negative weights."
            )
        return SolutionSet(status=Status.INPUT_ERROR)
    pts_2d, pts_3d, weights = validated

    form = accumulate(pts_2d, pts_3d, weights)
    if form is None:
        if verbose:
            warnings.warn("The weighted image points do not constrain the translation.")
        return SolutionSet(status=Status.DEGENERATE_CONFIGURATION)

    basis = eigen_basis(form.omega)
    num_null_vectors = null_space_size(basis.values, params.rank_tolerance)
    if num_null_vectors > 6:
        if verbose:
            warnings.warn(
                "The null space of Omega has dimension {} > 6.".format(num_null_vectors)
            )
        return SolutionSet(
            status=Status.DEGENERATE_CONFIGURATION, null_space_size=num_null_vectors
        )

    solutions: List[PoseSolution] = []
    min_cost = np.inf

    # Candidates from the null space
    for i in range(num_null_vectors):
        # The norm of a rotation vector is sqrt(3)
        e = _SQRT3 * basis.vectors[:, i]
        if orthogonality_error(e) < params.orthogonality_squared_error_threshold:
            r_hat = nearest_rotation(np.sign(_det3(e.reshape((3, 3)))) * e)
            candidates = [
                PoseSolution(r=e, r_hat=r_hat, t=form.P @ r_hat, num_iterations=0)
            ]
        else:
            candidates = _refine_both_signs(
                e, form, nearest_rotation, params, verbose
            )

        for candidate in candidates:
            solutions, min_cost = _handle_solution(
                solutions, min_cost, candidate, form, params
            )

    # Keep looking while the best cost could still be beaten
    index = num_null_vectors
    while index < 9 and min_cost > 3 * basis.values[index]:
        e = _SQRT3 * basis.vectors[:, index]
        for candidate in _refine_both_signs(e, form, nearest_rotation, params, verbose):
            solutions, min_cost = _handle_solution(
                solutions, min_cost, candidate, form, params
            )
        index += 1

    certified = index < 9 or min_cost < params.rank_tolerance
    if not certified:
        warnings.warn("The solution is not certifiably optimal.")

    solutions = sorted(solutions, key=lambda s: s.cost)
    return SolutionSet(
        status=Status.OK,
        solutions=tuple(solutions),
        null_space_size=num_null_vectors,
        certified=certified,
    )


def pnp(
    pts_2d: np.ndarray,
    pts_3d: np.ndarray,
    weights: Optional[np.ndarray] = None,
    nearest_rotation_method: str = "foam",
    verbose: bool = False,
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Compute object poses from point 2D-3D correspondences.

    Arguments:
    pts_2d -- n x 2 np.array of calibrated image points
    pts_3d -- n x 3 np.array of 3D points
    weights -- n np.array of non negative weights. Defaults to uniform weights.
    nearest_rotation_method -- either "svd" or "foam"
    verbose -- warn about rejected input and SQP runs that hit the iteration cap

    Returns a list of (R, t) pairs sorted by cost, empty if the input is invalid or degenerate.
    """
    params = SolverParameters(nearest_rotation_method=nearest_rotation_method)
    result = sqpnp(pts_2d, pts_3d, weights=weights, params=params, verbose=verbose)
    return [(s.R, s.t) for s in result.solutions]
