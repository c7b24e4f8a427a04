"""Geometric model fitting.

This module implements least-squares estimation of planar models from
points: conic/ellipse fitting from scattered points and affine transform
fitting from point correspondences, together with the model types that
carry the results. All fits normalise their inputs first (Hartley) and
undo the normalisation on the reported coefficients. fit_affine_robust
adds a RANSAC stage for correspondence sets that contain outliers.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy import linalg

from .config import RansacConfig
from .errors import DegenerateInput, UnderdeterminedFit

logger = logging.getLogger(__name__)

# Relative singular-value threshold below which a direction counts as null.
RANK_TOL = 1e-9

CONIC_METHODS = ("lsq", "taubin", "renormalization", "reweight")

# Iterative conic estimators stop when the unit coefficient vector moves less than this
REWEIGHT_TOL = 1e-7
MAX_REWEIGHT_ITERATIONS = 100


def normalize_points(pts: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Normalize points using Hartley's method.

    Applies isotropic scaling to 2D points so they have zero mean and
    average distance of sqrt(2) from the origin.

    Args:
        pts: Nx2 array of 2D points

    Returns:
        Tuple of (normalized_points, transformation_matrix)
    """
    pts = np.asarray(pts, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError(f"Expected Nx2 points array, got shape {pts.shape}")

    centroid = np.mean(pts, axis=0)
    centered_pts = pts - centroid

    distances = np.sqrt(np.sum(centered_pts**2, axis=1))
    avg_distance = np.mean(distances)

    # Coincident points keep unit scale; rank checks downstream reject them
    scale = np.sqrt(2) / avg_distance if avg_distance > 0 else 1.0

    T = np.array([
        [scale, 0, -scale * centroid[0]],
        [0, scale, -scale * centroid[1]],
        [0, 0, 1]
    ])

    normalized_pts = centered_pts * scale

    logger.debug(f"Normalized {pts.shape[0]} points: scale={scale:.5f}")
    return normalized_pts, T


def _numerical_rank(singular_values: np.ndarray) -> int:
    if singular_values.size == 0 or singular_values[0] <= 0:
        return 0
    return int(np.sum(singular_values > RANK_TOL * singular_values[0]))


@dataclass(frozen=True, eq=False)
class AffineTransform:
    """2x3 affine map: [x', y'] = M[:, :2] @ [x, y] + M[:, 2]."""

    matrix: np.ndarray

    def __post_init__(self):
        m = np.array(self.matrix, dtype=np.float64)
        if m.shape != (2, 3):
            raise ValueError(f"Affine matrix must be 2x3, got shape {m.shape}")
        m.setflags(write=False)
        object.__setattr__(self, "matrix", m)

    @classmethod
    def identity(cls) -> "AffineTransform":
        return cls(np.eye(2, 3))

    @classmethod
    def from_homogeneous(cls, H: np.ndarray) -> "AffineTransform":
        H = np.asarray(H, dtype=np.float64)
        if H.shape != (3, 3):
            raise ValueError(f"Expected 3x3 matrix, got shape {H.shape}")
        return cls(H[:2] / H[2, 2])

    def as_homogeneous(self) -> np.ndarray:
        return np.vstack((self.matrix, [0.0, 0.0, 1.0]))

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Map an Nx2 array (or a single point) through the transform."""
        pts = np.asarray(points, dtype=np.float64)
        return pts @ self.matrix[:, :2].T + self.matrix[:, 2]

    def inverse(self) -> "AffineTransform":
        """Inverse map.

        Raises:
            DegenerateInput: If the linear part is singular
        """
        L = self.matrix[:, :2]
        det = L[0, 0] * L[1, 1] - L[0, 1] * L[1, 0]
        if abs(det) < 1e-12:
            raise DegenerateInput(f"Affine transform is singular (det={det:.3e})")
        L_inv = np.array([[L[1, 1], -L[0, 1]], [-L[1, 0], L[0, 0]]]) / det
        t_inv = -L_inv @ self.matrix[:, 2]
        return AffineTransform(np.hstack((L_inv, t_inv.reshape(2, 1))))

    def compose(self, other: "AffineTransform") -> "AffineTransform":
        """Transform equivalent to applying `other` first, then `self`."""
        return AffineTransform.from_homogeneous(self.as_homogeneous() @ other.as_homogeneous())

    def allclose(self, other: "AffineTransform", atol: float = 1e-8) -> bool:
        return bool(np.allclose(self.matrix, other.matrix, atol=atol))

    def to_dict(self) -> Dict[str, list]:
        return {"matrix": self.matrix.tolist()}


@dataclass(frozen=True)
class Ellipse:
    """Ellipse in centre/axes/angle form.

    `axes` is (semi-major, semi-minor); `angle` is the direction of the major
    axis in radians, in [-pi/2, pi/2).
    """

    center: Tuple[float, float]
    axes: Tuple[float, float]
    angle: float = 0.0

    def points(self, n: int = 100) -> np.ndarray:
        """Sample n points evenly in parameter along the curve."""
        t = np.linspace(0.0, 2.0 * np.pi, n, endpoint=False)
        a, b = self.axes
        cos_a, sin_a = math.cos(self.angle), math.sin(self.angle)
        x = self.center[0] + a * np.cos(t) * cos_a - b * np.sin(t) * sin_a
        y = self.center[1] + a * np.cos(t) * sin_a + b * np.sin(t) * cos_a
        return np.column_stack((x, y))

    def to_conic(self) -> "Conic":
        cx, cy = self.center
        a, b = self.axes
        s, c = math.sin(self.angle), math.cos(self.angle)
        A = a * a * s * s + b * b * c * c
        B = 2.0 * (b * b - a * a) * s * c
        C = a * a * c * c + b * b * s * s
        D = -2.0 * A * cx - B * cy
        E = -B * cx - 2.0 * C * cy
        F = A * cx * cx + B * cx * cy + C * cy * cy - a * a * b * b
        return Conic.from_coefficients([A, B, C, D, E, F])

    def to_dict(self) -> Dict[str, object]:
        return {"center": list(self.center), "axes": list(self.axes), "angle": self.angle}


def _canonical_coefficients(coeffs: np.ndarray) -> np.ndarray:
    """Unit norm, sign fixed so that A (or the largest coefficient) is positive."""
    coeffs = np.asarray(coeffs, dtype=np.float64)
    norm = np.linalg.norm(coeffs)
    if norm == 0:
        raise DegenerateInput("Conic coefficients are all zero")
    coeffs = coeffs / norm
    pivot = coeffs[0] if abs(coeffs[0]) > 1e-12 else coeffs[np.argmax(np.abs(coeffs))]
    return -coeffs if pivot < 0 else coeffs


@dataclass(frozen=True, eq=False)
class Conic:
    """Conic A x^2 + B xy + C y^2 + D x + E y + F = 0."""

    coefficients: np.ndarray

    def __post_init__(self):
        c = np.array(self.coefficients, dtype=np.float64).reshape(-1)
        if c.shape != (6,):
            raise ValueError(f"Conic needs 6 coefficients, got {c.size}")
        c.setflags(write=False)
        object.__setattr__(self, "coefficients", c)

    @classmethod
    def from_coefficients(cls, coeffs: Sequence[float]) -> "Conic":
        """Build a conic with unit-norm, sign-normalised coefficients."""
        return cls(_canonical_coefficients(np.asarray(coeffs, dtype=np.float64)))

    @classmethod
    def from_matrix(cls, Q: np.ndarray) -> "Conic":
        Q = np.asarray(Q, dtype=np.float64)
        return cls.from_coefficients(
            [Q[0, 0], 2 * Q[0, 1], Q[1, 1], 2 * Q[0, 2], 2 * Q[1, 2], Q[2, 2]]
        )

    def matrix(self) -> np.ndarray:
        """Symmetric 3x3 form Q with [x y 1] Q [x y 1]^T = 0."""
        A, B, C, D, E, F = self.coefficients
        return np.array([
            [A, B / 2, D / 2],
            [B / 2, C, E / 2],
            [D / 2, E / 2, F]
        ])

    def evaluate(self, points: np.ndarray) -> np.ndarray:
        """Algebraic residual of each point."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return conic_design_matrix(pts) @ self.coefficients

    @property
    def discriminant(self) -> float:
        A, B, C = self.coefficients[:3]
        return float(B * B - 4 * A * C)

    def is_ellipse(self) -> bool:
        try:
            self.to_ellipse()
        except DegenerateInput:
            return False
        return True

    def to_ellipse(self) -> Ellipse:
        """Centre/axes/angle parameters of a real ellipse.

        Raises:
            DegenerateInput: If the conic is a hyperbola, parabola, or an
                imaginary/point ellipse
        """
        A, B, C, D, E, F = self.coefficients
        if self.discriminant >= 0:
            raise DegenerateInput(
                f"Conic is not an ellipse (B^2 - 4AC = {self.discriminant:.3e})"
            )

        center = np.linalg.solve(np.array([[2 * A, B], [B, 2 * C]]), np.array([-D, -E]))
        x0, y0 = center
        # Conic value at the centre
        f0 = F + (D * x0 + E * y0) / 2.0

        eigvals, eigvecs = np.linalg.eigh(np.array([[A, B / 2], [B / 2, C]]))
        axes_sq = -f0 / eigvals
        if np.any(axes_sq <= 0):
            raise DegenerateInput("Conic describes an imaginary or point ellipse")

        axes = np.sqrt(axes_sq)
        major = int(np.argmax(axes))
        direction = eigvecs[:, major]
        angle = math.atan2(direction[1], direction[0])
        if angle >= np.pi / 2:
            angle -= np.pi
        elif angle < -np.pi / 2:
            angle += np.pi

        return Ellipse(
            center=(float(x0), float(y0)),
            axes=(float(axes[major]), float(axes[1 - major])),
            angle=float(angle),
        )

    def to_dict(self) -> Dict[str, list]:
        return {"coefficients": self.coefficients.tolist()}


def conic_design_matrix(pts: np.ndarray) -> np.ndarray:
    """Rows (x^2, xy, y^2, x, y, 1) for each point."""
    x, y = pts[:, 0], pts[:, 1]
    return np.column_stack((x * x, x * y, y * y, x, y, np.ones_like(x)))


def _design_jacobians(pts: np.ndarray) -> np.ndarray:
    """(n, 6, 2) derivatives of each design row w.r.t. x and y."""
    n = pts.shape[0]
    x, y = pts[:, 0], pts[:, 1]
    zeros, ones = np.zeros(n), np.ones(n)
    return np.stack((
        np.column_stack((2 * x, y, zeros, ones, zeros, zeros)),
        np.column_stack((zeros, x, 2 * y, zeros, ones, zeros)),
    ), axis=2)


def _conic_weights(theta: np.ndarray, J: np.ndarray) -> np.ndarray:
    """Inverse first-order variance of each point's algebraic residual."""
    grad = np.einsum("nik,i->nk", J, theta)
    variance = np.sum(grad * grad, axis=1)
    return 1.0 / np.maximum(variance, np.finfo(np.float64).eps)


def _solve_taubin(design: np.ndarray, J: np.ndarray, weights=None) -> np.ndarray:
    """Smallest finite eigenvector of M theta = lambda N theta.

    M is the (weighted) moment matrix of the design rows and N the
    (weighted) mean of J J^T. Unit weights give Taubin's method.
    """
    n = design.shape[0]
    w = np.ones(n) if weights is None else weights
    M = (design * w[:, np.newaxis]).T @ design / n
    N = np.einsum("n,nik,njk->ij", w, J, J) / n
    eigvals, eigvecs = linalg.eig(M, N)
    finite = np.isfinite(eigvals) & (np.abs(eigvals.imag) < 1e-9)
    if not np.any(finite):
        raise DegenerateInput("Taubin eigenproblem has no finite solution")
    candidates = np.where(finite)[0]
    best = candidates[np.argmin(np.abs(eigvals.real[candidates]))]
    logger.debug(f"Taubin eigenvalue: {eigvals.real[best]:.3e}")
    theta = np.real(eigvecs[:, best])
    return theta / np.linalg.norm(theta)


def _solve_weighted_lsq(design: np.ndarray, weights: np.ndarray) -> np.ndarray:
    M = (design * weights[:, np.newaxis]).T @ design
    _, eigvecs = np.linalg.eigh(M)
    return eigvecs[:, 0]


def _reweight(theta: np.ndarray, J: np.ndarray, solve) -> np.ndarray:
    """Re-solve with weights from the previous estimate until it settles."""
    for iteration in range(1, MAX_REWEIGHT_ITERATIONS + 1):
        updated = solve(_conic_weights(theta, J))
        if np.dot(updated, theta) < 0:
            updated = -updated
        step = np.linalg.norm(updated - theta)
        theta = updated
        if step < REWEIGHT_TOL:
            break
    else:
        logger.warning(
            f"Conic reweighting did not converge in {MAX_REWEIGHT_ITERATIONS} iterations"
        )
    logger.debug(f"Conic reweighting: {iteration} iterations, last step {step:.3e}")
    return theta


def fit_conic(points: np.ndarray, method: str = "lsq") -> Conic:
    """Fit a general conic to scattered points.

    Builds the design matrix of (x^2, xy, y^2, x, y, 1) rows on
    Hartley-normalised points, then:

    - "lsq": right singular vector of the smallest singular value
    - "taubin": Taubin's generalised eigenproblem, less biased on noisy data
    - "renormalization": Taubin's problem re-solved with per-point weights
      from the previous estimate until the coefficients settle
    - "reweight": least squares re-solved with the same weights, starting
      from the "lsq" estimate

    Args:
        points: Nx2 array of points, N >= 5
        method: One of CONIC_METHODS

    Returns:
        Conic with unit-norm coefficients in the original coordinates

    Raises:
        UnderdeterminedFit: If fewer than 5 points are given
        DegenerateInput: If the points are collinear/coincident (design
            matrix rank below 5)
    """
    if method not in CONIC_METHODS:
        raise ValueError(f"Unknown conic fitting method: {method}")

    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError(f"Expected Nx2 points array, got shape {pts.shape}")
    n_points = pts.shape[0]
    if n_points < 5:
        raise UnderdeterminedFit(f"At least 5 points required for a conic, got {n_points}")

    norm_pts, T = normalize_points(pts)
    design = conic_design_matrix(norm_pts)

    # Pad to 6 rows so Vt always spans the full coefficient space
    padded = design if n_points >= 6 else np.vstack((design, np.zeros((6 - n_points, 6))))
    _, S, Vt = np.linalg.svd(padded, full_matrices=False)
    rank = _numerical_rank(S)
    logger.debug(
        f"Conic design matrix: {n_points} points, rank={rank}, "
        f"singular values={np.array2string(S, precision=4)}"
    )
    if rank < 5:
        raise DegenerateInput(
            f"Design matrix has rank {rank} < 5; points are collinear or coincident"
        )

    if method in ("lsq", "reweight"):
        theta = Vt[-1]
    else:
        J = _design_jacobians(norm_pts)
        theta = _solve_taubin(design, J)

    if method == "reweight":
        J = _design_jacobians(norm_pts)
        theta = _reweight(theta, J, lambda w: _solve_weighted_lsq(design, w))
    elif method == "renormalization":
        theta = _reweight(theta, J, lambda w: _solve_taubin(design, J, w))

    # Undo normalisation: x' = T x  =>  Q = T^T Q' T
    Q_norm = Conic(theta).matrix()
    conic = Conic.from_matrix(T.T @ Q_norm @ T)

    logger.debug(f"Fitted conic ({method}): {np.array2string(conic.coefficients, precision=6)}")
    return conic


def fit_ellipse(points: np.ndarray, method: str = "lsq") -> Ellipse:
    """Fit a conic and convert it to centre/axes/angle form."""
    return fit_conic(points, method=method).to_ellipse()


def fit_affine(xy_pairs: np.ndarray) -> AffineTransform:
    """Estimate an affine transform from point correspondences.

    Solves the stacked least-squares system [x y 1] . M^T = [x' y'] on
    Hartley-normalised source points.

    Args:
        xy_pairs: Nx4 array of point correspondences [x1,y1,x2,y2]

    Returns:
        AffineTransform mapping (x1, y1) to (x2, y2)

    Raises:
        UnderdeterminedFit: If fewer than 3 correspondences are given
        DegenerateInput: If the source points are collinear or coincident
    """
    pairs = np.asarray(xy_pairs, dtype=np.float64)
    if pairs.ndim != 2 or pairs.shape[1] != 4:
        raise ValueError(f"Expected Nx4 correspondence array, got shape {pairs.shape}")
    n_pairs = pairs.shape[0]
    if n_pairs < 3:
        raise UnderdeterminedFit(f"At least 3 point pairs required, got {n_pairs}")

    src = pairs[:, :2]
    dst = pairs[:, 2:]

    norm_src, T = normalize_points(src)
    A = np.hstack((norm_src, np.ones((n_pairs, 1))))

    S = np.linalg.svd(A, compute_uv=False)
    rank = _numerical_rank(S)
    if rank < 3:
        raise DegenerateInput(
            f"Source points are collinear or coincident (rank {rank} < 3)"
        )

    X, _, _, _ = np.linalg.lstsq(A, dst, rcond=None)

    # dst = X^T [x_n y_n 1]^T and [x_n y_n 1]^T = T [x y 1]^T
    M = X.T @ T

    logger.debug(
        f"Affine fit: {n_pairs} pairs, condition={S[0] / S[-1]:.2f}, "
        f"matrix={np.array2string(M, precision=4)}"
    )
    return AffineTransform(M)


def fit_affine_robust(
    xy_pairs: np.ndarray, config: Optional[RansacConfig] = None
) -> Tuple[AffineTransform, np.ndarray]:
    """Estimate an affine transform from correspondences containing outliers.

    Uses RANSAC to find the inlier set, then refines by least squares on the
    inliers only.

    Args:
        xy_pairs: Nx4 array of point correspondences [x1,y1,x2,y2]
        config: RANSAC settings

    Returns:
        Tuple of (AffineTransform mapping (x1, y1) to (x2, y2), boolean
        inlier mask of length N)

    Raises:
        UnderdeterminedFit: If fewer than 3 correspondences (or inliers) remain
        DegenerateInput: If no consensus set is found or the inliers are
            collinear
    """
    start_time = time.perf_counter()
    config = config or RansacConfig()
    pairs = np.asarray(xy_pairs, dtype=np.float64)
    if pairs.ndim != 2 or pairs.shape[1] != 4:
        raise ValueError(f"Expected Nx4 correspondence array, got shape {pairs.shape}")
    n_pairs = pairs.shape[0]
    if n_pairs < 3:
        raise UnderdeterminedFit(f"At least 3 point pairs required, got {n_pairs}")

    src_points = pairs[:, :2].reshape(-1, 1, 2)
    dst_points = pairs[:, 2:].reshape(-1, 1, 2)

    # Use RANSAC to find the consensus set; refinement is done below
    M, inliers = cv2.estimateAffine2D(
        src_points,
        dst_points,
        method=cv2.RANSAC,
        ransacReprojThreshold=config.threshold,
        maxIters=config.max_iterations,
        confidence=config.confidence,
        refineIters=0
    )
    if M is None or inliers is None:
        raise DegenerateInput(f"RANSAC found no affine consensus among {n_pairs} pairs")

    mask = inliers.reshape(-1).astype(bool)
    n_inliers = int(mask.sum())
    if n_inliers < 3:
        raise UnderdeterminedFit(f"Only {n_inliers} RANSAC inliers, at least 3 required")

    transform = fit_affine(pairs[mask])

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Robust affine fit: {n_inliers}/{n_pairs} inliers "
        f"({n_inliers / n_pairs:.1%}, elapsed time: {elapsed_time:.3f}s)"
    )
    return transform, mask


def rotation_affine(
    angle_deg: float,
    center: Tuple[float, float] = (0.0, 0.0),
    scale: float = 1.0,
) -> AffineTransform:
    """Rotation by angle_deg (counter-clockwise on screen) and scaling about center.

    Same convention as cv2.getRotationMatrix2D.
    """
    theta = math.radians(angle_deg)
    alpha = scale * math.cos(theta)
    beta = scale * math.sin(theta)
    cx, cy = center
    return AffineTransform(np.array([
        [alpha, beta, (1 - alpha) * cx - beta * cy],
        [-beta, alpha, beta * cx + (1 - alpha) * cy]
    ]))
