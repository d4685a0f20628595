from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np
from scipy.linalg import qr, solve_triangular


DEFAULT_POLYNOMIAL_DEGREE = 3


class UnderdeterminedFitError(ValueError):
    """Raised when the waypoints cannot determine a polynomial of the requested degree."""


def to_vehicle_frame(
    xs: Sequence[float],
    ys: Sequence[float],
    origin_x: float,
    origin_y: float,
    heading: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Express world-frame points in the vehicle frame.

    The vehicle frame has its origin at (origin_x, origin_y) with +x along
    ``heading`` and +y to the left.
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.shape != ys.shape:
        raise ValueError(f"x/y length mismatch: {xs.shape} vs {ys.shape}")

    shift_x = xs - origin_x
    shift_y = ys - origin_y
    cos_h = math.cos(-heading)
    sin_h = math.sin(-heading)
    return shift_x * cos_h - shift_y * sin_h, shift_x * sin_h + shift_y * cos_h


def to_world_frame(
    xs: Sequence[float],
    ys: Sequence[float],
    origin_x: float,
    origin_y: float,
    heading: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`to_vehicle_frame`."""
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.shape != ys.shape:
        raise ValueError(f"x/y length mismatch: {xs.shape} vs {ys.shape}")

    cos_h = math.cos(heading)
    sin_h = math.sin(heading)
    return (
        xs * cos_h - ys * sin_h + origin_x,
        xs * sin_h + ys * cos_h + origin_y,
    )


def fit_polynomial(
    xs: Sequence[float],
    ys: Sequence[float],
    degree: int = DEFAULT_POLYNOMIAL_DEGREE,
) -> np.ndarray:
    """
    Least-squares polynomial fit, coefficients lowest degree first.

    Solved through a Householder QR factorization of the Vandermonde matrix
    rather than the normal equations.

    Raises:
        UnderdeterminedFitError: fewer than ``degree + 1`` distinct x-values.
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.shape != ys.shape or xs.ndim != 1:
        raise ValueError(f"x/y must be 1-D and equal length: {xs.shape} vs {ys.shape}")
    if degree < 1:
        raise UnderdeterminedFitError(f"degree must be >= 1, got {degree}")
    distinct = len(np.unique(xs))
    if distinct < degree + 1:
        raise UnderdeterminedFitError(
            f"degree {degree} fit needs {degree + 1} distinct x-values, got {distinct}"
        )

    vander = np.vander(xs, degree + 1, increasing=True)
    q, r = qr(vander, mode="economic")
    return solve_triangular(r, q.T @ ys)


def fit_reference_polynomial(
    xs: Sequence[float],
    ys: Sequence[float],
    degree: int = DEFAULT_POLYNOMIAL_DEGREE,
    allow_reduced_degree: bool = True,
) -> np.ndarray:
    """
    Fit the reference curve, always returning ``degree + 1`` coefficients.

    With ``allow_reduced_degree`` a sparse waypoint window (at least two
    distinct x-values but fewer than ``degree + 1``) is fit with the highest
    degree it determines and padded with zero coefficients.
    """
    distinct = len(np.unique(np.asarray(xs, dtype=float)))
    if allow_reduced_degree and 2 <= distinct < degree + 1:
        coeffs = fit_polynomial(xs, ys, distinct - 1)
        return np.concatenate([coeffs, np.zeros(degree + 1 - len(coeffs))])
    return fit_polynomial(xs, ys, degree)


def polyeval(coeffs: Sequence[float], x):
    """Evaluate a lowest-degree-first polynomial (Horner's rule)."""
    result = np.zeros_like(np.asarray(x, dtype=float))
    for c in reversed(coeffs):
        result = result * x + c
    if np.ndim(result) == 0:
        return float(result)
    return result


def polyderiv(coeffs: Sequence[float]) -> np.ndarray:
    """Coefficients of the derivative polynomial, lowest degree first."""
    coeffs = np.asarray(coeffs, dtype=float)
    if len(coeffs) <= 1:
        return np.zeros(1)
    return coeffs[1:] * np.arange(1, len(coeffs))


def compute_tracking_errors(coeffs: Sequence[float]) -> Tuple[float, float]:
    """
    Cross-track and heading error of the vehicle at the vehicle-frame origin.

    Returns:
        (cross_track_error, heading_error). The cross-track error is the
        curve's lateral offset at x=0, the heading error is the vehicle's
        heading (zero by construction) minus the curve's tangent angle.
    """
    cte = polyeval(coeffs, 0.0)
    slope = float(coeffs[1]) if len(coeffs) > 1 else 0.0
    return float(cte), float(-math.atan(slope))
