# nk_engine/src/nk_engine/difference_quotients.py
"""Finite-difference Jacobian approximations.

Three approximations share one increment rule:

    inc_j = rel * max(|y_j|, 1 / w_j) * sign(y_j)        (sign(0) = +1)

where ``rel`` is the relative perturbation and ``w`` a positive weight vector
(error weights or unknown scaling). Without weights ``w`` is all ones, so the
floor ``1 / w_j`` is 1 and small components are perturbed by ``rel``.

- dense_dq_jacobian: one function evaluation per column.
- band_dq_jacobian: columns spaced ``mldq + mudq + 1`` apart are perturbed
  together, so the cost is ``min(mldq + mudq + 1, n)`` evaluations whatever
  bandwidth the target matrix keeps.
- dq_jtimes: one evaluation per Jacobian-vector product.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Final

import numpy as np

from .types import EvalPoint

if TYPE_CHECKING:
    from .band_matrix import BandMatrix
    from .types import FloatArray

PointFunction = Callable[[EvalPoint], "FloatArray"]

_DEFAULT_REL: Final[float] = float(np.sqrt(np.finfo(np.float64).eps))
_KEEP_WIDER_ERROR = (
    "Kept bandwidths (mu={mu}, ml={ml}) must not exceed the difference-quotient "
    "bandwidths (mudq={mudq}, mldq={mldq})."
)


def default_rel(dtype: np.dtype | type = np.float64) -> float:
    """Return the default relative perturbation sqrt(unit roundoff) for dtype."""
    return float(np.sqrt(np.finfo(dtype).eps))


def wrms_norm(v: FloatArray, weights: FloatArray | None = None) -> float:
    """Weighted root-mean-square norm ``sqrt(mean((v * w)**2))``."""
    v_arr = np.asarray(v)
    if v_arr.size == 0:
        return 0.0
    scaled = v_arr if weights is None else v_arr * weights
    return float(np.sqrt(np.mean(scaled * scaled)))


def dq_increments(
    y: FloatArray,
    rel: float,
    weights: FloatArray | None = None,
) -> FloatArray:
    """Return the signed per-component perturbations.

    Args:
        y: Point being perturbed.
        rel: Relative perturbation.
        weights: Positive weights (ones if None).

    Returns:
        Array of nonzero increments with the sign of y.
    """
    y_arr = np.asarray(y)
    floor = 1.0 if weights is None else 1.0 / np.asarray(weights)
    inc = rel * np.maximum(np.abs(y_arr), floor)
    return np.where(y_arr < 0.0, -inc, inc)


def _perturbed(point: EvalPoint, y: FloatArray, yp: FloatArray | None) -> EvalPoint:
    return EvalPoint(point.t, y, yp)


def dense_dq_jacobian(
    func: PointFunction,
    point: EvalPoint,
    f0: FloatArray,
    jac: FloatArray,
    *,
    rel: float = _DEFAULT_REL,
    weights: FloatArray | None = None,
) -> int:
    """Fill a dense Jacobian by forward differences, one column at a time.

    Args:
        func: Function of an EvalPoint.
        point: Base point.
        f0: func(point).
        jac: (n, n) output array, overwritten.
        rel: Relative perturbation.
        weights: Positive weights for the increment floor.

    Returns:
        Number of function evaluations performed.
    """
    y = np.asarray(point.y, dtype=np.float64)
    inc = dq_increments(y, rel, weights)
    y_pert = y.copy()
    for j in range(y.size):
        y_pert[j] = y[j] + inc[j]
        f_pert = np.asarray(func(_perturbed(point, y_pert, point.yp)))
        jac[:, j] = (f_pert - f0) / inc[j]
        y_pert[j] = y[j]
    return int(y.size)


def band_dq_jacobian(
    func: PointFunction,
    point: EvalPoint,
    f0: FloatArray,
    jac: BandMatrix,
    *,
    mudq: int,
    mldq: int,
    rel: float = _DEFAULT_REL,
    weights: FloatArray | None = None,
    cj: float | None = None,
) -> int:
    """Fill a band matrix by grouped forward differences.

    Difference quotients are formed assuming half-bandwidths (mudq, mldq);
    only rows inside the band of ``jac`` are stored, so ``jac`` may keep
    narrower bandwidths than the quotients were built with.

    For DAE points (``point.yp`` set) pass ``cj``: each column perturbs
    ``y_j`` by ``inc_j`` and ``y'_j`` by ``cj * inc_j`` together, giving
    ``dG/dy + cj * dG/dy'``.

    Args:
        func: Function of an EvalPoint.
        point: Base point.
        f0: func(point).
        jac: Output band matrix (entries outside its band are discarded).
        mudq: Upper half-bandwidth for the quotients.
        mldq: Lower half-bandwidth for the quotients.
        rel: Relative perturbation.
        weights: Positive weights for the increment floor.
        cj: Derivative coefficient for DAE points.

    Raises:
        ValueError: If the kept bandwidths exceed the quotient bandwidths.

    Returns:
        Number of function evaluations performed.
    """
    if jac.mu > mudq or jac.ml > mldq:
        raise ValueError(
            _KEEP_WIDER_ERROR.format(mu=jac.mu, ml=jac.ml, mudq=mudq, mldq=mldq)
        )

    y = np.asarray(point.y, dtype=np.float64)
    n = y.size
    width = mldq + mudq + 1
    n_groups = min(width, n)
    inc = dq_increments(y, rel, weights)

    y_pert = y.copy()
    yp = None if point.yp is None else np.asarray(point.yp)
    yp_pert = None if yp is None else yp.copy()
    use_yp = yp_pert is not None and cj is not None

    jac.zero()
    for group in range(n_groups):
        cols = np.arange(group, n, width)
        y_pert[cols] += inc[cols]
        if use_yp:
            yp_pert[cols] += cj * inc[cols]  # type: ignore[index, operator]

        f_pert = np.asarray(func(_perturbed(point, y_pert, yp_pert)))
        diff = f_pert - f0
        for j in cols:
            lo, hi = jac.column_rows(int(j))
            jac.set_column(int(j), diff[lo:hi] / inc[j])

        y_pert[cols] = y[cols]
        if use_yp:
            yp_pert[cols] = yp[cols]  # type: ignore[index]
    return n_groups


def dq_jtimes(
    func: PointFunction,
    point: EvalPoint,
    f0: FloatArray,
    v: FloatArray,
    *,
    rel: float = _DEFAULT_REL,
    weights: FloatArray | None = None,
    cj: float | None = None,
) -> tuple[FloatArray, int]:
    """Approximate ``J @ v`` by a one-sided difference along v.

    The step is ``sigma = rel * max(||y||, 1) / ||v||`` in the weighted RMS
    norm, so the perturbation ``sigma * v`` is small relative to y. For DAE
    points with ``cj`` given, y' is moved by ``cj * sigma * v`` as well and
    the product is with ``dG/dy + cj * dG/dy'``.

    Args:
        func: Function of an EvalPoint.
        point: Base point.
        f0: func(point).
        v: Direction vector (not modified).
        rel: Relative perturbation.
        weights: Weights for the norms.
        cj: Derivative coefficient for DAE points.

    Returns:
        Tuple of (J @ v approximation, number of function evaluations).
    """
    v_norm = wrms_norm(v, weights)
    if v_norm == 0.0:
        return np.zeros(np.shape(f0)), 0
    sigma = rel * max(wrms_norm(point.y, weights), 1.0) / v_norm
    v_arr = np.asarray(v)
    y_pert = np.asarray(point.y) + sigma * v_arr
    yp_pert = point.yp
    if point.yp is not None and cj is not None:
        yp_pert = np.asarray(point.yp) + cj * sigma * v_arr
    f_pert = np.asarray(func(_perturbed(point, y_pert, yp_pert)))
    return (f_pert - f0) / sigma, 1
