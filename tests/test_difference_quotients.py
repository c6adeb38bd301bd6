"""Unit tests for nk_engine.difference_quotients."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from nk_engine.band_matrix import BandMatrix
from nk_engine.difference_quotients import (
    band_dq_jacobian,
    default_rel,
    dense_dq_jacobian,
    dq_increments,
    dq_jtimes,
    wrms_norm,
)
from nk_engine.types import EvalPoint

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


def _tridiagonal(n: int) -> FloatArray:
    """Nonsymmetric tridiagonal test matrix."""
    return (
        np.diag(np.full(n, -4.0))
        + np.diag(np.full(n - 1, 1.0), -1)
        + np.diag(np.full(n - 1, 2.0), 1)
    )


class _CountingLinear:
    """g(y) = A y + b, counting evaluations."""

    def __init__(self, a: FloatArray) -> None:
        self.a = a
        self.b = np.arange(a.shape[0], dtype=float)
        self.calls = 0

    def __call__(self, point: EvalPoint) -> FloatArray:
        self.calls += 1
        return self.a @ point.y + self.b


# -----------------------------------------------------------------------------
# Increments and norms
# -----------------------------------------------------------------------------


def test_default_rel_is_sqrt_unit_roundoff() -> None:
    """default_rel follows the precision of the requested dtype."""
    assert default_rel() == pytest.approx(np.sqrt(np.finfo(np.float64).eps))
    assert default_rel(np.float32) == pytest.approx(np.sqrt(np.finfo(np.float32).eps))
    assert default_rel(np.float32) > default_rel(np.float64)


def test_increments_keep_sign_and_floor() -> None:
    """Increments carry the sign of y (zero counts as positive) and a floor."""
    inc = dq_increments(np.array([-2.0, 0.0, 3.0]), 0.1)
    assert np.allclose(inc, [-0.2, 0.1, 0.3])
    # unit floor without weights
    small = dq_increments(np.array([1e-3, -1e-3]), 0.1)
    assert np.allclose(small, [0.1, -0.1])

    weighted = dq_increments(np.array([0.1, -0.1]), 0.1, np.array([0.5, 20.0]))
    # floors are 1/w = 2.0 and 0.05
    assert np.allclose(weighted, [0.2, -0.01])


def test_wrms_norm() -> None:
    """Weighted RMS norm of a small vector."""
    assert wrms_norm(np.array([3.0, 4.0])) == pytest.approx(np.sqrt(12.5))
    assert wrms_norm(np.array([3.0, 4.0]), np.array([2.0, 0.0])) == pytest.approx(
        np.sqrt(18.0)
    )
    assert wrms_norm(np.array([])) == 0.0


# -----------------------------------------------------------------------------
# Jacobian approximations
# -----------------------------------------------------------------------------


def test_dense_dq_recovers_linear_jacobian() -> None:
    """Forward differences of a linear map recover its matrix."""
    a = _tridiagonal(5)
    g = _CountingLinear(a)
    point = EvalPoint(0.0, np.linspace(1.0, 2.0, 5))
    jac = np.zeros((5, 5))

    n_evals = dense_dq_jacobian(g, point, g(point), jac)

    assert n_evals == 5
    assert g.calls == 6
    assert np.allclose(jac, a, rtol=1e-6, atol=1e-6)


def test_band_dq_uses_grouped_evaluations() -> None:
    """Band quotients cost mldq + mudq + 1 evaluations, not n."""
    n = 9
    a = _tridiagonal(n)
    g = _CountingLinear(a)
    point = EvalPoint(0.0, np.linspace(-1.0, 1.0, n))
    f0 = g(point)
    g.calls = 0
    jac = BandMatrix(n, 1, 1)

    n_evals = band_dq_jacobian(g, point, f0, jac, mudq=1, mldq=1)

    assert n_evals == 3
    assert g.calls == 3
    assert np.allclose(jac.to_dense(), a, rtol=1e-6, atol=1e-6)


def test_band_dq_discards_entries_outside_kept_band() -> None:
    """A narrower target keeps only its diagonals at the same cost."""
    n = 6
    a = _tridiagonal(n)
    g = _CountingLinear(a)
    point = EvalPoint(0.0, np.ones(n))
    jac = BandMatrix(n, 0, 1)

    n_evals = band_dq_jacobian(g, point, g(point), jac, mudq=1, mldq=1)

    assert n_evals == 3
    assert np.allclose(jac.to_dense(), np.tril(a), rtol=1e-6, atol=1e-6)


def test_band_dq_rejects_target_wider_than_quotients() -> None:
    """Kept bandwidths larger than the quotient bandwidths are an error."""
    g = _CountingLinear(_tridiagonal(4))
    point = EvalPoint(0.0, np.ones(4))
    with pytest.raises(ValueError, match="must not exceed"):
        band_dq_jacobian(g, point, g(point), BandMatrix(4, 2, 1), mudq=1, mldq=1)


def test_band_dq_dae_combines_derivative_coefficient() -> None:
    """For G(y, y') = y' - A y the DAE quotient is cj * I - A."""
    n = 5
    a = _tridiagonal(n)
    cj = 3.0

    def residual(point: EvalPoint) -> FloatArray:
        assert point.yp is not None
        return point.yp - a @ point.y

    point = EvalPoint(0.0, np.linspace(0.5, 1.0, n), np.zeros(n))
    jac = BandMatrix(n, 1, 1)
    band_dq_jacobian(residual, point, residual(point), jac, mudq=1, mldq=1, cj=cj)

    assert np.allclose(jac.to_dense(), cj * np.eye(n) - a, rtol=1e-6, atol=1e-6)


# -----------------------------------------------------------------------------
# Jacobian-vector products
# -----------------------------------------------------------------------------


def test_dq_jtimes_costs_one_evaluation(rng: np.random.Generator) -> None:
    """dq_jtimes approximates A v with exactly one function evaluation."""
    a = _tridiagonal(6)
    g = _CountingLinear(a)
    point = EvalPoint(0.0, rng.standard_normal(6))
    f0 = g(point)
    v = rng.standard_normal(6)
    v_copy = v.copy()
    g.calls = 0

    jv, n_evals = dq_jtimes(g, point, f0, v)

    assert n_evals == 1
    assert g.calls == 1
    assert np.allclose(jv, a @ v, rtol=1e-6, atol=1e-6)
    assert np.array_equal(v, v_copy)


def test_dq_jtimes_zero_vector_is_free() -> None:
    """A zero direction returns zeros without evaluating the function."""
    g = _CountingLinear(_tridiagonal(3))
    point = EvalPoint(0.0, np.ones(3))
    f0 = g(point)
    g.calls = 0

    jv, n_evals = dq_jtimes(g, point, f0, np.zeros(3))

    assert n_evals == 0
    assert g.calls == 0
    assert np.array_equal(jv, np.zeros(3))
