# tests/test_spgmr.py
"""Unit tests for nk_engine.spgmr.

Covers convergence with and without preconditioning, Gram-Schmidt variants,
restarts, diagonal scaling, and failure reporting.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from nk_engine.errors import ErrorCode, Outcome, UserRoutineFailure
from nk_engine.spgmr import GramSchmidt, PreconditionSide, spgmr_solve

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


def _nonsymmetric(n: int, rng: np.random.Generator) -> FloatArray:
    """Diagonally dominant nonsymmetric matrix with a varying diagonal."""
    a = 0.3 * rng.standard_normal((n, n))
    a += np.diag(np.linspace(3.0, 10.0, n))
    return a


def _restart_matrix(n: int) -> FloatArray:
    """4 I + tridiag(-0.5, 0, -1); positive definite symmetric part."""
    return (
        4.0 * np.eye(n)
        - 0.5 * np.eye(n, k=-1)
        - 1.0 * np.eye(n, k=1)
    )


def _jacobi(a: FloatArray, calls: list[PreconditionSide]):
    diag = np.diag(a).copy()

    def psolve(r: FloatArray, side: PreconditionSide) -> tuple[Outcome, FloatArray]:
        calls.append(side)
        return Outcome.success(), r / diag

    return psolve


# -----------------------------------------------------------------------------
# Convergence
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("method", [GramSchmidt.MODIFIED, GramSchmidt.CLASSICAL])
def test_unpreconditioned_full_subspace_converges(
    rng: np.random.Generator, method: GramSchmidt
) -> None:
    """With maxl = n GMRES converges on a well-conditioned system."""
    n = 8
    a = _nonsymmetric(n, rng)
    b = rng.standard_normal(n)
    b_copy = b.copy()

    res = spgmr_solve(lambda v: a @ v, b, delta=1e-10, maxl=n, gram_schmidt=method)

    assert res.outcome.ok
    assert 1 <= res.iterations <= n
    assert res.restarts == 0
    assert res.prec_solves == 0
    assert res.residual_norm <= 1e-10
    assert np.allclose(a @ res.x, b, atol=1e-9)
    assert np.array_equal(b, b_copy)


def test_zero_rhs_returns_immediately() -> None:
    """A residual already below delta needs no iteration."""
    calls: list[FloatArray] = []

    def matvec(v: FloatArray) -> FloatArray:
        calls.append(v)
        return v

    res = spgmr_solve(matvec, np.zeros(4), delta=1e-12, maxl=4)

    assert res.outcome.ok
    assert res.iterations == 0
    assert np.array_equal(res.x, np.zeros(4))
    assert calls == []


def test_identity_converges_in_one_step() -> None:
    """Happy breakdown on the identity gives the exact answer at once."""
    b = np.array([1.0, -2.0, 3.0])
    res = spgmr_solve(lambda v: v.copy(), b, delta=1e-14, maxl=3)

    assert res.outcome.ok
    assert res.iterations == 1
    assert np.allclose(res.x, b)


@pytest.mark.parametrize(
    "side",
    [PreconditionSide.LEFT, PreconditionSide.RIGHT, PreconditionSide.BOTH],
)
def test_preconditioned_solve_matches_direct(
    rng: np.random.Generator, side: PreconditionSide
) -> None:
    """Left, right and two-sided Jacobi preconditioning all reach the solution."""
    n = 10
    a = _nonsymmetric(n, rng)
    b = rng.standard_normal(n)
    calls: list[PreconditionSide] = []

    res = spgmr_solve(
        lambda v: a @ v,
        b,
        delta=1e-11,
        maxl=n,
        psolve=_jacobi(a, calls),
        side=side,
    )

    assert res.outcome.ok
    assert np.allclose(res.x, np.linalg.solve(a, b), atol=1e-8)
    assert res.prec_solves == len(calls)
    if side.left:
        assert PreconditionSide.LEFT in calls
    if side.right:
        assert PreconditionSide.RIGHT in calls
    if side is PreconditionSide.LEFT:
        assert PreconditionSide.RIGHT not in calls


def test_side_ignored_without_psolve(rng: np.random.Generator) -> None:
    """Asking for a side without a psolve behaves as unpreconditioned."""
    a = _nonsymmetric(5, rng)
    b = rng.standard_normal(5)
    res = spgmr_solve(lambda v: a @ v, b, delta=1e-10, maxl=5, side="both")
    assert res.outcome.ok
    assert res.prec_solves == 0


def test_scaled_solve_matches_direct(rng: np.random.Generator) -> None:
    """Diagonal scalings change the norm, not the solution."""
    n = 6
    a = _nonsymmetric(n, rng)
    b = rng.standard_normal(n)
    weights = np.linspace(0.5, 4.0, n)

    res = spgmr_solve(lambda v: a @ v, b, delta=1e-10, maxl=n, s1=weights, s2=weights)

    assert res.outcome.ok
    assert np.allclose(res.x, np.linalg.solve(a, b), atol=1e-8)


@pytest.mark.scenario
def test_restarts_reach_solution_with_tiny_subspace() -> None:
    """GMRES(2) with restarts converges where one cycle cannot."""
    n = 20
    a = _restart_matrix(n)
    b = np.ones(n)

    res = spgmr_solve(lambda v: a @ v, b, delta=1e-8, maxl=2, max_restarts=199)

    assert res.outcome.ok
    assert res.restarts > 0
    assert res.iterations <= 2 * (res.restarts + 1)
    assert np.linalg.norm(a @ res.x - b) <= 1e-6


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------


def test_not_converged_is_recoverable_and_keeps_estimate() -> None:
    """Exhausting iterations yields KRYLOV_NOT_CONVERGED with a usable x."""
    n = 20
    a = _restart_matrix(n)
    b = np.ones(n)

    res = spgmr_solve(lambda v: a @ v, b, delta=1e-14, maxl=1, max_restarts=0)

    assert res.outcome.is_recoverable
    assert res.outcome.code is ErrorCode.KRYLOV_NOT_CONVERGED
    assert res.iterations == 1
    assert np.all(np.isfinite(res.x))
    assert np.linalg.norm(a @ res.x - b) < np.linalg.norm(b)
    assert res.residual_norm > 1e-14


def test_psolve_failure_is_propagated(rng: np.random.Generator) -> None:
    """A failed preconditioner solve aborts with its outcome."""
    a = _nonsymmetric(4, rng)
    failure = Outcome.recoverable(
        "stale preconditioner", ErrorCode.USER_ROUTINE_RECOVERABLE
    )

    def psolve(r: FloatArray, side: PreconditionSide) -> tuple[Outcome, FloatArray]:
        return failure, r

    res = spgmr_solve(
        lambda v: a @ v,
        np.ones(4),
        delta=1e-10,
        maxl=4,
        psolve=psolve,
        side=PreconditionSide.LEFT,
    )

    assert res.outcome is failure
    assert np.array_equal(res.x, np.zeros(4))
    assert res.prec_solves == 1


def test_matvec_user_failure_becomes_outcome() -> None:
    """UserRoutineFailure raised by the product is converted to an outcome."""

    def matvec(v: FloatArray) -> FloatArray:
        msg = "state left the physical domain"
        raise UserRoutineFailure(msg, recoverable=False)

    res = spgmr_solve(matvec, np.ones(3), delta=1e-10, maxl=3)

    assert res.outcome.is_fatal
    assert res.outcome.code is ErrorCode.USER_ROUTINE_FATAL
    assert res.iterations == 1


@pytest.mark.parametrize(("maxl", "max_restarts"), [(0, 0), (3, -1)])
def test_invalid_parameters(maxl: int, max_restarts: int) -> None:
    """maxl < 1 or negative restarts raise ValueError."""
    with pytest.raises(ValueError, match="maxl"):
        spgmr_solve(
            lambda v: v, np.ones(3), delta=1e-8, maxl=maxl, max_restarts=max_restarts
        )
