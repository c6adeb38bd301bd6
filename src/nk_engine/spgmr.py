# nk_engine/src/nk_engine/spgmr.py
"""Scaled, preconditioned, restarted GMRES.

Solves ``A x = b`` through the transformed system

    (S1 P1^{-1} A P2^{-1} S2^{-1}) (S2 P2 x) = S1 P1^{-1} b

where P1/P2 are the left/right preconditioners and S1/S2 diagonal scalings.
The initial guess is always zero. Convergence means the 2-norm of the scaled,
left-preconditioned residual drops to ``delta``.

The Hessenberg least-squares problem is updated with Givens rotations after
each Arnoldi step, so the residual norm is known without forming x. On
restart the new initial residual is recovered from the Krylov basis and the
rotations rather than from an extra ``A @ x`` product.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Final

import numpy as np
from scipy.linalg import solve_triangular

from .errors import ErrorCode, Outcome, UserRoutineFailure

if TYPE_CHECKING:
    from .types import FloatArray

# A vector is reorthogonalized when its norm after Gram-Schmidt is this many
# times smaller than before and rounding can no longer tell them apart.
_REORTH_FACTOR: Final[float] = 1000.0

_NOT_CONVERGED_MSG: Final[str] = (
    "SPGMR did not converge: residual {rho:.3e} > {delta:.3e} after "
    "{iters} iterations and {restarts} restart(s)."
)


class GramSchmidt(StrEnum):
    """Orthogonalization used in the Arnoldi process."""

    MODIFIED = "modified"
    CLASSICAL = "classical"


class PreconditionSide(StrEnum):
    """Where the preconditioner is applied."""

    NONE = "none"
    LEFT = "left"
    RIGHT = "right"
    BOTH = "both"

    @property
    def left(self) -> bool:
        """True if a left preconditioner solve is required."""
        return self in {PreconditionSide.LEFT, PreconditionSide.BOTH}

    @property
    def right(self) -> bool:
        """True if a right preconditioner solve is required."""
        return self in {PreconditionSide.RIGHT, PreconditionSide.BOTH}


MatVec = Callable[["FloatArray"], "FloatArray"]
PrecSolve = Callable[["FloatArray", PreconditionSide], tuple[Outcome, "FloatArray"]]


@dataclass(frozen=True, slots=True)
class SpgmrResult:
    """Result of an SPGMR solve.

    Attributes:
        x: Approximate solution (zeros if the first residual already met delta).
        outcome: SUCCESS, RECOVERABLE (not converged, recoverable routine
            failure) or FATAL.
        iterations: Arnoldi steps taken.
        residual_norm: Final scaled residual 2-norm.
        restarts: Restarts performed.
        prec_solves: Preconditioner solves performed.
    """

    x: FloatArray
    outcome: Outcome
    iterations: int
    residual_norm: float
    restarts: int
    prec_solves: int


class _Failed(Exception):
    """Internal signal carrying a non-success routine outcome."""

    def __init__(self, outcome: Outcome) -> None:
        super().__init__(outcome.reason)
        self.outcome = outcome


def _orthogonalize(
    basis: FloatArray,
    w: FloatArray,
    k: int,
    method: GramSchmidt,
) -> tuple[FloatArray, float]:
    """Orthogonalize w against basis[:k+1] in place; return (h, ||w||)."""
    before = float(np.linalg.norm(w))
    active = basis[: k + 1]
    if method is GramSchmidt.MODIFIED:
        h = np.zeros(k + 1)
        for i in range(k + 1):
            h[i] = active[i] @ w
            w -= h[i] * active[i]
    else:
        h = active @ w
        w -= active.T @ h
    after = float(np.linalg.norm(w))

    if before + _REORTH_FACTOR * after == before:
        correction = active @ w
        w -= active.T @ correction
        h = h + correction
        after = float(np.linalg.norm(w))
    return h, after


def _apply_rotations(
    col: FloatArray,
    cos: FloatArray,
    sin: FloatArray,
    k: int,
) -> None:
    """Apply the first k Givens rotations to a Hessenberg column in place."""
    for i in range(k):
        a, b = col[i], col[i + 1]
        col[i] = cos[i] * a + sin[i] * b
        col[i + 1] = -sin[i] * a + cos[i] * b


def spgmr_solve(
    matvec: MatVec,
    b: FloatArray,
    *,
    delta: float,
    maxl: int,
    max_restarts: int = 0,
    psolve: PrecSolve | None = None,
    side: PreconditionSide = PreconditionSide.NONE,
    s1: FloatArray | None = None,
    s2: FloatArray | None = None,
    gram_schmidt: GramSchmidt = GramSchmidt.MODIFIED,
) -> SpgmrResult:
    """Run restarted SPGMR from a zero initial guess.

    Args:
        matvec: Product ``v -> A @ v``; may raise UserRoutineFailure.
        b: Right-hand side (not modified).
        delta: Tolerance on the 2-norm of the scaled preconditioned residual.
        maxl: Maximum Krylov subspace dimension per cycle.
        max_restarts: Maximum number of restarts.
        psolve: Preconditioner solve ``(r, side) -> (outcome, z)``.
        side: Preconditioning side (ignored if psolve is None).
        s1: Diagonal scaling of the residual (ones if None).
        s2: Diagonal scaling of the solution (ones if None).
        gram_schmidt: Orthogonalization variant.

    Returns:
        SpgmrResult with the solution estimate and status.

    Raises:
        ValueError: If maxl < 1 or max_restarts < 0.
    """
    if maxl < 1 or max_restarts < 0:
        msg = f"maxl must be >= 1 and max_restarts >= 0; got {maxl} and {max_restarts}."
        raise ValueError(msg)

    b_arr = np.asarray(b, dtype=np.float64)
    n = b_arr.size
    if psolve is None:
        side = PreconditionSide.NONE
    counters = {"psolves": 0}

    def precondition(v: FloatArray, which: PreconditionSide) -> FloatArray:
        assert psolve is not None
        counters["psolves"] += 1
        outcome, z = psolve(v, which)
        if not outcome.ok:
            raise _Failed(outcome)
        return np.asarray(z, dtype=np.float64)

    def operator(v: FloatArray) -> FloatArray:
        w = v / s2 if s2 is not None else v.copy()
        if side.right:
            w = precondition(w, PreconditionSide.RIGHT)
        w = np.asarray(matvec(w), dtype=np.float64)
        if side.left:
            w = precondition(w, PreconditionSide.LEFT)
        if s1 is not None:
            w = w * s1
        return w

    def result(
        x: FloatArray, outcome: Outcome, iters: int, rho: float, restarts: int
    ) -> SpgmrResult:
        return SpgmrResult(x, outcome, iters, rho, restarts, counters["psolves"])

    iterations = 0
    restarts = 0
    rho = float(np.linalg.norm(b_arr))
    try:
        r0 = b_arr.copy()
        if side.left:
            r0 = precondition(r0, PreconditionSide.LEFT)
        if s1 is not None:
            r0 = r0 * s1
        rho = float(np.linalg.norm(r0))
        if rho <= delta:
            return result(np.zeros(n), Outcome.success(), 0, rho, 0)

        basis = np.zeros((maxl + 1, n))
        xcor = np.zeros(n)
        converged = False

        for restarts in range(max_restarts + 1):
            basis[0] = r0 / rho
            hess = np.zeros((maxl + 1, maxl))
            cos = np.zeros(maxl)
            sin = np.zeros(maxl)
            g = np.zeros(maxl + 1)
            g[0] = rho

            k = 0
            singular = False
            for k in range(maxl):
                iterations += 1
                w = operator(basis[k])
                h, h_next = _orthogonalize(basis, w, k, gram_schmidt)
                col = hess[:, k]
                col[: k + 1] = h
                col[k + 1] = h_next
                _apply_rotations(col, cos, sin, k)

                denom = float(np.hypot(col[k], col[k + 1]))
                if denom == 0.0:
                    singular = True
                    break
                cos[k], sin[k] = col[k] / denom, col[k + 1] / denom
                col[k] = denom
                col[k + 1] = 0.0
                g[k + 1] = -sin[k] * g[k]
                g[k] = cos[k] * g[k]

                rho = abs(float(g[k + 1]))
                if h_next != 0.0:
                    basis[k + 1] = w / h_next
                if rho <= delta:
                    converged = True
                    break
                if h_next == 0.0:
                    break

            dim = k if singular else k + 1
            if dim > 0:
                y = solve_triangular(hess[:dim, :dim], g[:dim], lower=False)
                xcor += basis[:dim].T @ y

            if converged or singular or restarts == max_restarts or dim < maxl:
                break

            # Residual in basis coordinates is Q^T (0, ..., 0, g[dim]).
            coords = np.zeros(dim + 1)
            coords[dim] = g[dim]
            for i in range(dim - 1, -1, -1):
                a, c = coords[i], coords[i + 1]
                coords[i] = cos[i] * a - sin[i] * c
                coords[i + 1] = sin[i] * a + cos[i] * c
            r0 = basis[: dim + 1].T @ coords
            rho = float(np.linalg.norm(r0))

        x = xcor / s2 if s2 is not None else xcor
        if side.right:
            x = precondition(x, PreconditionSide.RIGHT)
    except _Failed as exc:
        return result(np.zeros(n), exc.outcome, iterations, rho, restarts)
    except UserRoutineFailure as exc:
        return result(
            np.zeros(n), Outcome.from_user_failure(exc), iterations, rho, restarts
        )

    if converged:
        return result(x, Outcome.success(), iterations, rho, restarts)
    outcome = Outcome.recoverable(
        _NOT_CONVERGED_MSG.format(
            rho=rho, delta=delta, iters=iterations, restarts=restarts
        ),
        ErrorCode.KRYLOV_NOT_CONVERGED,
    )
    return result(x, outcome, iterations, rho, restarts)
