# nk_engine/src/nk_engine/preconditioning.py
"""Preconditioner contract and Jacobian-vector product glue for Krylov solves.

The Krylov solver talks to any preconditioner through
:class:`PreconditionerOps`. Setup receives ``jacobian_ok``, the caller's view
of whether saved Jacobian data is still valid, and reports back through
``jacobian_current`` whether it actually regenerated that data, so the
staleness bookkeeping stays with the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from .difference_quotients import default_rel, dq_jtimes
from .errors import Outcome
from .types import ContextT_contra, EvalPoint, IterationForm

if TYPE_CHECKING:
    from collections.abc import Callable

    from .spgmr import PreconditionSide
    from .types import FloatArray, JacTimesVecFunction, SystemFunction

_NO_POINT_ERROR = "JacobianTimesVector used before set_point()."


@dataclass(frozen=True, slots=True)
class PreconditionerSetupResult:
    """Result of a preconditioner setup.

    Attributes:
        outcome: Tagged status.
        jacobian_current: True if Jacobian data was regenerated (expensive
            path), False if saved data was reused.
    """

    outcome: Outcome
    jacobian_current: bool = False


class PreconditionerOps(Protocol[ContextT_contra]):
    """Setup/solve pair the Krylov solver calls without knowing the concrete type."""

    def setup(
        self,
        point: EvalPoint,
        gamma: float,
        *,
        jacobian_ok: bool,
        context: ContextT_contra,
        weights: FloatArray | None = None,
    ) -> PreconditionerSetupResult:
        """Build (or rescale) preconditioner data at point.

        Args:
            point: Current iterate.
            gamma: Implicit coefficient (c_j for the DAE form).
            jacobian_ok: True if the caller believes saved data is valid.
            context: User context.
            weights: Positive weights for difference-quotient increments.

        Returns:
            Outcome and whether Jacobian data is now current.
        """
        ...

    def solve(
        self,
        point: EvalPoint,
        rhs: FloatArray,
        *,
        gamma: float,
        tolerance: float,
        side: PreconditionSide,
        context: ContextT_contra,
    ) -> tuple[Outcome, FloatArray]:
        """Solve ``P z = rhs``; rhs must not be modified."""
        ...


class JacobianTimesVector:
    """Product of the system Jacobian with a vector.

    Uses the user's routine when given, otherwise a one-sided difference
    quotient costing one system function evaluation per product.
    """

    def __init__(
        self,
        system_fn: SystemFunction[Any],
        *,
        jtimes_fn: JacTimesVecFunction[Any] | None = None,
        context: Any = None,
        rel: float | None = None,
    ) -> None:
        self.system_fn = system_fn
        self.jtimes_fn = jtimes_fn
        self.context = context
        self.rel = default_rel() if rel is None else float(rel)
        self.n_products = 0
        self.n_fevals = 0
        self._point: EvalPoint | None = None
        self._fy: FloatArray | None = None
        self._weights: FloatArray | None = None
        self._cj: float | None = None
        self._new_point = True

    def set_point(
        self,
        point: EvalPoint,
        fy: FloatArray,
        *,
        weights: FloatArray | None = None,
        cj: float | None = None,
    ) -> None:
        """Fix the linearization point for subsequent products."""
        self._point = point
        self._fy = np.asarray(fy, dtype=np.float64)
        self._weights = weights
        self._cj = cj
        self._new_point = True

    def __call__(self, v: FloatArray) -> FloatArray:
        """Return ``J @ v`` at the current point."""
        if self._point is None or self._fy is None:
            raise RuntimeError(_NO_POINT_ERROR)
        self.n_products += 1
        if self.jtimes_fn is not None:
            out = self.jtimes_fn(
                v, self._point, self._fy, self.context, new_point=self._new_point
            )
            self._new_point = False
            return np.asarray(out, dtype=np.float64)

        jv, n_fevals = dq_jtimes(
            lambda p: np.asarray(self.system_fn(p, self.context), dtype=np.float64),
            self._point,
            self._fy,
            v,
            rel=self.rel,
            weights=self._weights,
            cj=self._cj,
        )
        self.n_fevals += n_fevals
        return jv


def iteration_matvec(
    form: IterationForm,
    jtimes: JacobianTimesVector,
    gamma: float,
) -> Callable[[FloatArray], FloatArray]:
    """Return ``v -> M @ v`` for the Newton iteration matrix of the given form.

    Args:
        form: ODE (``v - gamma * J v``), DAE or algebraic (``J v``).
        jtimes: Jacobian-vector product at the current point.
        gamma: Implicit coefficient.

    Returns:
        Callable computing the iteration-matrix product.
    """
    if form is IterationForm.ODE:

        def ode_matvec(v: FloatArray) -> FloatArray:
            return np.asarray(v) - gamma * jtimes(v)

        return ode_matvec
    return jtimes
