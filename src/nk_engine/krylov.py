# nk_engine/src/nk_engine/krylov.py
"""Matrix-free SPGMR linear solver.

The iteration matrix is never formed: products ``M @ v`` come from the
Jacobian-vector product (user routine or difference quotient) and an optional
:class:`~nk_engine.preconditioning.PreconditionerOps` supplies ``P^{-1}``.

Tolerances are in the weighted RMS norm: ``solve(rhs, tolerance=tol,
weights=w)`` stops when ``||S1 P1^{-1} (rhs - M x)||_wrms <= tol``, using the
weights as both SPGMR scalings.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from .errors import ErrorCode, IllegalInputError, Outcome, UserRoutineFailure
from .linear_solver import (
    LinearSolver,
    LinearSolverKind,
    SetupRequest,
    SetupResult,
    SolveResult,
    WorkspaceSize,
)
from .preconditioning import JacobianTimesVector, iteration_matvec
from .spgmr import GramSchmidt, PreconditionSide, spgmr_solve
from .types import EvalPoint, IterationForm

if TYPE_CHECKING:
    from .preconditioning import PreconditionerOps
    from .staleness import StalenessConfig
    from .types import FloatArray, JacTimesVecFunction, SystemFunction

logger = logging.getLogger(__name__)

_DEFAULT_MAXL = 10


@dataclass(frozen=True, slots=True)
class KrylovConfig:
    """SPGMR settings.

    Attributes:
        maxl: Maximum Krylov dimension per cycle (min(n, 10) if None).
        max_restarts: Maximum number of restarts.
        gram_schmidt: Orthogonalization variant.
        side: Preconditioning side; NONE when no preconditioner is attached.
    """

    maxl: int | None = None
    max_restarts: int = 0
    gram_schmidt: GramSchmidt = GramSchmidt.MODIFIED
    side: PreconditionSide = PreconditionSide.LEFT

    def __post_init__(self) -> None:
        """Validate settings.

        Raises:
            IllegalInputError: If maxl < 1 or max_restarts < 0.
        """
        if (self.maxl is not None and self.maxl < 1) or self.max_restarts < 0:
            msg = (
                f"maxl must be >= 1 and max_restarts >= 0; "
                f"got {self.maxl} and {self.max_restarts}."
            )
            raise IllegalInputError(msg, code=ErrorCode.ILLEGAL_INPUT)

    def resolved_maxl(self, n: int) -> int:
        """Return the Krylov dimension to use for a problem of size n."""
        return min(n, _DEFAULT_MAXL) if self.maxl is None else self.maxl


class KrylovLinearSolver(LinearSolver):
    """Scaled preconditioned GMRES behind the linear-solver contract."""

    kind = LinearSolverKind.SPGMR
    supported_forms = frozenset(
        {IterationForm.ODE, IterationForm.DAE, IterationForm.ALGEBRAIC}
    )

    def __init__(
        self,
        n: int,
        system_fn: SystemFunction[Any],
        *,
        preconditioner: PreconditionerOps[Any] | None = None,
        config: KrylovConfig | None = None,
        jtimes_fn: JacTimesVecFunction[Any] | None = None,
        context: Any = None,
        form: IterationForm = IterationForm.ODE,
        staleness: StalenessConfig | None = None,
        rel: float | None = None,
    ) -> None:
        """Create a Krylov solver.

        Args:
            n: Problem size.
            system_fn: System function (for difference-quotient J*v).
            preconditioner: Optional preconditioner.
            config: SPGMR settings.
            jtimes_fn: Optional user J*v routine.
            context: User context passed to all routines.
            form: ODE, DAE (gamma carries c_j) or algebraic iteration matrix.
            staleness: Preconditioner reuse thresholds.
            rel: Relative perturbation for difference-quotient J*v.
        """
        super().__init__(n, form=form, staleness=staleness)
        self.config = config or KrylovConfig()
        self.maxl = self.config.resolved_maxl(self.n)
        self.preconditioner = preconditioner
        self.side = (
            PreconditionSide.NONE if preconditioner is None else self.config.side
        )
        self.context = context
        self.jtimes = JacobianTimesVector(
            system_fn, jtimes_fn=jtimes_fn, context=context, rel=rel
        )
        self._point: EvalPoint | None = None
        self._gamma = 1.0

    def _allocate(self) -> None:
        self._point = None

    def _setup(self, request: SetupRequest) -> SetupResult:
        point = request.point
        self._point = point
        self._gamma = request.gamma
        cj = request.gamma if self.form is IterationForm.DAE else None
        self.jtimes.set_point(point, request.fy, weights=request.weights, cj=cj)

        if self.preconditioner is None:
            return SetupResult(Outcome.success(), jacobian_current=False)

        jacobian_ok = self._jacobian_ok(request)
        try:
            result = self.preconditioner.setup(
                point,
                request.gamma,
                jacobian_ok=jacobian_ok,
                context=self.context,
                weights=request.weights,
            )
        except UserRoutineFailure as exc:
            return SetupResult(Outcome.from_user_failure(exc))

        if result.jacobian_current:
            self.policy.record_evaluation(request.step, request.gamma)
            self.stats.prec_evals += 1
            self.stats.jac_evals += 1
        logger.debug(
            "SPGMR setup at step %d: jacobian_ok=%s jacobian_current=%s",
            request.step,
            jacobian_ok,
            result.jacobian_current,
        )
        return SetupResult(result.outcome, result.jacobian_current)

    def _psolve(
        self, r: FloatArray, side: PreconditionSide, tolerance: float
    ) -> tuple[Outcome, FloatArray]:
        assert self.preconditioner is not None
        assert self._point is not None
        return self.preconditioner.solve(
            self._point,
            r,
            gamma=self._gamma,
            tolerance=tolerance,
            side=side,
            context=self.context,
        )

    def _solve(
        self,
        b: FloatArray,
        *,
        tolerance: float,
        weights: FloatArray | None,
    ) -> SolveResult:
        sqrt_n = math.sqrt(self.n)
        products_before = self.jtimes.n_products
        fevals_before = self.jtimes.n_fevals

        result = spgmr_solve(
            iteration_matvec(self.form, self.jtimes, self._gamma),
            b,
            delta=tolerance * sqrt_n,
            maxl=self.maxl,
            max_restarts=self.config.max_restarts,
            psolve=(
                None
                if self.preconditioner is None
                else lambda r, side: self._psolve(r, side, tolerance)
            ),
            side=self.side,
            s1=weights,
            s2=weights,
            gram_schmidt=self.config.gram_schmidt,
        )

        self.stats.lin_iters += result.iterations
        self.stats.prec_solves += result.prec_solves
        self.stats.jtimes_evals += self.jtimes.n_products - products_before
        self.stats.dq_fevals += self.jtimes.n_fevals - fevals_before
        if result.outcome.code is ErrorCode.KRYLOV_NOT_CONVERGED:
            self.stats.conv_fails += 1
            logger.warning("%s", result.outcome.reason)

        return SolveResult(
            np.asarray(result.x),
            result.outcome,
            iterations=result.iterations,
            residual_norm=result.residual_norm / sqrt_n,
        )

    def _workspace(self) -> WorkspaceSize:
        maxl = self.maxl
        return WorkspaceSize((maxl + 5) * self.n + maxl * (maxl + 4) + 1, 0)
