# nk_engine/src/nk_engine/direct.py
"""Direct (dense and banded) linear solvers.

Both variants keep the last Jacobian J and rebuild the iteration matrix on
every setup:

- ODE form: ``M = I - gamma * J``
- algebraic form: ``M = J``

When the staleness policy accepts the saved J, setup skips the Jacobian
evaluation and only reassembles and refactors M with the current gamma.
"""

from __future__ import annotations

import logging
import warnings
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Final

import numpy as np
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve

from .band_matrix import BandMatrix, check_bandwidths
from .difference_quotients import band_dq_jacobian, default_rel, dense_dq_jacobian
from .errors import (
    ErrorCode,
    Outcome,
    UserRoutineFailure,
    raise_allocation_error,
    singular_outcome,
)
from .linear_solver import (
    LinearSolver,
    LinearSolverKind,
    SetupRequest,
    SetupResult,
    SolveResult,
    WorkspaceSize,
)
from .types import EvalPoint, IterationForm

if TYPE_CHECKING:
    from .staleness import StalenessConfig
    from .types import (
        BandJacobianFunction,
        DenseJacobianFunction,
        FloatArray,
        SystemFunction,
    )

logger = logging.getLogger(__name__)

_NON_FINITE_MSG: Final[str] = "Iteration matrix contains non-finite entries."


class _DirectLinearSolver(LinearSolver):
    """Shared setup flow of the direct variants."""

    def __init__(
        self,
        n: int,
        system_fn: SystemFunction[Any],
        *,
        context: Any = None,
        form: IterationForm = IterationForm.ODE,
        staleness: StalenessConfig | None = None,
        rel: float | None = None,
    ) -> None:
        super().__init__(n, form=form, staleness=staleness)
        self.system_fn = system_fn
        self.context = context
        self.rel = default_rel() if rel is None else float(rel)

    def _point_fn(self, point: EvalPoint) -> FloatArray:
        return np.asarray(self.system_fn(point, self.context), dtype=np.float64)

    def _setup(self, request: SetupRequest) -> SetupResult:
        jacobian_current = False
        if not self._jacobian_ok(request):
            try:
                n_fevals = self._evaluate_jacobian(request)
            except UserRoutineFailure as exc:
                # the saved J is partially overwritten; never reuse it
                self.policy.reset()
                return SetupResult(Outcome.from_user_failure(exc))
            self.stats.jac_evals += 1
            self.stats.dq_fevals += n_fevals
            self.policy.record_evaluation(request.step, request.gamma)
            jacobian_current = True
            logger.debug(
                "%s: new Jacobian at step %d (gamma=%.6g, dq fevals=%d)",
                type(self).__name__,
                request.step,
                request.gamma,
                n_fevals,
            )
        else:
            logger.debug(
                "%s: reusing Jacobian at step %d (gamma=%.6g)",
                type(self).__name__,
                request.step,
                request.gamma,
            )

        self._assemble(request.gamma)
        outcome = self._factor()
        self.stats.factorizations += 1
        return SetupResult(outcome, jacobian_current)

    @abstractmethod
    def _evaluate_jacobian(self, request: SetupRequest) -> int:
        """Load J at the request point; return DQ function evaluations."""

    @abstractmethod
    def _assemble(self, gamma: float) -> None:
        """Build the iteration matrix from the saved Jacobian."""

    @abstractmethod
    def _factor(self) -> Outcome:
        """Factor the iteration matrix."""


# =============================================================================
# Dense
# =============================================================================


class DenseLinearSolver(_DirectLinearSolver):
    """Dense LU solver (``scipy.linalg.lu_factor`` / ``lu_solve``)."""

    kind = LinearSolverKind.DENSE

    def __init__(
        self,
        n: int,
        system_fn: SystemFunction[Any],
        *,
        jac_fn: DenseJacobianFunction[Any] | None = None,
        context: Any = None,
        form: IterationForm = IterationForm.ODE,
        staleness: StalenessConfig | None = None,
        rel: float | None = None,
    ) -> None:
        """Create a dense solver.

        Args:
            n: Problem size.
            system_fn: System function, used for difference quotients.
            jac_fn: Optional user Jacobian; DQ approximation if None.
            context: User context passed to the routines.
            form: ODE or algebraic iteration matrix.
            staleness: Jacobian reuse thresholds.
            rel: Relative DQ perturbation (sqrt(eps) if None).
        """
        super().__init__(
            n, system_fn, context=context, form=form, staleness=staleness, rel=rel
        )
        self.jac_fn = jac_fn
        self._saved_jac: FloatArray | None = None
        self._matrix: FloatArray | None = None
        self._pivots: np.ndarray | None = None

    def _allocate(self) -> None:
        try:
            self._saved_jac = np.zeros((self.n, self.n))
            self._matrix = np.zeros((self.n, self.n))
        except MemoryError:
            raise_allocation_error("dense solver", n_real=2 * self.n**2, n_int=self.n)
        self._pivots = None

    def _evaluate_jacobian(self, request: SetupRequest) -> int:
        jac = self._saved_jac
        assert jac is not None
        jac.fill(0.0)
        if self.jac_fn is not None:
            self.jac_fn(request.point, request.fy, jac, self.context)
            return 0
        return dense_dq_jacobian(
            self._point_fn,
            request.point,
            np.asarray(request.fy, dtype=np.float64),
            jac,
            rel=self.rel,
            weights=request.weights,
        )

    def _assemble(self, gamma: float) -> None:
        assert self._saved_jac is not None
        if self.form is IterationForm.ODE:
            self._matrix = np.eye(self.n) - gamma * self._saved_jac
        else:
            self._matrix = self._saved_jac.copy()

    def _factor(self) -> Outcome:
        assert self._matrix is not None
        if not np.all(np.isfinite(self._matrix)):
            self._pivots = None
            return Outcome.recoverable(
                _NON_FINITE_MSG, ErrorCode.SINGULAR_FACTORIZATION
            )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", LinAlgWarning)
            lu, piv = lu_factor(self._matrix, overwrite_a=True, check_finite=False)
        zero = np.flatnonzero(np.diag(lu) == 0.0)
        if zero.size:
            self._pivots = None
            return singular_outcome(int(zero[0]))
        self._matrix = lu
        self._pivots = piv
        return Outcome.success()

    def _solve(
        self,
        b: FloatArray,
        *,
        tolerance: float,  # noqa: ARG002
        weights: FloatArray | None,  # noqa: ARG002
    ) -> SolveResult:
        x = lu_solve((self._matrix, self._pivots), b, check_finite=False)
        return SolveResult(np.asarray(x), Outcome.success())

    def _workspace(self) -> WorkspaceSize:
        return WorkspaceSize(2 * self.n * self.n, self.n)

    def _release(self) -> None:
        self._saved_jac = None
        self._matrix = None
        self._pivots = None


# =============================================================================
# Band
# =============================================================================


class BandLinearSolver(_DirectLinearSolver):
    """Banded LU solver (LAPACK ``?gbtrf`` / ``?gbtrs``)."""

    kind = LinearSolverKind.BAND

    def __init__(
        self,
        n: int,
        mu: int,
        ml: int,
        system_fn: SystemFunction[Any],
        *,
        jac_fn: BandJacobianFunction[Any] | None = None,
        context: Any = None,
        form: IterationForm = IterationForm.ODE,
        staleness: StalenessConfig | None = None,
        rel: float | None = None,
    ) -> None:
        """Create a band solver.

        Args:
            n: Problem size.
            mu: Upper half-bandwidth of the Jacobian.
            ml: Lower half-bandwidth of the Jacobian.
            system_fn: System function, used for difference quotients.
            jac_fn: Optional user band Jacobian; DQ approximation if None.
            context: User context passed to the routines.
            form: ODE or algebraic iteration matrix.
            staleness: Jacobian reuse thresholds.
            rel: Relative DQ perturbation (sqrt(eps) if None).

        Raises:
            IllegalInputError: If a bandwidth is outside [0, n-1].
        """
        super().__init__(
            n, system_fn, context=context, form=form, staleness=staleness, rel=rel
        )
        check_bandwidths(n, mu, ml)
        self.mu = int(mu)
        self.ml = int(ml)
        self.jac_fn = jac_fn
        self._saved_jac: BandMatrix | None = None
        self._matrix: BandMatrix | None = None

    def _allocate(self) -> None:
        self._saved_jac = BandMatrix(self.n, self.mu, self.ml)
        self._matrix = BandMatrix(self.n, self.mu, self.ml, smu=self.mu + self.ml)

    def _evaluate_jacobian(self, request: SetupRequest) -> int:
        jac = self._saved_jac
        assert jac is not None
        if self.jac_fn is not None:
            jac.zero()
            self.jac_fn(request.point, request.fy, jac, self.context)
            return 0
        return band_dq_jacobian(
            self._point_fn,
            request.point,
            np.asarray(request.fy, dtype=np.float64),
            jac,
            mudq=self.mu,
            mldq=self.ml,
            rel=self.rel,
            weights=request.weights,
        )

    def _assemble(self, gamma: float) -> None:
        assert self._matrix is not None
        assert self._saved_jac is not None
        self._matrix.copy_from(self._saved_jac)
        if self.form is IterationForm.ODE:
            self._matrix.scale(-gamma)
            self._matrix.add_identity()

    def _factor(self) -> Outcome:
        assert self._matrix is not None
        return self._matrix.factor()

    def _solve(
        self,
        b: FloatArray,
        *,
        tolerance: float,  # noqa: ARG002
        weights: FloatArray | None,  # noqa: ARG002
    ) -> SolveResult:
        assert self._matrix is not None
        return SolveResult(self._matrix.solve(b), Outcome.success())

    def _workspace(self) -> WorkspaceSize:
        assert self._matrix is not None
        assert self._saved_jac is not None
        real_m, int_m = self._matrix.workspace()
        real_j, _ = self._saved_jac.workspace()
        return WorkspaceSize(real_m + real_j, int_m)

    def _release(self) -> None:
        self._saved_jac = None
        self._matrix = None
