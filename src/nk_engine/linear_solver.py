# nk_engine/src/nk_engine/linear_solver.py
"""Uniform linear-solver contract.

Every variant (dense, band, SPGMR) follows the same lifecycle:

    initialize() -> setup(request) -> solve(rhs) ... -> free()

The Newton drivers in :mod:`nk_engine.newton` are written only against this
contract. Variants differ in how ``setup`` builds the iteration matrix (or
preconditioner) and how ``solve`` produces the correction.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import StrEnum
from typing import TYPE_CHECKING, Final

import numpy as np

from .errors import ErrorCode, Outcome, SolverStateError
from .staleness import ConvFail, StalenessConfig, StalenessPolicy
from .types import EvalPoint, IterationForm

if TYPE_CHECKING:
    from .types import FloatArray

logger = logging.getLogger(__name__)

_NOT_INITIALIZED_ERROR: Final[str] = "{name}: call initialize() before {op}()."
_NO_SETUP_ERROR: Final[str] = "{name}: solve() issued before a successful setup()."
_SIZE_ERROR: Final[str] = "{name}: expected vectors of length {n}, got {got}."
_FORM_ERROR: Final[str] = "{name} does not support iteration form {form!r}."


class LinearSolverKind(StrEnum):
    """Linear solver variant tag."""

    DENSE = "dense"
    BAND = "band"
    SPGMR = "spgmr"


@dataclass(frozen=True, slots=True)
class SetupRequest:
    """Arguments of a setup call.

    Attributes:
        t: Independent variable at the current iterate.
        y: Current iterate.
        fy: System function at (t, y).
        gamma: Implicit coefficient (ignored for the algebraic form).
        step: Step index used by the staleness policy.
        conv_fail: Caller's convergence-failure report.
        weights: Positive error weights (ones if None).
        yp: Derivative vector for DAE points.
    """

    t: float
    y: FloatArray
    fy: FloatArray
    gamma: float = 1.0
    step: int = 0
    conv_fail: ConvFail = ConvFail.NONE
    weights: FloatArray | None = None
    yp: FloatArray | None = None

    @property
    def point(self) -> EvalPoint:
        """Evaluation point of this request."""
        return EvalPoint(self.t, self.y, self.yp)


@dataclass(frozen=True, slots=True)
class SetupResult:
    """Result of a setup call.

    Attributes:
        outcome: Tagged status.
        jacobian_current: True if Jacobian data was freshly evaluated.
    """

    outcome: Outcome
    jacobian_current: bool = False


@dataclass(frozen=True, slots=True)
class SolveResult:
    """Result of a solve call.

    Attributes:
        x: Correction vector (a new array).
        outcome: Tagged status.
        iterations: Linear iterations used (0 for direct solvers).
        residual_norm: Final scaled residual norm (0.0 for direct solvers).
    """

    x: FloatArray
    outcome: Outcome
    iterations: int = 0
    residual_norm: float = 0.0


@dataclass(frozen=True, slots=True)
class WorkspaceSize:
    """Real and integer workspace footprint."""

    real: int
    integer: int


@dataclass(slots=True)
class LinearSolverStats:
    """Diagnostic counters.

    Attributes:
        setups: Setup calls.
        factorizations: Matrix factorizations (direct solvers).
        jac_evals: Jacobian evaluations (user or difference quotient).
        dq_fevals: System function evaluations spent on difference quotients.
        lin_iters: Krylov iterations.
        conv_fails: Krylov convergence failures.
        prec_evals: Preconditioner evaluations (fresh Jacobian data).
        prec_solves: Preconditioner solves.
        jtimes_evals: Jacobian-vector products.
    """

    setups: int = 0
    factorizations: int = 0
    jac_evals: int = 0
    dq_fevals: int = 0
    lin_iters: int = 0
    conv_fails: int = 0
    prec_evals: int = 0
    prec_solves: int = 0
    jtimes_evals: int = 0

    def as_dict(self) -> dict[str, int]:
        """Return the counters as a plain dict."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(slots=True)
class _Lifecycle:
    initialized: bool = False
    setup_done: bool = False
    freed: bool = False


class LinearSolver(ABC):
    """Abstract linear solver for Newton iteration matrices.

    Subclasses implement ``_allocate``, ``_setup``, ``_solve`` and
    ``_workspace``; lifecycle checks, counters and logging live here.
    """

    kind: LinearSolverKind
    supported_forms: frozenset[IterationForm] = frozenset(
        {IterationForm.ODE, IterationForm.ALGEBRAIC}
    )

    def __init__(
        self,
        n: int,
        *,
        form: IterationForm = IterationForm.ODE,
        staleness: StalenessConfig | None = None,
    ) -> None:
        """Initialize common solver state.

        Args:
            n: Problem size.
            form: Iteration matrix form.
            staleness: Jacobian reuse thresholds.

        Raises:
            ValueError: If n < 1 or the form is not supported.
        """
        if n < 1:
            msg = f"Problem size must be >= 1, got {n}."
            raise ValueError(msg)
        form = IterationForm(form)
        if form not in self.supported_forms:
            msg = _FORM_ERROR.format(name=type(self).__name__, form=form.value)
            raise ValueError(msg)
        self.n = int(n)
        self.form = form
        self.policy = StalenessPolicy(staleness)
        self.stats = LinearSolverStats()
        self.last_outcome: Outcome = Outcome.success()
        self._life = _Lifecycle()

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Allocate workspace.

        Raises:
            AllocationError: If memory cannot be obtained.
        """
        self._allocate()
        self._life = _Lifecycle(initialized=True)
        self.policy.reset()
        logger.debug(
            "%s initialized (n=%d, form=%s)", type(self).__name__, self.n, self.form
        )

    def setup(self, request: SetupRequest) -> SetupResult:
        """Prepare the iteration matrix or preconditioner.

        Args:
            request: Current iterate, coefficient and staleness hints.

        Returns:
            SetupResult with the outcome and whether Jacobian data is current.
        """
        self._require_initialized("setup")
        self._check_size(request.y)
        self.stats.setups += 1
        result = self._setup(request)
        self.last_outcome = result.outcome
        self._life.setup_done = result.outcome.ok
        if not result.outcome.ok:
            logger.warning(
                "%s setup failed (%s): %s",
                type(self).__name__,
                result.outcome.kind,
                result.outcome.reason,
            )
        return result

    def solve(
        self,
        rhs: FloatArray,
        *,
        tolerance: float = 0.0,
        weights: FloatArray | None = None,
    ) -> SolveResult:
        """Solve ``M x = rhs`` for the current iteration matrix.

        Args:
            rhs: Right-hand side (not modified).
            tolerance: Target weighted residual norm (Krylov solvers only).
            weights: Positive weights for norms (ones if None).

        Returns:
            SolveResult with a new correction array.

        Raises:
            SolverStateError: If no successful setup preceded the call.
        """
        self._require_initialized("solve")
        if not self._life.setup_done:
            raise SolverStateError(
                _NO_SETUP_ERROR.format(name=type(self).__name__),
                code=ErrorCode.INVALID_STATE,
            )
        b = np.array(rhs, dtype=np.float64, copy=True)
        self._check_size(b)
        result = self._solve(b, tolerance=tolerance, weights=weights)
        self.last_outcome = result.outcome
        return result

    def free(self) -> None:
        """Release owned workspace; the instance must be re-initialized to reuse."""
        self._release()
        self._life = _Lifecycle(freed=True)

    def report_workspace(self) -> WorkspaceSize:
        """Return the real/integer workspace footprint."""
        if not self._life.initialized:
            return WorkspaceSize(0, 0)
        return self._workspace()

    @property
    def is_initialized(self) -> bool:
        """True between initialize() and free()."""
        return self._life.initialized

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _require_initialized(self, op: str) -> None:
        if not self._life.initialized:
            raise SolverStateError(
                _NOT_INITIALIZED_ERROR.format(name=type(self).__name__, op=op),
                code=ErrorCode.INVALID_STATE,
            )

    def _check_size(self, v: FloatArray) -> None:
        if np.shape(v) != (self.n,):
            msg = _SIZE_ERROR.format(
                name=type(self).__name__, n=self.n, got=np.shape(v)
            )
            raise ValueError(msg)

    def _jacobian_ok(self, request: SetupRequest) -> bool:
        return self.policy.jacobian_ok(request.step, request.gamma, request.conv_fail)

    # ------------------------------------------------------------------
    # Variant hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _allocate(self) -> None:
        """Allocate variant workspace."""

    @abstractmethod
    def _setup(self, request: SetupRequest) -> SetupResult:
        """Variant setup."""

    @abstractmethod
    def _solve(
        self,
        b: FloatArray,
        *,
        tolerance: float,
        weights: FloatArray | None,
    ) -> SolveResult:
        """Variant solve; b is a private copy of the right-hand side."""

    @abstractmethod
    def _workspace(self) -> WorkspaceSize:
        """Variant workspace size."""

    def _release(self) -> None:  # noqa: B027
        """Drop variant workspace (default: nothing owned)."""
