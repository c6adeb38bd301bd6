# nk_engine/src/nk_engine/newton.py
"""Newton drivers written against the linear-solver contract.

NewtonCorrector
    Modified Newton iteration for the implicit corrector equation of an ODE
    step,

        G(y) = y - gamma * f(t, y) - psi = 0,

    with iteration matrix ``M = I - gamma * J``. The convergence test uses
    the estimated rate ``crate`` (``crdown`` damping, divergence when the
    correction norm grows by more than ``rdiv``). If the iteration fails
    while the Jacobian was stale, it is retried once with
    ``ConvFail.BAD_JACOBIAN`` so the linear solver regenerates J.

NonlinearSystemSolver
    Inexact Newton iteration for ``F(u) = 0`` with iteration matrix
    ``M = J``. The Jacobian (or preconditioner) is refreshed at most every
    ``max_setup_calls`` iterations, and a backtracking line search on
    ``0.5 * ||F||^2`` safeguards each step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import numpy as np

from .difference_quotients import wrms_norm
from .errors import (
    ErrorCode,
    IllegalInputError,
    Outcome,
    UserRoutineFailure,
)
from .linear_solver import SetupRequest
from .staleness import ConvFail
from .types import EvalPoint, IterationForm

if TYPE_CHECKING:
    from .linear_solver import LinearSolver
    from .types import FloatArray, SystemFunction

logger = logging.getLogger(__name__)

_FORM_MISMATCH_ERROR: Final[str] = (
    "{driver} needs a linear solver with form {want!r}; got {got!r}."
)
_NOT_CONVERGED_MSG: Final[str] = (
    "Newton iteration did not converge in {iters} iteration(s) "
    "(last update {delta:.3e})."
)
_DIVERGED_MSG: Final[str] = (
    "Newton iteration diverging: update norm {delta:.3e} > {rdiv} * {previous:.3e}."
)
_LINESEARCH_MSG: Final[str] = (
    "Line search failed to reduce ||F|| after {n} backtrack(s) at iteration {it}."
)
_EPS: Final[float] = float(np.finfo(np.float64).eps)


@dataclass(frozen=True, slots=True)
class NewtonConfig:
    """Settings of the corrector iteration.

    Attributes:
        max_iters: Maximum corrector iterations per attempt.
        crdown: Damping applied to the previous convergence-rate estimate.
        rdiv: Divergence threshold on the ratio of successive update norms.
        eplin: Linear solve tolerance as a fraction of the Newton tolerance.
    """

    max_iters: int = 3
    crdown: float = 0.3
    rdiv: float = 2.0
    eplin: float = 0.05

    def __post_init__(self) -> None:
        """Validate settings.

        Raises:
            IllegalInputError: If a setting is out of range.
        """
        if self.max_iters < 1 or not (0.0 < self.crdown < 1.0) or self.rdiv <= 1.0:
            msg = (
                "Need max_iters >= 1, 0 < crdown < 1 and rdiv > 1; got "
                f"{self.max_iters}, {self.crdown}, {self.rdiv}."
            )
            raise IllegalInputError(msg, code=ErrorCode.ILLEGAL_INPUT)


@dataclass(frozen=True, slots=True)
class NonlinearSolverConfig:
    """Settings of the standalone nonlinear solve.

    Attributes:
        max_iters: Maximum Newton iterations.
        ftol: Stopping tolerance on ``max |fscale * F|``.
        max_setup_calls: Maximum iterations between Jacobian refreshes.
        eta: Linear solve tolerance relative to ``||F||`` (inexact Newton).
        max_backtracks: Maximum step halvings per line search.
        alpha: Sufficient-decrease constant of the line search.
    """

    max_iters: int = 200
    ftol: float = _EPS ** (1.0 / 3.0)
    max_setup_calls: int = 10
    eta: float = 0.1
    max_backtracks: int = 20
    alpha: float = 1.0e-4

    def __post_init__(self) -> None:
        """Validate settings.

        Raises:
            IllegalInputError: If a setting is out of range.
        """
        if (
            self.max_iters < 1
            or self.max_setup_calls < 1
            or self.max_backtracks < 0
            or not self.ftol > 0.0
            or not (0.0 < self.eta < 1.0)
        ):
            msg = f"Invalid nonlinear solver settings: {self!r}."
            raise IllegalInputError(msg, code=ErrorCode.ILLEGAL_INPUT)


@dataclass(frozen=True, slots=True)
class CorrectorResult:
    """Outcome of a corrector solve.

    Attributes:
        y: Final iterate.
        converged: True if the convergence test passed.
        outcome: SUCCESS when converged, otherwise the failure.
        iterations: Corrector iterations in the final attempt.
        jacobian_current: True if the final attempt used a fresh Jacobian.
        retried: True if the BAD_JACOBIAN retry was taken.
        crate: Final convergence-rate estimate.
    """

    y: FloatArray
    converged: bool
    outcome: Outcome
    iterations: int
    jacobian_current: bool
    retried: bool = False
    crate: float = 1.0


@dataclass(frozen=True, slots=True)
class NonlinearResult:
    """Outcome of a standalone nonlinear solve.

    Attributes:
        u: Final iterate.
        converged: True if ``max |fscale * F| <= ftol``.
        outcome: SUCCESS when converged, otherwise the failure.
        iterations: Newton iterations taken.
        fnorm: Final ``max |fscale * F|``.
        n_setups: Linear solver setup calls.
        n_fevals: System function evaluations by the driver.
    """

    u: FloatArray
    converged: bool
    outcome: Outcome
    iterations: int
    fnorm: float
    n_setups: int
    n_fevals: int


def _require_form(solver: LinearSolver, want: IterationForm, driver: str) -> None:
    if solver.form is not want:
        raise IllegalInputError(
            _FORM_MISMATCH_ERROR.format(
                driver=driver, want=want.value, got=solver.form.value
            ),
            code=ErrorCode.ILLEGAL_INPUT,
        )


# =============================================================================
# Corrector
# =============================================================================


class NewtonCorrector:
    """Modified Newton corrector for implicit ODE steps."""

    def __init__(
        self,
        system_fn: SystemFunction[Any],
        linear_solver: LinearSolver,
        *,
        context: Any = None,
        config: NewtonConfig | None = None,
    ) -> None:
        """Create a corrector.

        Args:
            system_fn: Right-hand side f(t, y).
            linear_solver: Solver built for the ODE form.
            context: User context passed to system_fn.
            config: Iteration settings.

        Raises:
            IllegalInputError: If the linear solver is not in ODE form.
        """
        _require_form(linear_solver, IterationForm.ODE, type(self).__name__)
        self.system_fn = system_fn
        self.linear_solver = linear_solver
        self.context = context
        self.config = config or NewtonConfig()
        self.n_fevals = 0

    def _f(self, t: float, y: FloatArray) -> FloatArray:
        self.n_fevals += 1
        out = self.system_fn(EvalPoint(t, y), self.context)
        return np.asarray(out, dtype=np.float64)

    def solve(
        self,
        t: float,
        y_predicted: FloatArray,
        psi: FloatArray,
        gamma: float,
        *,
        step: int,
        tolerance: float,
        weights: FloatArray | None = None,
        conv_fail: ConvFail = ConvFail.NONE,
    ) -> CorrectorResult:
        """Solve ``y - gamma * f(t, y) = psi`` starting from the predictor.

        Args:
            t: Time of the new step.
            y_predicted: Initial iterate.
            psi: Known part of the corrector equation.
            gamma: Implicit coefficient.
            step: Step index for the staleness policy.
            tolerance: Weighted RMS tolerance on the correction.
            weights: Positive error weights (ones if None).
            conv_fail: Outcome of the previous step's corrector; BAD_JACOBIAN
                forces a fresh Jacobian on the first attempt.

        Returns:
            CorrectorResult of the last attempt.
        """
        if not self.linear_solver.is_initialized:
            self.linear_solver.initialize()

        result = self._attempt(
            t, y_predicted, psi, gamma, step, tolerance, weights, conv_fail
        )
        if result.converged or result.jacobian_current or result.outcome.is_fatal:
            return result

        logger.debug(
            "corrector failed with a stale Jacobian at step %d (%s); retrying",
            step,
            result.outcome.reason,
        )
        retry = self._attempt(
            t, y_predicted, psi, gamma, step, tolerance, weights, ConvFail.BAD_JACOBIAN
        )
        return CorrectorResult(
            retry.y,
            retry.converged,
            retry.outcome,
            retry.iterations,
            retry.jacobian_current,
            retried=True,
            crate=retry.crate,
        )

    def _attempt(
        self,
        t: float,
        y_predicted: FloatArray,
        psi: FloatArray,
        gamma: float,
        step: int,
        tolerance: float,
        weights: FloatArray | None,
        conv_fail: ConvFail,
    ) -> CorrectorResult:
        cfg = self.config
        y = np.array(y_predicted, dtype=np.float64, copy=True)
        psi_arr = np.asarray(psi, dtype=np.float64)

        try:
            fy = self._f(t, y)
        except UserRoutineFailure as exc:
            return CorrectorResult(y, False, Outcome.from_user_failure(exc), 0, False)

        setup = self.linear_solver.setup(
            SetupRequest(t, y, fy, gamma, step, conv_fail, weights)
        )
        jcur = setup.jacobian_current
        if not setup.outcome.ok:
            return CorrectorResult(y, False, setup.outcome, 0, jcur)

        crate = 1.0
        previous = 0.0
        for m in range(cfg.max_iters):
            rhs = gamma * fy + psi_arr - y
            sol = self.linear_solver.solve(
                rhs, tolerance=cfg.eplin * tolerance, weights=weights
            )
            if not sol.outcome.ok:
                return CorrectorResult(y, False, sol.outcome, m + 1, jcur, crate=crate)

            y = y + sol.x
            delta = wrms_norm(sol.x, weights)
            if m > 0 and previous > 0.0:
                crate = max(cfg.crdown * crate, delta / previous)
            if delta * min(1.0, crate) <= tolerance:
                return CorrectorResult(
                    y, True, Outcome.success(), m + 1, jcur, crate=crate
                )
            if m > 0 and delta > cfg.rdiv * previous:
                outcome = Outcome.recoverable(
                    _DIVERGED_MSG.format(delta=delta, rdiv=cfg.rdiv, previous=previous),
                    ErrorCode.NEWTON_NOT_CONVERGED,
                )
                return CorrectorResult(y, False, outcome, m + 1, jcur, crate=crate)
            previous = delta

            try:
                fy = self._f(t, y)
            except UserRoutineFailure as exc:
                outcome = Outcome.from_user_failure(exc)
                return CorrectorResult(y, False, outcome, m + 1, jcur, crate=crate)

        outcome = Outcome.recoverable(
            _NOT_CONVERGED_MSG.format(iters=cfg.max_iters, delta=previous),
            ErrorCode.NEWTON_NOT_CONVERGED,
        )
        return CorrectorResult(y, False, outcome, cfg.max_iters, jcur, crate=crate)


# =============================================================================
# Standalone nonlinear systems
# =============================================================================


class NonlinearSystemSolver:
    """Inexact Newton solver for ``F(u) = 0`` with line search."""

    def __init__(
        self,
        system_fn: SystemFunction[Any],
        linear_solver: LinearSolver,
        *,
        context: Any = None,
        config: NonlinearSolverConfig | None = None,
    ) -> None:
        """Create a nonlinear solver.

        Args:
            system_fn: Residual F(u); ``point.t`` is always 0.0.
            linear_solver: Solver built for the algebraic form.
            context: User context passed to system_fn.
            config: Iteration settings.

        Raises:
            IllegalInputError: If the linear solver is not in algebraic form.
        """
        _require_form(linear_solver, IterationForm.ALGEBRAIC, type(self).__name__)
        self.system_fn = system_fn
        self.linear_solver = linear_solver
        self.context = context
        self.config = config or NonlinearSolverConfig()

    def solve(
        self,
        u0: FloatArray,
        *,
        fscale: FloatArray | None = None,
    ) -> NonlinearResult:
        """Solve F(u) = 0 from u0.

        Args:
            u0: Initial guess (not modified).
            fscale: Positive residual scaling (ones if None).

        Returns:
            NonlinearResult with the final iterate and status.
        """
        cfg = self.config
        if not self.linear_solver.is_initialized:
            self.linear_solver.initialize()

        n_fevals = 0
        n_setups = 0

        def residual(u: FloatArray) -> FloatArray:
            nonlocal n_fevals
            n_fevals += 1
            out = self.system_fn(EvalPoint(0.0, u), self.context)
            return np.asarray(out, dtype=np.float64)

        def max_norm(f: FloatArray) -> float:
            scaled = f if fscale is None else f * fscale
            return float(np.max(np.abs(scaled))) if scaled.size else 0.0

        def merit(f: FloatArray) -> float:
            scaled = f if fscale is None else f * fscale
            return 0.5 * float(scaled @ scaled)

        def result(converged: bool, outcome: Outcome, it: int) -> NonlinearResult:
            return NonlinearResult(
                u, converged, outcome, it, max_norm(fu), n_setups, n_fevals
            )

        u = np.array(u0, dtype=np.float64, copy=True)
        try:
            fu = residual(u)
        except UserRoutineFailure as exc:
            fu = np.full_like(u, np.nan)
            return result(False, Outcome.from_user_failure(exc), 0)
        if max_norm(fu) <= 0.01 * cfg.ftol:
            return result(True, Outcome.success(), 0)

        last_setup = None
        force_setup = False
        iteration = 0
        while iteration < cfg.max_iters:
            iteration += 1
            jacobian_fresh = False
            stale = (
                last_setup is None or iteration - last_setup >= cfg.max_setup_calls
            )
            if force_setup or stale:
                n_setups += 1
                setup = self.linear_solver.setup(
                    SetupRequest(
                        0.0, u, fu, step=iteration, conv_fail=ConvFail.BAD_JACOBIAN
                    )
                )
                if not setup.outcome.ok:
                    return result(False, setup.outcome, iteration)
                last_setup = iteration
                jacobian_fresh = True
                force_setup = False

            tolerance = cfg.eta * wrms_norm(fu, fscale)
            sol = self.linear_solver.solve(-fu, tolerance=tolerance, weights=fscale)
            if not sol.outcome.ok:
                if sol.outcome.is_recoverable and not jacobian_fresh:
                    force_setup = True
                    iteration -= 1
                    continue
                return result(False, sol.outcome, iteration)

            f_old = merit(fu)
            lam = 1.0
            accepted = False
            try:
                for _ in range(cfg.max_backtracks + 1):
                    u_trial = u + lam * sol.x
                    f_trial = residual(u_trial)
                    if merit(f_trial) <= f_old * (1.0 - 2.0 * cfg.alpha * lam):
                        accepted = True
                        break
                    lam *= 0.5
            except UserRoutineFailure as exc:
                return result(False, Outcome.from_user_failure(exc), iteration)

            if not accepted:
                if not jacobian_fresh:
                    force_setup = True
                    iteration -= 1
                    continue
                outcome = Outcome.recoverable(
                    _LINESEARCH_MSG.format(n=cfg.max_backtracks, it=iteration),
                    ErrorCode.NEWTON_NOT_CONVERGED,
                )
                return result(False, outcome, iteration)

            u, fu = u_trial, f_trial
            logger.debug(
                "nonlinear iteration %d: ||F||_max=%.3e lambda=%.3g",
                iteration,
                max_norm(fu),
                lam,
            )
            if max_norm(fu) <= cfg.ftol:
                return result(True, Outcome.success(), iteration)

        outcome = Outcome.recoverable(
            _NOT_CONVERGED_MSG.format(iters=cfg.max_iters, delta=max_norm(fu)),
            ErrorCode.NEWTON_NOT_CONVERGED,
        )
        return result(False, outcome, iteration)
