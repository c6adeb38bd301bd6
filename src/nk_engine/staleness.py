# nk_engine/src/nk_engine/staleness.py
"""Jacobian / preconditioner staleness policy.

On every setup call the policy decides whether the last Jacobian (or
preconditioner data) may be reused:

    steps_since       = step - step_at_last_eval
    coefficient_ratio = |1 - gamma / coefficient_at_last_eval|

Reuse requires an earlier evaluation, ``steps_since < max_steps_between_evals``
and ``coefficient_ratio < max_coefficient_drift``. A caller whose Newton
iteration failed while the linear solves succeeded passes
``ConvFail.BAD_JACOBIAN`` to force a fresh evaluation whatever the counters
say.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from .errors import ErrorCode, IllegalInputError

logger = logging.getLogger(__name__)

_THRESHOLD_ERROR = (
    "max_steps_between_evals must be >= 1 and max_coefficient_drift > 0; "
    "got {steps} and {drift}."
)


class ConvFail(StrEnum):
    """Caller's report on why setup is being requested."""

    NONE = "none"
    BAD_JACOBIAN = "bad_jacobian"
    OTHER = "other"


@dataclass(slots=True, frozen=True)
class StalenessConfig:
    """Thresholds for Jacobian reuse.

    Attributes:
        max_steps_between_evals: Maximum steps between evaluations.
        max_coefficient_drift: Maximum relative change of gamma between
            evaluations.
    """

    max_steps_between_evals: int = 50
    max_coefficient_drift: float = 0.2

    def __post_init__(self) -> None:
        """Validate thresholds.

        Raises:
            IllegalInputError: If a threshold is out of range.
        """
        if self.max_steps_between_evals < 1 or not self.max_coefficient_drift > 0.0:
            raise IllegalInputError(
                _THRESHOLD_ERROR.format(
                    steps=self.max_steps_between_evals,
                    drift=self.max_coefficient_drift,
                ),
                code=ErrorCode.ILLEGAL_INPUT,
            )


@dataclass(slots=True)
class StalenessState:
    """Step and coefficient at the last Jacobian evaluation.

    Only meaningful once ``evaluated`` is True.
    """

    step_at_last_eval: int = 0
    coefficient_at_last_eval: float = 0.0
    evaluated: bool = False


class StalenessPolicy:
    """Decides between reusing and regenerating Jacobian data."""

    def __init__(self, config: StalenessConfig | None = None) -> None:
        """Initialize the policy.

        Args:
            config: Reuse thresholds (defaults to StalenessConfig()).
        """
        self.config = config or StalenessConfig()
        self._state = StalenessState()

    @property
    def state(self) -> StalenessState:
        """Copy of the current staleness bookkeeping."""
        return StalenessState(
            self._state.step_at_last_eval,
            self._state.coefficient_at_last_eval,
            self._state.evaluated,
        )

    def steps_since(self, step: int) -> int:
        """Steps elapsed since the last evaluation."""
        return step - self._state.step_at_last_eval

    def coefficient_ratio(self, gamma: float) -> float:
        """Relative change of gamma since the last evaluation."""
        last = self._state.coefficient_at_last_eval
        if last == 0.0:
            return float("inf") if gamma != 0.0 else 0.0
        return abs(1.0 - gamma / last)

    def jacobian_ok(
        self,
        step: int,
        gamma: float,
        conv_fail: ConvFail = ConvFail.NONE,
    ) -> bool:
        """Return True if the saved Jacobian data may be reused.

        Args:
            step: Current step index.
            gamma: Current implicit coefficient.
            conv_fail: Caller's convergence-failure report.

        Returns:
            True for the cheap reuse path, False to regenerate.
        """
        if not self._state.evaluated or conv_fail is ConvFail.BAD_JACOBIAN:
            return False
        steps = self.steps_since(step)
        ratio = self.coefficient_ratio(gamma)
        ok = (
            steps < self.config.max_steps_between_evals
            and ratio < self.config.max_coefficient_drift
        )
        logger.debug(
            "staleness: steps_since=%d coefficient_ratio=%.3e -> %s",
            steps,
            ratio,
            "reuse" if ok else "re-evaluate",
        )
        return ok

    def record_evaluation(self, step: int, gamma: float) -> None:
        """Reset the bookkeeping after a fresh evaluation."""
        self._state.step_at_last_eval = int(step)
        self._state.coefficient_at_last_eval = float(gamma)
        self._state.evaluated = True

    def reset(self) -> None:
        """Forget any previous evaluation."""
        self._state = StalenessState()
