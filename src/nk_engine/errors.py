# nk_engine/src/nk_engine/errors.py
"""Error types and tagged outcomes for nk_engine.

This module centralizes:
- a machine-readable ErrorCode classification,
- explicit exception classes with actionable messages, and
- the Outcome tagged result returned by setup/solve calls.

Design intent:
- setup/solve never signal failure through numeric sentinels; they return an
  Outcome whose kind is SUCCESS, RECOVERABLE or FATAL.
- user-supplied routines signal failure by raising UserRoutineFailure; the
  glue code converts that into an Outcome of the matching kind.
- callers that prefer exceptions use Outcome.raise_for_kind().
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Final

_ALLOCATION_MSG: Final[str] = (
    "Unable to allocate {what} workspace ({n_real} reals, {n_int} integers)."
)
_SINGULAR_MSG: Final[str] = "Factorization failed: zero pivot in column {column}."
_SUCCESS_RAISE_MSG: Final[str] = "raise_for_kind() called on a successful outcome."


class ErrorCode(StrEnum):
    """Machine-readable classification for nk_engine failures.

    Use these codes for consistent logging and programmatic recovery without
    matching on message text.
    """

    ALLOCATION_FAILED = "allocation_failed"
    ILLEGAL_INPUT = "illegal_input"
    INVALID_STATE = "invalid_state"
    SINGULAR_FACTORIZATION = "singular_factorization"
    KRYLOV_NOT_CONVERGED = "krylov_not_converged"
    NEWTON_NOT_CONVERGED = "newton_not_converged"
    USER_ROUTINE_RECOVERABLE = "user_routine_recoverable"
    USER_ROUTINE_FATAL = "user_routine_fatal"


class NKEngineError(Exception):
    """Base exception for nk_engine errors."""

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        """
        Initialize an NKEngineError.

        Args:
            message: Human-readable error message.
            code: Optional machine-readable error code classifying the error.
        """
        super().__init__(message)
        self.code: ErrorCode | None = code


class AllocationError(NKEngineError, MemoryError):
    """Raised when solver or preconditioner workspace cannot be allocated."""


class IllegalInputError(NKEngineError, ValueError):
    """Raised when sizes, bandwidths or settings are invalid."""


class SolverStateError(NKEngineError, RuntimeError):
    """Raised when an operation is issued in the wrong lifecycle state."""


class RecoverableFactorizationFailure(NKEngineError, ArithmeticError):
    """Raised when a factorization hits a (numerically) singular block."""


class ConvergenceFailure(NKEngineError, ArithmeticError):
    """Raised when an iterative solve does not reach its tolerance."""


class UserRoutineFailure(NKEngineError, RuntimeError):
    """Raised by (or on behalf of) a user routine that could not complete.

    A recoverable failure asks the caller to retry with a smaller step; an
    unrecoverable one must not be retried.
    """

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = True,
        code: ErrorCode | None = None,
    ) -> None:
        """
        Initialize a UserRoutineFailure.

        Args:
            message: Human-readable error message.
            recoverable: Whether the caller may retry.
            code: Optional explicit code; derived from recoverable if omitted.
        """
        if code is None:
            code = (
                ErrorCode.USER_ROUTINE_RECOVERABLE
                if recoverable
                else ErrorCode.USER_ROUTINE_FATAL
            )
        super().__init__(message, code=code)
        self.recoverable: bool = recoverable


# =============================================================================
# Tagged outcome
# =============================================================================


class OutcomeKind(StrEnum):
    """Result classification for setup/solve calls."""

    SUCCESS = "success"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


_EXCEPTION_FOR_CODE: Final[dict[ErrorCode, type[NKEngineError]]] = {
    ErrorCode.ALLOCATION_FAILED: AllocationError,
    ErrorCode.ILLEGAL_INPUT: IllegalInputError,
    ErrorCode.INVALID_STATE: SolverStateError,
    ErrorCode.SINGULAR_FACTORIZATION: RecoverableFactorizationFailure,
    ErrorCode.KRYLOV_NOT_CONVERGED: ConvergenceFailure,
    ErrorCode.NEWTON_NOT_CONVERGED: ConvergenceFailure,
}


@dataclass(frozen=True, slots=True)
class Outcome:
    """Tagged result of a setup or solve call.

    Attributes:
        kind: SUCCESS, RECOVERABLE or FATAL.
        reason: Human-readable explanation (empty on success).
        code: Machine-readable classification (None on success).
    """

    kind: OutcomeKind = OutcomeKind.SUCCESS
    reason: str = ""
    code: ErrorCode | None = None

    @classmethod
    def success(cls) -> Outcome:
        """Return the shared successful outcome."""
        return _SUCCESS

    @classmethod
    def recoverable(cls, reason: str, code: ErrorCode) -> Outcome:
        """Build a recoverable outcome.

        Args:
            reason: Explanation of the failure.
            code: Machine-readable classification.

        Returns:
            Outcome with kind RECOVERABLE.
        """
        return cls(OutcomeKind.RECOVERABLE, reason, code)

    @classmethod
    def fatal(cls, reason: str, code: ErrorCode) -> Outcome:
        """Build a fatal outcome.

        Args:
            reason: Explanation of the failure.
            code: Machine-readable classification.

        Returns:
            Outcome with kind FATAL.
        """
        return cls(OutcomeKind.FATAL, reason, code)

    @classmethod
    def from_user_failure(cls, exc: UserRoutineFailure) -> Outcome:
        """Translate a user routine failure into an outcome.

        Args:
            exc: The failure raised by the user routine.

        Returns:
            RECOVERABLE or FATAL outcome carrying the failure message.
        """
        if exc.recoverable:
            return cls.recoverable(str(exc), ErrorCode.USER_ROUTINE_RECOVERABLE)
        return cls.fatal(str(exc), ErrorCode.USER_ROUTINE_FATAL)

    @property
    def ok(self) -> bool:
        """True for SUCCESS."""
        return self.kind is OutcomeKind.SUCCESS

    @property
    def is_recoverable(self) -> bool:
        """True for RECOVERABLE."""
        return self.kind is OutcomeKind.RECOVERABLE

    @property
    def is_fatal(self) -> bool:
        """True for FATAL."""
        return self.kind is OutcomeKind.FATAL

    def raise_for_kind(self) -> None:
        """Raise the exception matching this outcome.

        Raises:
            SolverStateError: If called on a successful outcome.
            UserRoutineFailure: For user routine codes.
            NKEngineError: The subclass mapped from the outcome code.
        """
        if self.ok:
            raise SolverStateError(_SUCCESS_RAISE_MSG, code=ErrorCode.INVALID_STATE)
        if self.code in {
            ErrorCode.USER_ROUTINE_RECOVERABLE,
            ErrorCode.USER_ROUTINE_FATAL,
        }:
            raise UserRoutineFailure(
                self.reason, recoverable=self.is_recoverable, code=self.code
            )
        exc_type = _EXCEPTION_FOR_CODE.get(
            self.code,  # type: ignore[arg-type]
            NKEngineError,
        )
        raise exc_type(self.reason, code=self.code)


_SUCCESS: Final[Outcome] = Outcome()


def worst_outcome(outcomes: list[Outcome]) -> Outcome:
    """Aggregate outcomes, keeping the most severe one.

    FATAL dominates RECOVERABLE, which dominates SUCCESS. Among equally severe
    outcomes the first is kept.

    Args:
        outcomes: Outcomes to aggregate.

    Returns:
        The most severe outcome, or success for an empty list.
    """
    worst = _SUCCESS
    for outcome in outcomes:
        if outcome.is_fatal:
            return outcome
        if outcome.is_recoverable and worst.ok:
            worst = outcome
    return worst


def raise_allocation_error(what: str, *, n_real: int, n_int: int) -> None:
    """Raise a standardized AllocationError.

    Args:
        what: Name of the workspace being allocated.
        n_real: Requested real workspace length.
        n_int: Requested integer workspace length.

    Raises:
        AllocationError: Always.
    """
    msg = _ALLOCATION_MSG.format(what=what, n_real=n_real, n_int=n_int)
    raise AllocationError(msg, code=ErrorCode.ALLOCATION_FAILED)


def singular_outcome(column: int) -> Outcome:
    """Build the recoverable outcome for a zero pivot.

    Args:
        column: Zero-based column index of the zero pivot.

    Returns:
        RECOVERABLE outcome with the singular factorization code.
    """
    return Outcome.recoverable(
        _SINGULAR_MSG.format(column=column), ErrorCode.SINGULAR_FACTORIZATION
    )
