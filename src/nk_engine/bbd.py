# nk_engine/src/nk_engine/bbd.py
"""Band-block-diagonal (BBD) preconditioner.

The state vector is split into contiguous partitions. For each partition a
banded approximation of the local Jacobian is built by grouped difference
quotients of a user-supplied *local* function ``g`` (the true system function
restricted to the partition, or a cheaper surrogate):

- the quotients assume half-bandwidths ``(mudq, mldq)``;
- only entries within the kept half-bandwidths ``(mukeep, mlkeep)`` are
  stored and factored, so ``mukeep <= mudq`` and ``mlkeep <= mldq``.

The preconditioner block is then

- ODE form: ``P = I - gamma * J``
- DAE form: ``P = dg/dy + c_j * dg/dy'`` (gamma carries c_j)
- algebraic form: ``P = J``

and is LU-factored with partial pivoting. Solving with P applies each
partition's factorization to the matching segment of the right-hand side;
partitions never share storage.

The communication routine runs once per Jacobian evaluation with the global
point, before any local function call, since the data it gathers must not
depend on the local perturbations.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import numpy as np
from numpy.typing import DTypeLike

from .band_matrix import BandMatrix
from .difference_quotients import band_dq_jacobian, default_rel
from .errors import (
    ErrorCode,
    IllegalInputError,
    Outcome,
    SolverStateError,
    UserRoutineFailure,
    worst_outcome,
)
from .linear_solver import WorkspaceSize
from .preconditioning import PreconditionerSetupResult
from .types import EvalPoint, IterationForm

if TYPE_CHECKING:
    from .spgmr import PreconditionSide
    from .types import CommFunction, FloatArray, LocalApproxFunction

logger = logging.getLogger(__name__)


class _Default(Enum):
    USE_DEFAULT = "use_default"

    def __repr__(self) -> str:
        return "USE_DEFAULT"


USE_DEFAULT: Final = _Default.USE_DEFAULT
"""Sentinel selecting ``sqrt(finfo(dtype).eps)`` as the relative perturbation."""

_NO_PARTITIONS_ERROR: Final[str] = (
    "partition_sizes must be a non-empty sequence of positive ints; got {sizes!r}."
)
_BAD_REL_ERROR: Final[str] = "rel must be positive or USE_DEFAULT; got {rel!r}."
_NOT_SET_UP_ERROR: Final[str] = "BBD solve() issued before a successful setup()."
_FREED_ERROR: Final[str] = "BBD preconditioner has been freed."
_RHS_SIZE_ERROR: Final[str] = "rhs has length {got}; the partitions cover {n} unknowns."
_KEEP_CLAMP_WARNING: Final[str] = (
    "Kept bandwidths (mukeep={mukeep}, mlkeep={mlkeep}) exceed the "
    "difference-quotient bandwidths (mudq={mudq}, mldq={mldq}); clamping to "
    "({mu}, {ml})."
)
_SINGULAR_MSG: Final[str] = "Singular BBD block in partition(s) {parts}: {reasons}"


def _clamp(value: int, n_local: int) -> int:
    return min(n_local - 1, max(0, int(value)))


def _resolve_rel(rel: float | _Default, dtype: np.dtype) -> float:
    if rel is USE_DEFAULT:
        return default_rel(dtype)
    value = float(rel)  # type: ignore[arg-type]
    if not value > 0.0:
        raise IllegalInputError(
            _BAD_REL_ERROR.format(rel=rel), code=ErrorCode.ILLEGAL_INPUT
        )
    return value


@dataclass(slots=True)
class BBDPartitionData:
    """Storage and counters owned by one partition.

    Attributes:
        index: Partition number.
        start: Offset of the partition in the global vector.
        n_local: Partition size.
        mudq: Upper half-bandwidth used for difference quotients.
        mldq: Lower half-bandwidth used for difference quotients.
        mukeep: Upper half-bandwidth retained in the block.
        mlkeep: Lower half-bandwidth retained in the block.
        rel: Relative perturbation.
        saved_jacobian: Last local Jacobian (kept band only).
        factor: Preconditioner block, LU-factored in place.
        n_local_evals: Local function evaluations.
    """

    index: int
    start: int
    n_local: int
    mudq: int
    mldq: int
    mukeep: int
    mlkeep: int
    rel: float
    saved_jacobian: BandMatrix
    factor: BandMatrix
    n_local_evals: int = 0

    @property
    def stop(self) -> int:
        """One past the last global index of the partition."""
        return self.start + self.n_local

    @property
    def pivots(self) -> np.ndarray | None:
        """Pivot indices of the current factorization."""
        return self.factor.pivots

    def workspace(self) -> WorkspaceSize:
        """Real/integer storage held by the partition."""
        real_f, int_f = self.factor.workspace()
        real_j, _ = self.saved_jacobian.workspace()
        return WorkspaceSize(real_f + real_j, int_f)


class BBDPreconditioner:
    """Band-block-diagonal preconditioner over contiguous partitions.

    Implements :class:`~nk_engine.preconditioning.PreconditionerOps`.
    """

    def __init__(
        self,
        partition_sizes: Sequence[int],
        mudq: int,
        mldq: int,
        mukeep: int,
        mlkeep: int,
        *,
        local_fn: LocalApproxFunction[Any],
        comm_fn: CommFunction[Any] | None = None,
        rel: float | _Default = USE_DEFAULT,
        form: IterationForm = IterationForm.ODE,
        dtype: DTypeLike = np.float64,
    ) -> None:
        """Allocate per-partition workspace.

        Bandwidths are clamped to ``[0, n_local - 1]`` per partition, and the
        kept widths to the difference-quotient widths.

        Args:
            partition_sizes: Size of each partition, in global order.
            mudq: Upper half-bandwidth for difference quotients.
            mldq: Lower half-bandwidth for difference quotients.
            mukeep: Upper half-bandwidth of the retained block.
            mlkeep: Lower half-bandwidth of the retained block.
            local_fn: Local approximating function g.
            comm_fn: Communication routine (None if g needs none).
            rel: Relative perturbation, or USE_DEFAULT for sqrt(eps).
            form: Iteration matrix form.
            dtype: Floating dtype of the blocks.

        Raises:
            IllegalInputError: If partition sizes or rel are invalid.
            AllocationError: If block storage cannot be allocated.
        """
        sizes = [int(s) for s in partition_sizes]
        if not sizes or any(s < 1 for s in sizes):
            raise IllegalInputError(
                _NO_PARTITIONS_ERROR.format(sizes=list(partition_sizes)),
                code=ErrorCode.ILLEGAL_INPUT,
            )
        self.dtype = np.dtype(dtype)
        self.form = IterationForm(form)
        self.local_fn = local_fn
        self.comm_fn = comm_fn
        rel_value = _resolve_rel(rel, self.dtype)

        if mukeep > mudq or mlkeep > mldq:
            warnings.warn(
                _KEEP_CLAMP_WARNING.format(
                    mukeep=mukeep,
                    mlkeep=mlkeep,
                    mudq=mudq,
                    mldq=mldq,
                    mu=min(mukeep, mudq),
                    ml=min(mlkeep, mldq),
                ),
                RuntimeWarning,
                stacklevel=2,
            )

        self._partitions: list[BBDPartitionData] = []
        start = 0
        for index, n_local in enumerate(sizes):
            mu_dq = _clamp(mudq, n_local)
            ml_dq = _clamp(mldq, n_local)
            mu_keep = min(_clamp(mukeep, n_local), mu_dq)
            ml_keep = min(_clamp(mlkeep, n_local), ml_dq)
            self._partitions.append(
                BBDPartitionData(
                    index=index,
                    start=start,
                    n_local=n_local,
                    mudq=mu_dq,
                    mldq=ml_dq,
                    mukeep=mu_keep,
                    mlkeep=ml_keep,
                    rel=rel_value,
                    saved_jacobian=BandMatrix(
                        n_local, mu_keep, ml_keep, dtype=self.dtype
                    ),
                    factor=BandMatrix(
                        n_local,
                        mu_keep,
                        ml_keep,
                        smu=mu_keep + ml_keep,
                        dtype=self.dtype,
                    ),
                )
            )
            start += n_local
        self.n = start
        self._has_jacobian = False
        self._setup_done = False
        self._freed = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def n_partitions(self) -> int:
        """Number of partitions."""
        return len(self._partitions)

    def partition(self, index: int) -> BBDPartitionData:
        """Return the data of one partition."""
        return self._partitions[index]

    @property
    def n_local_evals(self) -> int:
        """Total local function evaluations since allocation or reinit."""
        return sum(p.n_local_evals for p in self._partitions)

    @property
    def workspace(self) -> WorkspaceSize:
        """Real/integer storage summed over partitions."""
        sizes = [p.workspace() for p in self._partitions]
        return WorkspaceSize(sum(s.real for s in sizes), sum(s.integer for s in sizes))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reinit(
        self,
        mudq: int,
        mldq: int,
        *,
        local_fn: LocalApproxFunction[Any],
        comm_fn: CommFunction[Any] | None = None,
        rel: float | _Default = USE_DEFAULT,
    ) -> None:
        """Change the difference-quotient settings and routines.

        Partition sizes, kept bandwidths and workspace are unchanged; the
        difference-quotient widths are clamped so they never fall below the
        kept widths. Counters are reset and the next setup rebuilds the
        Jacobian.

        Args:
            mudq: New upper half-bandwidth for difference quotients.
            mldq: New lower half-bandwidth for difference quotients.
            local_fn: Local approximating function g.
            comm_fn: Communication routine (None if g needs none).
            rel: Relative perturbation, or USE_DEFAULT.

        Raises:
            IllegalInputError: If rel is invalid.
            SolverStateError: If the preconditioner has been freed.
        """
        self._require_live()
        rel_value = _resolve_rel(rel, self.dtype)
        for part in self._partitions:
            part.mudq = max(_clamp(mudq, part.n_local), part.mukeep)
            part.mldq = max(_clamp(mldq, part.n_local), part.mlkeep)
            part.rel = rel_value
            part.n_local_evals = 0
        self.local_fn = local_fn
        self.comm_fn = comm_fn
        self._has_jacobian = False
        logger.debug("BBD reinit: mudq=%d mldq=%d rel=%.3e", mudq, mldq, rel_value)

    def free(self) -> None:
        """Drop all partition storage."""
        self._partitions = []
        self._has_jacobian = False
        self._setup_done = False
        self._freed = True

    def _require_live(self) -> None:
        if self._freed:
            raise SolverStateError(_FREED_ERROR, code=ErrorCode.INVALID_STATE)

    # ------------------------------------------------------------------
    # Preconditioner operations
    # ------------------------------------------------------------------

    def _evaluate_partition(
        self,
        part: BBDPartitionData,
        point: EvalPoint,
        cj: float | None,
        weights: FloatArray | None,
        context: Any,
    ) -> None:
        local_point = point.segment(part.start, part.stop)
        local_weights = (
            None if weights is None else np.asarray(weights)[part.start : part.stop]
        )

        def g(p: EvalPoint) -> FloatArray:
            return np.asarray(self.local_fn(part.index, p, context), dtype=self.dtype)

        g0 = g(local_point)
        n_groups = band_dq_jacobian(
            g,
            local_point,
            g0,
            part.saved_jacobian,
            mudq=part.mudq,
            mldq=part.mldq,
            rel=part.rel,
            weights=local_weights,
            cj=cj,
        )
        part.n_local_evals += 1 + n_groups

    def setup(
        self,
        point: EvalPoint,
        gamma: float,
        *,
        jacobian_ok: bool,
        context: Any,
        weights: FloatArray | None = None,
    ) -> PreconditionerSetupResult:
        """Build and factor every partition block.

        Args:
            point: Global iterate.
            gamma: Implicit coefficient (c_j for the DAE form).
            jacobian_ok: Reuse the saved local Jacobians if possible (ODE form).
            context: User context for the local and communication routines.
            weights: Positive global weights for the increments.

        Returns:
            Aggregated outcome and whether the Jacobians were regenerated.

        Raises:
            SolverStateError: If the preconditioner has been freed.
            ValueError: If the point does not match the partition layout.
        """
        self._require_live()
        if np.shape(point.y) != (self.n,):
            raise ValueError(_RHS_SIZE_ERROR.format(got=np.shape(point.y), n=self.n))
        self._setup_done = False

        reuse = jacobian_ok and self._has_jacobian and self.form is IterationForm.ODE
        if not reuse:
            cj = gamma if self.form is IterationForm.DAE else None
            try:
                if self.comm_fn is not None:
                    self.comm_fn(point, context)
                for part in self._partitions:
                    self._evaluate_partition(part, point, cj, weights, context)
            except UserRoutineFailure as exc:
                self._has_jacobian = False
                return PreconditionerSetupResult(Outcome.from_user_failure(exc), False)
            self._has_jacobian = True

        failures: list[tuple[int, Outcome]] = []
        for part in self._partitions:
            part.factor.copy_from(part.saved_jacobian)
            if self.form is IterationForm.ODE:
                part.factor.scale(-gamma)
                part.factor.add_identity()
            outcome = part.factor.factor()
            if not outcome.ok:
                failures.append((part.index, outcome))

        logger.debug(
            "BBD setup: %s Jacobian, %d partition(s), gamma=%.6g",
            "reused" if reuse else "new",
            self.n_partitions,
            gamma,
        )
        if failures:
            worst = worst_outcome([o for _, o in failures])
            outcome = Outcome(
                worst.kind,
                _SINGULAR_MSG.format(
                    parts=[i for i, _ in failures],
                    reasons="; ".join(o.reason for _, o in failures),
                ),
                worst.code,
            )
            logger.warning("%s", outcome.reason)
            return PreconditionerSetupResult(outcome, not reuse)

        self._setup_done = True
        return PreconditionerSetupResult(Outcome.success(), not reuse)

    def solve(
        self,
        point: EvalPoint,  # noqa: ARG002
        rhs: FloatArray,
        *,
        gamma: float = 0.0,  # noqa: ARG002
        tolerance: float = 0.0,  # noqa: ARG002
        side: PreconditionSide | None = None,  # noqa: ARG002
        context: Any = None,  # noqa: ARG002
    ) -> tuple[Outcome, FloatArray]:
        """Apply the block factorizations to rhs.

        Args:
            point: Global iterate (unused; blocks were built at setup).
            rhs: Global right-hand side (not modified).
            gamma: Implicit coefficient (unused).
            tolerance: Requested tolerance (unused; the block solve is exact).
            side: Preconditioning side (unused; the same P serves both).
            context: User context (unused).

        Returns:
            Success and the solution of ``P z = rhs``.

        Raises:
            SolverStateError: If no successful setup preceded the call.
            ValueError: If rhs has the wrong length.
        """
        self._require_live()
        if not self._setup_done:
            raise SolverStateError(_NOT_SET_UP_ERROR, code=ErrorCode.INVALID_STATE)
        r = np.asarray(rhs, dtype=self.dtype)
        if r.shape != (self.n,):
            raise ValueError(_RHS_SIZE_ERROR.format(got=r.shape, n=self.n))
        z = np.empty(self.n, dtype=self.dtype)
        for part in self._partitions:
            z[part.start : part.stop] = part.factor.solve(r[part.start : part.stop])
        return Outcome.success(), z
