# nk_engine/src/nk_engine/config.py
"""Pydantic configuration models for nk_engine.

These models validate YAML/JSON-style settings and translate them into the
native dataclass configs and solver instances used at runtime.

Notes:
    - Unknown fields are allowed and ignored (`extra="allow"`) so the models
      can sit inside larger host configuration files.
    - User routines are never part of the settings; they are passed to
      `build_linear_solver` / `build_preconditioner` directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt

from .bbd import USE_DEFAULT, BBDPreconditioner
from .direct import BandLinearSolver, DenseLinearSolver
from .errors import ErrorCode, IllegalInputError
from .krylov import KrylovConfig, KrylovLinearSolver
from .spgmr import GramSchmidt, PreconditionSide
from .staleness import StalenessConfig
from .types import IterationForm

if TYPE_CHECKING:
    from .linear_solver import LinearSolver
    from .types import (
        CommFunction,
        JacTimesVecFunction,
        LocalApproxFunction,
        SystemFunction,
    )

SolverName = Literal["dense", "band", "spgmr"]
FormName = Literal["ode", "dae", "algebraic"]

_BAND_WIDTHS_ERROR = "solver='band' requires both mu and ml."
_LOCAL_FN_ERROR = "A BBD preconditioner requires a local_fn."
_PARTITION_SUM_ERROR = "BBD partition sizes sum to {total}, expected n={n}."


class StalenessSettings(BaseModel):
    """Jacobian reuse thresholds."""

    model_config = ConfigDict(extra="allow")

    max_steps_between_evals: int = Field(
        default=50,
        ge=1,
        description="Maximum steps between Jacobian evaluations",
    )
    max_coefficient_drift: float = Field(
        default=0.2,
        gt=0.0,
        description="Maximum relative change of gamma before re-evaluation",
    )

    def to_config(self) -> StalenessConfig:
        """Convert to a native StalenessConfig.

        Returns:
            StalenessConfig instance.
        """
        return StalenessConfig(
            max_steps_between_evals=self.max_steps_between_evals,
            max_coefficient_drift=self.max_coefficient_drift,
        )


class KrylovSettings(BaseModel):
    """SPGMR settings."""

    model_config = ConfigDict(extra="allow")

    maxl: int | None = Field(
        default=None,
        ge=1,
        description="Maximum Krylov dimension (min(n, 10) if omitted)",
    )
    max_restarts: int = Field(default=0, ge=0)
    gram_schmidt: Literal["modified", "classical"] = "modified"
    side: Literal["none", "left", "right", "both"] = "left"

    def to_config(self) -> KrylovConfig:
        """Convert to a native KrylovConfig.

        Returns:
            KrylovConfig instance.
        """
        return KrylovConfig(
            maxl=self.maxl,
            max_restarts=self.max_restarts,
            gram_schmidt=GramSchmidt(self.gram_schmidt),
            side=PreconditionSide(self.side),
        )


class BBDSettings(BaseModel):
    """Band-block-diagonal preconditioner settings.

    Kept bandwidths default to the difference-quotient bandwidths; ``rel``
    defaults to sqrt(unit roundoff).
    """

    model_config = ConfigDict(extra="allow")

    partition_sizes: list[PositiveInt] = Field(min_length=1)
    mudq: int = Field(ge=0)
    mldq: int = Field(ge=0)
    mukeep: int | None = Field(default=None, ge=0)
    mlkeep: int | None = Field(default=None, ge=0)
    rel: float | None = Field(default=None, gt=0.0)

    def build_preconditioner(
        self,
        local_fn: LocalApproxFunction[Any],
        *,
        comm_fn: CommFunction[Any] | None = None,
        form: IterationForm = IterationForm.ODE,
    ) -> BBDPreconditioner:
        """Allocate a BBDPreconditioner from these settings.

        Args:
            local_fn: Local approximating function.
            comm_fn: Optional communication routine.
            form: Iteration matrix form.

        Returns:
            Allocated preconditioner.
        """
        return BBDPreconditioner(
            self.partition_sizes,
            self.mudq,
            self.mldq,
            self.mudq if self.mukeep is None else self.mukeep,
            self.mldq if self.mlkeep is None else self.mlkeep,
            local_fn=local_fn,
            comm_fn=comm_fn,
            rel=USE_DEFAULT if self.rel is None else self.rel,
            form=form,
        )


class LinearSolverSettings(BaseModel):
    """Top-level linear solver selection."""

    model_config = ConfigDict(extra="allow")

    solver: SolverName = Field(default="dense", description="Linear solver variant")
    form: FormName = Field(default="ode", description="Iteration matrix form")
    mu: int | None = Field(default=None, ge=0, description="Band upper width")
    ml: int | None = Field(default=None, ge=0, description="Band lower width")
    rel: float | None = Field(
        default=None,
        gt=0.0,
        description="Relative difference-quotient perturbation",
    )
    staleness: StalenessSettings = Field(default_factory=StalenessSettings)
    krylov: KrylovSettings = Field(default_factory=KrylovSettings)
    bbd: BBDSettings | None = None

    def build_linear_solver(
        self,
        n: int,
        system_fn: SystemFunction[Any],
        *,
        context: Any = None,
        jac_fn: Any = None,
        jtimes_fn: JacTimesVecFunction[Any] | None = None,
        local_fn: LocalApproxFunction[Any] | None = None,
        comm_fn: CommFunction[Any] | None = None,
    ) -> LinearSolver:
        """Construct the configured linear solver (not yet initialized).

        Args:
            n: Problem size.
            system_fn: System function.
            context: User context passed to every routine.
            jac_fn: Optional dense or band Jacobian routine.
            jtimes_fn: Optional J*v routine (spgmr only).
            local_fn: Local function for a BBD preconditioner (spgmr only).
            comm_fn: Communication routine for a BBD preconditioner.

        Returns:
            LinearSolver instance.

        Raises:
            IllegalInputError: If the settings are incomplete or inconsistent.
        """
        form = IterationForm(self.form)
        staleness = self.staleness.to_config()

        if self.solver == "dense":
            return DenseLinearSolver(
                n,
                system_fn,
                jac_fn=jac_fn,
                context=context,
                form=form,
                staleness=staleness,
                rel=self.rel,
            )

        if self.solver == "band":
            if self.mu is None or self.ml is None:
                raise IllegalInputError(
                    _BAND_WIDTHS_ERROR, code=ErrorCode.ILLEGAL_INPUT
                )
            return BandLinearSolver(
                n,
                self.mu,
                self.ml,
                system_fn,
                jac_fn=jac_fn,
                context=context,
                form=form,
                staleness=staleness,
                rel=self.rel,
            )

        preconditioner = None
        if self.bbd is not None:
            if local_fn is None:
                raise IllegalInputError(_LOCAL_FN_ERROR, code=ErrorCode.ILLEGAL_INPUT)
            total = sum(self.bbd.partition_sizes)
            if total != n:
                raise IllegalInputError(
                    _PARTITION_SUM_ERROR.format(total=total, n=n),
                    code=ErrorCode.ILLEGAL_INPUT,
                )
            preconditioner = self.bbd.build_preconditioner(
                local_fn, comm_fn=comm_fn, form=form
            )

        return KrylovLinearSolver(
            n,
            system_fn,
            preconditioner=preconditioner,
            config=self.krylov.to_config(),
            jtimes_fn=jtimes_fn,
            context=context,
            form=form,
            staleness=staleness,
            rel=self.rel,
        )
