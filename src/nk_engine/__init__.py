"""nk_engine Newton-Krylov linear solver and preconditioner kernel."""

from __future__ import annotations

from .band_matrix import BandMatrix
from .bbd import USE_DEFAULT, BBDPartitionData, BBDPreconditioner
from .config import (
    BBDSettings,
    KrylovSettings,
    LinearSolverSettings,
    StalenessSettings,
)
from .difference_quotients import (
    band_dq_jacobian,
    default_rel,
    dense_dq_jacobian,
    dq_jtimes,
    wrms_norm,
)
from .direct import BandLinearSolver, DenseLinearSolver
from .errors import (
    AllocationError,
    ConvergenceFailure,
    ErrorCode,
    IllegalInputError,
    NKEngineError,
    Outcome,
    OutcomeKind,
    RecoverableFactorizationFailure,
    SolverStateError,
    UserRoutineFailure,
)
from .krylov import KrylovConfig, KrylovLinearSolver
from .linear_solver import (
    LinearSolver,
    LinearSolverKind,
    LinearSolverStats,
    SetupRequest,
    SetupResult,
    SolveResult,
    WorkspaceSize,
)
from .newton import (
    CorrectorResult,
    NewtonConfig,
    NewtonCorrector,
    NonlinearResult,
    NonlinearSolverConfig,
    NonlinearSystemSolver,
)
from .preconditioning import (
    JacobianTimesVector,
    PreconditionerOps,
    PreconditionerSetupResult,
)
from .spgmr import GramSchmidt, PreconditionSide, SpgmrResult, spgmr_solve
from .staleness import ConvFail, StalenessConfig, StalenessPolicy, StalenessState
from .types import EvalPoint, IterationForm

__all__ = [
    "USE_DEFAULT",
    "AllocationError",
    "BBDPartitionData",
    "BBDPreconditioner",
    "BBDSettings",
    "BandLinearSolver",
    "BandMatrix",
    "ConvFail",
    "ConvergenceFailure",
    "CorrectorResult",
    "DenseLinearSolver",
    "ErrorCode",
    "EvalPoint",
    "GramSchmidt",
    "IllegalInputError",
    "IterationForm",
    "JacobianTimesVector",
    "KrylovConfig",
    "KrylovLinearSolver",
    "KrylovSettings",
    "LinearSolver",
    "LinearSolverKind",
    "LinearSolverSettings",
    "LinearSolverStats",
    "NKEngineError",
    "NewtonConfig",
    "NewtonCorrector",
    "NonlinearResult",
    "NonlinearSolverConfig",
    "NonlinearSystemSolver",
    "Outcome",
    "OutcomeKind",
    "PreconditionSide",
    "PreconditionerOps",
    "PreconditionerSetupResult",
    "RecoverableFactorizationFailure",
    "SetupRequest",
    "SetupResult",
    "SolveResult",
    "SolverStateError",
    "SpgmrResult",
    "StalenessConfig",
    "StalenessPolicy",
    "StalenessSettings",
    "StalenessState",
    "UserRoutineFailure",
    "WorkspaceSize",
    "band_dq_jacobian",
    "default_rel",
    "dense_dq_jacobian",
    "dq_jtimes",
    "spgmr_solve",
    "wrms_norm",
]

__version__ = "0.1.0"
