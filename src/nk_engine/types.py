# nk_engine/src/nk_engine/types.py
"""Shared array aliases, evaluation points and user-routine protocols.

User routines are typed as Protocols that receive an explicit ``context``
value. The context is owned by the caller and passed through unchanged; it is
where routines stash data between setup and solve (saved Jacobian blocks,
communicated halo values, problem constants).

Failure convention: a user routine that cannot complete raises
:class:`nk_engine.errors.UserRoutineFailure` with ``recoverable`` set
accordingly. Any other exception propagates unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, TypeAlias, TypeVar

import numpy as np
from numpy.typing import NDArray

FloatArray: TypeAlias = NDArray[np.floating]

ContextT_contra = TypeVar("ContextT_contra", contravariant=True)


class IterationForm(StrEnum):
    """Which Newton iteration matrix a solver or preconditioner represents.

    Members:
        ODE: ``M = I - gamma * J`` with ``J = df/dy`` (implicit ODE integrators).
        DAE: ``M = dG/dy + c_j * dG/dy'`` (implicit DAE integrators).
        ALGEBRAIC: ``M = J = dF/du`` (standalone nonlinear systems).
    """

    ODE = "ode"
    DAE = "dae"
    ALGEBRAIC = "algebraic"


@dataclass(frozen=True, slots=True)
class EvalPoint:
    """Point at which a system or local function is evaluated.

    Attributes:
        t: Independent variable (0.0 for algebraic systems).
        y: State vector (full or local segment).
        yp: Derivative vector for DAE residuals, otherwise None.
    """

    t: float
    y: FloatArray
    yp: FloatArray | None = None

    def segment(self, start: int, stop: int) -> EvalPoint:
        """Return the point restricted to ``[start, stop)``.

        Args:
            start: First index of the segment.
            stop: One past the last index.

        Returns:
            EvalPoint viewing the segment of y (and yp).
        """
        yp = None if self.yp is None else self.yp[start:stop]
        return EvalPoint(self.t, self.y[start:stop], yp)


# =============================================================================
# User routine protocols
# =============================================================================


class SystemFunction(Protocol[ContextT_contra]):
    """Residual / right-hand side of the governing equations.

    ODE: ``f(t, y)``. DAE: ``G(t, y, y')``. Algebraic: ``F(u)`` with ``t``
    ignored.
    """

    def __call__(self, point: EvalPoint, context: ContextT_contra) -> FloatArray:
        """Evaluate the system function at point."""
        ...


class DenseJacobianFunction(Protocol[ContextT_contra]):
    """User routine filling a dense Jacobian ``J = df/dy`` in place.

    ``jac`` is preset to zero.
    """

    def __call__(
        self,
        point: EvalPoint,
        fy: FloatArray,
        jac: FloatArray,
        context: ContextT_contra,
    ) -> None:
        """Load the Jacobian at point into jac."""
        ...


class BandJacobianFunction(Protocol[ContextT_contra]):
    """User routine filling a banded Jacobian through BandMatrix.set.

    ``jac`` is a :class:`nk_engine.band_matrix.BandMatrix` preset to zero.
    """

    def __call__(
        self,
        point: EvalPoint,
        fy: FloatArray,
        jac: Any,
        context: ContextT_contra,
    ) -> None:
        """Load the banded Jacobian at point into jac."""
        ...


class JacTimesVecFunction(Protocol[ContextT_contra]):
    """User routine computing ``J @ v`` for the system Jacobian.

    ``new_point`` is True when the point changed since the previous call, so
    implementations caching Jacobian data may skip recomputation otherwise.
    """

    def __call__(
        self,
        v: FloatArray,
        point: EvalPoint,
        fy: FloatArray,
        context: ContextT_contra,
        *,
        new_point: bool,
    ) -> FloatArray:
        """Return J @ v."""
        ...


class LocalApproxFunction(Protocol[ContextT_contra]):
    """Local approximation g of the system function on one partition.

    Called with the local segment of the state; must not communicate.
    ``g`` may equal the true system function or be a cheaper surrogate.
    """

    def __call__(
        self,
        partition: int,
        point: EvalPoint,
        context: ContextT_contra,
    ) -> FloatArray:
        """Evaluate the local approximation on one partition."""
        ...


class CommFunction(Protocol[ContextT_contra]):
    """Communication needed before evaluating local approximations.

    Called once per Jacobian evaluation with the global point; expected to
    stash any halo data inside context.
    """

    def __call__(self, point: EvalPoint, context: ContextT_contra) -> None:
        """Perform communication for the local approximation."""
        ...
