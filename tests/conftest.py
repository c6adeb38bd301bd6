"""Global pytest configuration and shared fixtures for nk_engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pytest

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from nk_engine import EvalPoint

    FloatArray = NDArray[np.floating]


# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "scenario: end-to-end scenario taken from the documented behavior",
    )


# -----------------------------------------------------------------------------
# Shared problems
# -----------------------------------------------------------------------------


@dataclass
class LinearProblem:
    """f(t, y) = A y + b with call counting."""

    a: FloatArray
    b: FloatArray
    calls: int = 0

    def __call__(self, point: EvalPoint, context: object) -> FloatArray:  # noqa: ARG002
        """Evaluate A y + b."""
        self.calls += 1
        return self.a @ point.y + self.b


@pytest.fixture
def linear_problem() -> LinearProblem:
    """Five-unknown tridiagonal linear system with a nonzero offset."""
    n = 5
    a = (
        np.diag(np.full(n, -4.0))
        + np.diag(np.full(n - 1, 1.0), -1)
        + np.diag(np.full(n - 1, 2.0), 1)
    )
    return LinearProblem(a=a, b=np.linspace(0.5, 1.5, n))


@pytest.fixture
def rng() -> np.random.Generator:
    """Deterministic random generator."""
    return np.random.default_rng(20240611)
