# tests/test_band_matrix.py
"""Unit tests for nk_engine.band_matrix.

This module verifies:
- bandwidth validation and element access restricted to the band,
- dense conversion and whole-matrix updates,
- LAPACK band LU factorization and solve, including singular blocks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from nk_engine.band_matrix import BandMatrix
from nk_engine.errors import ErrorCode, IllegalInputError, SolverStateError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


def _random_band(
    rng: np.random.Generator,
    n: int,
    mu: int,
    ml: int,
    *,
    smu: int | None = None,
) -> tuple[BandMatrix, FloatArray]:
    """Return a diagonally dominant band matrix and its dense twin."""
    band = BandMatrix(n, mu, ml, smu=smu)
    dense = np.zeros((n, n))
    for j in range(n):
        for i in range(max(0, j - mu), min(n, j + ml + 1)):
            value = rng.uniform(-1.0, 1.0) + (4.0 if i == j else 0.0)
            band.set(i, j, value)
            dense[i, j] = value
    return band, dense


# -----------------------------------------------------------------------------
# Construction and access
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("n", "mu", "ml"),
    [(4, 4, 0), (4, 0, 4), (3, -1, 0), (0, 0, 0)],
)
def test_illegal_bandwidths_rejected(n: int, mu: int, ml: int) -> None:
    """Bandwidths outside [0, n-1] raise IllegalInputError."""
    with pytest.raises(IllegalInputError, match="Illegal bandwidth") as excinfo:
        BandMatrix(n, mu, ml)
    assert excinfo.value.code is ErrorCode.ILLEGAL_INPUT


def test_storage_bandwidth_below_mu_rejected() -> None:
    """smu must not be smaller than mu."""
    with pytest.raises(IllegalInputError):
        BandMatrix(5, 2, 1, smu=1)


def test_get_set_inside_band_and_reject_outside() -> None:
    """Elements inside the band round-trip; outside raises IndexError."""
    band = BandMatrix(5, 1, 2)
    band.set(3, 1, 7.5)
    assert band.get(3, 1) == 7.5
    assert band.in_band(0, 1)
    assert not band.in_band(0, 2)

    with pytest.raises(IndexError, match="outside the band"):
        band.set(0, 2, 1.0)
    with pytest.raises(IndexError):
        band.get(4, 1)


def test_to_dense_matches_dense(rng: np.random.Generator) -> None:
    """to_dense reproduces the dense representation."""
    band, dense = _random_band(rng, 7, 2, 1)

    assert np.array_equal(band.to_dense(), dense)


def test_column_helpers_cover_band_rows() -> None:
    """set_column/get_column address rows column_rows(j) only."""
    band = BandMatrix(6, 1, 2)
    lo, hi = band.column_rows(0)
    assert (lo, hi) == (0, 3)
    band.set_column(0, np.array([1.0, 2.0, 3.0]))
    assert np.array_equal(band.get_column(0), [1.0, 2.0, 3.0])

    lo, hi = band.column_rows(5)
    assert (lo, hi) == (4, 6)


def test_scale_add_identity_and_copy_from(rng: np.random.Generator) -> None:
    """scale/add_identity act on the band; copy_from drops outer diagonals."""
    wide, dense = _random_band(rng, 6, 2, 2)
    wide.scale(-0.5)
    wide.add_identity()
    expected = np.eye(6) - 0.5 * dense
    assert np.allclose(wide.to_dense(), expected)

    narrow = BandMatrix(6, 1, 0)
    narrow.copy_from(wide)
    kept = np.triu(expected) - np.triu(expected, 2)
    assert np.allclose(narrow.to_dense(), kept)


def test_copy_from_rejects_other_order() -> None:
    """copy_from requires equal matrix order."""
    with pytest.raises(IllegalInputError):
        BandMatrix(4, 1, 1).copy_from(BandMatrix(5, 1, 1))


# -----------------------------------------------------------------------------
# Factorization
# -----------------------------------------------------------------------------


def test_factor_and_solve_match_numpy(rng: np.random.Generator) -> None:
    """Band LU solve agrees with numpy.linalg.solve."""
    band, dense = _random_band(rng, 9, 2, 1, smu=3)
    rhs = rng.standard_normal(9)
    rhs_copy = rhs.copy()

    outcome = band.factor()
    assert outcome.ok
    assert band.is_factored
    x = band.solve(rhs)

    assert np.allclose(x, np.linalg.solve(dense, rhs))
    assert np.array_equal(rhs, rhs_copy)


def test_factor_requires_fill_storage(rng: np.random.Generator) -> None:
    """A matrix stored with smu < mu + ml cannot be factored."""
    band, _ = _random_band(rng, 5, 1, 1)
    with pytest.raises(SolverStateError, match="storage upper bandwidth"):
        band.factor()


def test_solve_before_factor_raises() -> None:
    """solve without a factorization is a state error."""
    band = BandMatrix(3, 1, 1, smu=2)
    with pytest.raises(SolverStateError):
        band.solve(np.ones(3))


def test_singular_matrix_reports_recoverable_outcome() -> None:
    """A zero pivot yields a RECOVERABLE singular-factorization outcome."""
    band = BandMatrix(4, 1, 1, smu=2)
    outcome = band.factor()

    assert outcome.is_recoverable
    assert outcome.code is ErrorCode.SINGULAR_FACTORIZATION
    assert "column 0" in outcome.reason
    assert not band.is_factored


def test_mutation_invalidates_factorization(rng: np.random.Generator) -> None:
    """Any write after factor() drops the pivots."""
    band, _ = _random_band(rng, 4, 1, 1, smu=2)
    assert band.factor().ok
    band.set(0, 0, 3.0)
    assert not band.is_factored
    assert band.pivots is None


def test_workspace_reports_storage() -> None:
    """workspace returns the storage size and pivot length."""
    band = BandMatrix(10, 2, 3, smu=5)
    assert band.workspace() == ((5 + 3 + 1) * 10, 10)
