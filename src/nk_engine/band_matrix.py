# nk_engine/src/nk_engine/band_matrix.py
"""Banded matrix storage with in-place LU factorization.

Storage follows the LAPACK general band layout: the (i, j) element lives at
``data[smu + i - j, j]`` of an array with ``smu + ml + 1`` rows, where ``smu``
is the *storage* upper bandwidth. A matrix that will be factored must reserve
``smu = mu + ml`` so partial pivoting has room for fill-in; a matrix that only
holds values (for example a saved Jacobian) can use ``smu = mu``.

Callers never touch the storage layout: element access goes through
``get``/``set`` and the column helpers, which reject positions outside the
band. Factorization and back-substitution are delegated to LAPACK ``?gbtrf``
and ``?gbtrs`` through :func:`scipy.linalg.get_lapack_funcs`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import DTypeLike
from scipy.linalg import get_lapack_funcs

from .errors import (
    ErrorCode,
    IllegalInputError,
    Outcome,
    SolverStateError,
    raise_allocation_error,
    singular_outcome,
)

if TYPE_CHECKING:
    from .types import FloatArray


_BAD_SIZES_ERROR = (
    "Illegal bandwidth parameter(s) for n={n}: need 0 <= ml, mu <= n-1; "
    "got mu={mu}, ml={ml}."
)
_BAD_STORAGE_ERROR = "Storage upper bandwidth smu={smu} must be >= mu={mu}."
_OUT_OF_BAND_ERROR = "Element ({i}, {j}) lies outside the band (mu={mu}, ml={ml})."
_SHAPE_MISMATCH_ERROR = "Band matrices must have the same order; got {a} and {b}."
_NOT_FACTORED_ERROR = "solve() requires a successful factor() first."
_NO_FILL_ERROR = (
    "factor() requires storage upper bandwidth >= mu + ml ({need}); got smu={smu}."
)
_RHS_SHAPE_ERROR = "rhs shape {shape} does not match matrix order {n}."


def check_bandwidths(n: int, mu: int, ml: int) -> None:
    """Validate a matrix order and its half-bandwidths.

    Raises:
        IllegalInputError: Unless n >= 1 and 0 <= mu, ml <= n - 1.
    """
    if n < 1 or not (0 <= mu <= n - 1) or not (0 <= ml <= n - 1):
        raise IllegalInputError(
            _BAD_SIZES_ERROR.format(n=n, mu=mu, ml=ml),
            code=ErrorCode.ILLEGAL_INPUT,
        )


class BandMatrix:
    """Square band matrix with upper/lower half-bandwidths mu and ml."""

    def __init__(
        self,
        n: int,
        mu: int,
        ml: int,
        *,
        smu: int | None = None,
        dtype: DTypeLike = np.float64,
    ) -> None:
        """Allocate a zero band matrix.

        Args:
            n: Matrix order.
            mu: Upper half-bandwidth.
            ml: Lower half-bandwidth.
            smu: Storage upper bandwidth (defaults to mu; use mu + ml to allow
                factorization).
            dtype: Floating dtype.

        Raises:
            IllegalInputError: If the bandwidths are invalid.
        """
        check_bandwidths(n, mu, ml)
        storage_mu = mu if smu is None else int(smu)
        if storage_mu < mu:
            raise IllegalInputError(
                _BAD_STORAGE_ERROR.format(smu=storage_mu, mu=mu),
                code=ErrorCode.ILLEGAL_INPUT,
            )

        self.n = int(n)
        self.mu = int(mu)
        self.ml = int(ml)
        self.smu = storage_mu
        self.dtype = np.dtype(dtype)

        n_rows = self.smu + self.ml + 1
        try:
            self._data: FloatArray = np.zeros(
                (n_rows, self.n), dtype=self.dtype, order="F"
            )
        except MemoryError:
            raise_allocation_error("band matrix", n_real=n_rows * self.n, n_int=self.n)
        self._pivots: np.ndarray | None = None

    # ------------------------------------------------------------------
    # Element access
    # ------------------------------------------------------------------

    def in_band(self, i: int, j: int) -> bool:
        """Return True if (i, j) is inside the matrix and the band."""
        return 0 <= i < self.n and 0 <= j < self.n and -self.mu <= i - j <= self.ml

    def _check(self, i: int, j: int) -> None:
        if not self.in_band(i, j):
            msg = _OUT_OF_BAND_ERROR.format(i=i, j=j, mu=self.mu, ml=self.ml)
            raise IndexError(msg)

    def get(self, i: int, j: int) -> float:
        """Return element (i, j).

        Raises:
            IndexError: If (i, j) is outside the band.
        """
        self._check(i, j)
        return float(self._data[self.smu + i - j, j])

    def set(self, i: int, j: int, value: float) -> None:
        """Set element (i, j).

        Raises:
            IndexError: If (i, j) is outside the band.
        """
        self._check(i, j)
        self._data[self.smu + i - j, j] = value
        self._pivots = None

    def column_rows(self, j: int) -> tuple[int, int]:
        """Return the row range ``[lo, hi)`` of column j inside the band."""
        return max(0, j - self.mu), min(self.n, j + self.ml + 1)

    def set_column(self, j: int, values: FloatArray) -> None:
        """Overwrite the in-band part of column j.

        Args:
            j: Column index.
            values: Values for rows ``column_rows(j)``, in row order.
        """
        lo, hi = self.column_rows(j)
        start = self.smu + lo - j
        self._data[start : start + (hi - lo), j] = values
        self._pivots = None

    def get_column(self, j: int) -> FloatArray:
        """Return a copy of the in-band part of column j."""
        lo, hi = self.column_rows(j)
        start = self.smu + lo - j
        return self._data[start : start + (hi - lo), j].copy()

    # ------------------------------------------------------------------
    # Whole-matrix operations
    # ------------------------------------------------------------------

    def zero(self) -> None:
        """Set every stored entry to zero."""
        self._data.fill(0.0)
        self._pivots = None

    def copy_from(self, other: BandMatrix) -> None:
        """Copy the entries of other that fall inside this band.

        Diagonals of other outside (mu, ml) are dropped; diagonals of this
        matrix not present in other are zeroed.

        Raises:
            IllegalInputError: If the matrix orders differ.
        """
        if other.n != self.n:
            raise IllegalInputError(
                _SHAPE_MISMATCH_ERROR.format(a=self.n, b=other.n),
                code=ErrorCode.ILLEGAL_INPUT,
            )
        self._data.fill(0.0)
        for d in range(-min(self.mu, other.mu), min(self.ml, other.ml) + 1):
            self._data[self.smu + d, :] = other._data[other.smu + d, :]
        self._pivots = None

    def scale(self, c: float) -> None:
        """Multiply every in-band entry by c."""
        self._data[self.smu - self.mu : self.smu + self.ml + 1, :] *= c
        self._pivots = None

    def add_identity(self) -> None:
        """Add the identity matrix in place."""
        self._data[self.smu, :] += 1.0
        self._pivots = None

    def to_dense(self) -> FloatArray:
        """Return the logical band values as a dense (n, n) array."""
        out = np.zeros((self.n, self.n), dtype=self.dtype)
        for d in range(-self.mu, self.ml + 1):
            cols = np.arange(max(0, -d), min(self.n, self.n - d))
            out[cols + d, cols] = self._data[self.smu + d, cols]
        return out

    # ------------------------------------------------------------------
    # Factorization
    # ------------------------------------------------------------------

    @property
    def is_factored(self) -> bool:
        """True after a successful factor() and before any mutation."""
        return self._pivots is not None

    @property
    def pivots(self) -> np.ndarray | None:
        """LAPACK pivot indices of the last successful factorization."""
        return self._pivots

    def factor(self) -> Outcome:
        """LU-factor the matrix in place with partial pivoting.

        Returns:
            Success, or a RECOVERABLE outcome if a zero pivot was met.

        Raises:
            SolverStateError: If the storage has no room for pivot fill.
        """
        if self.smu < self.mu + self.ml:
            raise SolverStateError(
                _NO_FILL_ERROR.format(need=self.mu + self.ml, smu=self.smu),
                code=ErrorCode.INVALID_STATE,
            )
        (gbtrf,) = get_lapack_funcs(("gbtrf",), (self._data,))
        lu, ipiv, info = gbtrf(self._data, self.ml, self.smu - self.ml, overwrite_ab=1)
        self._data = np.asfortranarray(lu)
        if info > 0:
            self._pivots = None
            return singular_outcome(int(info) - 1)
        self._pivots = ipiv
        return Outcome.success()

    def solve(self, rhs: FloatArray) -> FloatArray:
        """Solve with the stored factorization.

        Args:
            rhs: Right-hand side of length n (not modified).

        Returns:
            Solution vector.

        Raises:
            SolverStateError: If the matrix is not factored.
            ValueError: If rhs has the wrong shape.
        """
        if self._pivots is None:
            raise SolverStateError(_NOT_FACTORED_ERROR, code=ErrorCode.INVALID_STATE)
        b = np.array(rhs, dtype=self.dtype, copy=True)
        if b.shape != (self.n,):
            raise ValueError(_RHS_SHAPE_ERROR.format(shape=b.shape, n=self.n))
        (gbtrs,) = get_lapack_funcs(("gbtrs",), (self._data,))
        x, _info = gbtrs(self._data, self.ml, self.smu - self.ml, b, self._pivots)
        return np.asarray(x, dtype=self.dtype)

    def workspace(self) -> tuple[int, int]:
        """Return (real, integer) storage lengths."""
        return int(self._data.size), self.n
