# © Crown Copyright GCHQ
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

r"""
Lazily generated matrices and vectors.

When the moment matrix :math:`V \in \mathbb{R}^{M \times N}` (or the weight vector
:math:`w \in \mathbb{R}^M`) is too large to hold in memory, it can be described by a
generator that produces one row, column or element at a time. The containers in this
module cache whatever has been generated, and allow the cache to be trimmed explicitly
with :meth:`OnDemandMatrix.forget` once a vector is no longer needed.

The containers are caches over a pure generator, not stores: there is no item
assignment, and a forgotten vector is regenerated (not restored) on its next read.

.. note::
    The caches are plain dictionaries and are not safe to share between threads.
"""

import copy
from collections.abc import Callable, Sequence
from typing import Literal, Union

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike, DTypeLike
from jaxtyping import Float, Shaped
from typing_extensions import Self, TypeAlias

from carathex.validation import validate_in_range, validate_is_instance

_Index: TypeAlias = Union[int, Sequence[int], ArrayLike]


def _check_index(index: int, extent: int) -> int:
    index = int(index)
    if not 0 <= index < extent:
        raise IndexError(f"index {index} is out of range for extent {extent}")
    return index


class OnDemandMatrix:
    """
    Matrix whose rows or columns are generated, and cached, on first access.

    :param n_rows: Number of rows of the matrix
    :param n_columns: Number of columns of the matrix
    :param generator: Callable mapping an index ``i`` to column ``i`` (of length
        ``n_rows``) when ``by="columns"``, or to row ``i`` (of length ``n_columns``)
        when ``by="rows"``
    :param by: Orientation of the generated (stored) vectors; either ``"columns"`` or
        ``"rows"``
    :param dtype: Element type of the generated vectors; defaults to the default JAX
        floating point type
    """

    def __init__(
        self,
        n_rows: int,
        n_columns: int,
        generator: Callable[[int], ArrayLike],
        by: Literal["columns", "rows"] = "columns",
        dtype: DTypeLike = None,
    ):
        """Validate the matrix dimensions and initialise an empty cache."""
        validate_is_instance(n_rows, "n_rows", int)
        validate_is_instance(n_columns, "n_columns", int)
        validate_in_range(n_rows, "n_rows", True, lower_bound=0)
        validate_in_range(n_columns, "n_columns", True, lower_bound=0)
        if not callable(generator):
            raise TypeError("'generator' must be callable")
        if by not in {"columns", "rows"}:
            raise ValueError("Invalid orientation, expected 'columns' or 'rows'.")
        self._shape = (n_rows, n_columns)
        self._generator = generator
        self._by_rows = by == "rows"
        self._dtype = jnp.dtype(dtype) if dtype is not None else jnp.result_type(float)
        self._store: dict[int, Array] = {}

    @property
    def shape(self) -> tuple[int, int]:
        """Return the matrix shape."""
        return self._shape

    @property
    def ndim(self) -> int:
        """Return the number of dimensions (always two)."""
        return 2

    @property
    def dtype(self):
        """Return the element type of the matrix."""
        return self._dtype

    @property
    def by_rows(self) -> bool:
        """Return :data:`True` if the generator produces rows."""
        return self._by_rows

    @property
    def num_stored(self) -> int:
        """Return the number of materialised (stored) rows or columns."""
        return len(self._store)

    @property
    def T(self) -> Self:  # noqa: N802
        """
        Return the transpose as a view sharing the generator and the cache.

        Column ``i`` of the view is row ``i`` of this matrix; no data is copied.
        """
        transposed = copy.copy(self)
        transposed._shape = self._shape[::-1]
        transposed._by_rows = not self._by_rows
        return transposed

    def _extents(self) -> tuple[int, int]:
        """Return the number of stored vectors and the length of each of them."""
        n_rows, n_columns = self._shape
        return (n_rows, n_columns) if self._by_rows else (n_columns, n_rows)

    def read(self, index: int) -> Float[Array, " l"]:
        """
        Return stored vector ``index``, generating and caching it if absent.

        The stored vectors are the rows when ``by_rows`` is :data:`True` and the columns
        otherwise.

        :param index: Index of the stored vector
        :return: The (cached) stored vector
        """
        count, length = self._extents()
        index = _check_index(index, count)
        try:
            return self._store[index]
        except KeyError:
            pass
        value = jnp.asarray(self._generator(index), dtype=self._dtype)
        if value.shape != (length,):
            raise ValueError(
                f"generator returned shape {value.shape} for index {index}; "
                f"expected ({length},)"
            )
        self._store[index] = value
        return value

    def forget(self, index: int) -> None:
        """Evict stored vector ``index`` from the cache; do nothing if absent."""
        self._store.pop(int(index), None)

    def __contains__(self, index: object) -> bool:
        """Return :data:`True` if stored vector ``index`` is materialised."""
        return int(index) in self._store

    def row(self, index: int) -> Float[Array, " n"]:
        """
        Return row ``index`` of the matrix.

        When the matrix is stored by columns, every column is read (and cached).
        """
        if self._by_rows:
            return self.read(index)
        index = _check_index(index, self._shape[0])
        return jnp.stack([self.read(j)[index] for j in range(self._shape[1])])

    def column(self, index: int) -> Float[Array, " m"]:
        """
        Return column ``index`` of the matrix.

        When the matrix is stored by rows, every row is read (and cached).
        """
        if not self._by_rows:
            return self.read(index)
        index = _check_index(index, self._shape[1])
        return jnp.stack([self.read(i)[index] for i in range(self._shape[0])])

    def element(self, row: int, column: int) -> Float[Array, ""]:
        """Return the entry at ``(row, column)``, reading a single stored vector."""
        if self._by_rows:
            return self.read(row)[_check_index(column, self._shape[1])]
        return self.read(column)[_check_index(row, self._shape[0])]

    def __getitem__(self, key) -> Shaped[Array, "..."]:
        """
        Index the matrix through the cache.

        Supported keys are a row index, a sequence of row indices, an ``(i, j)``
        pair, and ``(i, slice)`` or ``(slice, j)`` pairs.
        """
        if isinstance(key, tuple):
            if len(key) != 2:  # noqa: PLR2004
                raise IndexError("OnDemandMatrix supports at most two indices")
            row, column = key
            if isinstance(row, slice) and not isinstance(column, slice):
                return self.column(column)[row]
            if isinstance(column, slice) and not isinstance(row, slice):
                return self.row(row)[column]
            if isinstance(row, slice) or isinstance(column, slice):
                raise IndexError("OnDemandMatrix does not support two slices")
            return self.element(row, column)
        if isinstance(key, slice):
            return jnp.stack([self.row(i) for i in range(*key.indices(len(self)))])
        if jnp.ndim(jnp.asarray(key)) == 0:
            return self.row(key)
        return jnp.stack([self.row(i) for i in jnp.asarray(key).tolist()])

    def __len__(self) -> int:
        """Return the number of rows."""
        return self._shape[0]

    def __jax_array__(self) -> Float[Array, "m n"]:
        """Return value of `jnp.asarray(OnDemandMatrix(...))`; reads every vector."""
        count, _ = self._extents()
        stored = jnp.stack([self.read(i) for i in range(count)])
        return stored if self._by_rows else stored.T

    def __repr__(self) -> str:
        """Return a short description of the matrix."""
        by = "rows" if self._by_rows else "columns"
        return (
            f"{type(self).__name__}(shape={self._shape}, by={by!r}, "
            f"num_stored={self.num_stored})"
        )


class OnDemandVector:
    """
    Vector whose elements are generated, and cached, on first access.

    :param length: Number of elements of the vector
    :param generator: Callable mapping an index ``i`` to the scalar element ``i``
    :param dtype: Element type; defaults to the default JAX floating point type
    """

    def __init__(
        self,
        length: int,
        generator: Callable[[int], ArrayLike],
        dtype: DTypeLike = None,
    ):
        """Validate the length and initialise an empty cache."""
        validate_is_instance(length, "length", int)
        validate_in_range(length, "length", False, lower_bound=0)
        if not callable(generator):
            raise TypeError("'generator' must be callable")
        self._length = length
        self._generator = generator
        self._dtype = jnp.dtype(dtype) if dtype is not None else jnp.result_type(float)
        self._store: dict[int, Array] = {}

    @property
    def shape(self) -> tuple[int]:
        """Return the vector shape."""
        return (self._length,)

    @property
    def ndim(self) -> int:
        """Return the number of dimensions (always one)."""
        return 1

    @property
    def dtype(self):
        """Return the element type of the vector."""
        return self._dtype

    @property
    def num_stored(self) -> int:
        """Return the number of materialised elements."""
        return len(self._store)

    def read(self, index: int) -> Float[Array, ""]:
        """Return element ``index``, generating and caching it if absent."""
        index = _check_index(index, self._length)
        try:
            return self._store[index]
        except KeyError:
            pass
        value = jnp.asarray(self._generator(index), dtype=self._dtype)
        if value.shape != ():
            raise ValueError(
                f"generator returned shape {value.shape} for index {index}; "
                "expected a scalar"
            )
        self._store[index] = value
        return value

    def forget(self, index: int) -> None:
        """Evict element ``index`` from the cache; do nothing if absent."""
        self._store.pop(int(index), None)

    def __contains__(self, index: object) -> bool:
        """Return :data:`True` if element ``index`` is materialised."""
        return int(index) in self._store

    def __getitem__(self, key) -> Shaped[Array, "..."]:
        """Index the vector through the cache with an index or a sequence of them."""
        if isinstance(key, slice):
            return jnp.stack([self.read(i) for i in range(*key.indices(self._length))])
        if jnp.ndim(jnp.asarray(key)) == 0:
            return self.read(key)
        return jnp.stack([self.read(i) for i in jnp.asarray(key).tolist()])

    def __len__(self) -> int:
        """Return the vector length."""
        return self._length

    def __jax_array__(self) -> Float[Array, " m"]:
        """Return value of `jnp.asarray(OnDemandVector(...))`; reads every element."""
        return jnp.stack([self.read(i) for i in range(self._length)])

    def __repr__(self) -> str:
        """Return a short description of the vector."""
        return (
            f"{type(self).__name__}(length={self._length}, "
            f"num_stored={self.num_stored})"
        )


MatrixLike: TypeAlias = Union[ArrayLike, OnDemandMatrix]
VectorLike: TypeAlias = Union[ArrayLike, OnDemandVector]


def read_rows(matrix: MatrixLike, indices: _Index) -> Float[Array, "r n"]:
    """
    Return the rows ``indices`` of a dense or on-demand matrix.

    Rows of an :class:`OnDemandMatrix` are read through (and kept in) its cache.

    :param matrix: Dense array or :class:`OnDemandMatrix`
    :param indices: Row indices to read
    :return: The selected rows, stacked in the order of ``indices``
    """
    indices = jnp.atleast_1d(jnp.asarray(indices, dtype=int))
    if not isinstance(matrix, OnDemandMatrix):
        return jnp.asarray(matrix)[indices]
    if indices.shape[0] == 0:
        return jnp.zeros((0, matrix.shape[1]), dtype=matrix.dtype)
    return jnp.stack([matrix.row(i) for i in indices.tolist()])


def read_elements(vector: VectorLike, indices: _Index) -> Float[Array, " r"]:
    """
    Return the elements ``indices`` of a dense or on-demand vector.

    Elements of an :class:`OnDemandVector` that were not already cached are forgotten
    again after being read, so the cache does not grow.

    :param vector: Dense array or :class:`OnDemandVector`
    :param indices: Element indices to read
    :return: The selected elements, in the order of ``indices``
    """
    indices = jnp.atleast_1d(jnp.asarray(indices, dtype=int))
    if not isinstance(vector, OnDemandVector):
        return jnp.asarray(vector)[indices]
    values = []
    for index in indices.tolist():
        stored = index in vector
        values.append(vector.read(index))
        if not stored:
            vector.forget(index)
    if not values:
        return jnp.zeros((0,), dtype=vector.dtype)
    return jnp.stack(values)


def forget_row(matrix: MatrixLike, index: int) -> None:
    """
    Evict row ``index`` of ``matrix`` from its cache.

    Only an :class:`OnDemandMatrix` that stores rows has anything to evict; dense arrays
    and column-stored matrices are left untouched.

    :param matrix: Dense array or :class:`OnDemandMatrix`
    :param index: Row index to evict
    """
    if isinstance(matrix, OnDemandMatrix) and matrix.by_rows:
        matrix.forget(index)
