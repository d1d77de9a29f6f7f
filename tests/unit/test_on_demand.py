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

"""
Tests for lazily generated matrices and vectors.

The tests within this file verify that on-demand containers generate each vector once,
serve every supported index form through their cache, and regenerate forgotten vectors.
"""

import warnings
from unittest.mock import Mock

import jax.numpy as jnp
import numpy as np
import pytest

from carathex.on_demand import (
    OnDemandMatrix,
    OnDemandVector,
    forget_row,
    read_elements,
    read_rows,
)

DENSE = jnp.arange(12.0).reshape(4, 3)


def _column_matrix() -> tuple[OnDemandMatrix, Mock]:
    generator = Mock(side_effect=lambda j: DENSE[:, j])
    return OnDemandMatrix(4, 3, generator), generator


def _row_matrix() -> tuple[OnDemandMatrix, Mock]:
    generator = Mock(side_effect=lambda i: DENSE[i])
    return OnDemandMatrix(4, 3, generator, by="rows"), generator


class TestOnDemandMatrix:
    """Tests for :class:`OnDemandMatrix`."""

    def test_properties(self) -> None:
        """Shape, orientation and element type are reported without generating."""
        matrix, generator = _column_matrix()
        assert matrix.shape == (4, 3)
        assert matrix.ndim == 2
        assert len(matrix) == 4
        assert not matrix.by_rows
        assert matrix.dtype == jnp.result_type(float)
        assert matrix.num_stored == 0
        generator.assert_not_called()

    def test_read_caches(self) -> None:
        """Each stored vector is generated once, however often it is read."""
        matrix, generator = _column_matrix()
        first = matrix.read(1)
        second = matrix.read(1)
        np.testing.assert_array_equal(first, DENSE[:, 1])
        assert first is second
        generator.assert_called_once_with(1)
        assert 1 in matrix
        assert matrix.num_stored == 1

    def test_forget_regenerates(self) -> None:
        """A forgotten vector is generated again on its next read."""
        matrix, generator = _row_matrix()
        matrix.read(2)
        matrix.forget(2)
        assert 2 not in matrix
        np.testing.assert_array_equal(matrix.read(2), DENSE[2])
        assert generator.call_count == 2

    def test_forget_absent(self) -> None:
        """Forgetting a vector that was never generated does nothing."""
        matrix, _ = _row_matrix()
        matrix.forget(3)
        assert matrix.num_stored == 0

    def test_contains_array_index(self) -> None:
        """Membership accepts JAX integer scalars as well as Python integers."""
        matrix, _ = _column_matrix()
        matrix.read(1)
        assert jnp.int32(1) in matrix
        assert jnp.int32(2) not in matrix
        assert np.int64(1) in matrix

    def test_getitem_list_no_warning(self) -> None:
        """A list of row indices is read without any deprecation warning."""
        matrix, _ = _row_matrix()
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            np.testing.assert_array_equal(matrix[[2, 0]], DENSE[jnp.array([2, 0])])
            np.testing.assert_array_equal(matrix[jnp.int32(3)], DENSE[3])

    @pytest.mark.parametrize(
        "key, expected",
        [
            (1, DENSE[1]),
            ([3, 0], DENSE[jnp.array([3, 0])]),
            (slice(1, 3), DENSE[1:3]),
            ((2, 1), DENSE[2, 1]),
            ((slice(None), 2), DENSE[:, 2]),
            ((0, slice(1, None)), DENSE[0, 1:]),
        ],
        ids=["row", "rows", "slice", "element", "column", "partial_row"],
    )
    @pytest.mark.parametrize("by", ["columns", "rows"])
    def test_getitem(self, by: str, key, expected) -> None:
        """Every supported key reads the same values as the dense matrix."""
        if by == "rows":
            matrix = OnDemandMatrix(4, 3, lambda i: DENSE[i], by=by)
        else:
            matrix = OnDemandMatrix(4, 3, lambda j: DENSE[:, j], by=by)
        np.testing.assert_array_equal(matrix[key], expected)

    def test_getitem_two_slices(self) -> None:
        """Slicing both dimensions is not supported."""
        matrix, _ = _row_matrix()
        with pytest.raises(IndexError, match="two slices"):
            _ = matrix[1:, :2]

    def test_element_reads_single_vector(self) -> None:
        """An element read generates only the vector containing it."""
        matrix, generator = _column_matrix()
        assert float(matrix.element(3, 2)) == float(DENSE[3, 2])
        generator.assert_called_once_with(2)

    def test_transpose_shares_cache(self) -> None:
        """The transpose is a view over the same generator and cache."""
        matrix, generator = _column_matrix()
        transposed = matrix.T
        assert transposed.shape == (3, 4)
        assert transposed.by_rows
        np.testing.assert_array_equal(transposed.row(1), DENSE[:, 1])
        np.testing.assert_array_equal(matrix.column(1), DENSE[:, 1])
        generator.assert_called_once_with(1)
        assert matrix.num_stored == transposed.num_stored == 1
        np.testing.assert_array_equal(transposed.T.row(1), DENSE[1])

    def test_dense_conversion(self) -> None:
        """Conversion to a JAX array reads the whole matrix."""
        for matrix, _ in (_column_matrix(), _row_matrix()):
            np.testing.assert_array_equal(jnp.asarray(matrix), DENSE)

    def test_out_of_range(self) -> None:
        """Indices outside the matrix raise an IndexError before generating."""
        matrix, generator = _row_matrix()
        with pytest.raises(IndexError):
            matrix.read(4)
        with pytest.raises(IndexError):
            matrix.element(4, 0)
        generator.assert_not_called()

    def test_wrong_generated_shape(self) -> None:
        """A generator returning a vector of the wrong length is rejected."""
        matrix = OnDemandMatrix(4, 3, lambda i: jnp.ones(4), by="rows")
        with pytest.raises(ValueError, match="expected \\(3,\\)"):
            matrix.read(0)

    @pytest.mark.parametrize(
        "kwargs, error",
        [
            ({"n_rows": 0, "n_columns": 3, "generator": abs}, ValueError),
            ({"n_rows": 4.0, "n_columns": 3, "generator": abs}, TypeError),
            ({"n_rows": 4, "n_columns": 3, "generator": None}, TypeError),
            ({"n_rows": 4, "n_columns": 3, "generator": abs, "by": "x"}, ValueError),
        ],
        ids=["empty", "float_rows", "not_callable", "orientation"],
    )
    def test_invalid_construction(self, kwargs: dict, error: type[Exception]) -> None:
        """Invalid dimensions, generators and orientations are rejected."""
        with pytest.raises(error):
            OnDemandMatrix(**kwargs)

    def test_repr(self) -> None:
        """The representation reports the shape, orientation and cache size."""
        matrix, _ = _row_matrix()
        matrix.read(0)
        assert repr(matrix) == "OnDemandMatrix(shape=(4, 3), by='rows', num_stored=1)"


class TestOnDemandVector:
    """Tests for :class:`OnDemandVector`."""

    def test_read_caches(self) -> None:
        """Each element is generated once."""
        generator = Mock(side_effect=lambda i: 2.0 * i)
        vector = OnDemandVector(5, generator)
        assert float(vector[3]) == 6.0
        assert float(vector.read(3)) == 6.0
        generator.assert_called_once_with(3)
        assert vector.shape == (5,)
        assert vector.ndim == 1
        assert len(vector) == 5

    def test_getitem_forms(self) -> None:
        """Sequences and slices of indices are served through the cache."""
        vector = OnDemandVector(5, lambda i: 2.0 * i)
        np.testing.assert_array_equal(vector[[4, 1]], jnp.array([8.0, 2.0]))
        np.testing.assert_array_equal(vector[1:3], jnp.array([2.0, 4.0]))
        np.testing.assert_array_equal(jnp.asarray(vector), 2.0 * jnp.arange(5.0))

    def test_forget(self) -> None:
        """Forgotten elements are evicted from the cache."""
        vector = OnDemandVector(5, lambda i: 1.0)
        vector.read(0)
        vector.forget(0)
        assert 0 not in vector
        assert vector.num_stored == 0

    def test_contains_array_index(self) -> None:
        """Membership accepts JAX integer scalars as well as Python integers."""
        vector = OnDemandVector(5, lambda i: 2.0 * i)
        vector.read(3)
        assert jnp.int32(3) in vector
        assert jnp.int32(4) not in vector

    def test_getitem_list_no_warning(self) -> None:
        """A list of indices is read without any deprecation warning."""
        vector = OnDemandVector(5, lambda i: 2.0 * i)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            np.testing.assert_array_equal(vector[[4, 1]], jnp.array([8.0, 2.0]))

    def test_non_scalar_generator(self) -> None:
        """A generator returning a vector is rejected."""
        vector = OnDemandVector(5, lambda i: jnp.ones(2))
        with pytest.raises(ValueError, match="scalar"):
            vector.read(0)

    def test_out_of_range(self) -> None:
        """Indices outside the vector raise an IndexError."""
        with pytest.raises(IndexError):
            OnDemandVector(5, lambda i: 1.0).read(-1)


class TestHelpers:
    """Tests for the dense and on-demand access helpers."""

    def test_read_rows_dense(self) -> None:
        """Dense matrices are indexed directly."""
        expected = DENSE[jnp.array([2, 0])]
        np.testing.assert_array_equal(read_rows(DENSE, [2, 0]), expected)

    def test_read_rows_on_demand(self) -> None:
        """Rows of an on-demand matrix are read through its cache."""
        matrix, generator = _row_matrix()
        rows = read_rows(matrix, jnp.array([3, 1]))
        np.testing.assert_array_equal(rows, DENSE[jnp.array([3, 1])])
        assert generator.call_count == 2
        assert 3 in matrix

    def test_read_rows_empty(self) -> None:
        """Reading no rows returns an empty matrix of the right width."""
        matrix, _ = _row_matrix()
        assert read_rows(matrix, []).shape == (0, 3)

    def test_read_elements_restores_cache(self) -> None:
        """Only elements that were already cached remain cached after a read."""
        vector = OnDemandVector(5, lambda i: float(i))
        vector.read(1)
        values = read_elements(vector, [1, 2, 4])
        np.testing.assert_array_equal(values, jnp.array([1.0, 2.0, 4.0]))
        assert 1 in vector
        assert vector.num_stored == 1

    def test_read_elements_dense(self) -> None:
        """Dense vectors are indexed directly."""
        np.testing.assert_array_equal(
            read_elements(jnp.arange(5.0), 3), jnp.array([3.0])
        )

    def test_forget_row(self) -> None:
        """Only row-stored on-demand matrices have rows to evict."""
        rows, _ = _row_matrix()
        rows.read(1)
        forget_row(rows, 1)
        assert rows.num_stored == 0
        columns, _ = _column_matrix()
        columns.read(1)
        forget_row(columns, 1)
        assert columns.num_stored == 1
        forget_row(DENSE, 1)
