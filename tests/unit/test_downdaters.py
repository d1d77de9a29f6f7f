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
Tests for kernel downdaters.

The tests within this file verify that every kernel downdater returns unit vectors in
the kernel of the transposed active rows, that all downdaters agree with a fresh QR
factorisation of the same rows, and that the Givens row updates keep a valid complete
QR factorisation.
"""

import logging
from contextlib import nullcontext as does_not_raise

import jax.numpy as jnp
import numpy as np
import pytest

from carathex.downdaters import (
    CholeskyDowndater,
    FullQRDowndater,
    FullQRUpDowndater,
    GivensDowndater,
    GivensUpDowndater,
    KernelDowndater,
    WindowedKernelDowndater,
    resolve_kernel_downdater,
)
from carathex.downdaters.base import masked_orthonormal_basis, row_leverages
from carathex.downdaters.qr import (
    givens_delete_row,
    givens_insert_row,
    masked_complete_qr,
)
from carathex.on_demand import OnDemandMatrix, read_rows
from carathex.util import (
    DegenerateKernelError,
    ExhaustedIndicesError,
    NearSingularUpdateError,
)

DOWNDATER_TYPES = [
    FullQRDowndater,
    GivensDowndater,
    CholeskyDowndater,
    FullQRUpDowndater,
    GivensUpDowndater,
]


def _remove_first(downdater: KernelDowndater, state, matrix, count: int):
    """Remove the first active index ``count`` times."""
    for _ in range(count):
        index = int(downdater.active_indices(state)[0])
        state = downdater.downdate(state, matrix, index)
    return state


@pytest.mark.parametrize("downdater_type", DOWNDATER_TYPES)
class TestKernelDowndaters:
    """Tests common to every kernel downdater."""

    @pytest.mark.parametrize("k", [1, 3])
    def test_kernel_vectors(self, downdater_type, k: int, small_problem) -> None:
        """Kernel vectors are unit vectors annihilating the active rows."""
        matrix, _ = small_problem
        downdater = downdater_type(k=k)
        state = _remove_first(downdater, downdater.init(matrix), matrix, 10)
        active = downdater.active_indices(state)
        vectors = downdater.kernel_vectors(state)
        n_columns = matrix.shape[1]
        assert vectors.shape == (min(k, active.shape[0] - n_columns), active.shape[0])
        np.testing.assert_allclose(
            vectors @ read_rows(matrix, active), 0.0, atol=1e-10
        )
        np.testing.assert_allclose(jnp.linalg.norm(vectors, axis=1), 1.0)

    def test_slot_layout(self, downdater_type, small_problem) -> None:
        """Slot kernel vectors are zero on dead slots and compact to the active ones."""
        matrix, _ = small_problem
        downdater = downdater_type(k=2)
        state = _remove_first(downdater, downdater.init(matrix), matrix, 33)
        slot_vectors = downdater.slot_kernel_vectors(state)
        np.testing.assert_array_equal(slot_vectors[:, ~state.mask], 0.0)
        np.testing.assert_array_equal(
            downdater.kernel_vectors(state), slot_vectors[:, state.mask]
        )
        assert state.num_active == downdater.active_indices(state).shape[0]

    def test_matches_fresh_factorisation(self, downdater_type, small_problem) -> None:
        """Kernel vectors match those of a fresh QR of the same active rows."""
        matrix, _ = small_problem
        downdater = downdater_type(k=3)
        state = _remove_first(downdater, downdater.init(matrix), matrix, 20)
        active = downdater.active_indices(state)
        reference = FullQRDowndater(k=3)
        reference_state = reference.init(read_rows(matrix, active))
        np.testing.assert_allclose(
            downdater.kernel_vectors(state),
            reference.kernel_vectors(reference_state),
            atol=1e-8,
        )

    def test_inactive_index(self, downdater_type, small_problem) -> None:
        """Removing an index outside the active set is rejected."""
        matrix, _ = small_problem
        downdater = downdater_type()
        state = downdater.init(matrix)
        index = int(downdater.active_indices(state)[0])
        state = downdater.downdate(state, matrix, index)
        with pytest.raises(ValueError, match="not in the active set"):
            downdater.downdate(state, matrix, index)

    def test_degenerate_kernel(self, downdater_type, make_problem) -> None:
        """No kernel vector exists once only N rows remain active."""
        matrix, _ = make_problem(9, 6)
        downdater = downdater_type()
        state = _remove_first(downdater, downdater.init(matrix), matrix, 3)
        assert state.num_active == 6
        with pytest.raises(DegenerateKernelError):
            downdater.kernel_vectors(state)

    @pytest.mark.parametrize(
        "k, context",
        [
            (0, pytest.raises(ValueError, match="'k'")),
            (-2, pytest.raises(ValueError, match="'k'")),
            (1, does_not_raise()),
            (4.0, does_not_raise()),
        ],
        ids=["zero", "negative", "one", "float"],
    )
    def test_k_validation(self, downdater_type, k, context) -> None:
        """The number of kernel vectors must be positive; it is stored as an int."""
        with context:
            assert downdater_type(k=k).k == int(k)


class TestWindowedDowndaters:
    """Tests for downdaters holding a window of ``N + k`` rows."""

    @pytest.mark.parametrize("downdater_type", [FullQRUpDowndater, GivensUpDowndater])
    def test_window_follows_order(self, downdater_type, small_problem) -> None:
        """The window is filled, and refilled, in the given order."""
        matrix, _ = small_problem
        order = jnp.arange(40)[::-1]
        downdater = downdater_type(k=2, index_order=order)
        state = downdater.init(matrix)
        np.testing.assert_array_equal(downdater.active_indices(state), order[:8])
        state = downdater.downdate(state, matrix, 37)
        assert 37 not in downdater.active_indices(state).tolist()
        assert 31 in downdater.active_indices(state).tolist()
        assert state.num_active == 8

    def test_random_order_is_permutation(self) -> None:
        """Without an explicit order the rows enter in a seeded random permutation."""
        downdater = FullQRUpDowndater()
        order = downdater.window_order(30)
        np.testing.assert_array_equal(jnp.sort(order), jnp.arange(30))
        np.testing.assert_array_equal(order, FullQRUpDowndater().window_order(30))

    def test_invalid_order(self, small_problem) -> None:
        """An ordering that is not a permutation of the rows is rejected."""
        matrix, _ = small_problem
        downdater = GivensUpDowndater(index_order=jnp.arange(39))
        with pytest.raises(ValueError, match="index_order"):
            downdater.init(matrix)

    @pytest.mark.parametrize("downdater_type", [FullQRUpDowndater, GivensUpDowndater])
    def test_exhausted(self, downdater_type, make_problem) -> None:
        """The window cannot shrink below N rows once the ordering is exhausted."""
        matrix, _ = make_problem(8, 6)
        downdater = downdater_type(k=1)
        state = _remove_first(downdater, downdater.init(matrix), matrix, 2)
        assert state.num_active == 6
        with pytest.raises(ExhaustedIndicesError):
            _remove_first(downdater, state, matrix, 1)

    def test_small_matrix_window(self, make_problem) -> None:
        """The window holds every row when there are fewer than N + k of them."""
        matrix, _ = make_problem(8, 6)
        downdater = GivensUpDowndater(k=5)
        state = downdater.init(matrix)
        assert state.num_active == 8
        assert downdater.kernel_vectors(state).shape == (2, 8)

    @pytest.mark.parametrize("downdater_type", [FullQRUpDowndater, GivensUpDowndater])
    def test_forgets_rows(self, downdater_type, small_problem) -> None:
        """Only the rows in the window stay materialised."""
        dense, _ = small_problem
        matrix = OnDemandMatrix(40, 6, lambda i: dense[i], by="rows")
        downdater = downdater_type(k=2)
        state = _remove_first(downdater, downdater.init(matrix), matrix, 5)
        assert matrix.num_stored == 8
        active = downdater.active_indices(state).tolist()
        assert all(index in matrix for index in active)

    def test_is_windowed(self) -> None:
        """Both windowed variants share the window base class."""
        assert issubclass(FullQRUpDowndater, WindowedKernelDowndater)
        assert issubclass(GivensUpDowndater, WindowedKernelDowndater)
        assert not issubclass(GivensDowndater, WindowedKernelDowndater)


class TestCholeskyDowndater:
    """Tests specific to :class:`CholeskyDowndater`."""

    def test_leverages(self, small_problem) -> None:
        """Downdated leverages match those of a fresh factorisation."""
        matrix, _ = small_problem
        downdater = CholeskyDowndater(pct_full_qr=0.0)
        state = _remove_first(downdater, downdater.init(matrix), matrix, 15)
        expected = row_leverages(masked_orthonormal_basis(state.rows, state.mask))
        np.testing.assert_allclose(state.leverages, expected, atol=1e-10)

    def test_full_q(self, small_problem) -> None:
        """With full_q the stored basis stays orthonormal."""
        matrix, _ = small_problem
        downdater = CholeskyDowndater(pct_full_qr=0.0, full_q=True)
        state = _remove_first(downdater, downdater.init(matrix), matrix, 15)
        basis = state.basis[state.mask]
        np.testing.assert_allclose(basis.T @ basis, jnp.eye(6), atol=1e-10)
        np.testing.assert_array_equal(state.gram_inverse, jnp.eye(6))

    def test_near_singular_recovery(self, small_problem, caplog) -> None:
        """A near-singular update falls back to a full reset."""
        matrix, _ = small_problem
        downdater = CholeskyDowndater(pct_full_qr=0.0, sm_tolerance=1.0)
        state = downdater.init(matrix)
        with caplog.at_level(logging.DEBUG, logger="carathex.downdaters.cholesky"):
            state = _remove_first(downdater, state, matrix, 1)
        assert "Near-singular update" in caplog.text
        np.testing.assert_array_equal(state.gram_inverse, jnp.eye(6))
        assert state.iteration == 1

    def test_near_singular_raises(self, small_problem) -> None:
        """Without recovery a near-singular update is reported."""
        matrix, _ = small_problem
        downdater = CholeskyDowndater(
            pct_full_qr=0.0, sm_tolerance=1.0, recover_near_singular=False
        )
        with pytest.raises(NearSingularUpdateError):
            _remove_first(downdater, downdater.init(matrix), matrix, 1)

    def test_scheduled_reset(self, small_problem, caplog) -> None:
        """Resets happen on the logarithmic schedule."""
        matrix, _ = small_problem
        downdater = CholeskyDowndater(pct_full_qr=10.0)
        state = downdater.init(matrix)
        assert state.schedule == frozenset({1, 3, 10, 34})
        with caplog.at_level(logging.DEBUG, logger="carathex.downdaters.cholesky"):
            _remove_first(downdater, state, matrix, 1)
        assert "Scheduled full QR reset at iteration 1" in caplog.text

    @pytest.mark.parametrize(
        "kwargs",
        [{"pct_full_qr": -1.0}, {"pct_full_qr": 101.0}, {"sm_tolerance": -1e-3}],
        ids=["negative_pct", "large_pct", "negative_tolerance"],
    )
    def test_invalid_parameters(self, kwargs: dict) -> None:
        """Out of range parameters are rejected."""
        with pytest.raises(ValueError):
            CholeskyDowndater(**kwargs)


class TestGivensUpdates:
    """Tests for the Givens row deletion and insertion helpers."""

    @staticmethod
    def _check_factorisation(q_factor, r_factor, expected) -> None:
        np.testing.assert_allclose(
            q_factor.T @ q_factor, jnp.eye(q_factor.shape[0]), atol=1e-12
        )
        np.testing.assert_allclose(q_factor @ r_factor, expected, atol=1e-12)
        np.testing.assert_allclose(jnp.tril(r_factor, -1), 0.0, atol=1e-12)

    def test_masked_complete_qr(self, make_problem) -> None:
        """Dead slots map to the trailing columns of Q and contribute nothing."""
        rows, _ = make_problem(8, 5)
        mask = jnp.array([True, False, True, True, True, False, True, True])
        q_factor, r_factor = masked_complete_qr(rows, mask)
        self._check_factorisation(
            q_factor, r_factor, jnp.where(mask[:, None], rows, 0.0)
        )
        np.testing.assert_array_equal(q_factor[1], jnp.eye(8)[6])
        np.testing.assert_array_equal(q_factor[5], jnp.eye(8)[7])

    def test_delete_row(self, make_problem) -> None:
        """A deleted row leaves the exact dead slot structure behind."""
        rows, _ = make_problem(8, 5)
        q_factor, r_factor = masked_complete_qr(rows, jnp.ones(8, dtype=bool))
        q_factor, r_factor = givens_delete_row(q_factor, r_factor, 3)
        self._check_factorisation(q_factor, r_factor, rows.at[3].set(0.0))
        np.testing.assert_array_equal(q_factor[3], jnp.eye(8)[7])
        np.testing.assert_array_equal(r_factor[-1], 0.0)

    def test_repeated_deletes(self, make_problem) -> None:
        """Dead slots stay on the trailing columns over repeated deletions."""
        rows, _ = make_problem(8, 5)
        q_factor, r_factor = masked_complete_qr(rows, jnp.ones(8, dtype=bool))
        for slot in (6, 0, 2):
            q_factor, r_factor = givens_delete_row(q_factor, r_factor, slot)
        expected = rows.at[jnp.array([6, 0, 2])].set(0.0)
        self._check_factorisation(q_factor, r_factor, expected)
        np.testing.assert_allclose(q_factor[jnp.array([6, 0, 2]), :5], 0.0)

    def test_insert_row(self, make_problem) -> None:
        """Inserting into a freed slot restores a full factorisation."""
        rows, _ = make_problem(8, 5)
        new_row = jnp.linspace(-1.0, 1.0, 5)
        q_factor, r_factor = masked_complete_qr(rows, jnp.ones(8, dtype=bool))
        q_factor, r_factor = givens_delete_row(q_factor, r_factor, 4)
        q_factor, r_factor = givens_insert_row(q_factor, r_factor, 4, new_row)
        self._check_factorisation(q_factor, r_factor, rows.at[4].set(new_row))
        np.testing.assert_allclose(r_factor[5:], 0.0, atol=1e-12)


class TestResolveKernelDowndater:
    """Tests for :func:`resolve_kernel_downdater`."""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("FullQR", FullQRDowndater),
            ("givens", GivensDowndater),
            ("Cholesky", CholeskyDowndater),
            ("full_qr_up_down", FullQRUpDowndater),
            ("GivensUpDown", GivensUpDowndater),
            ("GivensUpDowndater", GivensUpDowndater),
        ],
    )
    def test_names(self, name: str, expected: type[KernelDowndater]) -> None:
        """Names are matched loosely."""
        assert type(resolve_kernel_downdater(name)) is expected

    def test_kwargs(self) -> None:
        """Keyword arguments reach the constructor."""
        downdater = resolve_kernel_downdater("cholesky", k=4, pct_full_qr=5.0)
        assert downdater.k == 4
        assert downdater.pct_full_qr == 5.0

    def test_unknown(self) -> None:
        """Unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown kernel downdater"):
            resolve_kernel_downdater("householder")
