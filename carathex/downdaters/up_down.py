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
Kernel downdaters that work on a bounded window of the moment matrix.

Rather than factorising all :math:`M` rows of :math:`V`, an up/down downdater only ever
holds a window of :math:`N + k` rows, taken in turn from an ordering of
:math:`\{0, \dots, M - 1\}`. Each removal frees a slot, which is immediately refilled
with the next row of the ordering; once the ordering is exhausted the window shrinks
towards :math:`N` rows.

Rows that leave the window are forgotten by an
:class:`~carathex.on_demand.OnDemandMatrix` that stores rows, so at most :math:`N + k`
rows are ever materialised.
"""

import logging
from abc import abstractmethod
from typing import Optional, TypeVar

import equinox as eqx
import jax.numpy as jnp
import jax.random as jr
from jaxtyping import Array, Float, Integer
from typing_extensions import override

from carathex.downdaters.base import (
    DowndaterState,
    KernelDowndater,
    masked_orthonormal_basis,
    row_leverages,
)
from carathex.downdaters.qr import (
    givens_delete_row,
    givens_insert_row,
    masked_complete_qr,
)
from carathex.on_demand import MatrixLike, forget_row, read_rows
from carathex.util import (
    ExhaustedIndicesError,
    KeyArrayLike,
    linear_reset_schedule,
)
from carathex.validation import validate_in_range, validate_permutation

_logger = logging.getLogger(__name__)


class WindowState(DowndaterState):
    """
    Slot layout of a windowed downdater.

    :param rows: Rows of the moment matrix held by each slot
    :param order: Order in which row indices enter the window
    :param cursor: Position in ``order`` of the next row to enter the window
    """

    rows: Float[Array, "w n"]
    order: Integer[Array, " m"]
    cursor: int


_WindowState = TypeVar("_WindowState", bound=WindowState)


class WindowedKernelDowndater(KernelDowndater[_WindowState]):
    """
    Base class for kernel downdaters working on a window of ``N + k`` rows.

    :param k: Maximum number of kernel vectors returned per call; the window holds
        ``N + k`` rows
    :param index_order: Permutation of the row indices giving the order in which rows
        enter the window; if :data:`None`, a random permutation is drawn
    :param random_key: Key for the random permutation used when ``index_order`` is
        :data:`None`
    """

    index_order: Optional[Integer[Array, " m"]] = None
    random_key: KeyArrayLike = eqx.field(default_factory=lambda: jr.key(0))

    def window_order(self, n_rows: int) -> Integer[Array, " m"]:
        """
        Return the order in which the rows of an ``n_rows`` matrix enter the window.

        :param n_rows: Number of rows of the moment matrix
        :return: A permutation of ``range(n_rows)``
        :raises ValueError: If ``index_order`` is not a permutation of ``range(n_rows)``
        """
        if self.index_order is None:
            return jr.permutation(self.random_key, n_rows)
        validate_permutation(self.index_order, n_rows, "index_order")
        return jnp.asarray(self.index_order)

    def _initial_window(
        self, matrix: MatrixLike
    ) -> tuple[Integer[Array, " m"], Integer[Array, " w"], Float[Array, "w n"]]:
        """Return the ordering and the indices and rows of the first window."""
        n_rows, n_columns = matrix.shape
        order = self.window_order(n_rows)
        indices = order[: min(n_columns + self.k, n_rows)]
        return order, indices, read_rows(matrix, indices)

    @override
    def downdate(
        self, state: _WindowState, matrix: MatrixLike, index: int
    ) -> _WindowState:
        slot = self.find_slot(state, index)
        if state.cursor < state.order.shape[0]:
            forget_row(matrix, index)
            inserted = int(state.order[state.cursor])
            return self._replace(state, slot, inserted, read_rows(matrix, inserted)[0])
        if state.num_active <= state.rows.shape[1]:
            raise ExhaustedIndicesError(
                f"cannot remove index {index}: the ordering is exhausted and the "
                f"window holds only {state.num_active} rows"
            )
        forget_row(matrix, index)
        return self._remove(state, slot)

    @abstractmethod
    def _replace(
        self,
        state: _WindowState,
        slot: int,
        inserted: int,
        row: Float[Array, " n"],
    ) -> _WindowState:
        """Replace the row held by ``slot`` with row ``inserted`` of the matrix."""

    @abstractmethod
    def _remove(self, state: _WindowState, slot: int) -> _WindowState:
        """Free ``slot`` without refilling it."""


class FullQRUpDownState(WindowState):
    """
    State of a :class:`FullQRUpDowndater`.

    :param basis: Thin Q factor of the live rows of the window, zero on dead slots
    """

    basis: Float[Array, "w n"]


class FullQRUpDowndater(WindowedKernelDowndater[FullQRUpDownState]):
    r"""
    Windowed kernel downdater that refactorises the window on every update.

    Each call to :meth:`downdate` costs :math:`\mathcal{O}((N + k)^3)`.

    :param k: Maximum number of kernel vectors returned per call; the window holds
        ``N + k`` rows
    :param index_order: Permutation of the row indices giving the order in which rows
        enter the window; if :data:`None`, a random permutation is drawn
    :param random_key: Key for the random permutation used when ``index_order`` is
        :data:`None`
    """

    @override
    def init(self, matrix: MatrixLike) -> FullQRUpDownState:
        order, indices, rows = self._initial_window(matrix)
        mask = jnp.ones(indices.shape[0], dtype=bool)
        return FullQRUpDownState(
            indices,
            mask,
            rows,
            order,
            indices.shape[0],
            masked_orthonormal_basis(rows, mask),
        )

    @override
    def slot_kernel_vectors(self, state: FullQRUpDownState) -> Float[Array, "c w"]:
        return self._projection_kernel_vectors(
            state, state.basis, row_leverages(state.basis)
        )

    @override
    def _replace(
        self,
        state: FullQRUpDownState,
        slot: int,
        inserted: int,
        row: Float[Array, " n"],
    ) -> FullQRUpDownState:
        rows = state.rows.at[slot].set(row)
        return FullQRUpDownState(
            state.indices.at[slot].set(inserted),
            state.mask,
            rows,
            state.order,
            state.cursor + 1,
            masked_orthonormal_basis(rows, state.mask),
        )

    @override
    def _remove(self, state: FullQRUpDownState, slot: int) -> FullQRUpDownState:
        mask = state.mask.at[slot].set(False)
        return FullQRUpDownState(
            state.indices,
            mask,
            state.rows,
            state.order,
            state.cursor,
            masked_orthonormal_basis(state.rows, mask),
        )


class GivensUpDownState(WindowState):
    """
    State of a :class:`GivensUpDowndater`.

    :param q_factor: Complete orthogonal factor of the window
    :param r_factor: Upper triangular factor of the window
    :param iteration: Number of downdates applied so far
    :param schedule: Iterations at which the factorisation is recomputed from scratch
    """

    q_factor: Float[Array, "w w"]
    r_factor: Float[Array, "w n"]
    iteration: int
    schedule: frozenset[int]


class GivensUpDowndater(WindowedKernelDowndater[GivensUpDownState]):
    r"""
    Windowed kernel downdater updating a QR factorisation by Givens rotations.

    Each call to :meth:`downdate` deletes a row from, and inserts a row into, the QR
    factorisation of the window at a cost of :math:`\mathcal{O}((N + k)^2)`. A full QR
    decomposition of the window is recomputed on a linearly spaced schedule of
    iterations.

    :param k: Maximum number of kernel vectors returned per call; the window holds
        ``N + k`` rows
    :param index_order: Permutation of the row indices giving the order in which rows
        enter the window; if :data:`None`, a random permutation is drawn
    :param random_key: Key for the random permutation used when ``index_order`` is
        :data:`None`
    :param pct_full_qr: Percentage of iterations, evenly spaced, at which the window is
        refactorised by a full QR decomposition
    """

    pct_full_qr: float = 2.0

    def __check_init__(self):
        """Check that the reset percentage is valid."""
        validate_in_range(self.pct_full_qr, "pct_full_qr", False, 0.0, 100.0)

    @override
    def init(self, matrix: MatrixLike) -> GivensUpDownState:
        order, indices, rows = self._initial_window(matrix)
        n_rows, n_columns = matrix.shape
        mask = jnp.ones(indices.shape[0], dtype=bool)
        q_factor, r_factor = masked_complete_qr(rows, mask)
        return GivensUpDownState(
            indices,
            mask,
            rows,
            order,
            indices.shape[0],
            q_factor,
            r_factor,
            0,
            linear_reset_schedule(n_rows - n_columns, self.pct_full_qr),
        )

    @override
    def slot_kernel_vectors(self, state: GivensUpDownState) -> Float[Array, "c w"]:
        basis = state.q_factor[:, : state.r_factor.shape[1]]
        return self._projection_kernel_vectors(state, basis, row_leverages(basis))

    @override
    def _replace(
        self,
        state: GivensUpDownState,
        slot: int,
        inserted: int,
        row: Float[Array, " n"],
    ) -> GivensUpDownState:
        q_factor, r_factor = givens_delete_row(state.q_factor, state.r_factor, slot)
        q_factor, r_factor = givens_insert_row(q_factor, r_factor, slot, row)
        return self._maybe_reset(
            GivensUpDownState(
                state.indices.at[slot].set(inserted),
                state.mask,
                state.rows.at[slot].set(row),
                state.order,
                state.cursor + 1,
                q_factor,
                r_factor,
                state.iteration + 1,
                state.schedule,
            )
        )

    @override
    def _remove(self, state: GivensUpDownState, slot: int) -> GivensUpDownState:
        q_factor, r_factor = givens_delete_row(state.q_factor, state.r_factor, slot)
        return self._maybe_reset(
            GivensUpDownState(
                state.indices,
                state.mask.at[slot].set(False),
                state.rows,
                state.order,
                state.cursor,
                q_factor,
                r_factor,
                state.iteration + 1,
                state.schedule,
            )
        )

    @staticmethod
    def _maybe_reset(state: GivensUpDownState) -> GivensUpDownState:
        """Refactorise the window if the current iteration is scheduled for a reset."""
        if state.iteration not in state.schedule:
            return state
        _logger.debug("Scheduled full QR reset at iteration %d", state.iteration)
        q_factor, r_factor = masked_complete_qr(state.rows, state.mask)
        return eqx.tree_at(
            lambda s: (s.q_factor, s.r_factor), state, (q_factor, r_factor)
        )
