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
Kernel downdaters based on the QR factorisation of the active rows.

:class:`FullQRDowndater` recomputes a thin QR factorisation of :math:`V_S` after every
removal. :class:`GivensDowndater` instead keeps a complete orthogonal factor
:math:`Q \in \mathbb{R}^{M \times M}` and removes a row from it with a sweep of Givens
rotations. Both hold the range of :math:`V_S` in the leading :math:`N` columns of their
orthogonal factor.

The Givens helpers in this module operate on the stacked matrix :math:`[Q^T \mid R]`,
whose rows are rotated in pairs. After :func:`givens_delete_row` the freed slot ``r``
has :math:`Q_{r,:} = e_{w-1}^T` and the last row of :math:`R` is zero; this is exactly
the structure :func:`givens_insert_row` expects when it places a new row into slot
``r``. Dead slots therefore always occupy the trailing columns of :math:`Q`.
"""

import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Float, Integer
from typing_extensions import override

from carathex.downdaters.base import (
    DowndaterState,
    KernelDowndater,
    masked_orthonormal_basis,
    row_leverages,
)
from carathex.on_demand import MatrixLike, read_rows


class FullQRState(DowndaterState):
    """
    State of a :class:`FullQRDowndater`.

    :param rows: Rows of the moment matrix held by each slot
    :param basis: Thin Q factor of the live rows, zero on dead slots
    """

    rows: Float[Array, "w n"]
    basis: Float[Array, "w n"]


class FullQRDowndater(KernelDowndater[FullQRState]):
    r"""
    Kernel downdater that recomputes a thin QR factorisation on every removal.

    Each call to :meth:`downdate` costs :math:`\mathcal{O}(|S| N^2)`. This is the most
    expensive, and the most numerically stable, downdater; the others are validated
    against it.

    :param k: Maximum number of kernel vectors returned per call
    """

    @override
    def init(self, matrix: MatrixLike) -> FullQRState:
        n_rows = matrix.shape[0]
        rows = read_rows(matrix, jnp.arange(n_rows))
        mask = jnp.ones(n_rows, dtype=bool)
        return FullQRState(
            jnp.arange(n_rows), mask, rows, masked_orthonormal_basis(rows, mask)
        )

    @override
    def slot_kernel_vectors(self, state: FullQRState) -> Float[Array, "c w"]:
        return self._projection_kernel_vectors(
            state, state.basis, row_leverages(state.basis)
        )

    @override
    def downdate(
        self, state: FullQRState, matrix: MatrixLike, index: int
    ) -> FullQRState:
        del matrix
        slot = self.find_slot(state, index)
        mask = state.mask.at[slot].set(False)
        return FullQRState(
            state.indices,
            mask,
            state.rows,
            masked_orthonormal_basis(state.rows, mask),
        )


class GivensState(DowndaterState):
    """
    State of a :class:`GivensDowndater`.

    :param q_factor: Complete orthogonal factor; live rows span the first ``N``
        columns, dead slots map to the trailing unit columns
    :param n_columns: Number of columns ``N`` of the moment matrix
    """

    q_factor: Float[Array, "w w"]
    n_columns: int


class GivensDowndater(KernelDowndater[GivensState]):
    r"""
    Kernel downdater that removes rows from a complete Q factor by Givens rotations.

    Each call to :meth:`downdate` costs :math:`\mathcal{O}(|S|^2)`, and performs no
    reorthogonalisation; rounding errors accumulate over a run.

    :param k: Maximum number of kernel vectors returned per call
    """

    @override
    def init(self, matrix: MatrixLike) -> GivensState:
        n_rows, n_columns = matrix.shape
        rows = read_rows(matrix, jnp.arange(n_rows))
        mask = jnp.ones(n_rows, dtype=bool)
        q_factor, _ = masked_complete_qr(rows, mask)
        return GivensState(jnp.arange(n_rows), mask, q_factor, n_columns)

    @override
    def slot_kernel_vectors(self, state: GivensState) -> Float[Array, "c w"]:
        basis = state.q_factor[:, : state.n_columns]
        return self._projection_kernel_vectors(state, basis, row_leverages(basis))

    @override
    def downdate(
        self, state: GivensState, matrix: MatrixLike, index: int
    ) -> GivensState:
        del matrix
        slot = self.find_slot(state, index)
        width = state.q_factor.shape[0]
        # The R factor is not needed to track the range of the live rows.
        q_factor, _ = givens_delete_row(
            state.q_factor, jnp.zeros((width, 0), state.q_factor.dtype), slot
        )
        return GivensState(
            state.indices, state.mask.at[slot].set(False), q_factor, state.n_columns
        )


def masked_complete_qr(
    rows: Float[Array, "w n"], mask: Bool[Array, " w"]
) -> tuple[Float[Array, "w w"], Float[Array, "w n"]]:
    """
    Return a complete QR factorisation of the live rows laid out over slots.

    Live slots span the leading columns of ``Q`` (in slot order); each dead slot is
    mapped to one of the trailing unit columns, and the corresponding rows of ``R`` are
    zero.

    :param rows: Rows held by each slot
    :param mask: Whether each slot is alive
    :return: The orthogonal factor ``Q`` and the upper triangular factor ``R``
    """
    width, n_columns = rows.shape
    (live,) = jnp.nonzero(mask)
    (dead,) = jnp.nonzero(~mask)
    num_live = live.shape[0]
    live_q, live_r = jnp.linalg.qr(rows[live], mode="complete")
    q_factor = jnp.zeros((width, width), rows.dtype)
    q_factor = q_factor.at[live[:, None], jnp.arange(num_live)].set(live_q)
    q_factor = q_factor.at[dead, num_live + jnp.arange(dead.shape[0])].set(1.0)
    r_factor = jnp.zeros((width, n_columns), rows.dtype).at[:num_live].set(live_r)
    return q_factor, r_factor


def _rotation(
    leading: Float[Array, ""], trailing: Float[Array, ""]
) -> tuple[Float[Array, ""], Float[Array, ""]]:
    """Return the rotation mapping ``(leading, trailing)`` onto ``(radius, 0)``."""
    radius = jnp.hypot(leading, trailing)
    safe_radius = jnp.where(radius > 0, radius, 1.0)
    cosine = jnp.where(trailing == 0, 1.0, leading / safe_radius)
    sine = jnp.where(trailing == 0, 0.0, trailing / safe_radius)
    return cosine, sine


@jax.jit
def givens_delete_row(
    q_factor: Float[Array, "w w"],
    r_factor: Float[Array, "w n"],
    slot: Integer[Array, ""],
) -> tuple[Float[Array, "w w"], Float[Array, "w n"]]:
    r"""
    Remove the row in ``slot`` from a complete QR factorisation.

    Rows ``j - 1`` and ``j`` of :math:`[Q^T \mid R]` are rotated, from the bottom up,
    so that column ``slot`` of :math:`Q^T` collects in the first row. That row is then
    moved to the end and replaced by the exact dead-slot structure.

    :param q_factor: Complete orthogonal factor
    :param r_factor: Upper triangular factor; may have zero columns
    :param slot: Slot to remove
    :return: The downdated factors
    """
    width = q_factor.shape[0]
    stacked = jnp.hstack([q_factor.T, r_factor])

    def _rotate(lower, upper):
        cosine, sine = _rotation(upper[slot], lower[slot])
        return cosine * upper + sine * lower, cosine * lower - sine * upper

    head, tail = jax.lax.scan(_rotate, stacked[-1], stacked[:-1], reverse=True)
    stacked = jnp.vstack([tail, head[None]])
    stacked = stacked.at[:, slot].set(jnp.zeros(width).at[-1].set(1.0))
    stacked = stacked.at[-1].set(jnp.zeros_like(head).at[slot].set(1.0))
    return stacked[:, :width].T, stacked[:, width:]


@jax.jit
def givens_insert_row(
    q_factor: Float[Array, "w w"],
    r_factor: Float[Array, "w n"],
    slot: Integer[Array, ""],
    row: Float[Array, " n"],
) -> tuple[Float[Array, "w w"], Float[Array, "w n"]]:
    """
    Insert ``row`` into the dead ``slot`` of a complete QR factorisation.

    ``slot`` must have been freed by :func:`givens_delete_row`, so that it maps to the
    last column of ``Q`` and the last row of ``R`` is zero. The new row is placed in the
    last row of ``R`` and eliminated against its diagonal.

    :param q_factor: Complete orthogonal factor
    :param r_factor: Upper triangular factor
    :param slot: Dead slot to fill
    :param row: Row of the moment matrix to insert
    :return: The updated factors
    """
    width, n_columns = r_factor.shape
    stacked = jnp.hstack([q_factor.T, r_factor])
    stacked = stacked.at[-1, width:].set(row)

    def _rotate(lower, inputs):
        upper, column = inputs
        cosine, sine = _rotation(upper[width + column], lower[width + column])
        return cosine * lower - sine * upper, cosine * upper + sine * lower

    last, leading = jax.lax.scan(
        _rotate, stacked[-1], (stacked[:n_columns], jnp.arange(n_columns))
    )
    stacked = stacked.at[:n_columns].set(leading)
    stacked = stacked.at[-1].set(last.at[width:].set(0.0))
    return stacked[:, :width].T, stacked[:, width:]

