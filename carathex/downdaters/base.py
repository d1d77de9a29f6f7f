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
Abstract base classes and shared numerics for kernel downdaters.

A kernel downdater maintains a factorisation of the active rows :math:`V_S` of the
moment matrix :math:`V \in \mathbb{R}^{M \times N}`, and extracts vectors :math:`q` in
the kernel of :math:`V_S^T` from it. The factorisation lives in a
:class:`DowndaterState`, which is created by :meth:`KernelDowndater.init` and threaded
through :meth:`KernelDowndater.downdate`; the downdater itself only holds configuration.

.. code-block:: python

    state = downdater.init(matrix)
    vectors = downdater.kernel_vectors(state)
    state = downdater.downdate(state, matrix, index)

States are laid out over a fixed number of *slots*: ``state.indices[slot]`` is the row
of :math:`V` held by a slot, and ``state.mask[slot]`` says whether it is alive.
Removing an index frees its slot; windowed downdaters refill the slot they have just
freed. The fixed layout keeps every array shape constant over a run, so the jit compiled
kernels in this package are traced once.

All downdaters build their kernel vectors in the same way. Given a basis :math:`B` of
:math:`\operatorname{range}(V_S)` and the inverse :math:`G^{-1}` of its Gram matrix
(the identity for an orthonormal basis), the leverage of slot :math:`i` is
:math:`\ell_i = b_i^T G^{-1} b_i`. The :math:`c` live slots with the smallest leverage
are selected, and for each selected slot :math:`p` the kernel vector is the normalised
projection :math:`q = (I - B G^{-1} B^T) e_p`, with :math:`\|q\|^2 = 1 - \ell_p`.
"""

from abc import abstractmethod
from functools import partial
from typing import Generic, Optional, TypeVar

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Float, Integer

from carathex.on_demand import MatrixLike
from carathex.util import DegenerateKernelError
from carathex.validation import validate_in_range

_State = TypeVar("_State", bound="DowndaterState")


class DowndaterState(eqx.Module):
    """
    Slot layout shared by the states of every kernel downdater.

    :param indices: Row index of the moment matrix held by each slot
    :param mask: Whether each slot is alive (part of the active set)
    """

    indices: Integer[Array, " w"]
    mask: Bool[Array, " w"]

    @property
    def num_active(self) -> int:
        """Return the number of live slots."""
        return int(jnp.sum(self.mask))


class KernelDowndater(eqx.Module, Generic[_State]):
    """
    Base class for kernel downdaters.

    :param k: Maximum number of kernel vectors returned per call
    """

    k: int = eqx.field(default=1, converter=int)

    def __check_init__(self):
        """Check that 'k' is a positive integer."""
        validate_in_range(self.k, "k", True, lower_bound=0)

    @abstractmethod
    def init(self, matrix: MatrixLike) -> _State:
        """
        Factorise the initially active rows of ``matrix``.

        :param matrix: Dense or on-demand moment matrix with at least as many rows as
            columns
        :return: The initial downdater state
        """

    @abstractmethod
    def slot_kernel_vectors(self, state: _State) -> Float[Array, "c w"]:
        """
        Return up to ``k`` unit kernel vectors laid out over the state slots.

        Entries on dead slots are zero.

        :param state: Current downdater state
        :return: ``min(k, s - N)`` kernel vectors of :math:`V_S^T`, where ``s`` is the
            number of live slots
        :raises DegenerateKernelError: If no kernel vector can be formed
        """

    @abstractmethod
    def downdate(self, state: _State, matrix: MatrixLike, index: int) -> _State:
        """
        Remove row ``index`` from the active set and re-establish the factorisation.

        :param state: Current downdater state
        :param matrix: The moment matrix the state was initialised from
        :param index: Global row index to remove; must be active
        :return: The updated downdater state
        :raises ValueError: If ``index`` is not active
        """

    def kernel_vectors(self, state: _State) -> Float[Array, "c s"]:
        """
        Return up to ``k`` unit kernel vectors over the active indices.

        Entries are ordered like :meth:`active_indices`.

        :param state: Current downdater state
        :return: ``min(k, s - N)`` kernel vectors of :math:`V_S^T`
        :raises DegenerateKernelError: If no kernel vector can be formed
        """
        return self.slot_kernel_vectors(state)[:, state.mask]

    def active_indices(self, state: _State) -> Integer[Array, " s"]:
        """Return the row indices held by the live slots of ``state``."""
        return state.indices[state.mask]

    @staticmethod
    def find_slot(state: DowndaterState, index: int) -> int:
        """
        Return the live slot holding row ``index``.

        :raises ValueError: If ``index`` is not active
        """
        (slots,) = jnp.nonzero(state.mask & (state.indices == index))
        if slots.shape[0] == 0:
            raise ValueError(f"index {index} is not in the active set")
        return int(slots[0])

    def _projection_kernel_vectors(
        self,
        state: DowndaterState,
        basis: Float[Array, "w n"],
        leverages: Float[Array, " w"],
        metric: Optional[Float[Array, "n n"]] = None,
    ) -> Float[Array, "c w"]:
        """
        Build kernel vectors from a basis of the active rows' range.

        :param state: Current downdater state
        :param basis: Basis of the range of the active rows, zero on dead slots
        :param leverages: Leverage of each slot under ``basis`` and ``metric``
        :param metric: Inverse of the Gram matrix of ``basis``; :data:`None` if
            ``basis`` is orthonormal
        :return: The kernel vectors, laid out over slots
        """
        width, rank = basis.shape
        live = state.num_active
        count = min(self.k, live - rank)
        if count <= 0:
            raise DegenerateKernelError(
                f"{live} active rows cannot have a kernel with {rank} columns"
            )
        vectors, norms = _leverage_kernel_vectors(
            basis, leverages, metric, state.mask, min(self.k, width)
        )
        vectors, norms = vectors[:count], norms[:count]
        tolerance = jnp.sqrt(jnp.finfo(basis.dtype).eps)
        if bool(jnp.any(norms <= tolerance)):
            raise DegenerateKernelError(
                f"kernel vector norm {float(jnp.min(norms)):.3e} is numerically zero"
            )
        return vectors


@partial(jax.jit, static_argnames="num")
def _leverage_kernel_vectors(
    basis: Float[Array, "w n"],
    leverages: Float[Array, " w"],
    metric: Optional[Float[Array, "n n"]],
    mask: Bool[Array, " w"],
    num: int,
) -> tuple[Float[Array, "c w"], Float[Array, " c"]]:
    """Project the unit vectors of the lowest leverage slots off the basis range."""
    width = basis.shape[0]
    pivots = jnp.argsort(jnp.where(mask, leverages, jnp.inf))[:num]
    coefficients = basis[pivots] if metric is None else basis[pivots] @ metric
    units = jnp.zeros((num, width), basis.dtype).at[jnp.arange(num), pivots].set(1.0)
    vectors = jnp.where(mask, units - coefficients @ basis.T, 0.0)
    norms = jnp.linalg.norm(vectors, axis=1)
    return vectors / jnp.where(norms > 0, norms, 1.0)[:, None], norms


@jax.jit
def masked_orthonormal_basis(
    rows: Float[Array, "w n"], mask: Bool[Array, " w"]
) -> Float[Array, "w n"]:
    """
    Return the thin Q factor of the live rows, zero on dead slots.

    :param rows: Rows held by each slot
    :param mask: Whether each slot is alive
    :return: Orthonormal basis of the range of the live rows
    """
    q_factor, _ = jnp.linalg.qr(jnp.where(mask[:, None], rows, 0.0))
    return jnp.where(mask[:, None], q_factor, 0.0)


def row_leverages(basis: Float[Array, "w n"]) -> Float[Array, " w"]:
    """Return the leverages (squared row norms) of an orthonormal basis."""
    return jnp.sum(basis**2, axis=1)
