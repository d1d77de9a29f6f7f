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
Kernel downdater based on Sherman-Morrison updates of an inverse Gram matrix.

At a reset, the live rows are factorised as :math:`V_S = U R` and the orthonormal basis
:math:`U` is stored. Between resets the basis is left untouched; removing the row in
slot :math:`p` only zeroes :math:`u_p`, and the inverse of the Gram matrix
:math:`G = U_S^T U_S` is updated by the Sherman-Morrison formula

.. math::
    G^{-1} \leftarrow G^{-1} + \frac{z z^T}{1 - u_p^T z},\quad z = G^{-1} u_p,

together with the leverages :math:`\ell_i = u_i^T G^{-1} u_i`, which gain
:math:`(u_i^T z)^2 / (1 - u_p^T z)`. One removal therefore costs
:math:`\mathcal{O}(N^2 + MN)`.

Rounding errors accumulate between resets; a full QR reset is performed on a
logarithmically spaced schedule of iterations (dense early in the run, where the active
set is large), and whenever the Sherman-Morrison denominator is too close to zero.
"""

import logging

import jax
import jax.numpy as jnp
from jaxtyping import Array, Float, Integer
from typing_extensions import override

from carathex.downdaters.base import (
    DowndaterState,
    KernelDowndater,
    masked_orthonormal_basis,
    row_leverages,
)
from carathex.on_demand import MatrixLike, read_rows
from carathex.util import NearSingularUpdateError, logarithmic_reset_schedule
from carathex.validation import validate_in_range

_logger = logging.getLogger(__name__)


class CholeskyState(DowndaterState):
    """
    State of a :class:`CholeskyDowndater`.

    :param rows: Rows of the moment matrix held by each slot
    :param basis: Basis of the live rows' range, zero on dead slots
    :param gram_inverse: Inverse of the Gram matrix of the live rows of ``basis``
    :param leverages: Leverage of each slot
    :param iteration: Number of downdates applied so far
    :param schedule: Iterations at which the factorisation is recomputed from scratch
    """

    rows: Float[Array, "w n"]
    basis: Float[Array, "w n"]
    gram_inverse: Float[Array, "n n"]
    leverages: Float[Array, " w"]
    iteration: int
    schedule: frozenset[int]


class CholeskyDowndater(KernelDowndater[CholeskyState]):
    r"""
    Kernel downdater that downdates an inverse Gram matrix by Sherman-Morrison updates.

    :param k: Maximum number of kernel vectors returned per call
    :param pct_full_qr: Percentage of iterations, logarithmically spaced, at which the
        factorisation is recomputed by a full QR decomposition
    :param sm_tolerance: Smallest accepted magnitude of the Sherman-Morrison denominator
    :param full_q: If :data:`True`, re-orthonormalise the stored basis with the Cholesky
        factor of the inverse Gram matrix after every removal, at a cost of
        :math:`\mathcal{O}(N^3 + MN^2)` per call
    :param recover_near_singular: If :data:`True`, a near-singular update triggers a
        full QR reset; otherwise the :exc:`~carathex.util.NearSingularUpdateError` is
        raised
    """

    pct_full_qr: float = 10.0
    sm_tolerance: float = 1e-6
    full_q: bool = False
    recover_near_singular: bool = True

    def __check_init__(self):
        """Check that the reset percentage and tolerance are valid."""
        validate_in_range(self.pct_full_qr, "pct_full_qr", False, 0.0, 100.0)
        validate_in_range(self.sm_tolerance, "sm_tolerance", False, lower_bound=0.0)

    @override
    def init(self, matrix: MatrixLike) -> CholeskyState:
        n_rows, n_columns = matrix.shape
        rows = read_rows(matrix, jnp.arange(n_rows))
        mask = jnp.ones(n_rows, dtype=bool)
        schedule = logarithmic_reset_schedule(n_rows - n_columns, self.pct_full_qr)
        return self._reset(
            CholeskyState(
                jnp.arange(n_rows),
                mask,
                rows,
                jnp.zeros_like(rows),
                jnp.eye(n_columns, dtype=rows.dtype),
                jnp.zeros(n_rows, rows.dtype),
                0,
                schedule,
            )
        )

    @override
    def slot_kernel_vectors(self, state: CholeskyState) -> Float[Array, "c w"]:
        return self._projection_kernel_vectors(
            state, state.basis, state.leverages, state.gram_inverse
        )

    @override
    def downdate(
        self, state: CholeskyState, matrix: MatrixLike, index: int
    ) -> CholeskyState:
        del matrix
        slot = self.find_slot(state, index)
        iteration = state.iteration + 1
        mask = state.mask.at[slot].set(False)
        removed = CholeskyState(
            state.indices,
            mask,
            state.rows,
            state.basis,
            state.gram_inverse,
            state.leverages,
            iteration,
            state.schedule,
        )
        if iteration in state.schedule:
            _logger.debug("Scheduled full QR reset at iteration %d", iteration)
            return self._reset(removed)
        try:
            basis, gram_inverse, leverages = self._sherman_morrison(state, slot)
        except NearSingularUpdateError:
            if not self.recover_near_singular:
                raise
            _logger.debug(
                "Near-singular update at iteration %d; recomputing the factorisation",
                iteration,
            )
            return self._reset(removed)
        if self.full_q:
            basis, gram_inverse, leverages = _reorthonormalise(basis, gram_inverse)
        return CholeskyState(
            state.indices,
            mask,
            state.rows,
            basis,
            gram_inverse,
            leverages,
            iteration,
            state.schedule,
        )

    def _sherman_morrison(
        self, state: CholeskyState, slot: int
    ) -> tuple[Float[Array, "w n"], Float[Array, "n n"], Float[Array, " w"]]:
        """Remove ``slot`` from the inverse Gram matrix and the leverages."""
        basis, gram_inverse, leverages, denominator = _sherman_morrison_downdate(
            state.basis, state.gram_inverse, state.leverages, slot
        )
        if abs(float(denominator)) < self.sm_tolerance:
            raise NearSingularUpdateError(
                f"Sherman-Morrison denominator {float(denominator):.3e} is below the "
                f"tolerance {self.sm_tolerance:.3e}"
            )
        return basis, gram_inverse, leverages

    @staticmethod
    def _reset(state: CholeskyState) -> CholeskyState:
        """Recompute the basis of the live rows by a full QR decomposition."""
        basis = masked_orthonormal_basis(state.rows, state.mask)
        return CholeskyState(
            state.indices,
            state.mask,
            state.rows,
            basis,
            jnp.eye(basis.shape[1], dtype=basis.dtype),
            row_leverages(basis),
            state.iteration,
            state.schedule,
        )


@jax.jit
def _sherman_morrison_downdate(
    basis: Float[Array, "w n"],
    gram_inverse: Float[Array, "n n"],
    leverages: Float[Array, " w"],
    slot: Integer[Array, ""],
) -> tuple[
    Float[Array, "w n"], Float[Array, "n n"], Float[Array, " w"], Float[Array, ""]
]:
    removed = basis[slot]
    direction = gram_inverse @ removed
    denominator = 1.0 - removed @ direction
    safe_denominator = jnp.where(denominator == 0, 1.0, denominator)
    projections = basis @ direction
    gram_inverse = gram_inverse + jnp.outer(direction, direction) / safe_denominator
    leverages = leverages + projections**2 / safe_denominator
    return (
        basis.at[slot].set(0.0),
        gram_inverse,
        leverages.at[slot].set(0.0),
        denominator,
    )


@jax.jit
def _reorthonormalise(
    basis: Float[Array, "w n"], gram_inverse: Float[Array, "n n"]
) -> tuple[Float[Array, "w n"], Float[Array, "n n"], Float[Array, " w"]]:
    # G^{-1} = L L^T, so (U L)^T (U L) = L^T G L = I.
    factor = jnp.linalg.cholesky(gram_inverse)
    basis = basis @ factor
    return basis, jnp.eye(basis.shape[1], dtype=basis.dtype), row_leverages(basis)

