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
Caratheodory pruning of nonnegatively weighted point sets.

Take a moment matrix :math:`V \in \mathbb{R}^{M \times N}`, with :math:`M \ge N`, whose
row :math:`i` holds the :math:`N` test-function values (moments) of point :math:`i`,
and nonnegative weights :math:`w \in \mathbb{R}^M`. By Caratheodory's theorem for conic
hulls, there exist nonnegative weights :math:`\hat{w}` supported on at most :math:`N`
points with the same moments

.. math::
    V^T \hat{w} = V^T w = \eta.

The constructive proof of the theorem is the pruning loop implemented here. While more
than :math:`N` rows are active, a kernel downdater provides a vector :math:`q` with
:math:`V_S^T q = 0`; a pruning rule moves the weights along :math:`q` until one of them
reaches zero; and the downdater removes that row from its factorisation. After
:math:`M - N` iterations, :math:`N` rows remain.

.. note::
    If :math:`V` is given with more columns than rows it is transposed, and the moments
    :math:`V w` are preserved instead.

Rounding errors accumulated over the loop are removed by a final correction, which
solves :math:`V_S^T \hat{w}_S = \eta` for the retained rows by least squares.

Either of :math:`V` and :math:`w` may be an on-demand container
(:class:`~carathex.on_demand.OnDemandMatrix`,
:class:`~carathex.on_demand.OnDemandVector`); the moments are then accumulated one
stored vector at a time, and vectors that were not cached beforehand are forgotten
again.
"""

import logging
from collections.abc import Callable
from typing import Any, NamedTuple, Optional, Union

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float, Integer, Shaped
from tqdm import tqdm

from carathex.downdaters import (
    DowndaterState,
    KernelDowndater,
    resolve_kernel_downdater,
)
from carathex.on_demand import (
    MatrixLike,
    OnDemandMatrix,
    OnDemandVector,
    VectorLike,
    read_elements,
    read_rows,
)
from carathex.pruning import PruningRule, resolve_pruning_rule
from carathex.util import (
    DegenerateKernelError,
    ExhaustedIndicesError,
    NearSingularUpdateError,
    NoFeasibleDirectionError,
    PruningFailedError,
    SilentTQDM,
    apply_negative_precision_threshold,
)
from carathex.validation import (
    validate_in_range,
    validate_is_instance,
    validate_moment_matrix,
    validate_weights_length,
)

_logger = logging.getLogger(__name__)

_FATAL_ERRORS = (
    DegenerateKernelError,
    ExhaustedIndicesError,
    NearSingularUpdateError,
    NoFeasibleDirectionError,
)


class PruningResult(NamedTuple):
    """
    Result of a pruning run.

    :param weights: Pruned weights, of the same length as the input weights and zero
        off the retained rows; an :class:`~carathex.on_demand.OnDemandVector` when the
        input weights were on-demand
    :param indices: The retained row indices, in ascending order
    :param error: Final moment error, if requested
    :param errors: Moment error after each iteration, if requested
    """

    weights: Union[Float[Array, " m"], OnDemandVector]
    indices: Integer[Array, " n"]
    error: Optional[float] = None
    errors: Optional[Float[Array, " i"]] = None


def initial_moments(matrix: MatrixLike, weights: VectorLike) -> Float[Array, " n"]:
    r"""
    Return the moments :math:`\eta = V^T w`.

    On-demand inputs are streamed, and any stored vector that was not cached before the
    call is forgotten after use.

    :param matrix: Dense or on-demand moment matrix
    :param weights: Dense or on-demand weights, one per row of ``matrix``
    :return: The moments of the weighted rows
    :raises ValueError: If any weight is negative
    """
    n_rows, n_columns = matrix.shape
    if isinstance(matrix, OnDemandMatrix) and matrix.by_rows:
        moments = jnp.zeros(n_columns, matrix.dtype)
        for index in range(n_rows):
            weight = read_elements(weights, index)[0]
            _check_nonnegative(weight)
            if weight == 0:
                continue
            stored = index in matrix
            moments = moments + weight * matrix.read(index)
            if not stored:
                matrix.forget(index)
        return moments
    dense_weights = read_elements(weights, jnp.arange(n_rows))
    _check_nonnegative(dense_weights)
    if not isinstance(matrix, OnDemandMatrix):
        return matrix.T @ dense_weights
    moments = []
    for index in range(n_columns):
        stored = index in matrix
        moments.append(matrix.read(index) @ dense_weights)
        if not stored:
            matrix.forget(index)
    return jnp.stack(moments)


def _check_nonnegative(weights: Shaped[Array, "..."]) -> None:
    if bool(jnp.any(weights < 0)):
        raise ValueError("'weights' must be nonnegative")


def moment_error(
    matrix: MatrixLike,
    indices: Integer[Array, " s"],
    weights: Float[Array, " s"],
    moments: Float[Array, " n"],
    error_norm: Callable[[Array], Any] = jnp.linalg.norm,
) -> float:
    r"""
    Return the moment error :math:`\|\eta - V_S^T w_S\|` of weighted rows.

    :param matrix: Dense or on-demand moment matrix
    :param indices: Row indices :math:`S`
    :param weights: Weights :math:`w_S` of the rows ``indices``
    :param moments: Target moments :math:`\eta`
    :param error_norm: Norm applied to the moment residual
    :return: The moment error
    """
    rows = read_rows(matrix, indices)
    return float(error_norm(moments - rows.T @ weights))


def correct_weights(
    matrix: MatrixLike, indices: Integer[Array, " s"], moments: Float[Array, " n"]
) -> Float[Array, " s"]:
    r"""
    Solve :math:`V_S^T v = \eta` for the weights of the rows ``indices``.

    The system is solved by least squares, so it may also be applied to a rank
    deficient (or non-square) :math:`V_S`. Nonnegativity of the solution is not
    enforced.

    :param matrix: Dense or on-demand moment matrix
    :param indices: Row indices :math:`S`
    :param moments: Target moments :math:`\eta`
    :return: The weights :math:`v` of the rows ``indices``
    """
    rows = read_rows(matrix, indices)
    solution, *_ = jnp.linalg.lstsq(rows.T, moments)
    return solution


class CaratheodoryPruning(eqx.Module):
    """
    Prune a weighted moment matrix down to as many rows as it has columns.

    :param kernel_downdater: Kernel downdater providing kernel vectors of the active
        rows; its configuration is reused for every call to :meth:`prune`
    :param pruning_rule: Rule choosing the weight to zero on each iteration
    :param correction: If to solve for the retained weights by least squares once the
        loop finishes; the solve is only accepted if it keeps the weights nonnegative
        and does not increase the moment error
    :param zero_tolerance: Weights at or below this value are treated as zero, and
        weights in ``(-zero_tolerance, 0)`` are rounded to zero
    :param return_error: If to report the final moment error
    :param track_error: If to report the moment error after every iteration
    :param error_norm: Norm applied to moment residuals
    :param progress: If to display a :class:`~tqdm.tqdm` progress bar
    :param progress_callback: Callable invoked as ``callback(iteration, total)`` after
        each iteration; raising from it abandons the run between iterations
    """

    kernel_downdater: KernelDowndater
    pruning_rule: PruningRule
    correction: bool = True
    zero_tolerance: float = 1e-16
    return_error: bool = False
    track_error: bool = False
    error_norm: Callable[[Array], Any] = eqx.field(default=jnp.linalg.norm)
    progress: bool = False
    progress_callback: Optional[Callable[[int, int], Any]] = None

    def __check_init__(self):
        """Check the types of the pluggable components and the tolerance."""
        validate_is_instance(self.kernel_downdater, "kernel_downdater", KernelDowndater)
        validate_is_instance(self.pruning_rule, "pruning_rule", PruningRule)
        validate_in_range(self.zero_tolerance, "zero_tolerance", False, lower_bound=0)
        if not callable(self.error_norm):
            raise TypeError("'error_norm' must be callable")
        if self.progress_callback is not None and not callable(self.progress_callback):
            raise TypeError("'progress_callback' must be callable or None")

    def prune(self, matrix: MatrixLike, weights: VectorLike) -> PruningResult:
        """
        Prune ``weights`` to at most ``N`` nonzero entries preserving their moments.

        :param matrix: Dense or on-demand ``M x N`` moment matrix; an ``N x M`` matrix
            with ``M > N`` is transposed
        :param weights: Dense or on-demand nonnegative weights of length ``M``
        :return: The pruned weights, the retained indices and any requested errors
        :raises ValueError: If the inputs have incompatible shapes or the weights are
            negative
        :raises PruningFailedError: If the pruning loop cannot be completed
        """
        if not isinstance(matrix, OnDemandMatrix):
            matrix = jnp.asarray(matrix, dtype=float)
        validate_moment_matrix(matrix)
        if matrix.shape[0] < matrix.shape[1]:
            matrix = matrix.T
        n_rows, n_columns = matrix.shape
        if not isinstance(weights, OnDemandVector):
            weights = jnp.asarray(weights, dtype=float)
        validate_weights_length(weights, n_rows)
        moments = initial_moments(matrix, weights)
        total = n_rows - n_columns
        _logger.info(
            "Pruning %d rows to %d with %s and %s",
            n_rows,
            n_columns,
            type(self.kernel_downdater).__name__,
            type(self.pruning_rule).__name__,
        )
        if total == 0:
            indices = jnp.arange(n_rows)
            error = None
            if self.return_error:
                error = moment_error(
                    matrix,
                    indices,
                    read_elements(weights, indices),
                    moments,
                    self.error_norm,
                )
            errors = jnp.zeros(0) if self.track_error else None
            return PruningResult(weights, indices, error, errors)

        state, slot_weights, errors = self._prune_loop(matrix, weights, moments, total)
        indices = state.indices[state.mask]
        retained = slot_weights[state.mask]
        order = jnp.argsort(indices)
        indices, retained = indices[order], retained[order]
        if self.correction:
            retained = self._correct(matrix, indices, retained, moments)
        error = None
        if self.return_error:
            error = moment_error(matrix, indices, retained, moments, self.error_norm)
        _logger.info("Pruned to %d rows in %d iterations", indices.shape[0], total)
        return PruningResult(
            _expand_weights(weights, indices, retained),
            indices,
            error,
            None if errors is None else jnp.asarray(errors),
        )

    def _prune_loop(
        self,
        matrix: MatrixLike,
        weights: VectorLike,
        moments: Float[Array, " n"],
        total: int,
    ) -> tuple[DowndaterState, Float[Array, " w"], Optional[list[float]]]:
        """Run the ``total`` pruning iterations; return the final state and weights."""
        downdater = self.kernel_downdater
        state = downdater.init(matrix)
        slot_weights = jnp.where(
            state.mask, read_elements(weights, state.indices), 0.0
        )
        errors, outside = None, None
        if self.track_error:
            # Moments of the rows still waiting to enter a window.
            errors = []
            outside = moments - self._active_moments(matrix, state, slot_weights)

        iterator = tqdm if self.progress else SilentTQDM
        for iteration in iterator(range(total), desc="Pruning", unit="row"):
            operation = "kernel_vectors"
            try:
                kernel_vectors = downdater.slot_kernel_vectors(state)
                operation = "prune"
                slot, slot_weights = self.pruning_rule.prune(
                    slot_weights, kernel_vectors, self.zero_tolerance
                )
                operation = "downdate"
                index = int(state.indices[slot])
                next_state = downdater.downdate(state, matrix, index)
            except _FATAL_ERRORS as exc:
                raise PruningFailedError(
                    f"pruning failed at iteration {iteration} during {operation}: "
                    f"{exc}",
                    iteration=iteration,
                    indices=downdater.active_indices(state),
                    operation=operation,
                ) from exc
            state = next_state
            if bool(state.mask[slot]) and int(state.indices[slot]) != index:
                inserted = int(state.indices[slot])
                weight = read_elements(weights, inserted)[0]
                slot_weights = slot_weights.at[slot].set(weight)
                if self.track_error:
                    outside = outside - weight * read_rows(matrix, inserted)[0]
            if self.track_error:
                active = self._active_moments(matrix, state, slot_weights)
                residual = moments - outside - active
                errors.append(float(self.error_norm(residual)))
            if self.progress_callback is not None:
                self.progress_callback(iteration + 1, total)
        return state, slot_weights, errors

    def _active_moments(
        self,
        matrix: MatrixLike,
        state: DowndaterState,
        slot_weights: Float[Array, " w"],
    ) -> Float[Array, " n"]:
        """Return the moments of the weighted live rows of ``state``."""
        rows = read_rows(matrix, self.kernel_downdater.active_indices(state))
        return rows.T @ slot_weights[state.mask]

    def _correct(
        self,
        matrix: MatrixLike,
        indices: Integer[Array, " n"],
        retained: Float[Array, " n"],
        moments: Float[Array, " n"],
    ) -> Float[Array, " n"]:
        """Return the least squares weights if acceptable, else ``retained``."""
        corrected = apply_negative_precision_threshold(
            correct_weights(matrix, indices, moments), self.zero_tolerance
        )
        if bool(jnp.any(corrected < 0)):
            _logger.debug("Correction rejected: solution has negative weights")
            return retained
        before = moment_error(matrix, indices, retained, moments, self.error_norm)
        after = moment_error(matrix, indices, corrected, moments, self.error_norm)
        if after > before:
            _logger.debug(
                "Correction rejected: moment error would rise from %.3e to %.3e",
                before,
                after,
            )
            return retained
        _logger.debug("Correction accepted: moment error %.3e -> %.3e", before, after)
        return corrected


def _expand_weights(
    weights: VectorLike,
    indices: Integer[Array, " n"],
    retained: Float[Array, " n"],
) -> Union[Float[Array, " m"], OnDemandVector]:
    """Scatter the retained weights into a vector shaped like ``weights``."""
    if isinstance(weights, OnDemandVector):
        lookup = dict(zip(indices.tolist(), retained.tolist()))
        return OnDemandVector(
            len(weights), lambda index: lookup.get(index, 0.0), dtype=weights.dtype
        )
    return jnp.zeros(weights.shape[0], retained.dtype).at[indices].set(retained)


def caratheodory_pruning(
    matrix: MatrixLike,
    weights: VectorLike,
    kernel: Union[str, KernelDowndater] = "GivensUpDown",
    pruning: Union[str, PruningRule] = "first",
    *,
    correction: bool = True,
    zero_tolerance: float = 1e-16,
    return_error: bool = False,
    track_error: bool = False,
    error_norm: Callable[[Array], Any] = jnp.linalg.norm,
    progress: bool = False,
    progress_callback: Optional[Callable[[int, int], Any]] = None,
    **kernel_kwargs: Any,
) -> PruningResult:
    """
    Prune ``weights`` to at most ``N`` nonzero entries preserving their moments.

    A convenience wrapper around :class:`CaratheodoryPruning` that accepts names for the
    kernel downdater and the pruning rule.

    .. code-block:: python

        weights, indices, error, _ = caratheodory_pruning(
            matrix, weights, "Cholesky", "minabs", return_error=True, k=4
        )

    :param matrix: Dense or on-demand ``M x N`` moment matrix
    :param weights: Dense or on-demand nonnegative weights of length ``M``
    :param kernel: Kernel downdater, or its name (see
        :func:`~carathex.downdaters.resolve_kernel_downdater`)
    :param pruning: Pruning rule, or its name (``"first"`` or ``"minabs"``)
    :param correction: If to correct the retained weights by least squares
    :param zero_tolerance: Weights at or below this value are treated as zero
    :param return_error: If to report the final moment error
    :param track_error: If to report the moment error after every iteration
    :param error_norm: Norm applied to moment residuals
    :param progress: If to display a progress bar
    :param progress_callback: Callable invoked as ``callback(iteration, total)`` after
        each iteration
    :param kernel_kwargs: Keyword arguments for the kernel downdater named by
        ``kernel``, e.g. ``k`` or ``pct_full_qr``
    :return: The pruned weights, the retained indices and any requested errors
    :raises ValueError: If ``kernel_kwargs`` are given with a kernel downdater instance
    """
    if isinstance(kernel, str):
        kernel = resolve_kernel_downdater(kernel, **kernel_kwargs)
    elif kernel_kwargs:
        raise ValueError(
            "kernel downdater keyword arguments can only be given with a kernel name; "
            f"got {sorted(kernel_kwargs)} with {type(kernel).__name__}"
        )
    if isinstance(pruning, str):
        pruning = resolve_pruning_rule(pruning)
    engine = CaratheodoryPruning(
        kernel,
        pruning,
        correction=correction,
        zero_tolerance=zero_tolerance,
        return_error=return_error,
        track_error=track_error,
        error_norm=error_norm,
        progress=progress,
        progress_callback=progress_callback,
    )
    return engine.prune(matrix, weights)
