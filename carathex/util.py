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
Functionality to perform simple, generic tasks and operations.

The module collects the error types raised throughout carathex, the schedules used by
the downdaters to decide when to recompute a factorisation from scratch, and small
numerical helpers shared by the pruning rules and the pruning engine.
"""

import math
from collections.abc import Iterable, Iterator
from typing import Generic, Optional, TypeVar, Union

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike
from jaxtyping import Shaped
from typing_extensions import TypeAlias

#: JAX random key type annotation.
KeyArrayLike: TypeAlias = ArrayLike


class CaratheodoryError(Exception):
    """Base class for errors raised while pruning a weighted point set."""


class DegenerateKernelError(CaratheodoryError):
    """Raise when no kernel vector can be extracted from the active rows."""


class NearSingularUpdateError(CaratheodoryError):
    """Raise when a Sherman-Morrison denominator is too close to zero."""


class NoFeasibleDirectionError(CaratheodoryError):
    """Raise when a kernel vector gives no finite multiple on either side."""


class ExhaustedIndicesError(CaratheodoryError):
    """Raise when a windowed downdater has no index left to refill its window."""


class PruningFailedError(CaratheodoryError):
    """
    Raise when a pruning run cannot be completed.

    :param message: Description of the failure
    :param iteration: Zero-based iteration at which the run failed
    :param indices: Active row indices before the failing operation (the last state
        known to be consistent)
    :param operation: Name of the failing operation, e.g. ``"downdate"``
    """

    def __init__(
        self,
        message: str,
        *,
        iteration: int,
        indices: Optional[Array] = None,
        operation: Optional[str] = None,
    ):
        """Attach the diagnostic context to the error."""
        super().__init__(message)
        self.iteration = iteration
        self.indices = indices
        self.operation = operation


def apply_negative_precision_threshold(
    x: Union[Shaped[Array, " *n"], float], precision_threshold: float = 1e-8
) -> Shaped[Array, " *n"]:
    """
    Round values to 0.0 if they are negative but within precision_threshold of 0.0.

    :param x: Values we wish to compare to 0.0
    :param precision_threshold: Positive threshold we compare against for precision
    :return: ``x``, with entries between ``-precision_threshold`` and 0.0 set to 0.0
    """
    _x = jnp.asarray(x)
    return jnp.where((-jnp.abs(precision_threshold) < _x) & (_x < 0.0), 0.0, _x)


def _reset_count(total: int, percent: float) -> int:
    if total <= 0 or percent <= 0:
        return 0
    return min(total, math.ceil(percent * total / 100))


def linear_reset_schedule(total: int, percent: float) -> frozenset[int]:
    """
    Return the iterations, evenly spaced, at which a full factorisation is recomputed.

    Iterations are counted from one (the state after the first downdate) to ``total``.

    :param total: Number of downdates in the run
    :param percent: Percentage of the ``total`` iterations that trigger a reset
    :return: The iterations, in ``1..total``, at which to reset
    """
    count = _reset_count(total, percent)
    if count == 0:
        return frozenset()
    step = total / count
    return frozenset(max(1, round(step * (i + 1))) for i in range(count))


def logarithmic_reset_schedule(total: int, percent: float) -> frozenset[int]:
    """
    Return the iterations, logarithmically spaced, at which a factorisation is reset.

    The iterations are the rounded values of a geometric sequence running from one to
    ``total``, so resets are dense early in the run and sparse towards its end. Rounding
    can merge neighbouring values, hence the schedule may hold fewer entries than
    requested.

    :param total: Number of downdates in the run
    :param percent: Percentage of the ``total`` iterations that trigger a reset
    :return: The iterations, in ``1..total``, at which to reset
    """
    count = _reset_count(total, percent)
    if count == 0:
        return frozenset()
    if count == 1:
        return frozenset({total})
    return frozenset(round(total ** (i / (count - 1))) for i in range(count))


T = TypeVar("T")


class SilentTQDM(Generic[T]):
    """
    Class implementing interface of :class:`~tqdm.tqdm` that does nothing.

    Used by the pruning engine in place of :class:`~tqdm.tqdm` when no progress bar is
    requested. Additional parameters are accepted and ignored.

    :param iterable: Iterable of tasks to (not) indicate progress for
    """

    def __init__(self, iterable: Iterable[T], *_args, **_kwargs):
        """Store iterable."""
        self.iterable = iterable

    def __iter__(self) -> Iterator[T]:
        """
        Iterate.

        :return: Next item
        """
        return iter(self.iterable)

    @staticmethod
    def write(*_args, **_kwargs) -> None:
        """Do nothing instead of writing to output."""
