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
Functionality to validate inputs passed throughout carathex.

The functions within this module are used by the ``__check_init__`` methods of the
downdaters, pruning rules and pruning engine, and by the engine when it receives a
moment matrix and a weight vector.
"""

# Support annotations with | in Python < 3.10
from __future__ import annotations

from typing import Any, TypeVar

import jax.numpy as jnp

T = TypeVar("T")


def validate_in_range(
    x: T,
    object_name: str,
    strict_inequalities: bool,
    lower_bound: T | None = None,
    upper_bound: T | None = None,
) -> None:
    """
    Verify that a given input is in a specified range.

    :param x: Variable we wish to verify lies in the specified range
    :param object_name: Name of ``x`` to display if limits are broken
    :param strict_inequalities: If :data:`True`, checks are applied using strict
        inequalities, otherwise they are not
    :param lower_bound: Lower limit placed on ``x``, or :data:`None`
    :param upper_bound: Upper limit placed on ``x``, or :data:`None`
    :raises ValueError: Raised if ``x`` does not fall between ``lower_bound`` and
        ``upper_bound``
    :raises TypeError: Raised if ``x`` cannot be compared to the bounds
    """
    try:
        below = lower_bound is not None and (
            x <= lower_bound if strict_inequalities else x < lower_bound
        )
        above = upper_bound is not None and (
            x >= upper_bound if strict_inequalities else x > upper_bound
        )
    except TypeError as exc:
        raise TypeError(
            f"'{object_name}' must support comparison with {lower_bound!r} "
            f"and {upper_bound!r}"
        ) from exc
    if below:
        qualifier = "strictly above" if strict_inequalities else "at least"
        raise ValueError(f"'{object_name}' must be {qualifier} {lower_bound}")
    if above:
        qualifier = "strictly below" if strict_inequalities else "at most"
        raise ValueError(f"'{object_name}' must be {qualifier} {upper_bound}")


def validate_is_instance(
    x: object, object_name: str, expected_type: type | tuple[type, ...]
) -> None:
    """
    Verify that a given object is of a given type.

    :param x: Object we wish to validate
    :param object_name: Name of ``x`` to display if it is not of type ``expected_type``
    :param expected_type: Expected type of ``x``, can be a tuple to specify a
        choice of valid types
    :raises TypeError: Raised if ``x`` is not of type ``expected_type``
    """
    if not isinstance(x, expected_type):
        raise TypeError(
            f"'{object_name}' must be of type {expected_type}, got {type(x).__name__}"
        )


def validate_moment_matrix(matrix: Any, object_name: str = "matrix") -> None:
    """
    Verify that ``matrix`` is two-dimensional with a non-empty shape.

    :param matrix: Dense array or :class:`~carathex.on_demand.OnDemandMatrix`
    :param object_name: Name of ``matrix`` to display on failure
    :raises ValueError: Raised if ``matrix`` is not a non-empty two-dimensional array
    """
    shape = getattr(matrix, "shape", None)
    if shape is None or len(shape) != 2:  # noqa: PLR2004
        raise ValueError(f"'{object_name}' must be two-dimensional")
    if min(shape) == 0:
        raise ValueError(f"'{object_name}' must not be empty; got shape {shape}")


def validate_weights_length(weights: Any, expected_length: int) -> None:
    """
    Verify that ``weights`` is a vector paired with every row of the moment matrix.

    :param weights: Dense vector or :class:`~carathex.on_demand.OnDemandVector`
    :param expected_length: Number of rows of the (oriented) moment matrix
    :raises ValueError: Raised if ``weights`` is not a vector of ``expected_length``
    """
    shape = getattr(weights, "shape", None)
    if shape is None or len(shape) != 1:
        raise ValueError("'weights' must be one-dimensional")
    if shape[0] != expected_length:
        raise ValueError(
            f"'weights' has length {shape[0]} but the moment matrix has "
            f"{expected_length} rows"
        )


def validate_permutation(order: Any, length: int, object_name: str) -> None:
    """
    Verify that ``order`` is a permutation of ``range(length)``.

    :param order: One-dimensional integer array
    :param length: Number of items that ``order`` must permute
    :param object_name: Name of ``order`` to display on failure
    :raises ValueError: Raised if ``order`` is not a permutation of ``range(length)``
    """
    order = jnp.asarray(order)
    if order.ndim != 1 or order.shape[0] != length:
        raise ValueError(f"'{object_name}' must be a vector of length {length}")
    if not jnp.issubdtype(order.dtype, jnp.integer):
        raise ValueError(f"'{object_name}' must hold integer indices")
    if not bool(jnp.all(jnp.sort(order) == jnp.arange(length))):
        raise ValueError(f"'{object_name}' must be a permutation of range({length})")
