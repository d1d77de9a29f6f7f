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
Pruning rules: how a kernel vector is used to zero one weight.

Given nonnegative weights :math:`w` and a kernel vector :math:`q` of the active rows,
every multiple :math:`w + \alpha q` has the same moments as :math:`w`. The multiples
that keep all weights nonnegative form an interval :math:`[\alpha_-, \alpha_+]`, with
:math:`\alpha_- \le 0 \le \alpha_+`; at each end of the interval one weight (the pivot)
is driven exactly to zero. A pruning rule picks one end of the interval, for one of the
available kernel vectors.
"""

import math
from abc import abstractmethod
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, Integer, jaxtyped
from typing_extensions import override

from carathex.util import NoFeasibleDirectionError, apply_negative_precision_threshold


@jax.jit
def _alpha_k0s(
    weights: Float[Array, " s"],
    kernel_vector: Float[Array, " s"],
    zero_tolerance: Float[Array, ""],
) -> tuple[Float[Array, ""], Integer[Array, ""], Float[Array, ""], Integer[Array, ""]]:
    weights = jnp.where(weights <= zero_tolerance, 0.0, weights)
    ratios = -weights / jnp.where(kernel_vector == 0, 1.0, kernel_vector)
    negative_side = jnp.where(kernel_vector > 0, ratios, -jnp.inf)
    positive_side = jnp.where(kernel_vector < 0, ratios, jnp.inf)
    k0_n = jnp.argmax(negative_side)
    k0_p = jnp.argmin(positive_side)
    return negative_side[k0_n], k0_n, positive_side[k0_p], k0_p


@jaxtyped(typechecker=beartype)
def get_alpha_k0s(
    weights: Float[Array, " s"],
    kernel_vector: Float[Array, " s"],
    zero_tolerance: float = 0.0,
) -> tuple[float, int, float, int]:
    r"""
    Return the boundary multiples of ``kernel_vector`` that keep ``weights`` feasible.

    For each entry with :math:`q_i \neq 0` the multiple :math:`-w_i / q_i` zeroes
    weight :math:`i`. The most negative multiple keeping :math:`w + \alpha q \ge 0` is
    :math:`\alpha_- = \max_{q_i > 0} -w_i / q_i`, and the most positive is
    :math:`\alpha_+ = \min_{q_i < 0} -w_i / q_i`. Ties are broken by the lowest
    position; entries with :math:`q_i = 0` impose no constraint.

    :param weights: Nonnegative weights of the active rows
    :param kernel_vector: Kernel vector over the same rows
    :param zero_tolerance: Weights at or below this value are treated as zero
    :return: Tuple ``(alpha_n, k0_n, alpha_p, k0_p)``; a side without any constraining
        entry is unbounded, and reported as ``-inf`` (or ``inf``)
    :raises NoFeasibleDirectionError: If neither side is bounded (``kernel_vector`` is
        zero)
    """
    alpha_n, k0_n, alpha_p, k0_p = _alpha_k0s(
        weights, kernel_vector, jnp.asarray(zero_tolerance)
    )
    alpha_n, alpha_p = float(alpha_n), float(alpha_p)
    if math.isinf(alpha_n) and math.isinf(alpha_p):
        raise NoFeasibleDirectionError(
            "kernel vector has no nonzero entry; no boundary multiple exists"
        )
    return alpha_n, int(k0_n), alpha_p, int(k0_p)


@jax.jit
def _step(
    weights: Float[Array, " s"],
    kernel_vector: Float[Array, " s"],
    alpha: Float[Array, ""],
    pivot: Integer[Array, ""],
    zero_tolerance: Float[Array, ""],
) -> Float[Array, " s"]:
    """Move along ``kernel_vector`` by ``alpha``, zeroing the pivot exactly."""
    weights = jnp.where(weights <= zero_tolerance, 0.0, weights)
    stepped = (weights + alpha * kernel_vector).at[pivot].set(0.0)
    return apply_negative_precision_threshold(stepped, zero_tolerance)


class PruningRule(eqx.Module):
    """Base class for rules selecting the weight to zero on each pruning iteration."""

    @abstractmethod
    def prune(
        self,
        weights: Float[Array, " s"],
        kernel_vectors: Float[Array, "c s"],
        zero_tolerance: float = 0.0,
    ) -> tuple[int, Float[Array, " s"]]:
        """
        Zero one weight by moving along a multiple of a kernel vector.

        :param weights: Nonnegative weights of the active rows
        :param kernel_vectors: Kernel vectors over the same rows
        :param zero_tolerance: Weights at or below this value are treated as zero, and
            updated weights in ``(-zero_tolerance, 0)`` are rounded to zero
        :return: The pivot position and the updated weights, which are exactly zero at
            the pivot and nonnegative elsewhere
        :raises NoFeasibleDirectionError: If no kernel vector gives a bounded multiple
        """


class FirstKernelPruning(PruningRule):
    r"""
    Prune along the first kernel vector, taking the smaller boundary multiple.

    When :math:`|\alpha_-| = |\alpha_+|` the negative multiple is taken.
    """

    @override
    def prune(
        self,
        weights: Float[Array, " s"],
        kernel_vectors: Float[Array, "c s"],
        zero_tolerance: float = 0.0,
    ) -> tuple[int, Float[Array, " s"]]:
        kernel_vector = kernel_vectors[0]
        alpha_n, k0_n, alpha_p, k0_p = get_alpha_k0s(
            weights, kernel_vector, float(zero_tolerance)
        )
        if abs(alpha_n) <= abs(alpha_p):
            alpha, pivot = alpha_n, k0_n
        else:
            alpha, pivot = alpha_p, k0_p
        return pivot, _step(weights, kernel_vector, alpha, pivot, zero_tolerance)


class MinAbsPruning(PruningRule):
    """
    Prune along whichever kernel vector gives the smallest boundary multiple.

    Ties are broken in favour of the earliest kernel vector, then the negative
    multiple.
    """

    @override
    def prune(
        self,
        weights: Float[Array, " s"],
        kernel_vectors: Float[Array, "c s"],
        zero_tolerance: float = 0.0,
    ) -> tuple[int, Float[Array, " s"]]:
        alpha_n, k0_n, alpha_p, k0_p = jax.vmap(_alpha_k0s, in_axes=(None, 0, None))(
            weights, kernel_vectors, jnp.asarray(zero_tolerance)
        )
        # Row-major ravel orders candidates vector by vector, negative side first.
        alphas = jnp.stack([alpha_n, alpha_p], axis=1)
        pivots = jnp.stack([k0_n, k0_p], axis=1)
        best = int(jnp.argmin(jnp.abs(alphas).ravel()))
        vector, side = divmod(best, 2)
        alpha = alphas[vector, side]
        if jnp.isinf(alpha):
            raise NoFeasibleDirectionError(
                "no kernel vector has a nonzero entry; no boundary multiple exists"
            )
        pivot = int(pivots[vector, side])
        return pivot, _step(
            weights, kernel_vectors[vector], alpha, pivot, zero_tolerance
        )


PRUNING_RULES: dict[str, type[PruningRule]] = {
    "first": FirstKernelPruning,
    "minabs": MinAbsPruning,
}


def resolve_pruning_rule(pruning: str, **kwargs: Any) -> PruningRule:
    """
    Construct a pruning rule from its name.

    Names are matched ignoring case, underscores and hyphens.

    :param pruning: ``"first"`` or ``"minabs"``
    :param kwargs: Keyword arguments passed to the rule's constructor
    :return: The constructed pruning rule
    :raises ValueError: If ``pruning`` does not name a known rule
    """
    name = pruning.lower().replace("_", "").replace("-", "")
    try:
        rule_type = PRUNING_RULES[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown pruning rule {pruning!r}; expected 'first' or 'minabs'."
        ) from exc
    return rule_type(**kwargs)
