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
End-to-end example for pruning a Monte-Carlo quadrature rule.

In this example we draw a large Monte-Carlo quadrature rule over the square
:math:`[-1, 1]^2`, and use Caratheodory pruning to find a rule with far fewer points
that integrates every bivariate polynomial of, at most, some given degree :math:`d`
exactly as the Monte-Carlo rule does (*up to finite-precision arithmetic*).

The moment matrix is never formed: each of its rows (the monomials evaluated at one
point) is generated on demand, and only the rows in the pruning window are kept in
memory.
"""

import itertools

import jax.numpy as jnp
import jax.random as jr
import numpy as np
from jaxtyping import Array, Float, Int

from carathex import OnDemandMatrix, PruningResult, caratheodory_pruning


def monomial_powers(dimension: int, max_degree: int) -> Int[Array, "k n"]:
    """
    Return the powers of all `n`-variate monomials of degree at most `d`.

    :param dimension: Number of variates `n`
    :param max_degree: Maximal total degree `d` of a monomial
    :return: One row of powers per monomial
    """
    powers = [
        power
        for power in itertools.product(range(max_degree + 1), repeat=dimension)
        if sum(power) <= max_degree
    ]
    return jnp.asarray(np.array(powers, dtype=np.int32))


def exact_square_integrals(powers: Int[Array, "k n"]) -> Float[Array, " k"]:
    r"""
    Return the integrals of monomials over the cube :math:`[-1, 1]^n`.

    Odd powers integrate to zero; an even power :math:`p` contributes a factor
    :math:`2 / (p + 1)`.
    """
    factors = jnp.where(powers % 2 == 0, 2.0 / (powers + 1), 0.0)
    return jnp.prod(factors, axis=-1)


def main(
    n_points: int = 1_000,
    max_degree: int = 4,
    kernel: str = "GivensUpDown",
    seed: int = 0,
) -> PruningResult:
    """
    Prune a Monte-Carlo quadrature rule on the square to a rule with few points.

    :param n_points: Number of points of the Monte-Carlo rule
    :param max_degree: Maximal total degree of the polynomials integrated by both rules
    :param kernel: Name of the kernel downdater used for pruning
    :param seed: Seed for the Monte-Carlo points
    :return: The pruned weights and the retained point indices
    """
    points = jr.uniform(
        jr.key(seed), (n_points, 2), dtype=float, minval=-1.0, maxval=1.0
    )
    weights = jnp.full(n_points, 4.0 / n_points)
    powers = monomial_powers(2, max_degree)
    print(f"Monte-Carlo rule:\n\t node_count: {n_points}")
    print(f"Test functions:\n\t count: {powers.shape[0]}")

    # Row `i` of the moment matrix holds every monomial evaluated at point `i`.
    matrix = OnDemandMatrix(
        n_points,
        powers.shape[0],
        lambda i: jnp.prod(points[i] ** powers, axis=-1),
        by="rows",
    )
    result = caratheodory_pruning(matrix, weights, kernel, return_error=True, k=4)
    print(f"Pruned rule:\n\t node_count: {result.indices.shape[0]}")
    print(f"\t moment error: {result.error:.3e}")
    print(f"\t stored rows: {matrix.num_stored}")

    monte_carlo = jnp.prod(points[:, None, :] ** powers, axis=-1).T @ weights
    pruned_points = points[result.indices]
    pruned = (
        jnp.prod(pruned_points[:, None, :] ** powers, axis=-1).T
        @ result.weights[result.indices]
    )
    exact = exact_square_integrals(powers)
    print(f"Exact integrals: {exact}")
    print(f"Monte-Carlo integrals: {monte_carlo}")
    print(f"Pruned integrals: {pruned}")

    in_tolerance = jnp.allclose(monte_carlo, pruned, rtol=1e-8, atol=1e-10)
    print(f"All within tolerance: {bool(in_tolerance)}")
    if not in_tolerance:
        raise RuntimeError("Pruning failed to preserve the Monte-Carlo integrals.")
    if bool(jnp.any(result.weights < 0)):
        raise RuntimeError("Pruning produced negative weights.")
    return result


if __name__ == "__main__":
    main()
