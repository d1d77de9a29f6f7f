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

"""Fixtures used across multiple unit tests modules."""

import jax.numpy as jnp
import numpy as np
import pytest
from jaxtyping import Array, Float

import carathex  # noqa: F401  # enables double precision


def random_problem(
    n_rows: int, n_columns: int, seed: int = 2_024
) -> tuple[Float[Array, "m n"], Float[Array, " m"]]:
    """Return a seeded uniform moment matrix and strictly positive weights."""
    generator = np.random.default_rng(seed)
    matrix = jnp.asarray(generator.random((n_rows, n_columns)))
    weights = jnp.asarray(generator.random(n_rows)) + 0.01
    return matrix, weights


@pytest.fixture(scope="module")
def small_problem() -> tuple[Float[Array, "m n"], Float[Array, " m"]]:
    """Return a 40 x 6 moment matrix with positive weights."""
    return random_problem(40, 6)


@pytest.fixture(scope="module")
def reference_problem() -> tuple[Float[Array, "m n"], Float[Array, " m"]]:
    """Return the seeded 100 x 10 moment matrix with positive weights."""
    return random_problem(100, 10, seed=1_989)


@pytest.fixture(scope="session")
def make_problem():
    """Return a factory for seeded moment matrices and positive weights."""
    return random_problem
