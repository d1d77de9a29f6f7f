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
Carathex: Caratheodory pruning of nonnegatively weighted point sets.

Given an :math:`M \times N` moment matrix :math:`V` and nonnegative weights
:math:`w \in \mathbb{R}^M`, carathex finds nonnegative weights supported on at most
:math:`N` rows with the same moments :math:`V^T w`, following the constructive proof of
Caratheodory's theorem for conic hulls.

Double precision is enabled on import, as moment preservation to near machine precision
requires it.
"""

__version__ = "0.1.0"

import jax

jax.config.update("jax_enable_x64", True)

# pylint: disable=wrong-import-position
from carathex.caratheodory import (  # noqa: E402
    CaratheodoryPruning,
    PruningResult,
    caratheodory_pruning,
    correct_weights,
    initial_moments,
    moment_error,
)
from carathex.downdaters import (  # noqa: E402
    CholeskyDowndater,
    FullQRDowndater,
    FullQRUpDowndater,
    GivensDowndater,
    GivensUpDowndater,
    KernelDowndater,
    resolve_kernel_downdater,
)
from carathex.on_demand import OnDemandMatrix, OnDemandVector  # noqa: E402
from carathex.pruning import (  # noqa: E402
    FirstKernelPruning,
    MinAbsPruning,
    PruningRule,
    get_alpha_k0s,
    resolve_pruning_rule,
)
from carathex.util import (  # noqa: E402
    CaratheodoryError,
    DegenerateKernelError,
    ExhaustedIndicesError,
    NearSingularUpdateError,
    NoFeasibleDirectionError,
    PruningFailedError,
)

# pylint: enable=wrong-import-position

__all__ = [
    "CaratheodoryPruning",
    "PruningResult",
    "caratheodory_pruning",
    "correct_weights",
    "initial_moments",
    "moment_error",
    "CholeskyDowndater",
    "FullQRDowndater",
    "FullQRUpDowndater",
    "GivensDowndater",
    "GivensUpDowndater",
    "KernelDowndater",
    "resolve_kernel_downdater",
    "OnDemandMatrix",
    "OnDemandVector",
    "FirstKernelPruning",
    "MinAbsPruning",
    "PruningRule",
    "get_alpha_k0s",
    "resolve_pruning_rule",
    "CaratheodoryError",
    "DegenerateKernelError",
    "ExhaustedIndicesError",
    "NearSingularUpdateError",
    "NoFeasibleDirectionError",
    "PruningFailedError",
]
