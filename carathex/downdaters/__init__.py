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

"""Kernel downdaters: factorisations of the active rows of a moment matrix."""

from carathex.downdaters.base import DowndaterState, KernelDowndater
from carathex.downdaters.cholesky import CholeskyDowndater, CholeskyState
from carathex.downdaters.qr import (
    FullQRDowndater,
    FullQRState,
    GivensDowndater,
    GivensState,
)
from carathex.downdaters.registry import KERNEL_DOWNDATERS, resolve_kernel_downdater
from carathex.downdaters.up_down import (
    FullQRUpDowndater,
    FullQRUpDownState,
    GivensUpDowndater,
    GivensUpDownState,
    WindowedKernelDowndater,
    WindowState,
)

__all__ = [
    "DowndaterState",
    "KernelDowndater",
    "CholeskyDowndater",
    "CholeskyState",
    "FullQRDowndater",
    "FullQRState",
    "GivensDowndater",
    "GivensState",
    "KERNEL_DOWNDATERS",
    "resolve_kernel_downdater",
    "FullQRUpDowndater",
    "FullQRUpDownState",
    "GivensUpDowndater",
    "GivensUpDownState",
    "WindowedKernelDowndater",
    "WindowState",
]
