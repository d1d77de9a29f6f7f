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

"""Selection of kernel downdaters by name."""

from typing import Any

from carathex.downdaters.base import KernelDowndater
from carathex.downdaters.cholesky import CholeskyDowndater
from carathex.downdaters.qr import FullQRDowndater, GivensDowndater
from carathex.downdaters.up_down import FullQRUpDowndater, GivensUpDowndater

KERNEL_DOWNDATERS: dict[str, type[KernelDowndater]] = {
    "fullqr": FullQRDowndater,
    "givens": GivensDowndater,
    "cholesky": CholeskyDowndater,
    "fullqrupdown": FullQRUpDowndater,
    "givensupdown": GivensUpDowndater,
}


def _normalise_name(name: str) -> str:
    """Lower-case ``name`` and strip separators."""
    return name.lower().replace("_", "").replace("-", "")


# Class names are accepted alongside the short names.
_BY_NAME: dict[str, type[KernelDowndater]] = {
    **KERNEL_DOWNDATERS,
    **{_normalise_name(kind.__name__): kind for kind in KERNEL_DOWNDATERS.values()},
}


def resolve_kernel_downdater(kernel: str, **kwargs: Any) -> KernelDowndater:
    """
    Construct a kernel downdater from its name.

    Names are matched ignoring case, underscores and hyphens, and may be given as
    the short name or the class name; e.g. ``"GivensUpDown"``, ``"givens_up_down"``
    and ``"GivensUpDowndater"`` all select :class:`GivensUpDowndater`.

    :param kernel: Name of the kernel downdater
    :param kwargs: Keyword arguments passed to the downdater's constructor
    :return: The constructed kernel downdater
    :raises ValueError: If ``kernel`` does not name a known downdater
    """
    try:
        downdater_type = _BY_NAME[_normalise_name(kernel)]
    except KeyError as exc:
        raise ValueError(
            f"Unknown kernel downdater {kernel!r}; expected one of "
            "'FullQR', 'Givens', 'Cholesky', 'FullQRUpDown' or 'GivensUpDown'."
        ) from exc
    return downdater_type(**kwargs)
