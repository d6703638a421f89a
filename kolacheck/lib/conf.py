# Copyright (c) 2020 SUSE LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# Boot payloads are handed to the providers as they are. We never parse
# them; the only thing we do is substitute {PLACEHOLDER} bindings that are
# known to the cluster (eg. {PRIVATE_IPV4} of another machine).

import re
from enum import Enum
from typing import Dict, Union


class UserDataKind(Enum):
    EMPTY = 'empty'
    CLOUD_CONFIG = 'cloud-config'
    IGNITION = 'ignition'
    CONTAINER_LINUX_CONFIG = 'container-linux-config'
    SCRIPT = 'script'


_PLACEHOLDER = re.compile(r'\{([A-Z][A-Z0-9_]*)\}')


class UserData():
    def __init__(self, kind: UserDataKind, data: Union[str, bytes] = b''):
        if isinstance(data, str):
            data = data.encode()
        self._kind = kind
        self._data = data

    @property
    def kind(self) -> UserDataKind:
        return self._kind

    @property
    def is_ignition(self) -> bool:
        return self._kind in (UserDataKind.IGNITION,
                              UserDataKind.CONTAINER_LINUX_CONFIG)

    def render(self, bindings: Dict[str, str]) -> 'UserData':
        """Return a copy with every known {NAME} replaced from `bindings`

        Unknown placeholders are left untouched so that payloads relying on
        provider side substitution (eg. coreos-metadata) keep working.
        """
        if not bindings or not self._data:
            return self
        text = self._data.decode(errors='surrogateescape')

        def _sub(match):
            return str(bindings.get(match.group(1), match.group(0)))

        return UserData(self._kind, _PLACEHOLDER.sub(_sub, text).encode(
            errors='surrogateescape'))

    def as_bytes(self) -> bytes:
        return self._data

    def as_str(self) -> str:
        return self._data.decode(errors='replace')

    def __bool__(self):
        return bool(self._data)

    def __eq__(self, other):
        if not isinstance(other, UserData):
            return NotImplemented
        return self._kind == other._kind and self._data == other._data

    def __hash__(self):
        return hash((self._kind, self._data))

    def __repr__(self):
        return f"UserData({self._kind.value}, {len(self._data)} bytes)"


def Empty() -> UserData:
    return UserData(UserDataKind.EMPTY)


def CloudConfig(data: Union[str, bytes]) -> UserData:
    return UserData(UserDataKind.CLOUD_CONFIG, data)


def Ignition(data: Union[str, bytes]) -> UserData:
    return UserData(UserDataKind.IGNITION, data)


def ContainerLinuxConfig(data: Union[str, bytes]) -> UserData:
    return UserData(UserDataKind.CONTAINER_LINUX_CONFIG, data)


def Script(data: Union[str, bytes]) -> UserData:
    return UserData(UserDataKind.SCRIPT, data)
