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

"""The catalog of tests.

Suite modules call register() at import time. Once every suite is imported
the registry is frozen into an immutable snapshot which is all the harness
ever sees; registering after that point is an error.
"""

import dataclasses
import importlib
import logging
import threading
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple, Union

from kolacheck.lib.conf import Empty, UserData
from kolacheck.lib.exceptions import DuplicateTestError, RegistryFrozenError


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class TestDescriptor:
    __test__ = False

    name: str
    run: Callable
    cluster_size: int = 0
    userdata: Union[UserData, Mapping[str, UserData], None] = None
    platforms: Tuple[str, ...] = ()
    distros: Tuple[str, ...] = ()
    exclude_platforms: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.name:
            raise ValueError("a test needs a name")
        if self.cluster_size < 0:
            raise ValueError(f"{self.name}: cluster_size must be >= 0")
        # allow lists in the descriptors, store tuples
        for field in ('platforms', 'distros', 'exclude_platforms'):
            object.__setattr__(self, field, tuple(getattr(self, field)))
        if isinstance(self.userdata, Mapping):
            object.__setattr__(self, 'userdata',
                               _FrozenMapping(self.userdata))

    def userdata_for(self, distro: str) -> UserData:
        """
        The boot payload for machines of `distro`. Tests may either give a
        single payload or one per distro.
        """
        if self.userdata is None:
            return Empty()
        if isinstance(self.userdata, UserData):
            return self.userdata
        return self.userdata.get(distro, Empty())


class _FrozenMapping(Mapping):
    def __init__(self, data):
        self._data = dict(data)

    def __getitem__(self, key):
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self):
        return len(self._data)

    def __hash__(self):
        return hash(tuple(sorted(self._data.items(), key=lambda i: i[0])))

    def __repr__(self):
        return f"{self._data!r}"


class Registry():
    def __init__(self):
        self._tests: Dict[str, TestDescriptor] = {}
        self._lock = threading.Lock()
        self._snapshot: Optional[Tuple[TestDescriptor, ...]] = None

    @property
    def frozen(self) -> bool:
        return self._snapshot is not None

    def register(self, test: TestDescriptor) -> TestDescriptor:
        with self._lock:
            if self._snapshot is not None:
                raise RegistryFrozenError(
                    f"cannot register {test.name}: registry is frozen")
            if test.name in self._tests:
                raise DuplicateTestError(
                    f"test {test.name} is already registered")
            self._tests[test.name] = test
        logger.debug(f"registered test {test.name}")
        return test

    def freeze(self) -> Tuple[TestDescriptor, ...]:
        """
        End the initialization phase and return the immutable snapshot
        """
        with self._lock:
            if self._snapshot is None:
                self._snapshot = tuple(self._tests.values())
                logger.info(f"registry frozen with {len(self._snapshot)} "
                            "tests")
            return self._snapshot

    def __contains__(self, name):
        return name in self._tests

    def __len__(self):
        return len(self._tests)


registry = Registry()


def register(test: Optional[TestDescriptor] = None, **kwargs):
    """
    Add a test to the process wide registry.

    Accepts either a TestDescriptor or its fields as keyword arguments.
    """
    if test is None:
        test = TestDescriptor(**kwargs)
    return registry.register(test)


def load_suites(module_names: Iterable[str]):
    """
    Import suite modules so that their register() calls run
    """
    for name in module_names:
        logger.info(f"loading suite {name}")
        importlib.import_module(name)
