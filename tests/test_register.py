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

import dataclasses

import pytest

from kolacheck.lib import conf
from kolacheck.lib.exceptions import DuplicateTestError, RegistryFrozenError
from kolacheck.lib.register import Registry, TestDescriptor


def _noop(c):
    pass


def test_register_and_freeze():
    registry = Registry()
    registry.register(TestDescriptor(name='a', run=_noop))
    registry.register(TestDescriptor(name='b', run=_noop, cluster_size=2))

    snapshot = registry.freeze()
    assert [t.name for t in snapshot] == ['a', 'b']
    assert registry.frozen
    assert 'a' in registry
    assert len(registry) == 2
    assert registry.freeze() is snapshot


def test_duplicate_name():
    registry = Registry()
    registry.register(TestDescriptor(name='a', run=_noop))
    with pytest.raises(DuplicateTestError):
        registry.register(TestDescriptor(name='a', run=_noop))


def test_register_after_freeze():
    registry = Registry()
    registry.freeze()
    with pytest.raises(RegistryFrozenError):
        registry.register(TestDescriptor(name='late', run=_noop))


def test_descriptor_fields():
    test = TestDescriptor(name='a', run=_noop, platforms=['aws', 'gce'],
                          distros=['cl'], exclude_platforms=['esx'])
    assert test.platforms == ('aws', 'gce')
    assert test.distros == ('cl',)
    assert test.exclude_platforms == ('esx',)
    assert test.cluster_size == 0

    with pytest.raises(dataclasses.FrozenInstanceError):
        test.name = 'b'


@pytest.mark.parametrize("kwargs", [
    {'name': ''},
    {'name': 'a', 'cluster_size': -1},
])
def test_descriptor_validation(kwargs):
    with pytest.raises(ValueError):
        TestDescriptor(run=_noop, **kwargs)


def test_userdata_for():
    assert TestDescriptor(name='a', run=_noop).userdata_for('cl') == \
        conf.Empty()

    single = conf.Ignition("{}")
    test = TestDescriptor(name='a', run=_noop, userdata=single)
    assert test.userdata_for('fcos') == single

    per_distro = {'cl': conf.ContainerLinuxConfig("passwd: {}"),
                  'fcos': conf.Ignition("{}")}
    test = TestDescriptor(name='a', run=_noop, userdata=per_distro)
    assert test.userdata_for('cl') == per_distro['cl']
    assert test.userdata_for('fcos') == per_distro['fcos']
    assert test.userdata_for('rhcos') == conf.Empty()
    # changes to the caller's dict do not leak into the descriptor
    per_distro['rhcos'] = conf.Ignition("{}")
    assert test.userdata_for('rhcos') == conf.Empty()
