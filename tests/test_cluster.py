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

import os
import subprocess

import pytest

from kolacheck.lib import conf
from kolacheck.lib.exceptions import NewMachinesError, ProviderError


def test_new_machines(cluster):
    machines = cluster.new_machines(conf.Empty(), 3)
    assert [m.id for m in machines] == [
        'cluster-test-0', 'cluster-test-1', 'cluster-test-2']
    assert cluster.machines() == machines
    # identities and addresses are never reused
    assert len({m.ip for m in machines}) == 3


def test_new_machines_partial_failure(provider, cluster):
    provider.fail_create['cluster-test'] = 1

    with pytest.raises(NewMachinesError) as e:
        cluster.new_machines(conf.Empty(), 3)

    assert [m.id for m in e.value.machines] == ['cluster-test-0']
    assert cluster.machines() == e.value.machines
    assert isinstance(e.value.__cause__, ProviderError)


def test_new_machines_partial_failure_unexpected_error(provider, cluster):
    provider.fail_create['cluster-test'] = 1
    provider.create_errors['cluster-test'] = subprocess.CalledProcessError(
        1, 'qemu-img create -f qcow2')

    with pytest.raises(NewMachinesError) as e:
        cluster.new_machines(conf.Empty(), 3)

    assert [m.id for m in e.value.machines] == ['cluster-test-0']
    assert isinstance(e.value.__cause__, subprocess.CalledProcessError)


def test_unreachable_machine_stays_in_cluster(provider, cluster):
    provider.unreachable.add('cluster-test')
    with pytest.raises(ProviderError):
        cluster.new_machine(conf.Empty())
    assert [m.id for m in cluster.machines()] == ['cluster-test-0']


def test_userdata_is_rendered(cluster):
    cluster.bindings['ETCD_PORT'] = '2379'
    machine = cluster.new_machine(conf.CloudConfig(
        "#cloud-config\nport: {ETCD_PORT}\nip: {PRIVATE_IPV4}\n"))
    assert machine.userdata.as_str() == \
        "#cloud-config\nport: 2379\nip: {PRIVATE_IPV4}\n"
    assert machine.userdata.kind == conf.UserDataKind.CLOUD_CONFIG


def test_destroy(cluster):
    machines = cluster.new_machines(conf.Empty(), 2)

    assert cluster.destroy() == []
    assert cluster.machines() == []
    assert all(m.destroyed for m in machines)
    assert cluster.resources_destroyed

    # a second call is a no-op
    assert cluster.destroy() == []
    assert [m.destroy_calls for m in machines] == [1, 1]


def test_machine_destroy_is_idempotent(cluster):
    machine = cluster.new_machine(conf.Empty())
    machine.destroy()
    machine.destroy()
    assert machine.destroy_calls == 1
    assert cluster.machines() == []


def test_destroy_collects_errors(provider, cluster):
    machines = cluster.new_machines(conf.Empty(), 3)
    provider.fail_destroy.add('cluster-test-1')

    errors = cluster.destroy()

    assert [str(e) for e in errors] == [
        "API error while deleting cluster-test-1"]
    assert [m.destroyed for m in machines] == [True, False, True]
    assert cluster.resources_destroyed


def test_destroy_saves_console(cluster):
    machine = cluster.new_machine(conf.Empty())
    cluster.destroy()
    with open(os.path.join(cluster.dir, machine.id, 'console.txt')) as f:
        assert f.read() == "console of cluster-test-0\n"


def test_no_machines_after_destroy(cluster):
    cluster.destroy()
    with pytest.raises(ProviderError):
        cluster.new_machine(conf.Empty())


def test_machine_added_after_destroy_is_destroyed(provider, cluster):
    late = cluster._create_machine(conf.Empty())
    cluster.destroy()

    with pytest.raises(ProviderError):
        cluster.add_machine(late)

    assert late.destroyed
    assert late.destroy_calls == 1
    assert cluster.machines() == []
    assert provider.leaked == []


def test_context_manager(provider):
    with provider('ctx') as cluster:
        cluster.new_machine(conf.Empty())
    assert provider.leaked == []


def test_resource_name(provider):
    cluster = provider('cl.ignition.v2/once')
    assert cluster.resource_name == 'kola-test-cl-ignition-v2-once'


def test_failed_setup_is_rolled_back(provider):
    cluster = provider('broken')
    provider.fail_setup.add('broken')
    with pytest.raises(ProviderError):
        cluster.setup()
    assert cluster.resources_destroyed
