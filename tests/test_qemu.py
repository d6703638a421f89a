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

libvirt = pytest.importorskip("libvirt")
qemu = pytest.importorskip("kolacheck.lib.platform.qemu")


class NoDomainError(libvirt.libvirtError):
    def get_error_code(self):
        return libvirt.VIR_ERR_NO_DOMAIN


class FakeDomain():
    def __init__(self, gone=False):
        self.gone = gone
        self.destroyed = False
        self.undefined = False

    def UUIDString(self):
        return '6f2b1c3e-0000-4000-8000-000000000001'

    def create(self):
        pass

    def isActive(self):
        if self.gone:
            raise NoDomainError("Domain not found")
        return True

    def destroy(self):
        self.destroyed = True

    def undefine(self):
        self.undefined = True


class FakeConnection():
    def __init__(self, domain):
        self.domain = domain
        self.closed = False

    def defineXML(self, xml):
        return self.domain

    def close(self):
        self.closed = True


@pytest.fixture
def qemu_cluster(workspace, monkeypatch):
    options = qemu.Options(image='/var/lib/kola/image.qcow2', journal=False)
    cluster = qemu.Cluster(options, workspace, 'qemu-test')
    cluster.connections = []

    def get_connection():
        conn = FakeConnection(FakeDomain())
        cluster.connections.append(conn)
        return conn

    def create_file(path, *args):
        with open(path, 'w') as f:
            f.write('disk')

    monkeypatch.setattr(cluster, 'get_connection', get_connection)
    monkeypatch.setattr(cluster, '_backing_file_create', create_file)
    monkeypatch.setattr(cluster, '_config_drive_create',
                        lambda name, path, userdata: create_file(path))
    monkeypatch.setattr(cluster, '_get_ips',
                        lambda dom, name: ['192.168.122.5'])
    return cluster


def test_destroy_closes_connection(qemu_cluster):
    machine = qemu_cluster._create_machine(conf.Empty())
    qemu_cluster.add_machine(machine)
    conn = qemu_cluster.connections[0]
    assert os.listdir(qemu_cluster.dir)

    machine.destroy()

    assert conn.closed
    assert conn.domain.destroyed and conn.domain.undefined
    assert qemu_cluster.machines() == []
    assert not [f for f in os.listdir(qemu_cluster.dir)
                if f.endswith('.qcow2') or f.endswith('.iso')]


def test_destroy_domain_already_gone(qemu_cluster):
    machine = qemu_cluster._create_machine(conf.Empty())
    qemu_cluster.add_machine(machine)
    conn = qemu_cluster.connections[0]
    conn.domain.gone = True

    machine.destroy()

    assert machine.destroyed
    assert conn.closed
    assert qemu_cluster.machines() == []


def test_no_address_closes_connection(qemu_cluster, monkeypatch):
    def no_ips(dom, name):
        raise ProviderError(f"domain {name}: no IP address found")

    monkeypatch.setattr(qemu_cluster, '_get_ips', no_ips)
    with pytest.raises(ProviderError):
        qemu_cluster._create_machine(conf.Empty())

    conn = qemu_cluster.connections[0]
    assert conn.closed
    assert conn.domain.destroyed and conn.domain.undefined
    assert os.listdir(qemu_cluster.dir) == []


def test_disk_creation_failure(qemu_cluster, monkeypatch):
    def qemu_img_fails(path):
        raise subprocess.CalledProcessError(1, 'qemu-img create')

    monkeypatch.setattr(qemu_cluster, '_backing_file_create',
                        qemu_img_fails)
    with pytest.raises(ProviderError) as e:
        qemu_cluster._create_machine(conf.Empty())

    assert isinstance(e.value.__cause__, subprocess.CalledProcessError)
    assert qemu_cluster.connections == []


def test_new_machines_disk_creation_failure(qemu_cluster, monkeypatch):
    monkeypatch.setattr(qemu_cluster, '_wait_for_ssh', lambda machine: None)
    calls = []
    create_file = qemu_cluster._backing_file_create

    def second_fails(path):
        calls.append(path)
        if len(calls) == 2:
            raise subprocess.CalledProcessError(1, 'qemu-img create')
        create_file(path)

    monkeypatch.setattr(qemu_cluster, '_backing_file_create', second_fails)
    with pytest.raises(NewMachinesError) as e:
        qemu_cluster.new_machines(conf.Empty(), 3)

    assert len(e.value.machines) == 1
    assert qemu_cluster.machines() == e.value.machines
