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

# An in-memory provider. Machines keep a set of files and a boot id, so that
# tests can check what survives a reboot, and every create/destroy call is
# recorded so that leaks show up.

import logging
import os
import threading
import time
import uuid

import pytest

from kolacheck.lib.exceptions import (
    ProviderError, SSHCommandError, WaitTimeout
)
from kolacheck.lib.platform.cluster_base import ClusterBase, PlatformOptions
from kolacheck.lib.platform.machine_base import BOOT_ID_CMD, MachineBase


logger = logging.getLogger(__name__)

IGNITION_MARKER = '/etc/ignition-ran'


class FakeWorkspace():
    def __init__(self, base_dir):
        self.name = 'kola-test'
        self.working_dir = str(base_dir)
        self.private_key = os.path.join(self.working_dir, 'private.key')
        self.public_key = 'ssh-rsa AAAAB3NzaC1yc2E fake'

    def cluster_dir(self, test_name):
        path = os.path.join(self.working_dir, 'clusters', test_name)
        os.makedirs(path, exist_ok=True)
        return path


class FakeMachine(MachineBase):
    def __init__(self, cluster, machine_id, userdata):
        super().__init__(cluster)
        self._id = machine_id
        self._index = len(cluster.created) + 10
        self.userdata = userdata
        self.files = {}
        self.boot_count = 0
        self.current_boot_id = None
        self.destroy_calls = 0
        self._boot()

    @property
    def id(self):
        return self._id

    @property
    def ip(self):
        return '192.0.2.%d' % self._index

    @property
    def private_ip(self):
        return '10.0.0.%d' % self._index

    def _boot(self):
        self.boot_count += 1
        self.current_boot_id = str(uuid.uuid4())
        provider = self.cluster.provider
        if self.userdata.is_ignition and \
                IGNITION_MARKER.encode() in self.userdata.as_bytes() and \
                (self.boot_count == 1 or provider.rerun_ignition):
            self.files[IGNITION_MARKER] = b'Ignition ran.'

    def run(self, cmd):
        if cmd == BOOT_ID_CMD:
            return self.current_boot_id.encode() + b'\n', b''
        if cmd == 'sudo systemctl reboot':
            if not self.cluster.provider.stuck_reboot:
                self._boot()
            # the session goes away with the machine
            raise SSHCommandError(cmd, -1)
        words = cmd.split()
        if words[:2] == ['sudo', 'rm']:
            if words[2] not in self.files:
                raise SSHCommandError(
                    cmd, 1, b'', b'rm: cannot remove: No such file')
            del self.files[words[2]]
            return b'', b''
        if words[:3] == ['test', '!', '-e']:
            if words[3] in self.files:
                raise SSHCommandError(cmd, 1)
            return b'', b''
        if words[0] == 'false':
            raise SSHCommandError(cmd, 1)
        return b'', b''

    def _destroy(self):
        self.destroy_calls += 1
        if self.id in self.cluster.provider.fail_destroy:
            raise ProviderError(f"API error while deleting {self.id}")

    def console_output(self):
        return f"console of {self.id}\n"


class FakeCluster(ClusterBase):
    def __init__(self, provider, name):
        self.provider = provider
        self.created = []
        self.commands = []
        self.resources_destroyed = False
        self.active = False
        super().__init__(provider.options, provider.workspace, name)

    def _setup(self):
        if self.name in self.provider.fail_setup:
            raise ProviderError("quota exceeded")
        self.provider.cluster_started()
        self.active = True

    def _create_machine(self, userdata):
        delay = self.provider.create_delay.get(self.name)
        if delay:
            time.sleep(delay)
        fail_at = self.provider.fail_create.get(self.name)
        if fail_at is not None and len(self.created) == fail_at:
            raise self.provider.create_errors.get(
                self.name, ProviderError("instance limit exceeded"))
        machine = FakeMachine(
            self, f"{self.name}-{len(self.created)}", userdata)
        self.created.append(machine)
        return machine

    def _wait_for_ssh(self, machine):
        if self.name in self.provider.unreachable:
            raise WaitTimeout(f"node {machine.id}: Timeout while waiting "
                              "for ssh")

    def ssh(self, machine, cmd, timeout=None):
        self.commands.append((machine.id, cmd))
        return machine.run(cmd)

    def put_file(self, machine, data, path, mode=0o644):
        machine.files[path] = data

    def get_file(self, machine, path):
        return machine.files[path]

    def _destroy_resources(self):
        if self.active:
            self.provider.cluster_stopped()
            self.active = False
        self.resources_destroyed = True


class FakeProvider():
    """
    Cluster factory handed to the harness. The knobs are keyed by test (and
    so cluster) name unless noted otherwise.
    """
    def __init__(self, workspace):
        self.workspace = workspace
        self.options = PlatformOptions(
            journal=False, reboot_attempts=3, reboot_interval=0,
            startup_timeout=1, ssh_retry_interval=0)
        self.clusters = []
        self.fail_setup = set()
        # cluster name -> index of the machine creation that fails
        self.fail_create = {}
        # cluster name -> exception raised by the failing creation
        self.create_errors = {}
        # cluster name -> seconds each machine creation takes
        self.create_delay = {}
        self.unreachable = set()
        # machine ids
        self.fail_destroy = set()
        self.rerun_ignition = False
        self.stuck_reboot = False
        self.active_clusters = 0
        self.peak_clusters = 0
        self._lock = threading.Lock()

    def cluster_started(self):
        with self._lock:
            self.active_clusters += 1
            self.peak_clusters = max(self.peak_clusters,
                                     self.active_clusters)

    def cluster_stopped(self):
        with self._lock:
            self.active_clusters -= 1

    def __call__(self, name):
        cluster = FakeCluster(self, name)
        with self._lock:
            self.clusters.append(cluster)
        return cluster

    def cluster(self, name):
        return next(c for c in self.clusters if c.name == name)

    @property
    def created(self):
        return [m for c in self.clusters for m in c.created]

    @property
    def leaked(self):
        return [m for m in self.created if not m.destroyed]


@pytest.fixture
def workspace(tmp_path):
    return FakeWorkspace(tmp_path)


@pytest.fixture
def provider(workspace):
    return FakeProvider(workspace)


@pytest.fixture
def cluster(provider):
    return provider('cluster-test')
