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

import pytest

from kolacheck.lib import conf
from kolacheck.lib.exceptions import WaitTimeout
from kolacheck.lib.harness import Harness, Outcome
from kolacheck.lib.platform.machine_base import install_file, transfer_file
from kolacheck.lib.register import TestDescriptor, registry
from kolacheck.suites import ignition


def test_reboot_changes_boot_id(cluster):
    machine = cluster.new_machine(conf.Empty())
    machine.files['/etc/motd'] = b'hello'
    boot_id = machine.boot_id()
    ip = machine.ip

    machine.reboot()

    assert machine.boot_id() != boot_id
    assert machine.boot_count == 2
    # identity and disk survive the reboot
    assert machine.ip == ip
    assert machine.files['/etc/motd'] == b'hello'


def test_reboot_timeout(provider, cluster):
    provider.stuck_reboot = True
    machine = cluster.new_machine(conf.Empty())
    with pytest.raises(WaitTimeout):
        machine.reboot(attempts=2, interval=0)
    boot_id_calls = [cmd for _, cmd in cluster.commands
                     if cmd.startswith('cat ')]
    # once before the reboot, then once per attempt
    assert len(boot_id_calls) == 3


class RecordingJournal():
    def __init__(self):
        self.calls = []

    def start(self):
        self.calls.append('start')

    def stop(self):
        self.calls.append('stop')

    def destroy(self):
        self.calls.append('destroy')


def test_reboot_restarts_journal(cluster):
    machine = cluster.new_machine(conf.Empty())
    journal = RecordingJournal()
    machine.attach_journal(journal)
    machine.reboot()
    assert journal.calls == ['stop', 'start']


def test_reboot_timeout_restarts_journal(provider, cluster):
    provider.stuck_reboot = True
    machine = cluster.new_machine(conf.Empty())
    journal = RecordingJournal()
    machine.attach_journal(journal)
    with pytest.raises(WaitTimeout):
        machine.reboot(attempts=2, interval=0)
    assert journal.calls == ['stop', 'start']


def test_reboot_zero_attempts(cluster):
    machine = cluster.new_machine(conf.Empty())
    with pytest.raises(ValueError):
        machine.reboot(attempts=0)
    # nothing was sent to the machine
    assert not [cmd for _, cmd in cluster.commands if 'reboot' in cmd]
    assert machine.boot_count == 1


def test_install_and_transfer_file(cluster):
    a, b = cluster.new_machines(conf.Empty(), 2)
    install_file(b'payload', a, '/home/core/data')
    transfer_file(a, '/home/core/data', b, '/tmp/data')
    assert b.files['/tmp/data'] == b'payload'


def test_ignition_suite_registered():
    assert 'cl.ignition.v1.once' in registry
    assert 'coreos.ignition.v2.once' in registry


def _ignition_test(config):
    return TestDescriptor(name='ignition.once', run=ignition.runs_once,
                          cluster_size=1, userdata=conf.Ignition(config))


@pytest.mark.parametrize("config", [ignition.V1_CONFIG, ignition.V2_CONFIG])
def test_ignition_runs_once(provider, config):
    result = Harness([_ignition_test(config)], 'qemu', 'cl',
                     provider).run()
    assert result.results[0].outcome == Outcome.PASSED
    machine = provider.created[0]
    assert machine.boot_count == 2
    assert ignition.MARKER not in machine.files
    assert provider.leaked == []


def test_ignition_running_again_is_detected(provider):
    provider.rerun_ignition = True
    result = Harness([_ignition_test(ignition.V2_CONFIG)], 'qemu', 'cl',
                     provider).run()
    r = result.results[0]
    assert r.outcome == Outcome.FATAL
    assert "test ! -e /etc/ignition-ran" in r.messages[0]
    assert provider.leaked == []


def test_ignition_not_run_at_all(provider):
    result = Harness([_ignition_test('{}')], 'qemu', 'cl', provider).run()
    r = result.results[0]
    assert r.outcome == Outcome.FATAL
    assert "sudo rm /etc/ignition-ran" in r.messages[0]


def test_ignition_reboot_failure(provider):
    provider.stuck_reboot = True
    result = Harness([_ignition_test(ignition.V2_CONFIG)], 'qemu', 'cl',
                     provider).run()
    r = result.results[0]
    assert r.outcome == Outcome.FATAL
    assert r.messages[0].startswith("Couldn't reboot machine")
