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

from kolacheck.lib import ssh
from kolacheck.lib.exceptions import (
    SSHCommandError, SSHConnectionError, WaitTimeout
)


class FakeChannel():
    def __init__(self, stdout=b'', stderr=b'', rc=0, hang=False):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self._rc = rc
        self._hang = hang
        self.closed = False
        self.command = None

    def exec_command(self, cmd):
        self.command = cmd

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, n):
        return self._stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, n):
        return self._stderr.pop(0)

    def exit_status_ready(self):
        return not self._hang

    def recv_exit_status(self):
        return self._rc

    def close(self):
        self.closed = True


class FakeTransport():
    def __init__(self, channel):
        self.channel = channel

    def is_active(self):
        return True

    def open_session(self):
        return self.channel


class FakeClient():
    def __init__(self, channel=None):
        self.transport = FakeTransport(channel)
        self.closed = False

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True


def test_run():
    channel = FakeChannel(stdout=b'hello\n', stderr=b'warning\n')
    stdout, stderr = ssh.run(FakeClient(channel), 'echo hello')
    assert (stdout, stderr) == (b'hello\n', b'warning\n')
    assert channel.command == 'echo hello'
    assert channel.closed


def test_run_failure():
    channel = FakeChannel(stderr=b'No such file\n', rc=1)
    with pytest.raises(SSHCommandError) as e:
        ssh.run(FakeClient(channel), 'cat /nope')
    assert e.value.exit_status == 1
    assert e.value.stderr == b'No such file\n'
    assert 'No such file' in str(e.value)


def test_run_timeout_closes_channel():
    channel = FakeChannel(hang=True)
    with pytest.raises(WaitTimeout):
        ssh.run(FakeClient(channel), 'sleep 1000', timeout=0.2)
    assert channel.closed


def test_wait_for_ssh(monkeypatch):
    attempts = []
    client = FakeClient()

    def connect(ip, user, key_filename, timeout=30):
        attempts.append(ip)
        if len(attempts) < 3:
            raise SSHConnectionError("connection refused")
        return client

    monkeypatch.setattr(ssh, 'connect', connect)
    ssh.wait_for_ssh('192.0.2.1', 'core', '/tmp/key', timeout=5, interval=0)
    assert len(attempts) == 3
    assert client.closed


def test_wait_for_ssh_timeout(monkeypatch):
    def connect(ip, user, key_filename, timeout=30):
        raise SSHConnectionError("connection refused")

    monkeypatch.setattr(ssh, 'connect', connect)
    with pytest.raises(WaitTimeout) as e:
        ssh.wait_for_ssh('192.0.2.1', 'core', '/tmp/key', timeout=0.2,
                         interval=0.05, name='node0')
    assert 'connection refused' in str(e.value)


def test_run_timeout_is_not_a_connection_error():
    channel = FakeChannel(hang=True)
    with pytest.raises(WaitTimeout) as e:
        ssh.run(FakeClient(channel), 'sleep 1000', timeout=0.1)
    assert not isinstance(e.value, SSHConnectionError)


def test_wait_for_ssh_connect_timeout_within_deadline(monkeypatch):
    timeouts = []

    def connect(ip, user, key_filename, timeout=30):
        timeouts.append(timeout)
        raise SSHConnectionError("connection refused")

    monkeypatch.setattr(ssh, 'connect', connect)
    with pytest.raises(WaitTimeout):
        ssh.wait_for_ssh('192.0.2.1', 'core', '/tmp/key', timeout=0.3,
                         interval=0.05)
    assert timeouts
    assert all(0 < t <= 0.3 for t in timeouts)
    assert timeouts[-1] < timeouts[0]
