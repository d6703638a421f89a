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

import datetime
import io
import logging
import socket
import time
from typing import Optional, Tuple

import paramiko

from kolacheck.lib.common import run_with_timeout
from kolacheck.lib.exceptions import (
    SSHCommandError, SSHConnectionError, WaitTimeout
)


logger = logging.getLogger(__name__)

# Errors which mean "the machine is not (yet) reachable" rather than a
# permanent misconfiguration.
TRANSIENT_ERRORS = (
    paramiko.BadHostKeyException,
    paramiko.AuthenticationException,
    paramiko.ssh_exception.SSHException,
    paramiko.ssh_exception.NoValidConnectionsError,
    EOFError,
    socket.error,
)


def connect(ip: str, user: str, key_filename: str,
            timeout: float = 30) -> paramiko.SSHClient:
    """Open an ssh session to `ip` authenticating with `key_filename`"""
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(ip, username=user, key_filename=key_filename,
                       timeout=timeout, banner_timeout=timeout,
                       auth_timeout=timeout, allow_agent=False,
                       look_for_keys=False)
    except TRANSIENT_ERRORS as e:
        client.close()
        raise SSHConnectionError(
            f"unable to connect to {user}@{ip}: {e}") from e
    return client


def run(client: paramiko.SSHClient, cmd: str,
        timeout: Optional[float] = None) -> Tuple[bytes, bytes]:
    """Run `cmd` over an established session.

    Returns (stdout, stderr). A non-zero exit status raises SSHCommandError
    carrying both streams. With a `timeout` the command races a deadline and
    its channel is closed if the deadline wins.
    """
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise SSHConnectionError("ssh session is not active")
    try:
        channel = transport.open_session()
    except TRANSIENT_ERRORS as e:
        raise SSHConnectionError(f"unable to open channel: {e}") from e

    def _run():
        channel.exec_command(cmd)
        stdout = io.BytesIO()
        stderr = io.BytesIO()
        while True:
            if channel.recv_ready():
                stdout.write(channel.recv(32768))
            elif channel.recv_stderr_ready():
                stderr.write(channel.recv_stderr(32768))
            elif channel.exit_status_ready():
                break
            elif channel.closed:
                break
            else:
                time.sleep(0.05)
        # drain what arrived after the exit status
        while channel.recv_ready():
            stdout.write(channel.recv(32768))
        while channel.recv_stderr_ready():
            stderr.write(channel.recv_stderr(32768))
        return channel.recv_exit_status(), stdout.getvalue(), \
            stderr.getvalue()

    try:
        if timeout is None:
            rc, stdout, stderr = _run()
        else:
            rc, stdout, stderr = run_with_timeout(
                _run, timeout, cancel=channel.close, name=f"ssh {cmd!r}")
    except WaitTimeout:
        raise
    except TRANSIENT_ERRORS as e:
        raise SSHConnectionError(f"running {cmd!r} failed: {e}") from e
    finally:
        channel.close()

    if rc != 0:
        raise SSHCommandError(cmd, rc, stdout, stderr)
    return stdout, stderr


def put_file(client: paramiko.SSHClient, data: bytes, path: str,
             mode: int = 0o644):
    """Write `data` to `path` on the remote side over sftp"""
    sftp = client.open_sftp()
    try:
        with sftp.open(path, 'wb') as f:
            f.write(data)
        sftp.chmod(path, mode)
    finally:
        sftp.close()


def get_file(client: paramiko.SSHClient, path: str) -> bytes:
    sftp = client.open_sftp()
    try:
        with sftp.open(path, 'rb') as f:
            return f.read()
    finally:
        sftp.close()


def wait_for_ssh(ip: str, user: str, key_filename: str,
                 timeout: float = 300, interval: float = 3,
                 name: Optional[str] = None):
    """Poll until `ip` accepts an ssh session or `timeout` expires.

    The probing session is closed again; no handle is left open on success
    or failure.
    """
    name = name or ip
    stop = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
    logger.info(f"node {name}: waiting {timeout} s for ssh to "
                f"{user}@{ip}")
    last_error: Optional[Exception] = None
    while True:
        remaining = (stop - datetime.datetime.now()).total_seconds()
        if remaining <= 0:
            break
        try:
            client = connect(ip, user, key_filename,
                             timeout=min(30, remaining))
        except SSHConnectionError as e:
            last_error = e
            logger.debug(f"node {name}: ssh not ready yet: {e}")
            time.sleep(interval)
            continue
        client.close()
        logger.info(f"node {name}: ssh ready for user {user}")
        return
    raise WaitTimeout(f"node {name}: Timeout while waiting for ssh on {ip}"
                      f" (last error: {last_error})")
