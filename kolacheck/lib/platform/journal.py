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

import logging
import os
import threading
from typing import Optional, TYPE_CHECKING

import paramiko

from kolacheck.lib.exceptions import SSHConnectionError

if TYPE_CHECKING:
    from kolacheck.lib.platform.machine_base import MachineBase  # noqa: F401


logger = logging.getLogger(__name__)


class Journal():
    """
    Streams the systemd journal of a machine into a local file.

    Every (re)start appends to the same file so that the log of a machine
    spans its reboots.
    """
    def __init__(self, machine: 'MachineBase', directory: str):
        self._machine = machine
        self._path = os.path.join(directory, 'journal.txt')
        os.makedirs(directory, exist_ok=True)
        self._client: Optional[paramiko.SSHClient] = None
        self._channel: Optional[paramiko.Channel] = None
        self._thread: Optional[threading.Thread] = None
        self._destroyed = False

    @property
    def path(self) -> str:
        return self._path

    def start(self):
        if self._destroyed or self._thread is not None:
            return
        try:
            self._client = self._machine.cluster.ssh_client(
                self._machine.ip)
            self._channel = self._client.get_transport().open_session()
            self._channel.exec_command(
                "journalctl -b -f --no-tail -o short-precise")
        except (SSHConnectionError, paramiko.SSHException, OSError) as e:
            logger.warning(f"machine {self._machine.id}: unable to start "
                           f"journal: {e}")
            self.stop()
            return
        self._thread = threading.Thread(
            target=self._follow, args=(self._channel,), daemon=True,
            name=f"journal-{self._machine.id}")
        self._thread.start()
        logger.debug(f"machine {self._machine.id}: journal streaming to "
                     f"{self._path}")

    def _follow(self, channel):
        with open(self._path, 'ab') as f:
            while True:
                try:
                    data = channel.recv(32768)
                except (OSError, EOFError, paramiko.SSHException):
                    break
                if not data:
                    break
                f.write(data)
                f.flush()

    def stop(self):
        if self._channel is not None:
            self._channel.close()
        if self._client is not None:
            self._client.close()
        if self._thread is not None:
            self._thread.join(timeout=10)
        self._channel = None
        self._client = None
        self._thread = None

    def destroy(self):
        self.stop()
        self._destroyed = True


def new_journal(machine: 'MachineBase', directory: str) -> Journal:
    journal = Journal(machine, directory)
    machine.attach_journal(journal)
    journal.start()
    return journal
