# Copyright (c) 2019 SUSE LINUX GmbH
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
import threading
from abc import ABC, abstractmethod
from typing import Optional, Tuple, TYPE_CHECKING

from kolacheck.lib.common import retry
from kolacheck.lib.exceptions import (
    KolaError, RetryError, SSHCommandError, WaitTimeout
)

if TYPE_CHECKING:
    from kolacheck.lib.platform.cluster_base import ClusterBase  # noqa: F401
    from kolacheck.lib.platform.journal import Journal  # noqa: F401


logger = logging.getLogger(__name__)

BOOT_ID_CMD = "cat /proc/sys/kernel/random/boot_id"


class MachineBase(ABC):
    """
    Base class for machines

    A machine is created by exactly one cluster and keeps the identity and
    addresses it got at creation time for its whole life (including across
    reboots).
    """
    def __init__(self, cluster: 'ClusterBase'):
        self._cluster = cluster
        self._journal: Optional['Journal'] = None
        self._destroyed = False
        self._destroy_lock = threading.Lock()

    @property
    def cluster(self) -> 'ClusterBase':
        return self._cluster

    @property
    @abstractmethod
    def id(self) -> str:
        """
        Provider identifier of the machine, never reused
        """
        pass

    @property
    @abstractmethod
    def ip(self) -> str:
        """
        The IP address that can be used to ssh into the machine
        """
        pass

    @property
    @abstractmethod
    def private_ip(self) -> str:
        pass

    @property
    def journal(self) -> Optional['Journal']:
        return self._journal

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def attach_journal(self, journal: 'Journal'):
        if self._journal is not None:
            raise KolaError(f"machine {self.id} already has a journal")
        self._journal = journal

    def ssh(self, cmd: str,
            timeout: Optional[float] = None) -> Tuple[bytes, bytes]:
        """
        Run `cmd` on the machine, returning (stdout, stderr)
        """
        return self.cluster.ssh(self, cmd, timeout=timeout)

    def boot_id(self) -> str:
        stdout, _ = self.ssh(BOOT_ID_CMD)
        return stdout.decode().strip()

    def reboot(self, attempts: Optional[int] = None,
               interval: Optional[float] = None):
        """
        Reboot the machine and block until it is confirmed to be back up

        The boot id is read before the reboot; the machine only counts as
        rebooted once a different boot id answers over ssh.
        """
        attempts = attempts if attempts is not None \
            else self.cluster.options.reboot_attempts
        interval = interval if interval is not None \
            else self.cluster.options.reboot_interval

        if attempts < 1:
            raise ValueError("attempts must be at least 1")

        old_boot_id = self.boot_id()
        logger.info(f"machine {self.id}: rebooting (boot id {old_boot_id})")
        journal = self._journal
        if journal:
            journal.stop()
        try:
            self._reboot_and_wait(old_boot_id, attempts, interval)
        finally:
            if journal:
                journal.start()

    def _reboot_and_wait(self, old_boot_id: str, attempts: int,
                         interval: float):
        try:
            self.ssh("sudo systemctl reboot")
        except SSHCommandError as e:
            # the session is usually torn down before the command returns
            logger.debug(f"machine {self.id}: reboot command returned {e}")
        except KolaError as e:
            logger.debug(f"machine {self.id}: connection dropped on reboot:"
                         f" {e}")

        def _check_rebooted():
            new_boot_id = self.boot_id()
            if new_boot_id == old_boot_id:
                raise KolaError(f"machine {self.id} has not rebooted yet")
            return new_boot_id

        try:
            new_boot_id = retry(attempts, interval, _check_rebooted)
        except RetryError as e:
            raise WaitTimeout(
                f"machine {self.id} did not come back after reboot: "
                f"{e}") from e
        logger.info(f"machine {self.id}: back up (boot id {new_boot_id})")

    def destroy(self):
        """
        Release the provider resources of the machine and its journal

        Safe to call more than once; provider side "not found" is treated as
        success by the backends.
        """
        with self._destroy_lock:
            if self._destroyed:
                return
            logger.info(f"machine {self.id}: destroying")
            try:
                self._destroy()
            finally:
                if self._journal is not None:
                    self._journal.destroy()
            self._destroyed = True
        self.cluster.del_machine(self)

    @abstractmethod
    def _destroy(self):
        """
        Provider specific release of the instance
        """
        pass

    def console_output(self) -> str:
        """
        Best effort console capture; empty if the provider has none
        """
        return ""

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.id} ({self.ip})>"


def install_file(data: bytes, machine: MachineBase, path: str,
                 mode: int = 0o644):
    """
    Upload `data` into `path` on `machine`
    """
    machine.cluster.put_file(machine, data, path, mode=mode)
    logger.info(f"machine {machine.id}: installed {path}")


def transfer_file(src: MachineBase, src_path: str,
                  dst: MachineBase, dst_path: str, mode: int = 0o644):
    """
    Copy a file from one machine of a cluster to another
    """
    data = src.cluster.get_file(src, src_path)
    install_file(data, dst, dst_path, mode=mode)
