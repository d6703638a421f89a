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

# A cluster is the set of machines provisioned for one test execution. The
# backends only implement the provider specific hooks (_setup,
# _create_machine, _destroy_resources); everything that has to behave the
# same on every provider (waiting for ssh, bookkeeping of machines, the
# teardown guarantee) lives here.

import dataclasses
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import paramiko

from kolacheck.lib import ssh
from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import (
    NewMachinesError, ProviderError, WaitTimeout
)
from kolacheck.lib.platform.journal import new_journal
from kolacheck.lib.platform.machine_base import MachineBase
from kolacheck.lib.workspace import Workspace

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class PlatformOptions:
    """
    Settings every backend understands. Backends extend this with their own
    frozen dataclass, which keeps the configuration read-only for the run.
    """
    board: str = 'amd64-usr'
    distro: str = 'cl'
    ssh_user: str = 'core'
    startup_timeout: float = 300
    ssh_retry_interval: float = 5
    reboot_attempts: int = 60
    reboot_interval: float = 5
    journal: bool = True

    @classmethod
    def common_from_settings(cls, settings) -> Dict[str, Any]:
        return dict(
            board=settings.BOARD,
            distro=settings.DISTRO,
            ssh_user=settings.SSH_USER,
            startup_timeout=float(settings.MACHINE_STARTUP_TIMEOUT),
            ssh_retry_interval=float(settings.SSH_RETRY_INTERVAL),
            reboot_attempts=int(settings.REBOOT_ATTEMPTS),
            reboot_interval=float(settings.REBOOT_INTERVAL),
            journal=settings.as_bool('JOURNAL'),
        )

    @classmethod
    def from_settings(cls, settings) -> 'PlatformOptions':
        return cls(**cls.common_from_settings(settings))


class ClusterBase(ABC):
    """
    Base Cluster class
    """
    def __init__(self, options: PlatformOptions, workspace: Workspace,
                 name: str):
        self._options = options
        self._workspace = workspace
        self._name = name
        self._dir = workspace.cluster_dir(name)
        self._machines: Dict[str, MachineBase] = {}
        self._machines_lock = threading.Lock()
        self._bindings: Dict[str, str] = {}
        self._destroyed = False

        logger.info(f"cluster {self.name}: Using {self.workspace.name}")

    @property
    def name(self) -> str:
        return self._name

    @property
    def options(self) -> PlatformOptions:
        return self._options

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    @property
    def dir(self) -> str:
        return self._dir

    @property
    def bindings(self) -> Dict[str, str]:
        """
        Template bindings substituted into boot payloads
        """
        return self._bindings

    @property
    def resource_name(self) -> str:
        """
        Name (unique within the run) to tag provider resources with
        """
        suffix = ''.join(c if c.isalnum() else '-' for c in self.name)
        return f"{self.workspace.name}-{suffix}"[:60].strip('-').lower()

    def machines(self) -> List[MachineBase]:
        with self._machines_lock:
            return list(self._machines.values())

    def setup(self):
        """
        Allocate the provider side grouping (networks, key pairs, ...)

        Whatever was created before a failure is removed again before the
        error is re-raised, so _destroy_resources() has to cope with a
        partial setup.
        """
        logger.info(f"cluster {self.name}: setting up")
        try:
            self._setup()
        except Exception:
            logger.error(f"cluster {self.name}: setup failed, removing "
                         "partially created resources")
            try:
                self._destroy_resources()
            except Exception as e:
                logger.error(f"cluster {self.name}: cleanup after failed "
                             f"setup failed: {e}")
            raise

    def _setup(self):
        pass

    def add_machine(self, machine: MachineBase):
        """
        Track `machine` for teardown. A machine that shows up after the
        cluster was destroyed is destroyed right away and ProviderError is
        raised.
        """
        logger.info(f"adding machine {machine.id} to cluster {self.name}")
        with self._machines_lock:
            destroyed = self._destroyed
            if not destroyed:
                self._machines[machine.id] = machine
        if destroyed:
            logger.warning(f"cluster {self.name}: already destroyed, "
                           f"removing late machine {machine.id}")
            try:
                machine.destroy()
            except Exception as e:
                logger.error(f"cluster {self.name}: destroying late machine "
                             f"{machine.id} failed: {e}")
            raise ProviderError(f"cluster {self.name} is already destroyed")

    def del_machine(self, machine: MachineBase):
        logger.info(f"removing machine {machine.id} from cluster "
                    f"{self.name}")
        with self._machines_lock:
            self._machines.pop(machine.id, None)

    @abstractmethod
    def _create_machine(self, userdata: UserData) -> MachineBase:
        """
        Create the instance with `userdata` attached and return it as soon as
        its addresses are known. Waiting for ssh is done by new_machine().
        """
        pass

    def new_machine(self, userdata: UserData) -> MachineBase:
        """
        Provision one machine and block until it is reachable over ssh

        The machine is part of the cluster as soon as the provider created it,
        so a machine that never becomes reachable is still destroyed on
        teardown.
        """
        if self._destroyed:
            raise ProviderError(f"cluster {self.name} is already destroyed")
        rendered = userdata.render(self.bindings)
        logger.info(f"cluster {self.name}: creating a new machine "
                    f"({rendered!r})")
        machine = self._create_machine(rendered)
        self.add_machine(machine)
        try:
            self._wait_for_ssh(machine)
        except WaitTimeout as e:
            raise ProviderError(
                f"machine {machine.id} not reachable: {e}") from e

        if self.options.journal:
            new_journal(machine, os.path.join(self.dir, machine.id))
        return machine

    def new_machines(self, userdata: UserData,
                     n: int) -> List[MachineBase]:
        """
        Provision `n` machines one after the other

        If one fails, NewMachinesError carries the machines that were created
        before it.
        """
        machines: List[MachineBase] = []
        for i in range(n):
            try:
                machines.append(self.new_machine(userdata))
            except Exception as e:
                raise NewMachinesError(
                    f"cluster {self.name}: created {len(machines)} of {n} "
                    f"machines: {e}", machines) from e
        return machines

    def _wait_for_ssh(self, machine: MachineBase):
        ssh.wait_for_ssh(
            machine.ip, self.options.ssh_user, self.workspace.private_key,
            timeout=self.options.startup_timeout,
            interval=self.options.ssh_retry_interval, name=machine.id)

    def ssh_client(self, ip: str) -> paramiko.SSHClient:
        return ssh.connect(ip, self.options.ssh_user,
                           self.workspace.private_key)

    def ssh(self, machine: MachineBase, cmd: str,
            timeout: Optional[float] = None) -> Tuple[bytes, bytes]:
        logger.debug(f"machine {machine.id}: running {cmd!r}")
        client = self.ssh_client(machine.ip)
        try:
            return ssh.run(client, cmd, timeout=timeout)
        finally:
            client.close()

    def put_file(self, machine: MachineBase, data: bytes, path: str,
                 mode: int = 0o644):
        client = self.ssh_client(machine.ip)
        try:
            ssh.put_file(client, data, path, mode=mode)
        finally:
            client.close()

    def get_file(self, machine: MachineBase, path: str) -> bytes:
        client = self.ssh_client(machine.ip)
        try:
            return ssh.get_file(client, path)
        finally:
            client.close()

    def destroy(self) -> List[Exception]:
        """
        Destroy every machine ever added to the cluster, then the provider
        side grouping. Errors are collected and returned; they never stop
        the rest of the teardown.
        """
        with self._machines_lock:
            if self._destroyed:
                return []
            self._destroyed = True
        errors: List[Exception] = []
        visited = set()
        logger.info(f"cluster {self.name}: removing all machines")
        while True:
            pending = [m for m in self.machines() if id(m) not in visited]
            if not pending:
                break
            for machine in pending:
                visited.add(id(machine))
                self._save_console(machine)
                try:
                    machine.destroy()
                except Exception as e:
                    logger.error(f"cluster {self.name}: destroying machine "
                                 f"{machine.id} failed: {e}")
                    errors.append(e)
        try:
            self._destroy_resources()
        except Exception as e:
            logger.error(f"cluster {self.name}: removing provider resources"
                         f" failed: {e}")
            errors.append(e)
        logger.info(f"cluster {self.name}: destroyed ({len(errors)} errors)")
        return errors

    def _save_console(self, machine: MachineBase):
        try:
            output = machine.console_output()
        except Exception as e:
            logger.warning(f"machine {machine.id}: unable to get console "
                           f"output: {e}")
            return
        if not output:
            return
        path = os.path.join(self.dir, machine.id)
        os.makedirs(path, exist_ok=True)
        with open(os.path.join(path, 'console.txt'), 'w') as f:
            f.write(output)

    def _destroy_resources(self):
        """
        Remove the provider side grouping created by _setup()
        """
        pass

    def leave(self):
        """
        Log what is left behind when teardown is disabled
        """
        logger.warning("Cluster will not be removed!")
        logger.warning("The following machines and their associated "
                       "resources will remain:")
        for m in self.machines():
            logger.warning(f"Leaving machine {m.id} at ip {m.ip}")

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.destroy()
