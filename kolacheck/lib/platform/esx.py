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

# Machines are linked clones of a prepared base VM. The boot payload is
# handed over through VMware guestinfo properties, which both ignition and
# cloud-init read on first boot.

import base64
import dataclasses
import datetime
import logging
import ssl
import threading
import time

from pyVim.connect import Disconnect, SmartConnect
from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

from kolacheck.config import converter
from kolacheck.lib.common import random_suffix
from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import ProviderError
from kolacheck.lib.platform.cluster_base import ClusterBase, PlatformOptions
from kolacheck.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Options(PlatformOptions):
    server: str = ''
    user: str = ''
    password: str = ''
    base_vm_name: str = ''
    verify_ssl_cert: bool = False

    @classmethod
    def from_settings(cls, settings) -> 'Options':
        return cls(
            server=settings.ESX.SERVER,
            user=settings.ESX.USER,
            password=settings.ESX.PASSWORD,
            base_vm_name=settings.ESX.BASE_VM_NAME,
            verify_ssl_cert=converter('@bool', settings.ESX.VERIFY_SSL_CERT),
            **cls.common_from_settings(settings),
        )


def _guestinfo(userdata: UserData, public_key: str):
    if userdata.is_ignition:
        prefix = 'guestinfo.ignition.config'
    else:
        prefix = 'guestinfo.coreos.config'
    values = {
        f'{prefix}.data': base64.b64encode(userdata.as_bytes()).decode(),
        f'{prefix}.data.encoding': 'base64',
        'guestinfo.kolacheck.ssh_authorized_keys': public_key,
    }
    return [vim.option.OptionValue(key=k, value=v)
            for k, v in values.items()]


class Machine(MachineBase):
    def __init__(self, cluster: 'Cluster', vm, ip: str):
        super().__init__(cluster)
        self._vm = vm
        self._uuid = vm.config.instanceUuid
        self._ip = ip

    @property
    def id(self) -> str:
        return self._uuid

    @property
    def ip(self) -> str:
        return self._ip

    @property
    def private_ip(self) -> str:
        # ESX machines share one network
        return self._ip

    def _destroy(self):
        with self.cluster.api_lock:
            try:
                if self._vm.runtime.powerState == \
                        vim.VirtualMachinePowerState.poweredOn:
                    WaitForTask(self._vm.PowerOffVM_Task())
                WaitForTask(self._vm.Destroy_Task())
            except vmodl.fault.ManagedObjectNotFound:
                logger.info(f"vm {self.id} already gone")
                return
            except vmodl.MethodFault as e:
                raise ProviderError(
                    f"unable to delete vm {self.id}: {e.msg}") from e
        logger.info(f"Deleted vm {self.id}")


class Cluster(ClusterBase):
    def __init__(self, options: Options, workspace, name: str):
        super().__init__(options, workspace, name)
        self.api_lock = threading.Lock()
        self._si = None
        self._base_vm = None

    def get_connection(self):
        context = None
        if not self.options.verify_ssl_cert:
            context = ssl._create_unverified_context()
        return SmartConnect(host=self.options.server,
                            user=self.options.user,
                            pwd=self.options.password,
                            sslContext=context)

    def _setup(self):
        if not self.options.server or not self.options.base_vm_name:
            raise ProviderError(
                "Check ESX.SERVER and ESX.BASE_VM_NAME settings")
        self._si = self.get_connection()
        try:
            self._base_vm = self._find_vm(self.options.base_vm_name)
        except ProviderError:
            Disconnect(self._si)
            self._si = None
            raise

    def _find_vm(self, name):
        content = self._si.RetrieveContent()
        view = content.viewManager.CreateContainerView(
            content.rootFolder, [vim.VirtualMachine], True)
        try:
            for vm in view.view:
                if vm.name == name:
                    return vm
        finally:
            view.Destroy()
        raise ProviderError(f"base vm {name} not found")

    def _wait_for_ip(self, vm, name):
        timeout = self.options.startup_timeout
        stop = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
        logger.info(f"vm {name}: wait {timeout}s to get IP address")
        while datetime.datetime.now() < stop:
            ip = vm.guest.ipAddress
            if ip and ':' not in ip:
                logger.info(f"vm {name}: found IP {ip}")
                return ip
            time.sleep(3)
        raise ProviderError(f"vm {name}: no IP address found")

    def _create_machine(self, userdata: UserData) -> Machine:
        name = f"{self.resource_name}-{random_suffix()}"
        spec = vim.vm.CloneSpec(
            location=vim.vm.RelocateSpec(),
            powerOn=True,
            template=False,
            config=vim.vm.ConfigSpec(
                extraConfig=_guestinfo(userdata, self.workspace.public_key)),
        )
        try:
            with self.api_lock:
                task = self._base_vm.CloneVM_Task(
                    folder=self._base_vm.parent, name=name, spec=spec)
                WaitForTask(task)
        except vmodl.MethodFault as e:
            raise ProviderError(f"unable to clone vm {name}: {e.msg}") \
                from e
        vm = task.info.result
        logger.info(f"vm {name} cloned from {self.options.base_vm_name}")

        try:
            ip = self._wait_for_ip(vm, name)
        except ProviderError:
            with self.api_lock:
                WaitForTask(vm.PowerOffVM_Task())
                WaitForTask(vm.Destroy_Task())
            raise
        return Machine(self, vm, ip)

    def _destroy_resources(self):
        if self._si is not None:
            Disconnect(self._si)
            self._si = None
