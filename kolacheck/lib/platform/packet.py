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

# Bare metal machines (Equinix Metal, formerly Packet). Provisioning a
# device takes several minutes, so the startup timeout should be raised
# accordingly.

import dataclasses
import logging
import threading

import libcloud.common.exceptions
import libcloud.common.types
from libcloud.compute.providers import get_driver
from libcloud.compute.types import Provider
import netaddr

from kolacheck.lib.common import random_suffix
from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import ProviderError
from kolacheck.lib.platform.cluster_base import ClusterBase, PlatformOptions
from kolacheck.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)

DEFAULT_PLANS = {
    'amd64-usr': 'c3.small.x86',
    'arm64-usr': 'c3.large.arm64',
}


@dataclasses.dataclass(frozen=True)
class Options(PlatformOptions):
    api_key: str = ''
    project: str = ''
    facility: str = 'sjc1'
    plan: str = ''
    operating_system: str = 'flatcar_stable'

    @classmethod
    def from_settings(cls, settings) -> 'Options':
        return cls(
            api_key=settings.PACKET.API_KEY,
            project=settings.PACKET.PROJECT,
            facility=settings.PACKET.FACILITY,
            plan=settings.PACKET.PLAN,
            operating_system=settings.PACKET.OPERATING_SYSTEM,
            **cls.common_from_settings(settings),
        )

    def get_plan(self) -> str:
        return self.plan or DEFAULT_PLANS[self.board]


def _is_not_found(e: Exception) -> bool:
    return getattr(e, 'code', None) == 404 or \
        'not found' in str(e).lower()


def _ipv4(addresses):
    return [a for a in addresses if netaddr.valid_ipv4(a)]


class Machine(MachineBase):
    def __init__(self, cluster: 'Cluster', node):
        super().__init__(cluster)
        self._node = node
        public = _ipv4(node.public_ips)
        private = _ipv4(node.private_ips)
        if not public:
            raise ProviderError(f"device {node.id} has no public IPv4")
        self._public_ip = public[0]
        self._private_ip = private[0] if private else public[0]

    @property
    def id(self) -> str:
        return self._node.id

    @property
    def ip(self) -> str:
        return self._public_ip

    @property
    def private_ip(self) -> str:
        return self._private_ip

    def _destroy(self):
        try:
            with self.cluster.api_lock:
                self.cluster.conn.destroy_node(self._node)
        except (libcloud.common.exceptions.BaseHTTPError,
                libcloud.common.types.LibcloudError) as e:
            if not _is_not_found(e):
                raise ProviderError(
                    f"unable to delete device {self.id}: {e}") from e
            logger.info(f"device {self.id} already gone")
            return
        logger.info(f"Deleted device {self.id}")


class Cluster(ClusterBase):
    def __init__(self, options: Options, workspace, name: str):
        super().__init__(options, workspace, name)
        self.api_lock = threading.Lock()
        self.conn = None
        self._key = None
        self._size = None
        self._image = None
        self._location = None

    def get_connection(self):
        driver = get_driver(Provider.EQUINIXMETAL)
        return driver(self.options.api_key)

    def _setup(self):
        if not self.options.api_key or not self.options.project:
            raise ProviderError(
                "Check PACKET.API_KEY and PACKET.PROJECT settings")
        self.conn = self.get_connection()
        self._size = self._find(self.conn.list_sizes(),
                                self.options.get_plan(), 'plan')
        self._location = self._find(self.conn.list_locations(),
                                    self.options.facility, 'facility')
        self._image = self._find(self.conn.list_images(),
                                 self.options.operating_system,
                                 'operating system')
        self._key = self.conn.create_key_pair(
            f"{self.resource_name}-key", self.workspace.public_key)
        logger.info(f"ssh key {self._key.name} created")

    @staticmethod
    def _find(items, identifier, kind):
        for item in items:
            if identifier in (item.id, item.name):
                return item
        raise ProviderError(f"Equinix Metal {kind} {identifier} not found")

    def _create_machine(self, userdata: UserData) -> Machine:
        name = f"{self.resource_name}-{random_suffix()}"
        kwargs = {}
        if userdata:
            kwargs['cloud_init'] = userdata.as_str()
        try:
            with self.api_lock:
                node = self.conn.create_node(
                    name, self._size, self._image, self._location,
                    ex_project_id=self.options.project, **kwargs)
        except (libcloud.common.exceptions.BaseHTTPError,
                libcloud.common.types.LibcloudError) as e:
            raise ProviderError(f"unable to create device: {e}") from e
        logger.info(f"device {name} ({node.id}) created")

        try:
            with self.api_lock:
                node, _ = self.conn.wait_until_running(
                    [node], wait_period=15,
                    timeout=int(self.options.startup_timeout))[0]
            return Machine(self, node)
        except (ProviderError, libcloud.common.types.LibcloudError) as e:
            with self.api_lock:
                self.conn.destroy_node(node)
            raise ProviderError(
                f"device {name} did not become active: {e}") from e

    def _destroy_resources(self):
        if self._key is not None:
            try:
                with self.api_lock:
                    self.conn.delete_key_pair(self._key)
            except libcloud.common.exceptions.BaseHTTPError as e:
                if not _is_not_found(e):
                    raise
            logger.info(f"ssh key {self._key.name} deleted")
            self._key = None
