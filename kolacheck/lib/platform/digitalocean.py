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

import dataclasses
import logging
import threading

import libcloud.common.exceptions
import libcloud.common.types
from libcloud.compute.providers import get_driver
from libcloud.compute.types import Provider

from kolacheck.lib.common import random_suffix
from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import ProviderError
from kolacheck.lib.platform.cluster_base import ClusterBase, PlatformOptions
from kolacheck.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Options(PlatformOptions):
    access_token: str = ''
    region: str = 'sfo2'
    size: str = '1gb'
    image: str = ''

    @classmethod
    def from_settings(cls, settings) -> 'Options':
        return cls(
            access_token=settings.DO.ACCESS_TOKEN,
            region=settings.DO.REGION,
            size=settings.DO.SIZE,
            image=settings.DO.IMAGE,
            **cls.common_from_settings(settings),
        )


def _is_not_found(e: Exception) -> bool:
    if getattr(e, 'code', None) == 404:
        return True
    return 'not found' in str(e).lower()


class Machine(MachineBase):
    def __init__(self, cluster: 'Cluster', node):
        super().__init__(cluster)
        self._node = node
        self._public_ip = node.public_ips[0]
        self._private_ip = node.private_ips[0] if node.private_ips \
            else node.public_ips[0]

    @property
    def id(self) -> str:
        return str(self._node.id)

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
                    f"unable to delete droplet {self.id}: {e}") from e
            logger.info(f"droplet {self.id} already gone")
            return
        logger.info(f"Deleted droplet {self.id}")

    def console_output(self) -> str:
        # DigitalOcean provides no API for this
        return ""


class Cluster(ClusterBase):
    def __init__(self, options: Options, workspace, name: str):
        super().__init__(options, workspace, name)
        # libcloud connections are not thread-safe
        self.api_lock = threading.Lock()
        self.conn = None
        self._key = None
        self._size = None
        self._image = None
        self._location = None

    def get_connection(self):
        driver = get_driver(Provider.DIGITAL_OCEAN)
        return driver(self.options.access_token, api_version='v2')

    def _setup(self):
        if not self.options.access_token:
            raise ProviderError(
                "No access token configured. Check DO.ACCESS_TOKEN setting")
        self.conn = self.get_connection()
        self._size = self._get_by_name(self.conn.list_sizes(),
                                       self.options.size, 'size')
        self._location = self._get_by_name(self.conn.list_locations(),
                                           self.options.region, 'region')
        self._image = self._get_image(self.options.image)
        self._key = self.conn.create_key_pair(
            f"{self.resource_name}-key", self.workspace.public_key)
        logger.info(f"ssh key {self._key.name} created")

    @staticmethod
    def _get_by_name(items, name, kind):
        for item in items:
            if name in (item.id, item.name):
                return item
        raise ProviderError(f"DigitalOcean {kind} {name} not found")

    def _get_image(self, identifier):
        try:
            return self.conn.get_image(identifier)
        except libcloud.common.exceptions.BaseHTTPError:
            logger.debug('No image found by id. '
                         'Falling back to search by name')
        return self._get_by_name(self.conn.list_images(), identifier,
                                 'image')

    def _create_machine(self, userdata: UserData) -> Machine:
        name = f"{self.resource_name}-{random_suffix()}"
        kwargs = {
            'ex_create_attr': {
                'private_networking': True,
                'ssh_keys': [self._key.extra['id']],
                'tags': ['kolacheck'],
            },
        }
        if userdata:
            kwargs['ex_user_data'] = userdata.as_str()
        try:
            with self.api_lock:
                node = self.conn.create_node(
                    name, self._size, self._image, self._location, **kwargs)
        except (libcloud.common.exceptions.BaseHTTPError,
                libcloud.common.types.LibcloudError) as e:
            raise ProviderError(f"unable to create droplet: {e}") from e
        logger.info(f"droplet {name} ({node.id}) created")

        try:
            with self.api_lock:
                node, _ = self.conn.wait_until_running(
                    [node], wait_period=5,
                    timeout=int(self.options.startup_timeout))[0]
        except libcloud.common.types.LibcloudError as e:
            with self.api_lock:
                self.conn.destroy_node(node)
            raise ProviderError(
                f"droplet {name} did not become active: {e}") from e
        return Machine(self, node)

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
