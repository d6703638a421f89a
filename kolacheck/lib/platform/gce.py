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
from libcloud.common.google import GoogleBaseError, ResourceNotFoundError
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
    project: str = ''
    zone: str = 'us-central1-a'
    image: str = ''
    machine_type: str = 'n1-standard-1'
    disk_type: str = 'pd-ssd'
    network: str = 'default'
    service_account: str = ''
    json_key_file: str = ''

    @classmethod
    def from_settings(cls, settings) -> 'Options':
        return cls(
            project=settings.GCE.PROJECT,
            zone=settings.GCE.ZONE,
            image=settings.GCE.IMAGE,
            machine_type=settings.GCE.MACHINE_TYPE,
            disk_type=settings.GCE.DISK_TYPE,
            network=settings.GCE.NETWORK,
            service_account=settings.GCE.SERVICE_ACCOUNT,
            json_key_file=settings.GCE.JSON_KEY_FILE,
            **cls.common_from_settings(settings),
        )


class Machine(MachineBase):
    def __init__(self, cluster: 'Cluster', node):
        super().__init__(cluster)
        self._node = node
        self._public_ip = node.public_ips[0]
        self._private_ip = node.private_ips[0]

    @property
    def id(self) -> str:
        return self._node.name

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
        except ResourceNotFoundError:
            logger.info(f"instance {self.id} already gone")
            return
        except (GoogleBaseError,
                libcloud.common.exceptions.BaseHTTPError) as e:
            raise ProviderError(
                f"unable to delete instance {self.id}: {e}") from e
        logger.info(f"Deleted instance {self.id}")

    def console_output(self) -> str:
        request = '/zones/%s/instances/%s/serialPort' % (
            self.cluster.options.zone, self._node.name)
        with self.cluster.api_lock:
            response = self.cluster.conn.connection.request(
                request, method='GET').object
        return response.get('contents', '')


class Cluster(ClusterBase):
    def __init__(self, options: Options, workspace, name: str):
        super().__init__(options, workspace, name)
        self.api_lock = threading.Lock()
        self.conn = None
        self._image = None

    def get_connection(self):
        driver = get_driver(Provider.GCE)
        if self.options.json_key_file:
            return driver(self.options.service_account,
                          self.options.json_key_file,
                          project=self.options.project,
                          datacenter=self.options.zone)
        # running inside GCE: use the instance's service account
        return driver('', '', project=self.options.project,
                      datacenter=self.options.zone, auth_type='GCE')

    def _setup(self):
        if not self.options.project:
            raise ProviderError(
                "No project configured. Check GCE.PROJECT setting")
        self.conn = self.get_connection()
        self._image = self._get_image(self.options.image)

    def _get_image(self, image: str):
        # projects/<project>/global/images/family/<family>
        parts = image.split('/')
        try:
            if 'family' in parts:
                return self.conn.ex_get_image_from_family(
                    parts[-1], ex_project_list=[parts[1]])
            if parts[0] == 'projects':
                return self.conn.ex_get_image(
                    parts[-1], ex_project_list=[parts[1]])
            return self.conn.ex_get_image(image)
        except (GoogleBaseError,
                libcloud.common.exceptions.BaseHTTPError) as e:
            raise ProviderError(f"image {image} not found: {e}") from e

    def _create_machine(self, userdata: UserData) -> Machine:
        name = f"{self.resource_name}-{random_suffix()}"[:63]
        metadata = {
            'ssh-keys': f"{self.options.ssh_user}:"
                        f"{self.workspace.public_key}",
        }
        if userdata:
            metadata['user-data'] = userdata.as_str()
        try:
            with self.api_lock:
                node = self.conn.create_node(
                    name, self.options.machine_type, self._image,
                    location=self.options.zone,
                    ex_network=self.options.network,
                    ex_metadata=metadata,
                    ex_disk_type=self.options.disk_type,
                    ex_tags=['kolacheck'])
        except (GoogleBaseError,
                libcloud.common.exceptions.BaseHTTPError) as e:
            raise ProviderError(f"unable to create instance: {e}") from e
        logger.info(f"instance {name} created")
        if not node.public_ips:
            with self.api_lock:
                self.conn.destroy_node(node)
            raise ProviderError(f"instance {name} has no public IP")
        return Machine(self, node)
