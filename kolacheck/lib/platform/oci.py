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

import base64
import dataclasses
import logging
import os
import threading

import oci

from kolacheck.lib.common import random_suffix
from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import ProviderError
from kolacheck.lib.platform.cluster_base import ClusterBase, PlatformOptions
from kolacheck.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Options(PlatformOptions):
    config_file: str = '~/.oci/config'
    profile: str = 'DEFAULT'
    compartment_id: str = ''
    availability_domain: str = ''
    subnet_id: str = ''
    image_id: str = ''
    shape: str = 'VM.Standard2.1'

    @classmethod
    def from_settings(cls, settings) -> 'Options':
        return cls(
            config_file=settings.OCI.CONFIG_FILE,
            profile=settings.OCI.PROFILE,
            compartment_id=settings.OCI.COMPARTMENT_ID,
            availability_domain=settings.OCI.AVAILABILITY_DOMAIN,
            subnet_id=settings.OCI.SUBNET_ID,
            image_id=settings.OCI.IMAGE_ID,
            shape=settings.OCI.SHAPE,
            **cls.common_from_settings(settings),
        )


class Machine(MachineBase):
    def __init__(self, cluster: 'Cluster', instance, public_ip: str,
                 private_ip: str):
        super().__init__(cluster)
        self._instance = instance
        self._public_ip = public_ip
        self._private_ip = private_ip

    @property
    def id(self) -> str:
        return self._instance.id

    @property
    def ip(self) -> str:
        return self._public_ip

    @property
    def private_ip(self) -> str:
        return self._private_ip

    def _destroy(self):
        try:
            with self.cluster.api_lock:
                self.cluster.compute.terminate_instance(self.id)
        except oci.exceptions.ServiceError as e:
            if e.status != 404:
                raise ProviderError(
                    f"unable to terminate instance {self.id}: "
                    f"{e.message}") from e
            logger.info(f"instance {self.id} already gone")
            return
        logger.info(f"Terminated instance {self.id}")

    def console_output(self) -> str:
        compute = self.cluster.compute
        details = oci.core.models.CaptureConsoleHistoryDetails(
            instance_id=self.id)
        with self.cluster.api_lock:
            history = compute.capture_console_history(details).data
            oci.wait_until(compute,
                           compute.get_console_history(history.id),
                           'lifecycle_state', 'SUCCEEDED',
                           max_wait_seconds=120)
            content = compute.get_console_history_content(
                history.id, length=10 * 1024 * 1024).data
            compute.delete_console_history(history.id)
        if isinstance(content, bytes):
            return content.decode(errors='replace')
        return content


class Cluster(ClusterBase):
    def __init__(self, options: Options, workspace, name: str):
        super().__init__(options, workspace, name)
        self.api_lock = threading.Lock()
        self.compute = None
        self.network = None

    def get_connection(self):
        config = oci.config.from_file(
            os.path.expanduser(self.options.config_file),
            self.options.profile)
        return (oci.core.ComputeClient(config),
                oci.core.VirtualNetworkClient(config))

    def _setup(self):
        for option in ('compartment_id', 'availability_domain', 'subnet_id',
                       'image_id'):
            if not getattr(self.options, option):
                raise ProviderError(
                    f"Check OCI.{option.upper()} setting")
        self.compute, self.network = self.get_connection()

    def _get_ips(self, instance_id):
        with self.api_lock:
            attachments = self.compute.list_vnic_attachments(
                self.options.compartment_id, instance_id=instance_id).data
            for attachment in attachments:
                vnic = self.network.get_vnic(attachment.vnic_id).data
                if vnic.is_primary:
                    return vnic.public_ip, vnic.private_ip
        raise ProviderError(f"instance {instance_id} has no primary vnic")

    def _create_machine(self, userdata: UserData) -> Machine:
        name = f"{self.resource_name}-{random_suffix()}"
        metadata = {'ssh_authorized_keys': self.workspace.public_key}
        if userdata:
            metadata['user_data'] = base64.b64encode(
                userdata.as_bytes()).decode()
        details = oci.core.models.LaunchInstanceDetails(
            availability_domain=self.options.availability_domain,
            compartment_id=self.options.compartment_id,
            display_name=name,
            shape=self.options.shape,
            metadata=metadata,
            freeform_tags={'CreatedBy': 'kolacheck'},
            source_details=oci.core.models.InstanceSourceViaImageDetails(
                image_id=self.options.image_id),
            create_vnic_details=oci.core.models.CreateVnicDetails(
                subnet_id=self.options.subnet_id, assign_public_ip=True),
        )
        try:
            with self.api_lock:
                instance = self.compute.launch_instance(details).data
        except oci.exceptions.ServiceError as e:
            raise ProviderError(
                f"unable to launch instance: {e.message}") from e
        logger.info(f"instance {name} ({instance.id}) launched")

        try:
            instance = oci.wait_until(
                self.compute, self.compute.get_instance(instance.id),
                'lifecycle_state', 'RUNNING',
                max_wait_seconds=int(self.options.startup_timeout)).data
            public_ip, private_ip = self._get_ips(instance.id)
        except (oci.exceptions.ServiceError,
                oci.exceptions.MaximumWaitTimeExceeded,
                ProviderError) as e:
            with self.api_lock:
                self.compute.terminate_instance(instance.id)
            raise ProviderError(
                f"instance {name} did not start: {e}") from e
        return Machine(self, instance, public_ip, private_ip)
