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


import dataclasses
import logging
import threading
import time

import boto3
import botocore.exceptions

from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import ProviderError
from kolacheck.lib.platform.cluster_base import ClusterBase, PlatformOptions
from kolacheck.lib.platform.machine_base import MachineBase


logger = logging.getLogger(__name__)

# the security group is shared by every cluster of every run, only one
# thread may look it up or create it
security_group_lock = threading.Lock()

NOT_FOUND_CODES = (
    'InvalidInstanceID.NotFound',
    'InvalidKeyPair.NotFound',
)


@dataclasses.dataclass(frozen=True)
class Options(PlatformOptions):
    region: str = 'us-west-2'
    profile: str = 'default'
    ami: str = ''
    instance_type: str = 'm4.large'
    security_group: str = 'kola'
    iam_instance_profile: str = ''

    @classmethod
    def from_settings(cls, settings) -> 'Options':
        return cls(
            region=settings.AWS.REGION,
            profile=settings.AWS.PROFILE,
            ami=settings.AWS.AMI,
            instance_type=settings.AWS.INSTANCE_TYPE,
            security_group=settings.AWS.SECURITY_GROUP,
            iam_instance_profile=settings.AWS.IAM_INSTANCE_PROFILE,
            **cls.common_from_settings(settings),
        )


def _is_not_found(e: botocore.exceptions.ClientError) -> bool:
    return e.response.get('Error', {}).get('Code') in NOT_FOUND_CODES


class Machine(MachineBase):
    def __init__(self, cluster: 'Cluster', instance):
        super().__init__(cluster)
        self._instance = instance
        self._public_ip = self._get_public_ip()
        self._private_ip = instance.private_ip_address

    @property
    def id(self) -> str:
        return self._instance.id

    @property
    def ip(self) -> str:
        return self._public_ip

    @property
    def private_ip(self) -> str:
        return self._private_ip

    def _get_public_ip(self) -> str:
        # The IP address may not be ready immediately. If that's the case,
        # try reloading the instance information a reasonable number of times.
        attempts = 60
        while self._instance.public_ip_address is None:
            time.sleep(3)
            with self.cluster.api_lock:
                self._instance.reload()
            attempts -= 1
            if attempts <= 0:
                raise ProviderError(
                    f"Unable to get public IP for instance {self._instance}")
        return self._instance.public_ip_address

    def _destroy(self):
        try:
            with self.cluster.api_lock:
                self._instance.terminate()
        except botocore.exceptions.ClientError as e:
            if not _is_not_found(e):
                raise ProviderError(
                    f"unable to terminate {self.id}: {e}") from e
            logger.info(f"instance {self.id} already gone")
            return
        logger.info(f"Terminated instance {self.id}")

    def console_output(self) -> str:
        with self.cluster.api_lock:
            output = self._instance.console_output(Latest=True)
        return output.get('Output', '')


class Cluster(ClusterBase):
    def __init__(self, options: Options, workspace, name: str):
        super().__init__(options, workspace, name)
        self.api_lock = threading.Lock()
        self._ec2 = None
        self._keypair = None
        self._security_group = None

    def get_connection(self):
        session = boto3.session.Session(profile_name=self.options.profile,
                                        region_name=self.options.region)
        return session.resource('ec2')

    def _setup(self):
        if not self.options.ami:
            raise ProviderError("No AMI configured. Check AWS.AMI setting")
        self._ec2 = self.get_connection()
        self._security_group = self._get_security_group()
        self._keypair = self._import_keypair()

    def _get_security_group(self):
        with security_group_lock:
            groups = list(self._ec2.security_groups.filter(Filters=[{
                'Name': 'group-name',
                'Values': [self.options.security_group],
            }]))
            if groups:
                return groups[0]

            security_group = self._ec2.create_security_group(
                GroupName=self.options.security_group,
                Description='Permissive security group for kolacheck',
            )
            security_group.authorize_ingress(
                CidrIp='0.0.0.0/0',
                IpProtocol='-1',
                FromPort=0,
                ToPort=65535,
            )
            logger.info(f"Created security group {security_group}")
            return security_group

    def _import_keypair(self):
        keypair = self._ec2.import_key_pair(
            KeyName=f"{self.resource_name}-key",
            PublicKeyMaterial=self.workspace.public_key
        )
        logger.info(f"Created keypair {keypair.name}")
        return keypair

    def _create_machine(self, userdata: UserData) -> Machine:
        kwargs = dict(
            ImageId=self.options.ami,
            InstanceType=self.options.instance_type,
            MinCount=1,
            MaxCount=1,
            SecurityGroupIds=[self._security_group.id],
            KeyName=self._keypair.name,
            TagSpecifications=[{
                'ResourceType': 'instance',
                'Tags': [
                    {'Key': 'Name', 'Value': self.resource_name},
                    {'Key': 'CreatedBy', 'Value': 'kolacheck'},
                ],
            }],
        )
        if userdata:
            kwargs['UserData'] = userdata.as_str()
        if self.options.iam_instance_profile:
            kwargs['IamInstanceProfile'] = {
                'Name': self.options.iam_instance_profile}

        try:
            with self.api_lock:
                instance = self._ec2.create_instances(**kwargs)[0]
        except botocore.exceptions.ClientError as e:
            raise ProviderError(f"unable to create instance: {e}") from e

        try:
            instance.wait_until_running()
            with self.api_lock:
                instance.reload()
            machine = Machine(self, instance)
        except Exception as e:
            # never hand out an instance we could not track
            with self.api_lock:
                instance.terminate()
            if isinstance(e, ProviderError):
                raise
            raise ProviderError(
                f"instance {instance.id} did not start: {e}") from e
        logger.info(f"Created instance {machine.id} ({machine.ip})")
        return machine

    def _destroy_resources(self):
        if self._keypair is not None:
            try:
                with self.api_lock:
                    self._keypair.delete()
            except botocore.exceptions.ClientError as e:
                if not _is_not_found(e):
                    raise
            logger.info(f"Deleted keypair {self._keypair.name}")
            self._keypair = None
