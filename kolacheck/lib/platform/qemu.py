# Copyright (c) 2020 SUSE LINUX GmbH
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

# Local virtual machines through libvirt. Every cluster gets its own NAT
# network; every machine a qcow2 overlay on top of the board's disk image,
# a config drive carrying the ssh key and, depending on the payload, either
# cloud-init user-data or an ignition config passed through fw_cfg.

import dataclasses
import datetime
import logging
import os
import shutil
import subprocess
import tempfile
import textwrap
import threading
import time
from typing import List
from xml.dom import minidom
from xml.sax.saxutils import escape

import libvirt
import netaddr
import wget

from kolacheck.lib.common import execute, random_suffix
from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import ProviderError
from kolacheck.lib.platform.cluster_base import ClusterBase, PlatformOptions
from kolacheck.lib.platform.machine_base import MachineBase

logger = logging.getLogger(__name__)

# this lock needs to resolve race condition issue while defining a domain
libvirt_define_domain_lock = threading.Lock()
# only one cluster downloads the disk image
image_download_lock = threading.Lock()

ARCHES = {
    'amd64-usr': ('x86_64', 'pc', 'kvm'),
    'arm64-usr': ('aarch64', 'virt', 'qemu'),
}

IGNITION_FW_CFG = 'opt/org.flatcar-linux/config'


@dataclasses.dataclass(frozen=True)
class Options(PlatformOptions):
    connection: str = 'qemu:///system'
    image: str = ''
    bios_image: str = ''
    network_range: str = '10.0.0.0/16'
    network_subnet: int = 24
    vm_memory: int = 1024
    vm_cpus: int = 1

    @classmethod
    def from_settings(cls, settings) -> 'Options':
        return cls(
            connection=settings.QEMU.CONNECTION,
            image=settings.QEMU.IMAGE,
            bios_image=settings.QEMU.BIOS_IMAGE,
            network_range=settings.QEMU.NETWORK_RANGE,
            network_subnet=int(settings.QEMU.NETWORK_SUBNET),
            vm_memory=int(settings.QEMU.VM_MEMORY),
            vm_cpus=int(settings.QEMU.VM_CPUS),
            **cls.common_from_settings(settings),
        )


def _remove_files(paths: List[str]):
    for path in paths:
        if os.path.exists(path):
            os.remove(path)


class Machine(MachineBase):
    def __init__(self, cluster: 'Cluster', name: str, conn, dom, ip: str,
                 files: List[str], console_path: str):
        super().__init__(cluster)
        self._name = name
        self._conn = conn
        self._dom = dom
        self._uuid = dom.UUIDString()
        self._ip = ip
        self._files = files
        self._console_path = console_path

    @property
    def id(self) -> str:
        return self._uuid

    @property
    def name(self) -> str:
        return self._name

    @property
    def ip(self) -> str:
        return self._ip

    @property
    def private_ip(self) -> str:
        return self._ip

    def _destroy(self):
        try:
            if self._dom.isActive():
                self._dom.destroy()
            self._dom.undefine()
        except libvirt.libvirtError as e:
            if e.get_error_code() != libvirt.VIR_ERR_NO_DOMAIN:
                raise ProviderError(
                    f"unable to remove domain {self.name}: {e}") from e
            logger.info(f"domain {self.name} already gone")
        finally:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        _remove_files(self._files)
        logger.info(f"domain {self.name} removed")

    def console_output(self) -> str:
        try:
            with open(self._console_path, errors='replace') as f:
                return f.read()
        except FileNotFoundError:
            return ""


class Cluster(ClusterBase):
    def __init__(self, options: Options, workspace, name: str):
        super().__init__(options, workspace, name)
        self._conn = None
        self._network = None
        self._image_path = None

    def get_connection(self):
        try:
            conn = libvirt.open(self.options.connection)
        except libvirt.libvirtError as e:
            raise ProviderError('Can not open libvirt connection %s: %s' %
                                (self.options.connection, e)) from e
        logger.debug(f"Got connection to libvirt: {conn}")
        return conn

    def _setup(self):
        if self.options.board not in ARCHES:
            raise ProviderError(f"unsupported board {self.options.board}")
        self._image_path = self._get_image_path()
        self._conn = self.get_connection()
        self._network = self._create_network()
        if not self._network:
            self._conn.close()
            self._conn = None
            raise ProviderError('Can not get libvirt network in %s' %
                                self.options.network_range)
        logger.info(f"Got libvirt network {self._network.name()}")

    def _get_image_path(self):
        image = self.options.image
        if not image:
            raise ProviderError("No disk image configured. Check "
                                "QEMU.IMAGE setting")
        if not (image.startswith("http://") or
                image.startswith("https://")):
            return image
        download_location = os.path.join(
            self.workspace.working_dir, os.path.basename(image))
        with image_download_lock:
            if not os.path.exists(download_location):
                logger.info(f"Downloading image from {image}")
                wget.download(image, download_location, bar=None)
        return download_location

    def _create_network(self):
        network_range = netaddr.IPNetwork(self.options.network_range)
        subnets = network_range.subnet(int(self.options.network_subnet))
        for network in subnets:
            host_ip = str(netaddr.IPAddress(network.first+1))
            netmask = str(network.netmask)
            dhcp_start = str(netaddr.IPAddress(network.first+2))
            dhcp_end = str(netaddr.IPAddress(network.last-1))
            xml = textwrap.dedent("""
                <network>
                <name>%(network_name)s</name>
                <forward mode="nat"/>
                <ip address="%(host_ip)s" netmask="%(netmask)s">
                    <dhcp>
                        <range start="%(dhcp_start)s" end="%(dhcp_end)s" />
                    </dhcp>
                </ip>
                </network>
            """ % {
                "network_name": self.resource_name[:50],
                "host_ip": host_ip,
                "netmask": netmask,
                "dhcp_start": dhcp_start,
                "dhcp_end": dhcp_end,
            })
            try:
                with libvirt_define_domain_lock:
                    net = self._conn.networkCreateXML(xml)
            except libvirt.libvirtError as e:
                if "Network is already in use" in e.get_error_message():
                    logger.debug(f"Network {network} is already in use."
                                 f" Trying next subnet..")
                    continue
                raise ProviderError(f"unable to create network: {e}") \
                    from e
            logger.info(f"created network {network} as {net.name()}")
            return net

    def _backing_file_create(self, path):
        execute(f"qemu-img create -f qcow2 -F qcow2 -o "
                f"backing_file={self._image_path} {path}",
                logger_name="qemu-img")
        logger.info(f"created qcow2 overlay {path}")

    def _config_drive_create(self, name, path, userdata: UserData):
        """
        Create a config drive (for both cloud-init and coreos-cloudinit)
        carrying the ssh key and, unless the payload goes to ignition, the
        user-data.
        """
        meta_data = textwrap.dedent("""
            ---
            instance-id: {}
            local-hostname: {}
            public-keys:
                - {}
        """)
        iso_cmd = shutil.which('mkisofs') or shutil.which('genisoimage')
        if not iso_cmd:
            raise ProviderError('mkisofs command not found')

        with tempfile.TemporaryDirectory() as tempdir:
            with open(os.path.join(tempdir, 'meta-data'), 'w') as md:
                md.write(meta_data.format(name, name,
                                          self.workspace.public_key))
            with open(os.path.join(tempdir, 'user-data'), 'wb') as ud:
                if not userdata.is_ignition:
                    ud.write(userdata.as_bytes())
            args = [iso_cmd,
                    '-output', path,
                    '-volid', 'cidata',
                    '-joliet', '-rock',
                    tempdir]
            execute(" ".join(args), log_stdout=False, log_stderr=False)

    def _get_ips(self, dom, name, timeout=120):
        """get the ip addresses of the guest domain from the DHCP leases"""
        ips_found = []
        xmldoc = minidom.parseString(dom.XMLDesc())
        mac_list = xmldoc.getElementsByTagName('mac')
        stop = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
        logger.info(f"domain {name}: wait {timeout}s to get IP address")
        while len(mac_list) and datetime.datetime.now() < stop:
            for mac in mac_list:
                mac_addr = mac.attributes["address"].value
                for d in self._network.DHCPLeases():
                    if d['mac'].lower() == mac_addr.lower():
                        ips_found.append(d['ipaddr'])
            if len(ips_found):
                logger.info(f"domain {name}: found IPs {ips_found}")
                return ips_found
            time.sleep(3)
        raise ProviderError(f"domain {name}: no IP address found")

    def _create_machine(self, userdata: UserData) -> Machine:
        name = f"{self.resource_name[:50]}-{random_suffix()}"
        overlay = os.path.join(self.dir, f"{name}.qcow2")
        config_drive = os.path.join(self.dir, f"{name}-config.iso")
        console = os.path.join(self.dir, f"{name}-console.txt")
        files = [overlay, config_drive]

        try:
            self._backing_file_create(overlay)
            self._config_drive_create(name, config_drive, userdata)
            if userdata.is_ignition:
                ignition = os.path.join(self.dir, f"{name}-ignition.json")
                files.append(ignition)
                with open(ignition, 'wb') as f:
                    f.write(userdata.as_bytes())
            else:
                ignition = None
        except (subprocess.CalledProcessError, OSError) as e:
            _remove_files(files)
            raise ProviderError(f"unable to prepare disks for domain "
                                f"{name}: {e}") from e

        xml = self._get_domain(name, overlay, config_drive, console,
                               ignition)
        logger.info(f"domain {name}: booting with image {overlay}")
        logger.debug(f"domain {name}: libvirt xml: {xml}")
        # get a fresh connection to avoid threading problems
        try:
            conn = self.get_connection()
        except ProviderError:
            _remove_files(files)
            raise
        try:
            with libvirt_define_domain_lock:
                dom = conn.defineXML(xml)
            dom.create()
        except libvirt.libvirtError as e:
            logger.error(
                f"unable to start domain '{name}' using xml: {xml}")
            _remove_files(files)
            conn.close()
            raise ProviderError(f"unable to start domain {name}: {e}") \
                from e

        try:
            ip = self._get_ips(dom, name)[0]
        except ProviderError:
            try:
                dom.destroy()
                dom.undefine()
            except libvirt.libvirtError as e:
                logger.error(f"unable to remove domain {name}: {e}")
            _remove_files(files)
            conn.close()
            raise
        return Machine(self, name, conn, dom, ip, files, console)

    def _get_domain(self, name, image, config_drive, console, ignition):
        arch, machine_type, domain_type = ARCHES[self.options.board]
        loader = ""
        if self.options.bios_image:
            loader = "<loader readonly='yes' type='pflash'>%s</loader>" % \
                escape(self.options.bios_image)
        commandline = ""
        if ignition:
            commandline = textwrap.dedent("""
                <qemu:commandline>
                    <qemu:arg value='-fw_cfg'/>
                    <qemu:arg value='name=%s,file=%s'/>
                </qemu:commandline>
            """ % (IGNITION_FW_CFG, escape(ignition)))
        return textwrap.dedent("""
            <domain type='%(domain_type)s'
                    xmlns:qemu='http://libvirt.org/schemas/domain/qemu/1.0'>
                <name>%(name)s</name>
                <memory unit='MiB'>%(memory)s</memory>
                <currentMemory unit='MiB'>%(memory)s</currentMemory>
                <vcpu placement='static'>%(cpus)s</vcpu>
                <os>
                    <type arch='%(arch)s' machine='%(machine)s'>hvm</type>
                    %(loader)s
                    <boot dev='hd'/>
                </os>
                <features>
                    <acpi/>
                </features>
                <on_poweroff>destroy</on_poweroff>
                <on_reboot>restart</on_reboot>
                <on_crash>restart</on_crash>
                <devices>
                    <emulator>/usr/bin/qemu-system-%(arch)s</emulator>
                    <disk type='file' device='disk'>
                        <driver name='qemu' type='qcow2' cache='unsafe'/>
                        <source file='%(image)s'/>
                        <target dev='vda' bus='virtio'/>
                    </disk>
                    <disk type='file' device='cdrom'>
                        <driver name='qemu' type='raw' />
                        <source file='%(config_drive)s'/>
                        <target dev='sda' bus='sata'/>
                        <readonly/>
                    </disk>
                    <interface type='network'>
                        <source network='%(network_name)s'/>
                        <model type='virtio'/>
                    </interface>
                    <serial type='file'>
                        <source path='%(console)s'/>
                        <target port='0'/>
                    </serial>
                    <console type='file'>
                        <source path='%(console)s'/>
                        <target type='serial' port='0'/>
                    </console>
                    <rng model='virtio'>
                        <backend model='random'>/dev/urandom</backend>
                    </rng>
                </devices>
                %(commandline)s
            </domain>
        """ % {
            "domain_type": domain_type, "name": name,
            "memory": self.options.vm_memory, "cpus": self.options.vm_cpus,
            "arch": arch, "machine": machine_type, "loader": loader,
            "image": escape(image), "config_drive": escape(config_drive),
            "network_name": self._network.name(),
            "console": escape(console), "commandline": commandline,
        })

    def _destroy_resources(self):
        if self._network is not None:
            try:
                self._network.destroy()
            except libvirt.libvirtError as e:
                if e.get_error_code() != libvirt.VIR_ERR_NO_NETWORK:
                    raise
            logger.info(f"network {self._network.name()} destroyed")
            self._network = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None
