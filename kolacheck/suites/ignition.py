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

# Ignition must only ever run on the first boot of a machine.

from kolacheck.lib import conf
from kolacheck.lib.exceptions import KolaError
from kolacheck.lib.register import register


MARKER = "/etc/ignition-ran"

V1_CONFIG = """{
  "ignitionVersion": 1,
  "storage": {
    "filesystems": [
      {
        "device": "/dev/disk/by-partlabel/ROOT",
        "format": "ext4",
        "files": [
          {
            "path": "/etc/ignition-ran",
            "contents": "Ignition ran.",
            "mode": 420
          }
        ]
      }
    ]
  }
}"""

V2_CONFIG = """{
  "ignition": { "version": "2.0.0" },
  "storage": {
    "files": [
      {
        "filesystem": "root",
        "path": "/etc/ignition-ran",
        "contents": {
          "source": "data:,Ignition%20ran."
        },
        "mode": 420
      }
    ]
  }
}"""


def runs_once(c):
    m = c.machines()[0]

    # fails if first boot did not create the file
    c.must_ssh(m, f"sudo rm {MARKER}")

    try:
        m.reboot()
    except KolaError as e:
        c.fatal(f"Couldn't reboot machine: {e}")

    c.must_ssh(m, f"test ! -e {MARKER}")


register(
    name="cl.ignition.v1.once",
    run=runs_once,
    cluster_size=1,
    userdata=conf.Ignition(V1_CONFIG),
    distros=["cl"],
)

register(
    name="coreos.ignition.v2.once",
    run=runs_once,
    cluster_size=1,
    userdata=conf.Ignition(V2_CONFIG),
    distros=["cl", "rhcos", "fcos"],
)
