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

"""The platform package hides every infrastructure provider behind the same
Cluster/Machine contract (see cluster_base and machine_base).

Backends are imported lazily so that only the SDK of the selected provider
has to be importable."""

import functools
import importlib

from kolacheck.lib.exceptions import ValidationError


BACKENDS = {
    'aws': 'kolacheck.lib.platform.aws_ec2',
    'do': 'kolacheck.lib.platform.digitalocean',
    'esx': 'kolacheck.lib.platform.esx',
    'gce': 'kolacheck.lib.platform.gce',
    'oci': 'kolacheck.lib.platform.oci',
    'packet': 'kolacheck.lib.platform.packet',
    'qemu': 'kolacheck.lib.platform.qemu',
}


def get_backend(platform):
    try:
        module = BACKENDS[platform]
    except KeyError:
        raise ValidationError(
            "Platform '{}' not yet supported by kolacheck".format(platform))
    return importlib.import_module(module)


def get_cluster_class(platform):
    return get_backend(platform).Cluster


def cluster_factory(platform, settings, workspace):
    """
    Build the options of `platform` once and return a callable creating a
    new (not yet set up) Cluster for a given test name.
    """
    backend = get_backend(platform)
    options = backend.Options.from_settings(settings)
    return functools.partial(backend.Cluster, options, workspace)
