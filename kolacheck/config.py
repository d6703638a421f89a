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

import logging
import os
import pathlib

from dynaconf import Dynaconf
from dynaconf.utils.parse_conf import get_converter

from kolacheck.lib.exceptions import ValidationError


logger = logging.getLogger(__name__)

PLATFORMS = ('aws', 'do', 'esx', 'gce', 'oci', 'packet', 'qemu')
DISTROS = ('cl', 'fcos', 'rhcos')
BOARDS = ('amd64-usr', 'arm64-usr')

settings_dir = os.path.realpath(os.path.join(
    pathlib.Path(__file__).parent.absolute(), '../config'))

settings = Dynaconf(
    envvar_prefix='KOLACHECK',
    load_dotenv=True,
    settings_files=[
        os.path.join(settings_dir, 'settings.toml'),
        os.path.join(settings_dir, 'aws.toml'),
        os.path.join(settings_dir, 'do.toml'),
        os.path.join(settings_dir, 'esx.toml'),
        os.path.join(settings_dir, 'gce.toml'),
        os.path.join(settings_dir, 'oci.toml'),
        os.path.join(settings_dir, 'packet.toml'),
        os.path.join(settings_dir, 'qemu.toml'),
    ],
)


# NOTE: Dynaconf's casting does not handle nested dicts properly.
#       Instead provide the converter to use directly.
def converter(converter_key, value, box_settings=None):
    return get_converter(converter_key, value, box_settings)


def validate_options(platform: str, distro: str, board: str):
    """Reject a platform/distro/board combination we cannot run.

    This is called before any cluster is created so that an unsupported
    combination never costs us resources.
    """
    def _validate(name, item, valid):
        if item not in valid:
            raise ValidationError(
                f"unsupported {name} {item!r} (valid: {', '.join(valid)})")

    _validate('platform', platform, PLATFORMS)
    _validate('distro', distro, DISTROS)
    _validate('board', board, BOARDS)
    if platform in ('esx', 'do', 'oci') and board != 'amd64-usr':
        raise ValidationError(
            f"platform {platform!r} only supports board 'amd64-usr'")


def print_config():
    logger.info("#"*120)
    logger.info("# Kolacheck Settings:")
    logger.info("# ===================")
    logger.info(f"# KOLACHECK_PLATFORM={settings.PLATFORM}")
    logger.info(f"# KOLACHECK_DISTRO={settings.DISTRO}")
    logger.info(f"# KOLACHECK_BOARD={settings.BOARD}")
    logger.info(f"# KOLACHECK_PARALLEL={settings.PARALLEL}")
    logger.info(f"# KOLACHECK_BASENAME={settings.BASENAME}")
    logger.info(f"# KOLACHECK_WORKSPACE_DIR={settings.WORKSPACE_DIR}")
    logger.info(f"# KOLACHECK_TAPFILE={settings.TAPFILE}")
    logger.info(f"# KOLACHECK_TESTS={settings.TESTS}")
    logger.info(f"# KOLACHECK_SSH_USER={settings.SSH_USER}")
    logger.info(
        f"# KOLACHECK_MACHINE_STARTUP_TIMEOUT="
        f"{settings.MACHINE_STARTUP_TIMEOUT}")
    logger.info(f"# KOLACHECK__REMOVE_WORKSPACE={settings._REMOVE_WORKSPACE}")
    logger.info(
        f"# KOLACHECK__TEAR_DOWN_CLUSTER={settings._TEAR_DOWN_CLUSTER}")
    logger.info(
        f"# KOLACHECK__TEARDOWN_ERRORS_FATAL="
        f"{settings._TEARDOWN_ERRORS_FATAL}")
    logger.info("# Platform specific config:")
    logger.info("# -------------------------")
    section = settings.get(settings.PLATFORM.upper(), {})
    for key, value in sorted(section.items()):
        if any(secret in key.upper()
               for secret in ('TOKEN', 'PASSWORD', 'KEY')):
            value = '***'
        logger.info(
            f"#    KOLACHECK_{settings.PLATFORM.upper()}__{key}={value}")
    logger.info("#"*120)
