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

import pytest

from kolacheck.config import print_config, settings, validate_options
from kolacheck.lib.exceptions import ValidationError
from kolacheck.lib.platform import get_backend


def test_defaults():
    assert settings.PLATFORM == 'qemu'
    assert settings.DISTRO == 'cl'
    assert settings.as_bool('_TEAR_DOWN_CLUSTER')
    assert 'kolacheck.suites.ignition' in settings.SUITES


@pytest.mark.parametrize("platform,distro,board", [
    ('qemu', 'cl', 'amd64-usr'),
    ('aws', 'fcos', 'arm64-usr'),
    ('packet', 'cl', 'arm64-usr'),
    ('esx', 'cl', 'amd64-usr'),
])
def test_valid_options(platform, distro, board):
    validate_options(platform, distro, board)


@pytest.mark.parametrize("platform,distro,board", [
    ('azure', 'cl', 'amd64-usr'),
    ('qemu', 'ubuntu', 'amd64-usr'),
    ('qemu', 'cl', 'ppc64le'),
    ('esx', 'cl', 'arm64-usr'),
    ('do', 'cl', 'arm64-usr'),
])
def test_invalid_options(platform, distro, board):
    with pytest.raises(ValidationError):
        validate_options(platform, distro, board)


def test_unknown_backend():
    with pytest.raises(ValidationError):
        get_backend('azure')


def test_print_config_masks_secrets(caplog):
    caplog.set_level(logging.INFO)
    platform = settings.PLATFORM
    settings.set('PLATFORM', 'do')
    settings.set('DO.ACCESS_TOKEN', 'very-secret')
    try:
        print_config()
    finally:
        settings.set('PLATFORM', platform)
        settings.set('DO.ACCESS_TOKEN', '')
    assert "KOLACHECK_PLATFORM=do" in caplog.text
    assert "KOLACHECK_DO__REGION=sfo2" in caplog.text
    assert "KOLACHECK_DO__ACCESS_TOKEN=***" in caplog.text
    assert "very-secret" not in caplog.text
