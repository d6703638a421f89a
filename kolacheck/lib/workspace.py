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
import re
import shutil
import stat
import threading
from typing import Dict, Optional, Tuple
import uuid

import paramiko.rsakey

from kolacheck.lib.common import execute


logger = logging.getLogger(__name__)


class Workspace():
    """
    The runtime directory and credentials shared by every cluster of a run.

    Each cluster gets its own sub directory (for console logs, journals,
    disk overlays, ...). The ssh key pair is generated once per run and
    handed to the providers so that they can authorize it on new machines.
    """
    def __init__(self, base_dir: str, basename: str = 'kola',
                 remove: bool = True):
        self._workspace_uuid: str = str(uuid.uuid4())[:4]
        self._basename = basename
        self._remove = remove
        self._working_dir: str = self._get_working_dir(base_dir)
        self._cluster_dirs_lock = threading.Lock()

        self._sshkey_name: Optional[str] = None
        self._public_key: Optional[str] = None
        self._private_key: Optional[str] = None

        self._generate_keys()

        logger.info(f"Workspace {self.name} set up at {self.working_dir}")
        logger.info(f"public key {self.public_key}")
        logger.info(f"private key {self.private_key}")

    @property
    def name(self) -> str:
        return "%s-%s" % (self._basename, self._workspace_uuid)

    @property
    def working_dir(self) -> str:
        return self._working_dir

    @property
    def sshkey_name(self):
        return self._sshkey_name

    @property
    def public_key(self):
        return self._public_key

    @property
    def private_key(self):
        return self._private_key

    def _generate_keys(self):
        """
        Generates a public and private key
        """
        key = paramiko.rsakey.RSAKey.generate(2048)
        self._private_key = os.path.join(
            self.working_dir, 'private.key')
        with open(self._private_key, 'w') as key_file:
            key.write_private_key(key_file)
        os.chmod(self._private_key, 0o400)

        self._sshkey_name = "%s_key" % (self.name)
        self._public_key = "%s %s" % (key.get_name(), key.get_base64())

    def cluster_dir(self, test_name: str) -> str:
        """
        Create (if needed) and return the runtime directory of the cluster
        belonging to `test_name`
        """
        dirname = re.sub(r'[^A-Za-z0-9_.-]', '_', test_name)
        path = os.path.join(self.working_dir, 'clusters', dirname)
        with self._cluster_dirs_lock:
            os.makedirs(path, exist_ok=True)
        return path

    def execute(self, command: str, capture: bool = False, check: bool = True,
                log_stdout: bool = True, log_stderr: bool = True,
                env: Optional[Dict[str, str]] = None,
                logger_name: Optional[str] = None) -> Tuple[
                    int, Optional[str], Optional[str]]:
        """Executes a command inside the workspace

        This is a wrapper around the execute util that will automatically
        run from the workspace and put its bin/ directory first in PATH.
        """
        if not env:
            env = {
                'PATH': os.environ.get(
                    'PATH', '/usr/local/bin:/usr/bin:/bin')
            }
        env['PATH'] = f"{os.path.join(self.working_dir, 'bin')}:{env['PATH']}"
        command = f"cd {self.working_dir} && {command}"
        return execute(command, capture=capture, check=check,
                       log_stdout=log_stdout, log_stderr=log_stderr,
                       env=env, logger_name=logger_name)

    def _get_working_dir(self, base_dir):
        working_dir_path = os.path.join(base_dir, self.name)
        os.makedirs(working_dir_path)
        os.makedirs(os.path.join(working_dir_path, 'bin'))
        return working_dir_path

    def destroy(self, skip=False):
        if skip or not self._remove:
            logger.warning("The workspace directory will not be removed!")
            logger.warning(f"Workspace left behind at {self.working_dir}")
            return

        logger.info(f"Removing workspace {self.working_dir} from disk")
        for root, dirs, files in os.walk(self.working_dir):
            for name in dirs + files:
                path = os.path.join(root, name)
                try:
                    os.chmod(path, os.stat(path).st_mode | stat.S_IWUSR)
                except (FileNotFoundError, PermissionError):
                    # Some path's might be broken symlinks.
                    # Some files may be owned by somebody else (eg qemu)
                    # but are still safe to remove so ignore the
                    # permissions issue.
                    pass
        shutil.rmtree(self.working_dir)

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.destroy()
