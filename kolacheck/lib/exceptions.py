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


class KolaError(Exception):
    pass


class ValidationError(KolaError):
    """Unsupported platform, distro or board combination"""


class ProviderError(KolaError):
    """An infrastructure API call failed (create, destroy, lookup)"""


class NewMachinesError(ProviderError):
    """A batch machine creation stopped part way through.

    `machines` holds every machine that was created before the failure so
    that the caller is able to clean them up.
    """
    def __init__(self, message, machines):
        super().__init__(message)
        self.machines = machines


class SSHConnectionError(KolaError):
    """Unable to open or authenticate a remote shell session"""


class SSHCommandError(KolaError):
    def __init__(self, cmd, exit_status, stdout=b'', stderr=b''):
        super().__init__(
            f"command {cmd!r} exited with status {exit_status}: "
            f"{stderr.decode(errors='replace').strip()}")
        self.cmd = cmd
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class WaitTimeout(KolaError, TimeoutError):
    """A bounded wait ran past its deadline"""


class RetryError(KolaError):
    def __init__(self, message, attempts):
        super().__init__(message)
        self.attempts = attempts


class DuplicateTestError(KolaError):
    pass


class RegistryFrozenError(KolaError):
    pass


class FatalTestError(KolaError):
    """Raised by TestCluster.fatal() to unwind the rest of a test body"""


class SkipTestError(KolaError):
    pass
