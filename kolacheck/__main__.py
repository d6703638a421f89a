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
import sys

from kolacheck.config import print_config, settings, validate_options
from kolacheck.lib import platform
from kolacheck.lib.exceptions import KolaError
from kolacheck.lib.harness import run_tests
from kolacheck.lib.register import load_suites, registry
from kolacheck.lib.reporting import TAPWriter, log_summary
from kolacheck.lib.workspace import Workspace


logger = logging.getLogger('kolacheck')


def main() -> int:
    logging.basicConfig(
        level=logging.DEBUG if settings.get('DEBUG') else logging.INFO,
        format='%(asctime)s %(threadName)s %(name)s %(levelname)s '
               '%(message)s')
    # paramiko is very chatty at INFO
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    try:
        validate_options(settings.PLATFORM, settings.DISTRO, settings.BOARD)
    except KolaError as e:
        logger.error(str(e))
        return 2
    print_config()

    try:
        load_suites(settings.SUITES)
        tests = registry.freeze()
    except (KolaError, ImportError) as e:
        logger.error(f"unable to load test suites: {e}")
        return 2

    tear_down = settings.as_bool('_TEAR_DOWN_CLUSTER')
    # clusters left behind still need their keys and logs
    remove = tear_down and settings.as_bool('_REMOVE_WORKSPACE')

    os.makedirs(settings.WORKSPACE_DIR, exist_ok=True)
    with Workspace(settings.WORKSPACE_DIR, basename=settings.BASENAME,
                   remove=remove) as workspace:
        factory = platform.cluster_factory(settings.PLATFORM, settings,
                                           workspace)
        try:
            result = run_tests(
                tests, settings.PLATFORM, settings.DISTRO, factory,
                parallel=int(settings.PARALLEL),
                patterns=list(settings.TESTS) or None,
                tear_down=tear_down,
                teardown_errors_fatal=settings.as_bool(
                    '_TEARDOWN_ERRORS_FATAL'))
        except (KolaError, ValueError) as e:
            logger.error(f"unable to run tests: {e}")
            return 2

        tapfile = settings.TAPFILE or os.path.join(
            settings.WORKSPACE_DIR, f"{workspace.name}.tap")
        with open(tapfile, 'w') as f:
            TAPWriter(f).write_all(result.results)
        logger.info(f"TAP results written to {tapfile}")

        log_summary(result)
    return result.exit_status


if __name__ == '__main__':
    sys.exit(main())
