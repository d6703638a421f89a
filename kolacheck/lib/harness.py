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

"""Selection and execution of registered tests.

Every eligible test runs on its own cluster. A fixed number of worker
threads drain a queue of tests; for each test a worker creates the cluster,
provisions the machines the test asks for, runs the test body and then tears
the cluster down no matter how the body ended. Exactly one TestResult is
recorded per test.
"""

import collections
import dataclasses
import enum
import fnmatch
import logging
import queue
import threading
import time
import traceback
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from kolacheck.lib.common import wait_for_event
from kolacheck.lib.conf import UserData
from kolacheck.lib.exceptions import (
    FatalTestError, KolaError, SkipTestError, WaitTimeout
)
from kolacheck.lib.platform.cluster_base import ClusterBase
from kolacheck.lib.platform.machine_base import MachineBase
from kolacheck.lib.register import TestDescriptor


logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    PASSED = 'PASS'
    FAILED = 'FAIL'
    FATAL = 'FATAL'
    SKIPPED = 'SKIP'


@dataclasses.dataclass
class TestResult:
    __test__ = False

    name: str
    outcome: Outcome
    duration: float
    messages: List[str] = dataclasses.field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.outcome in (Outcome.FAILED, Outcome.FATAL)


def is_eligible(test: TestDescriptor, platform: str, distro: str) -> bool:
    if platform in test.exclude_platforms:
        return False
    if test.platforms and platform not in test.platforms:
        return False
    if test.distros and distro not in test.distros:
        return False
    return True


def filter_tests(tests: Iterable[TestDescriptor], platform: str,
                 distro: str,
                 patterns: Optional[Sequence[str]] = None
                 ) -> List[TestDescriptor]:
    """
    The tests that should run on `platform` with `distro`, optionally
    restricted to names matching one of the glob `patterns`
    """
    selected = []
    for test in tests:
        if patterns and not any(fnmatch.fnmatchcase(test.name, p)
                                for p in patterns):
            continue
        if not is_eligible(test, platform, distro):
            logger.debug(f"skipping {test.name}: not eligible for "
                         f"{platform}/{distro}")
            continue
        selected.append(test)
    return selected


class TestCluster():
    """
    The handle a test body gets: its cluster plus the means to report.

    error() records a failure and lets the test continue; fatal() records
    it and unwinds the rest of the test body.
    """
    __test__ = False

    def __init__(self, name: str, cluster: ClusterBase, platform: str,
                 distro: str):
        self._name = name
        self._cluster = cluster
        self._platform = platform
        self._distro = distro
        self._messages: List[str] = []
        self._failed = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def cluster(self) -> ClusterBase:
        return self._cluster

    @property
    def platform(self) -> str:
        return self._platform

    @property
    def distro(self) -> str:
        return self._distro

    @property
    def messages(self) -> List[str]:
        with self._lock:
            return list(self._messages)

    @property
    def failed(self) -> bool:
        return self._failed

    def machines(self) -> List[MachineBase]:
        return self._cluster.machines()

    def new_machine(self, userdata: UserData) -> MachineBase:
        return self._cluster.new_machine(userdata)

    def new_machines(self, userdata: UserData,
                     n: int) -> List[MachineBase]:
        return self._cluster.new_machines(userdata, n)

    def ssh(self, machine: MachineBase, cmd: str,
            timeout: Optional[float] = None) -> Tuple[bytes, bytes]:
        return machine.ssh(cmd, timeout=timeout)

    def must_ssh(self, machine: MachineBase, cmd: str,
                 timeout: Optional[float] = None) -> bytes:
        """
        Run `cmd` on `machine` and return its stdout. Any error aborts the
        test.
        """
        try:
            stdout, _ = machine.ssh(cmd, timeout=timeout)
        except KolaError as e:
            self.fatal(f"{cmd!r} failed on {machine.id}: {e}")
        return stdout

    def wait(self, event: threading.Event, timeout: float,
             description: str = 'signal'):
        """
        Block until `event` is set; running past `timeout` aborts the test
        """
        try:
            wait_for_event(event, timeout, description)
        except WaitTimeout as e:
            self.fatal(str(e))

    def log(self, message: str):
        logger.info(f"{self.name}: {message}")
        with self._lock:
            self._messages.append(message)

    def error(self, message: str):
        logger.error(f"{self.name}: {message}")
        with self._lock:
            self._messages.append(message)
            self._failed = True

    def fatal(self, message: str):
        self.error(message)
        raise FatalTestError(message)

    def skip(self, message: str):
        self.log(message)
        raise SkipTestError(message)


ClusterFactory = Callable[[str], ClusterBase]


@dataclasses.dataclass
class RunResult:
    results: List[TestResult]

    @property
    def failed(self) -> bool:
        return any(r.failed for r in self.results)

    @property
    def exit_status(self) -> int:
        return 1 if self.failed else 0

    def tally(self) -> collections.Counter:
        return collections.Counter(r.outcome for r in self.results)


class Harness():
    def __init__(self, tests: Iterable[TestDescriptor], platform: str,
                 distro: str, cluster_factory: ClusterFactory,
                 parallel: int = 1, tear_down: bool = True,
                 teardown_errors_fatal: bool = False):
        if parallel < 1:
            raise ValueError("parallel must be at least 1")
        self._tests = tuple(tests)
        names = [t.name for t in self._tests]
        if len(set(names)) != len(names):
            raise ValueError("test names must be unique")
        self._platform = platform
        self._distro = distro
        self._cluster_factory = cluster_factory
        self._parallel = parallel
        self._tear_down = tear_down
        self._teardown_errors_fatal = teardown_errors_fatal
        self._results: List[TestResult] = []
        self._results_lock = threading.Lock()

    @property
    def tests(self) -> Tuple[TestDescriptor, ...]:
        return self._tests

    def run(self) -> RunResult:
        work: queue.Queue = queue.Queue()
        for test in self._tests:
            work.put(test)

        workers = []
        for i in range(min(self._parallel, len(self._tests))):
            t = threading.Thread(target=self._worker, args=(work,),
                                 name=f"harness-worker-{i}")
            workers.append(t)
            t.start()

        # wait for all threads to finish
        for t in workers:
            t.join()

        recorded = sorted(r.name for r in self._results)
        expected = sorted(t.name for t in self._tests)
        if recorded != expected:
            raise KolaError(f"harness recorded results for {recorded}, "
                            f"expected {expected}")
        return RunResult(list(self._results))

    def _worker(self, work: queue.Queue):
        while True:
            try:
                test = work.get_nowait()
            except queue.Empty:
                return
            try:
                result = self.run_test(test)
            except BaseException as e:
                # a broken harness must still account for the test
                logger.exception(f"{test.name}: harness error")
                result = TestResult(test.name, Outcome.FATAL, 0.0,
                                    [f"harness error: {e}"])
            with self._results_lock:
                self._results.append(result)
            work.task_done()

    def run_test(self, test: TestDescriptor) -> TestResult:
        logger.info(f"=== RUN {test.name}")
        start = time.monotonic()
        messages: List[str] = []
        outcome = Outcome.PASSED
        handle: Optional[TestCluster] = None

        try:
            cluster = self._cluster_factory(test.name)
        except Exception as e:
            logger.exception(f"{test.name}: creating cluster failed")
            return TestResult(test.name, Outcome.FATAL,
                              time.monotonic() - start,
                              [f"Cluster failed: {e}"])

        try:
            handle = TestCluster(test.name, cluster, self._platform,
                                 self._distro)
            try:
                cluster.setup()
            except KolaError as e:
                handle.fatal(f"Cluster setup failed: {e}")
            if test.cluster_size > 0:
                try:
                    cluster.new_machines(test.userdata_for(self._distro),
                                         test.cluster_size)
                except KolaError as e:
                    handle.fatal(f"Cluster failed starting machines: {e}")
            test.run(handle)
            if handle.failed:
                outcome = Outcome.FAILED
        except FatalTestError:
            outcome = Outcome.FATAL
        except SkipTestError:
            outcome = Outcome.SKIPPED
        except Exception as e:
            logger.exception(f"{test.name}: unexpected error")
            outcome = Outcome.FATAL
            messages.append(f"unexpected error: {e}")
            messages.append(traceback.format_exc())
        finally:
            if handle is not None:
                messages[:0] = handle.messages
            messages.extend(self._teardown(test, cluster, outcome))

        if self._teardown_errors_fatal and outcome == Outcome.PASSED and \
                any(m.startswith("teardown:") for m in messages):
            outcome = Outcome.FAILED

        duration = time.monotonic() - start
        logger.info(f"--- {outcome.value}: {test.name} ({duration:.2f}s)")
        return TestResult(test.name, outcome, duration, messages)

    def _teardown(self, test: TestDescriptor,
                  cluster: ClusterBase, outcome: Outcome) -> List[str]:
        if not self._tear_down:
            cluster.leave()
            return []
        try:
            errors = cluster.destroy()
        except Exception as e:
            logger.exception(f"{test.name}: teardown failed")
            errors = [e]
        return [f"teardown: {e}" for e in errors]


def run_tests(tests: Iterable[TestDescriptor], platform: str, distro: str,
              cluster_factory: ClusterFactory, parallel: int = 1,
              patterns: Optional[Sequence[str]] = None,
              **kwargs) -> RunResult:
    """
    Select the eligible tests and run them
    """
    selected = filter_tests(tests, platform, distro, patterns)
    logger.info(f"running {len(selected)} tests on {platform}/{distro} "
                f"with parallelism {parallel}")
    harness = Harness(selected, platform, distro, cluster_factory,
                      parallel=parallel, **kwargs)
    return harness.run()
