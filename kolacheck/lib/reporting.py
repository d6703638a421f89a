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
import threading
from typing import IO, Iterable

import yaml

from kolacheck.lib.harness import Outcome, RunResult, TestResult


logger = logging.getLogger(__name__)


class TAPWriter():
    """
    Writes results in the Test Anything Protocol (version 13)

    Messages of a result go into a YAML diagnostic block below its test
    line.
    """
    def __init__(self, stream: IO[str]):
        self._stream = stream
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    def write_header(self, planned: int):
        with self._lock:
            self._stream.write("TAP version 13\n")
            self._stream.write(f"1..{planned}\n")

    def write_result(self, result: TestResult):
        with self._lock:
            self._count += 1
            status = "not ok" if result.failed else "ok"
            line = f"{status} {self._count} - {result.name}"
            if result.outcome == Outcome.SKIPPED:
                line += " # SKIP"
            self._stream.write(line + "\n")

            diagnostic = {
                'outcome': result.outcome.name,
                'duration_ms': int(result.duration * 1000),
            }
            if result.messages:
                diagnostic['messages'] = list(result.messages)
            block = yaml.safe_dump(diagnostic, default_flow_style=False,
                                   sort_keys=False)
            self._stream.write("  ---\n")
            for text in block.splitlines():
                self._stream.write(f"  {text}\n")
            self._stream.write("  ...\n")
            self._stream.flush()

    def write_all(self, results: Iterable[TestResult]):
        results = list(results)
        self.write_header(len(results))
        for result in results:
            self.write_result(result)


def log_summary(run_result: RunResult):
    for result in sorted(run_result.results, key=lambda r: r.name):
        logger.info(f"--- {result.outcome.value}: {result.name} "
                    f"({result.duration:.2f}s)")
        if result.failed:
            for message in result.messages:
                logger.info(f"        {message}")
    tally = run_result.tally()
    logger.info(", ".join(f"{o.name}: {tally.get(o, 0)}" for o in Outcome))
    if run_result.failed:
        logger.error("FAIL, some tests failed")
    else:
        logger.info("PASS, all tests passed")
