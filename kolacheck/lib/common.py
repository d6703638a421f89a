# Copyright (c) 2019 SUSE LINUX GmbH
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
import random
import string
import subprocess
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional, Tuple

from kolacheck.lib.exceptions import RetryError, WaitTimeout


logger = logging.getLogger(__name__)


def random_suffix(length: int = 5) -> str:
    return ''.join(random.choice(string.ascii_lowercase)
                   for i in range(length))


def retry(attempts: int, delay: float, func: Callable[..., Any],
          *args, **kwargs) -> Any:
    """Call `func` until it does not raise, at most `attempts` times.

    There is a fixed `delay` (in seconds) between two attempts and no delay
    after the last one, so the worst case wall time is
    (attempts - 1) * delay plus the time spent in `func` itself.

    Returns whatever `func` returned on its first successful call. After the
    last failed attempt a RetryError is raised, chained to the last error.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if attempt == attempts:
                logger.debug(f"{func} failed on final attempt {attempt}: {e}")
                raise RetryError(
                    f"giving up after {attempts} attempts: {e}",
                    attempts) from e
            logger.debug(f"{func} failed on attempt {attempt}/{attempts}: "
                         f"{e}. Retrying in {delay}s")
        time.sleep(delay)


def run_with_timeout(func: Callable[[], Any], timeout: float,
                     cancel: Optional[Callable[[], None]] = None,
                     name: Optional[str] = None) -> Any:
    """Race `func` against a deadline of `timeout` seconds.

    `func` runs in its own thread. Whichever finishes first wins: the result
    of `func` is returned (or its exception re-raised), or WaitTimeout is
    raised. When the deadline wins, `cancel` is called so that the losing
    operation can release what it holds (eg. close an ssh channel, which
    unblocks the thread still waiting on it).
    """
    future: Future = Future()

    def _target():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(func())
        except BaseException as e:
            future.set_exception(e)

    thread = threading.Thread(target=_target, daemon=True,
                              name=name or f"deadline-{func}")
    thread.start()
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        if future.done():
            return future.result()
        logger.warning(f"{name or func} did not finish within {timeout}s")
        if cancel is not None:
            try:
                cancel()
            except Exception:
                logger.exception(f"cancelling {name or func} failed")
        raise WaitTimeout(
            f"{name or func} timed out after {timeout}s") from None


def wait_for_event(event: threading.Event, timeout: float,
                   description: str = "event"):
    """Block until `event` is set or raise WaitTimeout after `timeout`s"""
    if not event.wait(timeout):
        raise WaitTimeout(f"timed out after {timeout}s waiting for "
                          f"{description}")


def _log_stream(stream, capture_dict, key, log_func):
    while True:
        output = stream.readline()
        if output:
            log_func(output.rstrip())
            if capture_dict[key] is not None:
                capture_dict[key] += output
        else:
            break


def execute(command: str, capture: bool = False, check: bool = True,
            log_stdout: bool = True, log_stderr: bool = True,
            env: Optional[Dict[str, str]] = None,
            logger_name: Optional[str] = None) -> Tuple[
                int, Optional[str], Optional[str]]:
    """A helper util to excute `command` on the local host.

    If `log_stdout` or `log_stderr` are True, the stdout and stderr
    (respectfully) are redirected to the logging module. You can optionally
    catpure it by setting `capture` to True. stderr is logged as a warning as
    it is up to the caller to raise any actual errors from the RC code (or to
    use the `check` param).

    If `check` is true, subprocess.CalledProcessError is raised when the RC is
    non-zero. stdout and stderr are only available on the exception if
    `capture` was True.

    `logger_name` changes the logger used. Otherwise `command` is used.

    Returns a tuple of (rc code, stdout, stderr), where stdout and stderr are
    None if `capture` is False, or are a string.
    """
    stdout_pipe = subprocess.PIPE \
        if log_stdout or capture else subprocess.DEVNULL

    stderr_pipe = subprocess.PIPE \
        if log_stderr or capture else subprocess.DEVNULL

    process = subprocess.Popen(
        command,
        shell=True,
        stdout=stdout_pipe, stderr=stderr_pipe,
        universal_newlines=True,
        env=env,
    )

    output: Dict[str, Optional[str]] = {'stdout': None, 'stderr': None}
    if capture:
        output['stdout'] = ""
        output['stderr'] = ""

    log = logging.getLogger(
        logger_name if logger_name is not None else command)
    threads = []
    if log_stdout:
        threads.append(threading.Thread(
            target=_log_stream,
            args=(process.stdout, output, 'stdout', log.info)))
    if log_stderr:
        threads.append(threading.Thread(
            target=_log_stream,
            args=(process.stderr, output, 'stderr', log.warning)))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    if not log_stdout and capture:
        output['stdout'] = process.stdout.read()  # type: ignore
    if not log_stderr and capture:
        output['stderr'] = process.stderr.read()  # type: ignore

    rc = process.wait()
    logger.debug(f"Command {command} finished with RC {rc}")

    if check and rc != 0:
        if capture:
            raise subprocess.CalledProcessError(
                rc, command, output['stdout'], output['stderr'])
        else:
            raise subprocess.CalledProcessError(rc, command)

    return (rc, output['stdout'], output['stderr'])
