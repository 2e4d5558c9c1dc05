################################################################################
# Copyright (c) 2013-2023, National Research Foundation (SARAO)
#
# Licensed under the BSD 3-Clause License (the "License"); you may not use
# this file except in compliance with the License. You may obtain a copy
# of the License at
#
#   https://opensource.org/licenses/BSD-3-Clause
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
################################################################################



"""Mesos executor that runs the NodeManager and tracks its containers.

The NodeManager command arrives in the task's ``data`` (see
:meth:`.CommandSpec.to_data`). It runs as a child process in its own session,
so that killing the task also reaches the processes the shell starts. A
waiter thread per task reports the exit status.
"""

import json
import logging
import os
import signal
import subprocess
import threading
from typing import Optional

import pymesos
from addict import Dict

from . import defaults
from .command_line import CommandSpec
from .tracker import ContainerTracker

logger = logging.getLogger(__name__)


class Executor(pymesos.Executor):
    """Runs the NodeManager task and reports the YARN containers it runs.

    Container lifecycle events reach the tracker either through direct calls
    (from the NodeManager auxiliary service) or as framework messages, which
    are JSON objects with an ``event`` key of ``initialize_application``,
    ``stop_application``, ``initialize_container`` or ``stop_container`` and
    ``app_id`` and ``container_id`` keys as needed.

    Parameters
    ----------
    popen
        Factory for child processes, with the signature of
        :class:`subprocess.Popen`
    """

    def __init__(self, popen=subprocess.Popen) -> None:
        self._driver = None
        self._popen = popen
        self._lock = threading.Lock()
        self._processes = {}     # task ID -> Popen
        self._waiters = {}       # task ID -> Thread
        self._killed = set()
        self.tracker = ContainerTracker(self._send_status)

    def _send_status(self, status: Dict) -> None:
        driver = self._driver
        if driver is None:
            logger.warning("Dropping update for %s: not registered", status.task_id.value)
            return
        driver.sendStatusUpdate(status)

    def _update(self, driver, task_id, state: str, message: Optional[str] = None) -> None:
        status = Dict()
        status.task_id = task_id
        status.state = state
        if message is not None:
            status.message = message
        driver.sendStatusUpdate(status)

    def registered(self, driver, executorInfo, frameworkInfo, agentInfo):
        logger.info(
            "Executor %s registered on %s", executorInfo.executor_id.value, agentInfo.hostname
        )
        self._driver = driver

    def reregistered(self, driver, agentInfo):
        logger.info("Executor re-registered on %s", agentInfo.hostname)
        self._driver = driver

    def disconnected(self, driver):
        logger.warning("Executor disconnected from agent")

    def launchTask(self, driver, task):
        task_id = task.task_id.value
        if task_id.startswith(defaults.YARN_CONTAINER_TASK_ID_PREFIX):
            # Placeholder for a YARN container; the tracker reports it
            logger.debug("Accepted placeholder task %s", task_id)
            return
        with self._lock:
            if task_id in self._processes:
                logger.warning("Task %s is already running", task_id)
                return
        try:
            command = CommandSpec.from_data(task.data)
        except ValueError as exc:
            logger.error("Cannot launch %s: %s", task_id, exc)
            self._update(driver, task.task_id, "TASK_FAILED", str(exc))
            return
        env = dict(os.environ)
        env.update(command.environment)
        logger.info("Launching %s: %s", task_id, command.value)
        try:
            process = self._popen(command.value, shell=True, env=env, start_new_session=True)
        except OSError as exc:
            logger.error("Cannot launch %s: %s", task_id, exc)
            self._update(driver, task.task_id, "TASK_FAILED", str(exc))
            return
        waiter = threading.Thread(
            target=self._wait, args=(driver, task.task_id, process),
            name=f"wait-{task_id}", daemon=True
        )
        with self._lock:
            self._processes[task_id] = process
            self._waiters[task_id] = waiter
        self._update(driver, task.task_id, "TASK_RUNNING")
        waiter.start()

    def _wait(self, driver, task_id, process) -> None:
        returncode = process.wait()
        with self._lock:
            self._processes.pop(task_id.value, None)
            killed = task_id.value in self._killed
            self._killed.discard(task_id.value)
        if killed:
            logger.info("Task %s killed", task_id.value)
            self._update(driver, task_id, "TASK_KILLED")
        elif returncode == 0:
            logger.info("Task %s finished", task_id.value)
            self._update(driver, task_id, "TASK_FINISHED")
        else:
            logger.warning("Task %s failed with exit status %d", task_id.value, returncode)
            self._update(driver, task_id, "TASK_FAILED", f"exit status {returncode}")

    def _terminate(self, task_id: str, process) -> None:
        """Send SIGTERM to the process group of a task. The caller holds the lock."""
        self._killed.add(task_id)
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            # Already exited; the waiter reports it
            pass

    def killTask(self, driver, taskId):
        task_id = taskId.value
        with self._lock:
            process = self._processes.get(task_id)
            if process is not None:
                logger.info("Killing %s", task_id)
                self._terminate(task_id, process)
                return
        if not task_id.startswith(defaults.YARN_CONTAINER_TASK_ID_PREFIX):
            logger.warning("Kill requested for unknown task %s", task_id)
            self._update(driver, taskId, "TASK_LOST", "Task is not running")

    def frameworkMessage(self, driver, message):
        try:
            data = json.loads(pymesos.decode_data(message))
            event = data["event"]
            app_id = data["app_id"]
            if event == "initialize_application":
                self.tracker.initialize_application(app_id)
            elif event == "stop_application":
                self.tracker.stop_application(app_id)
            elif event == "initialize_container":
                self.tracker.initialize_container(app_id, data["container_id"])
            elif event == "stop_container":
                self.tracker.stop_container(app_id, data["container_id"])
            else:
                logger.warning("Ignoring unknown event %r", event)
        except (ValueError, KeyError, TypeError):
            logger.exception("Could not handle framework message")

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the waiter threads of all launched tasks to report."""
        with self._lock:
            waiters = list(self._waiters.values())
        for waiter in waiters:
            waiter.join(timeout)

    def shutdown(self, driver):
        logger.info("Shutting down")
        self._driver = driver
        with self._lock:
            for task_id, process in list(self._processes.items()):
                logger.info("Killing %s", task_id)
                self._terminate(task_id, process)
        self.join()
        self.tracker.close()
        driver.stop()

    def error(self, driver, message):
        logger.error("Executor error: %s", message)


__all__ = ["Executor"]
