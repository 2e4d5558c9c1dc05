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


"""Track the YARN containers running under a NodeManager.

The NodeManager auxiliary service reports application and container
lifecycle events from its own threads. Each YARN container is represented in
Mesos by a placeholder task whose ID is the container ID with a
:const:`~yarnbridge.defaults.YARN_CONTAINER_TASK_ID_PREFIX` prefix, and the
tracker emits a status update for that task on every transition.
"""

import logging
import threading
from typing import Callable, Dict, FrozenSet, List, Set

import addict

from . import defaults

logger = logging.getLogger(__name__)
StatusCallback = Callable[[addict.Dict], None]


def container_task_id(container_id: str) -> str:
    return defaults.YARN_CONTAINER_TASK_ID_PREFIX + container_id


def make_status(container_id: str, state: str) -> addict.Dict:
    """Build a Mesos ``TaskStatus`` for a container placeholder task."""
    status = addict.Dict()
    status.task_id.value = container_task_id(container_id)
    status.state = state
    return status


class _Application:
    def __init__(self, app_id: str) -> None:
        self.app_id = app_id
        self.lock = threading.Lock()
        self.containers: Set[str] = set()
        # Set once the application is stopped, after which no containers may be added
        self.closed = False


class ContainerTracker:
    """Thread-safe registry of applications and their containers.

    Status updates are passed to `send_status` outside of any lock, so the
    callback may block or re-enter the tracker.

    Parameters
    ----------
    send_status
        Called with a ``TaskStatus`` message for each container transition
    """

    def __init__(self, send_status: StatusCallback) -> None:
        self._send_status = send_status
        self._lock = threading.Lock()
        self._applications: Dict[str, _Application] = {}

    def _send(self, container_id: str, state: str) -> None:
        logger.debug("Container %s is now %s", container_id, state)
        self._send_status(make_status(container_id, state))

    def _get(self, app_id: str) -> _Application:
        with self._lock:
            return self._applications[app_id]

    def initialize_application(self, app_id: str) -> None:
        """Start tracking an application. Does nothing if it is already tracked."""
        with self._lock:
            if app_id not in self._applications:
                logger.info("Initializing application %s", app_id)
                self._applications[app_id] = _Application(app_id)

    def initialize_container(self, app_id: str, container_id: str) -> None:
        """Record a new container and report it as running.

        Raises
        ------
        KeyError
            if the application has not been initialized (or has been stopped)
        """
        try:
            app = self._get(app_id)
        except KeyError:
            logger.error("Container %s started for unknown application %s", container_id, app_id)
            raise
        with app.lock:
            if app.closed:
                logger.error("Container %s started for stopped application %s",
                             container_id, app_id)
                raise KeyError(app_id)
            app.containers.add(container_id)
        self._send(container_id, "TASK_RUNNING")

    def stop_container(self, app_id: str, container_id: str) -> None:
        """Forget a container and report it as finished.

        Unknown applications or containers are logged and otherwise ignored.
        """
        try:
            app = self._get(app_id)
        except KeyError:
            logger.warning("Container %s stopped for unknown application %s", container_id, app_id)
            return
        with app.lock:
            try:
                app.containers.remove(container_id)
            except KeyError:
                logger.warning("Unknown container %s stopped in application %s",
                               container_id, app_id)
                return
        self._send(container_id, "TASK_FINISHED")

    def stop_application(self, app_id: str) -> None:
        """Stop tracking an application, reporting each of its containers as finished."""
        with self._lock:
            app = self._applications.pop(app_id, None)
        if app is None:
            logger.debug("Ignoring stop of unknown application %s", app_id)
            return
        with app.lock:
            app.closed = True
            containers = sorted(app.containers)
            app.containers.clear()
        logger.info("Stopping application %s with %d container(s)", app_id, len(containers))
        for container_id in containers:
            self._send(container_id, "TASK_FINISHED")

    def applications(self) -> List[str]:
        with self._lock:
            return list(self._applications)

    def containers(self, app_id: str) -> FrozenSet[str]:
        """Containers of an application, or an empty set if it is not tracked."""
        with self._lock:
            app = self._applications.get(app_id)
        if app is None:
            return frozenset()
        with app.lock:
            return frozenset(app.containers)

    def close(self) -> None:
        """Stop every remaining application."""
        for app_id in self.applications():
            self.stop_application(app_id)


__all__ = ["ContainerTracker", "container_task_id", "make_status"]
