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


"""Mesos scheduler that launches NodeManagers and auxiliary services.

Pending tasks are kept in a queue. Each offer is carved up among as many
pending tasks as it can hold, in queue order; tasks that do not fit wait for
a later offer.
"""

import argparse
import logging
import random
import threading
import typing
from collections import deque
from typing import ClassVar, Deque, List, Mapping, Optional, Sequence, Tuple

import pymesos
from addict import Dict

from .config import Configuration, InvalidConfigurationError
from .profiles import NodeTask
from .resources import InsufficientResourcesError, OfferResources
from .task_factory import (
    NodeManagerTaskFactory,
    PreconditionError,
    ServiceTaskFactory,
    TaskFactory,
)

logger = logging.getLogger(__name__)
TERMINAL_STATUSES = frozenset(
    ["TASK_FINISHED", "TASK_FAILED", "TASK_KILLED", "TASK_LOST", "TASK_ERROR"]
)


class TaskIDAllocator:
    """Allocates unique task IDs, with a custom prefix on the name.

    Because IDs must be globally unique (within the framework), the
    ``__new__`` method is overridden to return a per-prefix singleton.
    """

    _by_prefix: ClassVar[typing.Dict[str, "TaskIDAllocator"]] = {}
    _lock: ClassVar[threading.Lock] = threading.Lock()
    _prefix: str
    _next_id: int

    def __init__(self, prefix=""):
        pass  # Initialised by new

    def __new__(cls, prefix=""):
        with TaskIDAllocator._lock:
            try:
                return TaskIDAllocator._by_prefix[prefix]
            except KeyError:
                alloc = super().__new__(cls)
                alloc._prefix = prefix
                alloc._next_id = 0
                TaskIDAllocator._by_prefix[prefix] = alloc
                return alloc

    def __call__(self):
        with TaskIDAllocator._lock:
            ret = self._prefix + str(self._next_id).zfill(8)
            self._next_id += 1
        return ret


class Scheduler(pymesos.Scheduler):
    """Launch queued :class:`~yarnbridge.profiles.NodeTask`\\ s on offered resources.

    The pymesos driver invokes the callbacks from its own thread, while
    :meth:`add_task` may be called from any thread, so the queue is guarded
    by a lock.

    Parameters
    ----------
    config
        Framework configuration
    properties
        YARN configuration properties of the resource manager (see
        :class:`~yarnbridge.command_line.CommandLineGenerator`)
    use_random
        Random generator used to choose dynamic ports (for testing)
    """

    def __init__(
        self,
        config: Configuration,
        properties: Optional[Mapping[str, str]] = None,
        *,
        use_random: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self._random = use_random
        self._node_manager_factory = NodeManagerTaskFactory(config, properties=properties)
        self._service_factory = ServiceTaskFactory(config, properties=properties)
        self._lock = threading.Lock()
        self._pending: Deque[NodeTask] = deque()
        self._active: typing.Dict[str, NodeTask] = {}
        self.framework_id: Optional[str] = None

    def add_task(self, node_task: NodeTask) -> bool:
        """Queue a task to launch on a future offer.

        Returns false (and does not queue it) if the task is for a service
        that already has its configured maximum number of instances.
        """
        with self._lock:
            if not node_task.is_node_manager:
                service = self.config.service(node_task.task_prefix)
                if service is not None and service.max_instances is not None:
                    instances = sum(
                        1
                        for task in list(self._pending) + list(self._active.values())
                        if task.task_prefix == node_task.task_prefix
                    )
                    if instances >= service.max_instances:
                        logger.warning(
                            "Not adding %s: already have %d instance(s)",
                            node_task.task_prefix,
                            instances,
                        )
                        return False
            self._pending.append(node_task)
        logger.info("Queued %s task with profile %s", node_task.task_prefix, node_task.profile.name)
        return True

    @property
    def pending(self) -> List[NodeTask]:
        with self._lock:
            return list(self._pending)

    @property
    def active(self) -> Mapping[str, NodeTask]:
        with self._lock:
            return dict(self._active)

    def _factory(self, node_task: NodeTask) -> TaskFactory:
        if node_task.is_node_manager:
            return self._node_manager_factory
        return self._service_factory

    def _match_offer(self, offer: Dict) -> List[Tuple[str, NodeTask, Dict]]:
        """Assign pending tasks to `offer`, removing them from the queue.

        Must be called with the lock held.
        """
        offer_resources = OfferResources(offer, use_random=self._random)
        launched = []
        remaining: Deque[NodeTask] = deque()
        while self._pending:
            node_task = self._pending.popleft()
            if node_task.hostname is not None and node_task.hostname != offer.hostname:
                remaining.append(node_task)
                continue
            task_id = TaskIDAllocator(node_task.task_prefix + ".")()
            factory = self._factory(node_task)
            try:
                launch_spec = factory.create_launch_spec(
                    offer_resources, self.framework_id or "", task_id, node_task
                )
            except InsufficientResourcesError as exc:
                logger.debug("%s", exc)
                remaining.append(node_task)
            except (PreconditionError, InvalidConfigurationError):
                logger.exception(
                    "Dropping %s task with profile %s", node_task.task_prefix,
                    node_task.profile.name
                )
            else:
                launched.append((task_id, node_task, launch_spec.info()))
        self._pending = remaining
        return launched

    def registered(self, driver, framework_id, master_info):
        self.framework_id = framework_id.value
        logger.info("Registered with framework ID %s", self.framework_id)
        self._reconcile(driver)

    def reregistered(self, driver, master_info):
        logger.info("Re-registered with master")
        self._reconcile(driver)

    def disconnected(self, driver):
        logger.warning("Disconnected from master")

    def _reconcile(self, driver):
        with self._lock:
            tasks = [Dict(task_id=Dict(value=task_id)) for task_id in self._active]
        logger.debug("Requesting reconciliation of %d task(s)", len(tasks))
        driver.reconcileTasks(tasks)

    def resourceOffers(self, driver, offers):
        for offer in offers:
            with self._lock:
                launched = self._match_offer(offer)
                for task_id, node_task, _ in launched:
                    self._active[task_id] = node_task
            if launched:
                for task_id, node_task, _ in launched:
                    logger.info(
                        "Launching %s task %s on %s", node_task.task_prefix, task_id, offer.hostname
                    )
                driver.launchTasks(offer.id, [info for _, _, info in launched])
            else:
                logger.debug("Declining offer %s from %s", offer.id.value, offer.hostname)
                driver.declineOffer(offer.id)

    def offerRescinded(self, driver, offer_id):
        # Offers are used or declined as soon as they arrive, so there is
        # nothing to withdraw.
        logger.debug("Offer %s rescinded", offer_id.value)

    def statusUpdate(self, driver, status):
        logger.debug(
            "Update: task %s in state %s (%s)", status.task_id.value, status.state, status.message
        )
        if status.state in TERMINAL_STATUSES:
            with self._lock:
                node_task = self._active.pop(status.task_id.value, None)
            if node_task is not None:
                level = logging.INFO if status.state == "TASK_FINISHED" else logging.WARNING
                logger.log(level, "Task %s is done (%s)", status.task_id.value, status.state)
        driver.acknowledgeStatusUpdate(status)

    def error(self, driver, message):
        logger.error("Framework error: %s", message)


def parse_property(value: str) -> Tuple[str, str]:
    key, sep, prop = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, not {value!r}")
    return key, prop


def parse_node_manager(value: str) -> Tuple[str, Optional[str]]:
    profile, _, hostname = value.partition("@")
    if not profile:
        raise argparse.ArgumentTypeError(f"Expected PROFILE[@HOST], not {value!r}")
    return profile, hostname or None


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "-D",
        dest="properties",
        type=parse_property,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="YARN property of the resource manager (may be repeated)",
    )
    parser.add_argument(
        "--node-manager",
        type=parse_node_manager,
        action="append",
        default=[],
        metavar="PROFILE[@HOST]",
        help="Launch a NodeManager with the given profile (may be repeated)",
    )
    parser.add_argument(
        "--service",
        action="append",
        default=[],
        metavar="NAME",
        help="Launch an instance of a configured service (may be repeated)",
    )
    parser.add_argument("--principal", help="Principal for Mesos authentication")
    parser.add_argument(
        "-l", "--log-level", metavar="LEVEL", help="set the Python logging level [%(default)s]"
    )
    parser.add_argument("config", help="YAML configuration file")
    parser.add_argument(
        "mesos_master",
        help="Zookeeper URL for discovering Mesos master e.g. zk://server.domain:2181/mesos",
    )
    args = parser.parse_args(argv)
    args.properties = dict(args.properties)
    return args


def framework_info(config: Configuration, principal: Optional[str] = None) -> Dict:
    """Build the ``FrameworkInfo`` with which to register"""
    info = Dict()
    info.user = config.framework_user or ""
    info.name = config.framework_name
    info.checkpoint = True
    if principal is not None:
        info.principal = principal
    if config.framework_role:
        info.roles = [config.framework_role]
        info.capabilities = [{"type": "MULTI_ROLE"}]
    return info


__all__ = [
    "TERMINAL_STATUSES",
    "TaskIDAllocator",
    "Scheduler",
    "parse_args",
    "framework_info",
]
