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


"""Turn offers into launch specifications for NodeManagers and services.

A task factory allocates what a :class:`~yarnbridge.profiles.NodeTask` needs
from an :class:`~yarnbridge.resources.OfferResources`, generates the command
for the process and assembles everything into a :class:`LaunchSpec`, which
converts to the Mesos ``TaskInfo`` handed to the driver.

NodeManagers are supervised by a dedicated executor
(``yarnbridge_executor.py``), which also hosts the container lifecycle
tracker. Their task info references the executor, and carries the
NodeManager command in its data for the executor to run. Auxiliary services
are plain command tasks.

Before anything is allocated, the factory checks that the whole request fits
in the offer, so that a failure never leaves the offer partially consumed.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple

from addict import Dict

from . import defaults
from .command_line import (
    CommandLineGenerator,
    CommandSpec,
    NodeManagerCommandLineGenerator,
    PreconditionError,
    ServiceCommandLineGenerator,
)
from .config import Configuration, ContainerConfiguration
from .profiles import ExtendedResourceProfile, NodeTask
from .resources import InsufficientResourcesError, OfferResources, values_of

logger = logging.getLogger(__name__)


def _copy_resources(resources: Iterable[Dict]) -> list:
    return [copy.deepcopy(resource) for resource in resources]


@dataclass(frozen=True)
class VolumeSpec:
    container_path: str
    host_path: Optional[str] = None
    mode: str = "RW"

    def info(self) -> Dict:
        volume = Dict()
        volume.container_path = self.container_path
        if self.host_path is not None:
            volume.host_path = self.host_path
        volume.mode = self.mode
        return volume


@dataclass(frozen=True)
class ContainerSpec:
    """Container in which a task or executor runs.

    Use :meth:`info` to obtain the Mesos ``ContainerInfo`` message.
    """

    type: str = "DOCKER"
    image: Optional[str] = None
    network: str = defaults.DOCKER_NETWORK
    privileged: bool = False
    parameters: Tuple[Tuple[str, str], ...] = ()
    volumes: Tuple[VolumeSpec, ...] = ()

    def info(self) -> Dict:
        container = Dict()
        container.type = self.type
        if self.volumes:
            container.volumes = [volume.info() for volume in self.volumes]
        if self.image is not None:
            if self.type == "DOCKER":
                docker = container.docker
                docker.image = self.image
                docker.network = self.network
                docker.privileged = self.privileged
                if self.parameters:
                    docker.parameters = [
                        Dict(key=key, value=value) for key, value in self.parameters
                    ]
            else:
                container.mesos.image.type = "DOCKER"
                container.mesos.image.docker.name = self.image
        return container


def container_spec(config: Optional[ContainerConfiguration]) -> Optional[ContainerSpec]:
    """Build the container from the configuration.

    Returns ``None`` if there is no container configuration, in which case the
    process is launched directly on the agent.
    """
    if config is None:
        return None
    kwargs = {}
    if config.docker is not None:
        network = config.docker.network
        # Older configurations use BRIDGED, but Mesos calls it BRIDGE
        if network == "BRIDGED":
            network = "BRIDGE"
        kwargs = dict(
            image=config.docker.image,
            network=network,
            privileged=config.docker.privileged,
            parameters=tuple(config.docker.parameters),
        )
    volumes = tuple(
        VolumeSpec(container_path=v.container_path, host_path=v.host_path, mode=v.mode)
        for v in config.volumes
    )
    return ContainerSpec(type=config.type, volumes=volumes, **kwargs)


@dataclass(frozen=True)
class ExecutorSpec:
    """Executor that supervises a task (see :meth:`info` for the Mesos message)"""

    executor_id: str
    name: str
    command: CommandSpec
    resources: Tuple[Dict, ...] = ()
    container: Optional[ContainerSpec] = None

    def info(self) -> Dict:
        executor = Dict()
        executor.executor_id.value = self.executor_id
        executor.name = self.name
        executor.command = self.command.info()
        executor.resources = _copy_resources(self.resources)
        if self.container is not None:
            executor.container = self.container.info()
        return executor


@dataclass(frozen=True)
class LaunchSpec:
    """Everything needed to launch a task.

    Exactly one of `command` and `executor` is set. For a task run by an
    executor, `payload` is the command that the executor runs for it, passed
    in ``TaskInfo.data``. The resources are those consumed by the task itself;
    an executor carries its own.
    """

    task_id: str
    name: str
    agent_id: str
    resources: Tuple[Dict, ...]
    command: Optional[CommandSpec] = None
    container: Optional[ContainerSpec] = None
    executor: Optional[ExecutorSpec] = None
    payload: Optional[CommandSpec] = None

    @property
    def process_command(self) -> CommandSpec:
        """Command of the process the task runs, wherever it is carried"""
        return self.command if self.command is not None else self.payload

    @property
    def command_line(self) -> str:
        return self.process_command.value

    @property
    def environment(self) -> Mapping[str, str]:
        return self.process_command.environment

    def all_resources(self) -> Tuple[Dict, ...]:
        """Resources consumed by the task and its executor together"""
        if self.executor is not None:
            return self.resources + self.executor.resources
        return self.resources

    def info(self) -> Dict:
        """Mesos ``TaskInfo`` message"""
        taskinfo = Dict()
        taskinfo.name = self.name
        taskinfo.task_id.value = self.task_id
        taskinfo.agent_id.value = self.agent_id
        taskinfo.resources = _copy_resources(self.resources)
        if self.command is not None:
            taskinfo.command = self.command.info()
        if self.container is not None:
            taskinfo.container = self.container.info()
        if self.executor is not None:
            taskinfo.executor = self.executor.info()
        if self.payload is not None:
            taskinfo.data = self.payload.to_data()
        return taskinfo


class TaskFactory(ABC):
    """Creates launch specifications for one kind of task.

    Parameters
    ----------
    config
        Framework configuration
    generator
        Command line generator for the processes launched by this factory
    """

    def __init__(self, config: Configuration, generator: CommandLineGenerator) -> None:
        self.config = config
        self.generator = generator

    @abstractmethod
    def create_launch_spec(
        self,
        offer_resources: OfferResources,
        framework_id: str,
        task_id: str,
        node_task: NodeTask,
    ) -> LaunchSpec:
        """Allocate resources for `node_task` and describe how to launch it.

        Raises
        ------
        PreconditionError
            if a required input is missing
        InsufficientResourcesError
            if the offer does not have enough resources. Nothing is allocated
            in this case, and another offer should be tried.
        """

    @staticmethod
    def _check_inputs(offer_resources, task_id, node_task) -> None:
        if offer_resources is None:
            raise PreconditionError("Offer should be non-null")
        if not task_id:
            raise PreconditionError("Task ID should be non-empty")
        if node_task is None:
            raise PreconditionError("NodeTask should be non-null")

    @staticmethod
    def _check_fits(offer_resources, name, cpus, mem, ports) -> None:
        if not offer_resources.satisfies({"cpus": cpus, "mem": mem}, ports):
            raise InsufficientResourcesError(
                f"Offer {offer_resources.offer_id} on {offer_resources.hostname} "
                f"is too small for {name}"
            )


class NodeManagerTaskFactory(TaskFactory):
    """Creates NodeManager tasks, each with its own executor."""

    def __init__(
        self,
        config: Configuration,
        generator: Optional[CommandLineGenerator] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        if generator is None:
            generator = NodeManagerCommandLineGenerator(config, properties)
        super().__init__(config, generator)

    @staticmethod
    def executor_id(framework_id: str, offer_resources: OfferResources) -> str:
        return (
            defaults.EXECUTOR_PREFIX
            + framework_id
            + offer_resources.offer_id
            + offer_resources.agent_id
        )

    def executor_spec(
        self,
        framework_id: str,
        offer_resources: OfferResources,
        command: CommandSpec,
        cpus: float,
        mem: float,
    ) -> ExecutorSpec:
        """Allocate the executor's own resources and describe it."""
        resources = offer_resources.allocate_scalar("cpus", cpus)
        resources += offer_resources.allocate_scalar("mem", mem)
        return ExecutorSpec(
            executor_id=self.executor_id(framework_id, offer_resources),
            name=defaults.EXECUTOR_NAME,
            command=command,
            resources=tuple(resources),
            container=container_spec(self.config.container),
        )

    def create_launch_spec(
        self,
        offer_resources: OfferResources,
        framework_id: str,
        task_id: str,
        node_task: NodeTask,
    ) -> LaunchSpec:
        self._check_inputs(offer_resources, task_id, node_task)
        profile = node_task.profile
        requested_ports = profile.port_values()
        if len(requested_ports) != defaults.NODE_MANAGER_PORTS:
            raise PreconditionError(
                f"NodeManager profile {profile.name} must have "
                f"{defaults.NODE_MANAGER_PORTS} ports, not {len(requested_ports)}"
            )
        if isinstance(profile, ExtendedResourceProfile):
            executor_cpus = profile.executor.cpus
            executor_mem = profile.executor.memory
        else:
            executor_cpus = executor_mem = 0.0
        self.generator.validate()
        self._check_fits(
            offer_resources,
            f"NodeManager profile {profile.name}",
            profile.aggregate_cpus,
            profile.aggregate_memory,
            requested_ports,
        )

        resources = offer_resources.allocate_ports(requested_ports)
        ports = values_of(resources)
        logger.debug("Ports for NodeManager task %s: %s", task_id, ports)
        resources += offer_resources.allocate_scalar("cpus", profile.cpus)
        resources += offer_resources.allocate_scalar("mem", profile.memory)
        command = self.generator.generate_command_line(profile, None, ports)
        executor_command = CommandSpec(
            value=self.config.executor.command,
            environment=command.environment,
            uris=command.uris,
            user=command.user,
        )
        executor = self.executor_spec(
            framework_id, offer_resources, executor_command, executor_cpus, executor_mem
        )
        return LaunchSpec(
            task_id=task_id,
            name=f"{self.config.framework_name}-{task_id}",
            agent_id=offer_resources.agent_id,
            resources=tuple(resources),
            executor=executor,
            payload=command,
        )


class ServiceTaskFactory(TaskFactory):
    """Creates tasks for auxiliary services, which carry their own command."""

    def __init__(
        self,
        config: Configuration,
        generator: Optional[CommandLineGenerator] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        if generator is None:
            generator = ServiceCommandLineGenerator(config, properties)
        super().__init__(config, generator)

    def create_launch_spec(
        self,
        offer_resources: OfferResources,
        framework_id: str,
        task_id: str,
        node_task: NodeTask,
    ) -> LaunchSpec:
        self._check_inputs(offer_resources, task_id, node_task)
        service_config = self.config.service(node_task.task_prefix)
        if service_config is None:
            raise PreconditionError(f"No configuration for service {node_task.task_prefix}")
        if not service_config.command:
            raise PreconditionError(f"Service {service_config.name} has no command")
        self.generator.validate()
        profile = node_task.profile
        requested_ports = list(service_config.ports.values())
        self._check_fits(
            offer_resources,
            f"service {service_config.name}",
            profile.aggregate_cpus,
            profile.aggregate_memory,
            requested_ports,
        )

        resources = offer_resources.allocate_ports(requested_ports)
        ports = values_of(resources)
        resources += offer_resources.allocate_scalar("cpus", profile.aggregate_cpus)
        resources += offer_resources.allocate_scalar("mem", profile.aggregate_memory)
        command = self.generator.generate_command_line(profile, service_config, ports)
        return LaunchSpec(
            task_id=task_id,
            name=node_task.task_prefix,
            agent_id=offer_resources.agent_id,
            resources=tuple(resources),
            command=command,
            container=container_spec(self.config.container),
        )


__all__ = [
    "PreconditionError",
    "VolumeSpec",
    "ContainerSpec",
    "ExecutorSpec",
    "LaunchSpec",
    "TaskFactory",
    "NodeManagerTaskFactory",
    "ServiceTaskFactory",
    "container_spec",
]
