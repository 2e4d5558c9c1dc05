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


"""Resource requirements of the tasks launched by the framework."""

from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Union

from . import defaults
from .config import Configuration, InvalidConfigurationError


@dataclass(frozen=True)
class ServiceResourceProfile:
    """Resources needed by a single process.

    Attributes
    ----------
    name : str
        Logical name (e.g. the NodeManager profile or service name)
    cpus : float
        CPU shares
    memory : float
        Memory in MiB
    ports : mapping
        Maps port names to requested port numbers, in the order they are
        allocated. A value of 0 means any free port.
    """

    name: str
    cpus: float
    memory: float
    ports: Mapping[str, int] = field(default_factory=dict)

    @property
    def aggregate_cpus(self) -> float:
        return self.cpus

    @property
    def aggregate_memory(self) -> float:
        return self.memory

    def port_values(self) -> List[int]:
        return list(self.ports.values())


@dataclass(frozen=True)
class ExtendedResourceProfile:
    """A task that runs inside an executor with resources of its own.

    The name, CPUs, memory and ports refer to the task. The aggregate
    properties give the total that must be found in an offer.
    """

    task: ServiceResourceProfile
    executor: ServiceResourceProfile

    @property
    def name(self) -> str:
        return self.task.name

    @property
    def cpus(self) -> float:
        return self.task.cpus

    @property
    def memory(self) -> float:
        return self.task.memory

    @property
    def ports(self) -> Mapping[str, int]:
        return self.task.ports

    @property
    def aggregate_cpus(self) -> float:
        return self.task.cpus + self.executor.cpus

    @property
    def aggregate_memory(self) -> float:
        return self.task.memory + self.executor.memory

    def port_values(self) -> List[int]:
        return self.task.port_values()


AnyResourceProfile = Union[ServiceResourceProfile, ExtendedResourceProfile]


@dataclass(frozen=True)
class NodeTask:
    """A unit of work waiting for an offer.

    `task_prefix` is :const:`~yarnbridge.defaults.NODE_MANAGER_TASK_PREFIX`
    for NodeManagers, and otherwise the name of the service configuration.
    If `hostname` is set, only offers from that host are used.
    """

    profile: AnyResourceProfile
    task_prefix: str = defaults.NODE_MANAGER_TASK_PREFIX
    hostname: Optional[str] = None

    @property
    def is_node_manager(self) -> bool:
        return self.task_prefix == defaults.NODE_MANAGER_TASK_PREFIX


def node_manager_profile(config: Configuration, profile_name: str) -> ExtendedResourceProfile:
    """Build the profile for a NodeManager advertising a named profile's capacity.

    Raises
    ------
    InvalidConfigurationError
        if the profile is not defined
    """
    try:
        profile = config.profiles[profile_name]
    except KeyError:
        raise InvalidConfigurationError(f"Unknown profile {profile_name!r}") from None
    task = ServiceResourceProfile(
        name=profile_name,
        cpus=profile.cpus,
        memory=profile.mem,
        ports={name: 0 for name in defaults.NODE_MANAGER_PORT_PROPERTIES},
    )
    executor = ServiceResourceProfile(
        name="nodemanager",
        cpus=config.node_manager.cpus,
        memory=config.node_manager.jvm_max_memory_mb,
    )
    return ExtendedResourceProfile(task=task, executor=executor)


def service_profile(config: Configuration, name: str) -> ServiceResourceProfile:
    """Build the profile for an auxiliary service.

    Raises
    ------
    InvalidConfigurationError
        if the service is not defined
    """
    service = config.service(name)
    if service is None:
        raise InvalidConfigurationError(f"Unknown service {name!r}")
    return ServiceResourceProfile(
        name=name,
        cpus=service.cpus,
        memory=service.jvm_max_memory_mb,
        ports=dict(service.ports),
    )


__all__ = [
    "ServiceResourceProfile",
    "ExtendedResourceProfile",
    "AnyResourceProfile",
    "NodeTask",
    "node_manager_profile",
    "service_profile",
]
