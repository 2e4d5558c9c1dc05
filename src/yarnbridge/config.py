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


"""Framework configuration.

The configuration is a YAML document validated against
:const:`yarnbridge.schemas.CONFIG` and then converted to the immutable
classes in this module. Nothing in this module touches the host or the
network; the values are only consumed when task launch specifications are
generated.
"""

import logging
from dataclasses import dataclass, field
from typing import IO, Any, Mapping, Optional, Tuple, Union

import jsonschema
import yaml

from . import defaults, schemas

logger = logging.getLogger(__name__)


class InvalidConfigurationError(ValueError):
    """The configuration is malformed, or is missing a value that is needed
    for the operation being attempted.
    """

    pass


@dataclass(frozen=True)
class DockerConfiguration:
    image: str
    network: str = defaults.DOCKER_NETWORK
    privileged: bool = False
    #: Extra ``docker run`` parameters, as (key, value) pairs
    parameters: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "DockerConfiguration":
        return cls(
            image=config["image"],
            network=config.get("network", defaults.DOCKER_NETWORK),
            privileged=config.get("privileged", False),
            parameters=tuple((p["key"], p["value"]) for p in config.get("parameters", [])),
        )


@dataclass(frozen=True)
class VolumeConfiguration:
    container_path: str
    host_path: Optional[str] = None
    mode: str = "RW"

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "VolumeConfiguration":
        return cls(
            container_path=config["container_path"],
            host_path=config.get("host_path"),
            mode=config.get("mode", "RW"),
        )


@dataclass(frozen=True)
class ContainerConfiguration:
    type: str = "DOCKER"
    docker: Optional[DockerConfiguration] = None
    volumes: Tuple[VolumeConfiguration, ...] = ()

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "ContainerConfiguration":
        docker = config.get("docker")
        return cls(
            type=config.get("type", "DOCKER"),
            docker=DockerConfiguration.from_dict(docker) if docker is not None else None,
            volumes=tuple(VolumeConfiguration.from_dict(v) for v in config.get("volumes", [])),
        )


@dataclass(frozen=True)
class NodeManagerConfiguration:
    """Resources used by the NodeManager process itself (on top of the
    capacity it advertises to YARN).
    """

    cpus: float = defaults.NODE_MANAGER_CPUS
    jvm_max_memory_mb: float = defaults.NODE_MANAGER_MEMORY_MB
    cgroups: bool = False

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "NodeManagerConfiguration":
        return cls(
            cpus=config.get("cpus", defaults.NODE_MANAGER_CPUS),
            jvm_max_memory_mb=config.get("jvm_max_memory_mb", defaults.NODE_MANAGER_MEMORY_MB),
            cgroups=config.get("cgroups", False),
        )


@dataclass(frozen=True)
class ExecutorConfiguration:
    """Artifacts staged into the task sandbox by the Mesos fetcher, and the
    command that starts the executor supervising the NodeManager.
    """

    node_manager_uri: Optional[str] = None
    jvm_uri: Optional[str] = None
    config_uri: Optional[str] = None
    command: str = defaults.EXECUTOR_COMMAND

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "ExecutorConfiguration":
        return cls(
            node_manager_uri=config.get("node_manager_uri"),
            jvm_uri=config.get("jvm_uri"),
            config_uri=config.get("config_uri"),
            command=config.get("command", defaults.EXECUTOR_COMMAND),
        )


@dataclass(frozen=True)
class ProfileConfiguration:
    """Capacity advertised to YARN by a NodeManager."""

    cpus: float
    mem: float


@dataclass(frozen=True)
class ServiceConfiguration:
    """An auxiliary service (such as the JobHistory server) run as a task.

    Attributes
    ----------
    ports
        Maps Java property names to port numbers, in the order in which the
        ports are allocated. A port of 0 means that any port may be used.
    env_settings
        Raw ``-D`` options appended after the generated ones
    service_opts
        Name of the environment variable that receives the options. If not
        given, ``YARN_NODEMANAGER_OPTS`` is used.
    """

    name: str
    command: Optional[str] = None
    cpus: float = defaults.SERVICE_CPUS
    jvm_max_memory_mb: float = defaults.SERVICE_MEMORY_MB
    ports: Mapping[str, int] = field(default_factory=dict)
    env_settings: str = ""
    service_opts: Optional[str] = None
    max_instances: Optional[int] = None

    @classmethod
    def from_dict(cls, name: str, config: Mapping[str, Any]) -> "ServiceConfiguration":
        return cls(
            name=name,
            command=config.get("command"),
            cpus=config.get("cpus", defaults.SERVICE_CPUS),
            jvm_max_memory_mb=config.get("jvm_max_memory_mb", defaults.SERVICE_MEMORY_MB),
            ports=dict(config.get("ports", {})),
            env_settings=config.get("env_settings", ""),
            service_opts=config.get("service_opts"),
            max_instances=config.get("max_instances"),
        )


@dataclass(frozen=True)
class Configuration:
    framework_name: str
    framework_role: Optional[str] = None
    framework_user: Optional[str] = None
    framework_superuser: Optional[str] = None
    cgroup_path: str = defaults.CGROUP_PATH
    yarn_environment: Mapping[str, str] = field(default_factory=dict)
    node_manager: NodeManagerConfiguration = field(default_factory=NodeManagerConfiguration)
    executor: ExecutorConfiguration = field(default_factory=ExecutorConfiguration)
    container: Optional[ContainerConfiguration] = None
    profiles: Mapping[str, ProfileConfiguration] = field(default_factory=dict)
    services: Mapping[str, ServiceConfiguration] = field(default_factory=dict)

    @property
    def cgroups_enabled(self) -> bool:
        return self.node_manager.cgroups

    def service(self, name: str) -> Optional[ServiceConfiguration]:
        return self.services.get(name)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "Configuration":
        """Build a configuration from a dictionary that has already been validated."""
        container = config.get("container")
        return cls(
            framework_name=config["framework_name"],
            framework_role=config.get("framework_role"),
            framework_user=config.get("framework_user"),
            framework_superuser=config.get("framework_superuser"),
            cgroup_path=config.get("cgroup_path", defaults.CGROUP_PATH),
            yarn_environment=dict(config.get("yarn_environment", {})),
            node_manager=NodeManagerConfiguration.from_dict(config.get("node_manager", {})),
            executor=ExecutorConfiguration.from_dict(config.get("executor", {})),
            container=ContainerConfiguration.from_dict(container) if container else None,
            profiles={
                name: ProfileConfiguration(cpus=value["cpus"], mem=value["mem"])
                for name, value in config.get("profiles", {}).items()
            },
            services={
                name: ServiceConfiguration.from_dict(name, value)
                for name, value in config.get("services", {}).items()
            },
        )


def parse_config(config: Any) -> Configuration:
    """Validate a decoded configuration document and convert it.

    Raises
    ------
    InvalidConfigurationError
        if the document does not conform to the schema
    """
    try:
        schemas.CONFIG.validate(config)
    except jsonschema.ValidationError as exc:
        raise InvalidConfigurationError(f"Invalid configuration: {exc.message}") from exc
    return Configuration.from_dict(config)


def load_config(stream: Union[str, IO[str]]) -> Configuration:
    """Load configuration from a YAML string or stream.

    Raises
    ------
    InvalidConfigurationError
        if the YAML is malformed or does not conform to the schema
    """
    try:
        doc = yaml.safe_load(stream)
    except yaml.YAMLError as exc:
        raise InvalidConfigurationError(f"Could not parse configuration: {exc}") from exc
    return parse_config(doc)


def load_config_file(filename: str) -> Configuration:
    logger.info("Loading configuration from %s", filename)
    with open(filename) as f:
        return load_config(f)


__all__ = [
    "InvalidConfigurationError",
    "Configuration",
    "NodeManagerConfiguration",
    "ExecutorConfiguration",
    "ContainerConfiguration",
    "DockerConfiguration",
    "VolumeConfiguration",
    "ProfileConfiguration",
    "ServiceConfiguration",
    "parse_config",
    "load_config",
    "load_config_file",
]
