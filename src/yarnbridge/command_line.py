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


"""Generation of the shell commands and environments that launch YARN processes.

Two flavours are provided. :class:`NodeManagerCommandLineGenerator` launches a
NodeManager, and :class:`ServiceCommandLineGenerator` launches an arbitrary
auxiliary service (such as the JobHistory server) from its configured command.
Both share the sandbox preparation in :class:`StagingCommands`:

1. When cgroups are enabled (NodeManager only), the task's cgroup is handed
   over to the framework user and the NodeManager is pointed at it.
2. When a Hadoop distribution is staged by URI, it is extracted with ``tar``
   as the superuser, preserving permissions so that the setuid
   ``container-executor`` keeps its bit. Mesos can't be left to extract it,
   because it would not preserve them. Unless an external configuration URI
   is given, the configuration fetched from the resource manager is copied
   into place.
3. When a superuser is configured, the process itself runs as the framework
   user via ``sudo -E -u <user> -H``.

The whole command line is echoed before it is run, so that it appears in the
task's stdout.

All tuning flags end up as ``-D`` options in a single environment variable
(``YARN_NODEMANAGER_OPTS`` unless a service names a different one), since that
is where the YARN launch scripts read them from.
"""

import binascii
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

import pymesos
import yarl
from addict import Dict

from . import defaults
from .config import Configuration, InvalidConfigurationError, ServiceConfiguration
from .profiles import AnyResourceProfile

CMD_FORMAT = 'echo "{echo}" && {cmd}'
ENV_YARN_NODEMANAGER_OPTS = "YARN_NODEMANAGER_OPTS"
ENV_YARN_HOME = "YARN_HOME"
KEY_YARN_RM_HOSTNAME = "yarn.resourcemanager.hostname"
KEY_YARN_RM_WEBAPP_ADDRESS = "yarn.resourcemanager.webapp.address"
KEY_YARN_RM_WEBAPP_HTTPS_ADDRESS = "yarn.resourcemanager.webapp.https.address"
KEY_YARN_HTTP_POLICY = "yarn.http.policy"
YARN_HTTP_POLICY_HTTPS_ONLY = "HTTPS_ONLY"
KEY_YARN_NM_LCE_CGROUPS_HIERARCHY = "yarn.nodemanager.linux-container-executor.cgroups.hierarchy"
KEY_YARN_HOME = "yarn.home"
KEY_NM_RESOURCE_CPU_VCORES = "nodemanager.resource.cpu-vcores"
KEY_NM_RESOURCE_MEM_MB = "nodemanager.resource.memory-mb"
CGROUPS_HIERARCHY = "mesos/$TASK_DIR"
YARN_NM_CMD = "$YARN_HOME/bin/yarn nodemanager"
logger = logging.getLogger(__name__)


class PreconditionError(ValueError):
    """A required input to an operation is missing.

    This indicates a bug in the caller rather than a runtime condition.
    """

    pass


@dataclass(frozen=True)
class Uri:
    """An artifact for the Mesos fetcher to place in the sandbox"""

    value: str
    extract: bool = True
    executable: bool = False

    def info(self) -> Dict:
        uri = Dict()
        uri.value = self.value
        uri.extract = self.extract
        if self.executable:
            uri.executable = True
        return uri


@dataclass(frozen=True)
class CommandSpec:
    """Shell command with its environment, staged artifacts and user.

    Use :meth:`info` to obtain the Mesos ``CommandInfo`` message.
    """

    value: str
    environment: Mapping[str, str]
    uris: Tuple[Uri, ...] = ()
    user: Optional[str] = None

    def info(self) -> Dict:
        command = Dict()
        command.shell = True
        command.value = self.value
        command.environment.variables = [
            Dict(name=name, value=value) for name, value in self.environment.items()
        ]
        if self.uris:
            command.uris = [uri.info() for uri in self.uris]
        if self.user is not None:
            command.user = self.user
        return command

    def to_data(self) -> str:
        """Encode the command and environment for ``TaskInfo.data``"""
        payload = {"command": self.value, "environment": dict(self.environment)}
        return pymesos.encode_data(json.dumps(payload).encode())

    @classmethod
    def from_data(cls, data: str) -> "CommandSpec":
        """Inverse of :meth:`to_data`.

        Raises
        ------
        ValueError
            if `data` does not hold an encoded command
        """
        try:
            payload = json.loads(pymesos.decode_data(data))
            return cls(value=payload["command"], environment=dict(payload.get("environment", {})))
        except (KeyError, TypeError, binascii.Error) as exc:
            raise ValueError(f"Invalid command data: {exc}") from exc


def format_option(name: str, value) -> str:
    return f"-D{name}={value}"


def bind_address(port: int) -> str:
    return f"{defaults.ALL_LOCAL_IPV4_ADDR}:{port}"


def wrap_command(cmd: str) -> str:
    """Echo `cmd` and then run it"""
    return CMD_FORMAT.format(echo=cmd.replace('"', '\\"'), cmd=cmd)


def get_file_name(uri: str) -> str:
    """Name under which the Mesos fetcher stores `uri` in the sandbox.

    Raises
    ------
    InvalidConfigurationError
        if `uri` ends with a slash
    """
    file_name = uri.rsplit("/", 1)[-1]
    if not file_name:
        raise InvalidConfigurationError(f"URI {uri!r} should not have a slash at the end")
    return file_name


def configuration_url(properties: Mapping[str, str]) -> str:
    """URL at which the resource manager exports its configuration.

    The web address is taken from the YARN properties, honouring the HTTP
    policy. If no address is given, the resource manager hostname is used with
    the standard port.
    """
    hostname = properties.get(KEY_YARN_RM_HOSTNAME) or defaults.RM_HOSTNAME
    if properties.get(KEY_YARN_HTTP_POLICY) == YARN_HTTP_POLICY_HTTPS_ONLY:
        scheme = "https"
        address = properties.get(KEY_YARN_RM_WEBAPP_HTTPS_ADDRESS)
        default_port = defaults.RM_WEBAPP_HTTPS_PORT
    else:
        scheme = "http"
        address = properties.get(KEY_YARN_RM_WEBAPP_ADDRESS)
        default_port = defaults.RM_WEBAPP_PORT
    if not address:
        address = f"{hostname}:{default_port}"
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise InvalidConfigurationError(f"Invalid resource manager web address {address!r}")
    return str(yarl.URL.build(scheme=scheme, host=host, port=int(port), path="/conf"))


class StagingCommands:
    """Shell fragments that prepare the sandbox and drop privileges.

    Parameters
    ----------
    config
        Framework configuration

    Raises
    ------
    InvalidConfigurationError
        if a superuser is set without a framework user, if a Hadoop
        distribution is staged without both the framework user
        and superuser, or if the distribution URI has no file name.
    """

    def __init__(self, config: Configuration) -> None:
        self.config = config
        self.distribution: Optional[str] = None
        if config.framework_superuser and not config.framework_user:
            raise InvalidConfigurationError(
                "framework_superuser is set, but there is no framework_user to switch to"
            )
        uri = config.executor.node_manager_uri
        if uri is not None:
            if not (config.framework_user and config.framework_superuser):
                raise InvalidConfigurationError(
                    "Trying to use remote distribution, but framework_user "
                    "and/or framework_superuser not set"
                )
            self.distribution = get_file_name(uri)

    def sudo(self, cmd: str) -> str:
        if self.config.framework_superuser:
            return "sudo " + cmd
        return cmd

    def cgroup_commands(self) -> List[str]:
        # TASK_DIR is only known on the host, so the hierarchy option has to be
        # exported by the shell rather than passed in the environment
        config = self.config
        if not config.cgroups_enabled:
            return []
        if not config.framework_superuser:
            logger.warning(
                "framework_superuser not set, ignoring cgroup configuration. "
                "The NodeManager will likely fail."
            )
            return []
        # container-executor expects the mount path to exist and be owned by the yarn user
        return [
            "export TASK_DIR=`basename $PWD`",
            self.sudo(f"chown {config.framework_user} {config.cgroup_path}/cpu/mesos/$TASK_DIR"),
            f'export {ENV_YARN_NODEMANAGER_OPTS}="${ENV_YARN_NODEMANAGER_OPTS} '
            f'{format_option(KEY_YARN_NM_LCE_CGROUPS_HIERARCHY, CGROUPS_HIERARCHY)}"',
        ]

    def distribution_commands(self) -> List[str]:
        if self.distribution is None:
            return []
        commands = [self.sudo(f"tar -zxpf {self.distribution}")]
        if self.config.executor.config_uri is None:
            # The configuration exported by the resource manager is fetched as "conf"
            yarn_home = self.config.yarn_environment.get(ENV_YARN_HOME, "$" + ENV_YARN_HOME)
            commands.append(self.sudo(f"cp conf {yarn_home}/etc/hadoop/yarn-site.xml"))
        return commands

    def user_prefix(self) -> str:
        if self.config.framework_superuser:
            return f"sudo -E -u {self.config.framework_user} -H "
        return ""

    def prefix(self, *, cgroups: bool) -> str:
        """Everything that goes before the executable on the command line"""
        commands = self.cgroup_commands() if cgroups else []
        commands.extend(self.distribution_commands())
        prefix = "".join(command + " && " for command in commands)
        return prefix + self.user_prefix()


class CommandLineGenerator(ABC):
    """Generates the command to launch one flavour of YARN process.

    Parameters
    ----------
    config
        Framework configuration
    properties
        YARN properties of the host system (resource manager hostname, HTTP
        policy and web addresses). It is consulted every time a command is
        generated, so later changes are picked up.
    """

    def __init__(self, config: Configuration, properties: Optional[Mapping[str, str]] = None):
        self.config = config
        self.properties = properties if properties is not None else {}
        self.staging = StagingCommands(config)

    @abstractmethod
    def generate_command_line(
        self,
        profile: AnyResourceProfile,
        service_config: Optional[ServiceConfiguration],
        ports: Sequence[int],
    ) -> CommandSpec:
        """Generate the command for a process that has been assigned `ports`."""

    def get_configuration_url(self) -> str:
        return configuration_url(self.properties)

    def get_user(self) -> str:
        """User under which Mesos runs the command.

        Raises
        ------
        InvalidConfigurationError
            if neither the framework user nor superuser is set
        """
        user = self.config.framework_superuser or self.config.framework_user
        if not user:
            raise InvalidConfigurationError("framework_user must be set")
        return user

    def get_uris(self) -> Tuple[Uri, ...]:
        executor = self.config.executor
        uris = []
        if executor.jvm_uri is not None:
            logger.info("Getting JRE distribution from %s", executor.jvm_uri)
            uris.append(Uri(executor.jvm_uri))
        if executor.config_uri is not None:
            logger.info("Getting Hadoop configuration from %s", executor.config_uri)
            uris.append(Uri(executor.config_uri))
        if executor.node_manager_uri is not None:
            logger.info("Getting Hadoop distribution from %s", executor.node_manager_uri)
            # We extract it ourselves, to preserve permissions
            uris.append(Uri(executor.node_manager_uri, extract=False))
            if executor.config_uri is None:
                url = self.get_configuration_url()
                logger.info("Getting Hadoop configuration from %s", url)
                uris.append(Uri(url, extract=False))
        return tuple(uris)

    def validate(self) -> None:
        """Resolve everything that does not depend on the allocated ports.

        Task factories call this before allocating anything, so that a
        configuration error cannot leave an offer partly consumed.

        Raises
        ------
        InvalidConfigurationError
            if the user or the staged URIs cannot be determined
        """
        self.get_user()
        self.get_uris()

    def _base_options(self) -> List[str]:
        options = []
        rm_hostname = self.properties.get(KEY_YARN_RM_HOSTNAME)
        if rm_hostname:
            options.append(format_option(KEY_YARN_RM_HOSTNAME, rm_hostname))
        yarn_home = self.config.yarn_environment.get(ENV_YARN_HOME)
        if yarn_home is not None:
            options.append(format_option(KEY_YARN_HOME, yarn_home))
        return options

    def _user_options(self) -> List[str]:
        """Options from the static environment, which may override generated ones"""
        opts = self.config.yarn_environment.get(ENV_YARN_NODEMANAGER_OPTS)
        return [opts] if opts else []


class NodeManagerCommandLineGenerator(CommandLineGenerator):
    """Generates the command that launches a NodeManager.

    The ports passed to :meth:`generate_command_line` are, in order, the
    NodeManager RPC port, the localizer port, the web UI port and the
    shuffle port.
    """

    def __init__(self, config: Configuration, properties: Optional[Mapping[str, str]] = None):
        super().__init__(config, properties)
        self.command = wrap_command(self.staging.prefix(cgroups=True) + YARN_NM_CMD)
        logger.debug("NodeManager command: %s", self.command)

    def generate_command_line(
        self,
        profile: AnyResourceProfile,
        service_config: Optional[ServiceConfiguration],
        ports: Sequence[int],
    ) -> CommandSpec:
        if len(ports) != defaults.NODE_MANAGER_PORTS:
            raise ValueError(
                f"Expected {defaults.NODE_MANAGER_PORTS} ports for the NodeManager, "
                f"got {len(ports)}"
            )
        options = self._base_options()
        options.append(format_option(KEY_NM_RESOURCE_CPU_VCORES, int(profile.cpus)))
        options.append(format_option(KEY_NM_RESOURCE_MEM_MB, int(profile.memory)))
        address, localizer, webapp, shuffle = defaults.NODE_MANAGER_PORT_PROPERTIES
        options.append(format_option(address, bind_address(ports[0])))
        options.append(format_option(localizer, bind_address(ports[1])))
        options.append(format_option(webapp, bind_address(ports[2])))
        # Shuffle handler takes a bare port number
        options.append(format_option(shuffle, ports[3]))
        options.extend(self._user_options())

        environment = dict(self.config.yarn_environment)
        environment[ENV_YARN_NODEMANAGER_OPTS] = " ".join(options)
        return CommandSpec(
            value=self.command, environment=environment, uris=self.get_uris(), user=self.get_user()
        )


class ServiceCommandLineGenerator(CommandLineGenerator):
    """Generates the command that launches an auxiliary service.

    The ports passed to :meth:`generate_command_line` correspond, in order,
    to the port properties declared in the service configuration.
    """

    def __init__(self, config: Configuration, properties: Optional[Mapping[str, str]] = None):
        super().__init__(config, properties)
        self.base_command = self.staging.prefix(cgroups=False)

    def generate_command_line(
        self,
        profile: AnyResourceProfile,
        service_config: Optional[ServiceConfiguration],
        ports: Sequence[int],
    ) -> CommandSpec:
        if service_config is None or not service_config.command:
            raise PreconditionError("A service configuration with a command is required")
        if len(ports) != len(service_config.ports):
            raise ValueError(
                f"Service {service_config.name} declares {len(service_config.ports)} ports, "
                f"got {len(ports)}"
            )
        opts_name = service_config.service_opts or ENV_YARN_NODEMANAGER_OPTS
        options = self._base_options()
        for port_property, port in zip(service_config.ports, ports):
            options.append(format_option(port_property, bind_address(port)))
        if opts_name == ENV_YARN_NODEMANAGER_OPTS:
            options.extend(self._user_options())
        if service_config.env_settings:
            options.append(service_config.env_settings)

        environment = dict(self.config.yarn_environment)
        environment[opts_name] = " ".join(options)
        command = wrap_command(self.base_command + service_config.command)
        logger.info("Command line for service %s is: %s", service_config.name, command)
        return CommandSpec(
            value=command, environment=environment, uris=self.get_uris(), user=self.get_user()
        )


__all__ = [
    "PreconditionError",
    "Uri",
    "CommandSpec",
    "StagingCommands",
    "CommandLineGenerator",
    "NodeManagerCommandLineGenerator",
    "ServiceCommandLineGenerator",
    "configuration_url",
    "get_file_name",
    "wrap_command",
]
