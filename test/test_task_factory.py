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


"""Tests for :mod:`yarnbridge.task_factory`."""

import random
from decimal import Decimal

import pytest

from yarnbridge.command_line import CommandSpec
from yarnbridge.config import InvalidConfigurationError, parse_config
from yarnbridge.profiles import (
    NodeTask,
    ServiceResourceProfile,
    node_manager_profile,
    service_profile,
)
from yarnbridge.resources import InsufficientResourcesError, OfferResources, values_of
from yarnbridge.task_factory import (
    ContainerSpec,
    NodeManagerTaskFactory,
    PreconditionError,
    ServiceTaskFactory,
    VolumeSpec,
    container_spec,
)

from .utils import DOCKER_CONTAINER, make_config, make_config_dict, make_offer


class TestContainerSpec:
    def test_none(self):
        assert container_spec(None) is None

    def test_docker(self):
        config = make_config(container=DOCKER_CONTAINER)
        spec = container_spec(config.container)
        assert spec == ContainerSpec(
            type="DOCKER",
            image="mesos/myriad",
            network="HOST",
            privileged=False,
            parameters=(("label", "yarn"), ("memory-swap", "-1")),
            volumes=(
                VolumeSpec("/etc/hadoop", "/etc/hadoop", "RO"),
                VolumeSpec("/tmp/yarn", None, "RW"),
            ),
        )
        info = spec.info()
        assert info.type == "DOCKER"
        assert info.docker.image == "mesos/myriad"
        assert info.docker.network == "HOST"
        assert info.docker.privileged is False
        assert info.docker.parameters == [
            {"key": "label", "value": "yarn"},
            {"key": "memory-swap", "value": "-1"},
        ]
        assert info.volumes == [
            {"container_path": "/etc/hadoop", "host_path": "/etc/hadoop", "mode": "RO"},
            {"container_path": "/tmp/yarn", "mode": "RW"},
        ]

    def test_bridged(self):
        config = make_config(container={"docker": {"image": "foo", "network": "BRIDGED"}})
        spec = container_spec(config.container)
        assert spec.network == "BRIDGE"
        assert spec.info().docker.network == "BRIDGE"

    def test_default_network(self):
        config = make_config(container={"docker": {"image": "foo"}})
        assert container_spec(config.container).network == "BRIDGE"

    def test_mesos(self):
        config = make_config(container={"type": "MESOS", "docker": {"image": "foo"}})
        info = container_spec(config.container).info()
        assert info.type == "MESOS"
        assert info.mesos.image.type == "DOCKER"
        assert info.mesos.image.docker.name == "foo"
        assert "docker" not in info

    def test_volumes_only(self):
        config = make_config(container={"volumes": [{"container_path": "/data"}]})
        info = container_spec(config.container).info()
        assert info == {"type": "DOCKER", "volumes": [{"container_path": "/data", "mode": "RW"}]}


class TestNodeManagerTaskFactory:
    def setup_method(self):
        self.config = make_config(container=DOCKER_CONTAINER)
        self.factory = NodeManagerTaskFactory(self.config)
        self.offer = make_offer(
            {"cpus": 10, "mem": 16000, "ports": [(3500, 3600)]},
            offer_id="offer1",
            agent_id="agent1",
        )
        self.resources = OfferResources(self.offer, use_random=random.Random(1))
        self.node_task = NodeTask(node_manager_profile(self.config, "medium"))

    def test_no_user(self):
        factory = NodeManagerTaskFactory(make_config(framework_user=None))
        with pytest.raises(InvalidConfigurationError):
            factory.create_launch_spec(self.resources, "framework1", "nm.1", self.node_task)
        assert self.resources.info() == []
        assert self.resources.scalar("cpus").available == 10
        assert self.resources.scalar("mem").available == 16000
        assert self.resources.range("ports").available == 101

    def test_launch_spec(self):
        spec = self.factory.create_launch_spec(
            self.resources, "framework1", "nm.00000000", self.node_task
        )
        assert spec.task_id == "nm.00000000"
        assert spec.name == "yarnbridge-test-nm.00000000"
        assert spec.agent_id == "agent1"
        assert spec.command is None
        assert spec.container is None

        ports = values_of(spec.resources)
        assert len(ports) == 4
        assert len(set(ports)) == 4
        assert all(3500 <= port <= 3600 for port in ports)
        task_scalars = {r.name: r.scalar.value for r in spec.resources if r.type == "SCALAR"}
        assert task_scalars == {"cpus": 7.0, "mem": 8000.0}

        executor = spec.executor
        assert executor.executor_id == "yarnbridge_executorframework1offer1agent1"
        assert executor.name == "yarnbridge_task"
        assert {r.name: r.scalar.value for r in executor.resources} == {
            "cpus": 0.5,
            "mem": 1024.0,
        }
        assert executor.container == container_spec(self.config.container)
        opts = executor.command.environment["YARN_NODEMANAGER_OPTS"]
        assert f"-Dyarnbridge.yarn.nodemanager.address=0.0.0.0:{ports[0]}" in opts
        assert f"-Dyarnbridge.mapreduce.shuffle.port={ports[3]}" in opts
        assert "-Dnodemanager.resource.cpu-vcores=7" in opts
        assert executor.command.value == "yarnbridge_executor.py"
        assert executor.command.user == "hduser"
        assert spec.payload.value.endswith("$YARN_HOME/bin/yarn nodemanager")
        assert spec.command_line == spec.payload.value
        assert spec.environment is executor.command.environment

        assert self.resources.scalar("cpus").available == 2.5
        assert self.resources.scalar("mem").available == 6976
        assert self.resources.range("ports").available == 97
        assert list(spec.all_resources()) == self.resources.info()

    def test_info(self):
        spec = self.factory.create_launch_spec(
            self.resources, "framework1", "nm.00000000", self.node_task
        )
        info = spec.info()
        assert info.name == "yarnbridge-test-nm.00000000"
        assert info.task_id.value == "nm.00000000"
        assert info.agent_id.value == "agent1"
        assert "command" not in info
        assert "container" not in info
        assert len(info.resources) == 6
        assert info.executor.executor_id.value == "yarnbridge_executorframework1offer1agent1"
        assert info.executor.command.shell is True
        assert info.executor.command.user == "hduser"
        assert info.executor.container.docker.image == "mesos/myriad"
        assert len(info.executor.resources) == 2
        assert CommandSpec.from_data(info.data) == CommandSpec(
            value=spec.payload.value, environment=dict(spec.payload.environment)
        )
        # Messages are copies, so editing them does not affect the spec
        info.resources[0].role = "changed"
        assert spec.resources[0].role == "*"

    def test_insufficient_cpus(self):
        offer = make_offer({"cpus": 7.4, "mem": 16000, "ports": [(3500, 3600)]})
        resources = OfferResources(offer)
        with pytest.raises(InsufficientResourcesError):
            self.factory.create_launch_spec(resources, "framework1", "nm.1", self.node_task)
        assert resources.info() == []
        assert resources.scalar("cpus").available == Decimal("7.4")
        assert resources.range("ports").available == 101

    def test_insufficient_ports(self):
        offer = make_offer({"cpus": 10, "mem": 16000, "ports": [(3500, 3502)]})
        resources = OfferResources(offer)
        with pytest.raises(InsufficientResourcesError):
            self.factory.create_launch_spec(resources, "framework1", "nm.1", self.node_task)
        assert resources.info() == []

    def test_reserved_resources(self):
        offer = make_offer(
            {"cpus": 4, "mem": 16000, "ports": [(3500, 3600)]},
            reserved={"cpus": 4},
            role="yarn",
        )
        resources = OfferResources(offer)
        spec = self.factory.create_launch_spec(resources, "framework1", "nm.1", self.node_task)
        cpus = [(r.role, r.scalar.value) for r in spec.resources if r.name == "cpus"]
        assert cpus == [("yarn", 4.0), ("*", 3.0)]
        assert [r.role for r in spec.executor.resources if r.name == "cpus"] == ["*"]

    def test_bad_profile(self):
        node_task = NodeTask(ServiceResourceProfile("odd", 1, 1024))
        with pytest.raises(PreconditionError):
            self.factory.create_launch_spec(self.resources, "framework1", "nm.1", node_task)

    @pytest.mark.parametrize(
        "offer_resources, task_id, node_task",
        [(None, "nm.1", True), (True, "", True), (True, "nm.1", None)],
    )
    def test_preconditions(self, offer_resources, task_id, node_task):
        offer_resources = self.resources if offer_resources else None
        node_task = self.node_task if node_task else None
        with pytest.raises(PreconditionError):
            self.factory.create_launch_spec(offer_resources, "framework1", task_id, node_task)


class TestServiceTaskFactory:
    def setup_method(self):
        self.config = make_config(container=DOCKER_CONTAINER)
        self.factory = ServiceTaskFactory(self.config)
        self.offer = make_offer(
            {"cpus": 4, "mem": 4096, "ports": [(8000, 9000)]}, agent_id="agent2"
        )
        self.resources = OfferResources(self.offer)

    def _node_task(self, name):
        return NodeTask(service_profile(self.config, name), task_prefix=name)

    def test_launch_spec(self):
        spec = self.factory.create_launch_spec(
            self.resources, "framework1", "jobhistory.00000000", self._node_task("jobhistory")
        )
        assert spec.name == "jobhistory"
        assert spec.agent_id == "agent2"
        assert spec.executor is None
        assert isinstance(spec.command, CommandSpec)
        assert spec.container == container_spec(self.config.container)
        ports = values_of(spec.resources)
        assert len(set(ports)) == 3
        opts = spec.environment["HADOOP_JOB_HISTORYSERVER_OPTS"]
        assert f"-Dmapreduce.jobhistory.webapp.address=0.0.0.0:{ports[2]}" in opts
        scalars = {r.name: r.scalar.value for r in spec.resources if r.type == "SCALAR"}
        assert scalars == {"cpus": 0.5, "mem": 1024.0}

        info = spec.info()
        assert info.command.value == spec.command_line
        assert info.container.docker.network == "HOST"
        assert "executor" not in info

    def test_fixed_port(self):
        spec = self.factory.create_launch_spec(
            self.resources, "framework1", "t1", self._node_task("timelineserver")
        )
        assert values_of(spec.resources) == [8188]
        assert "-Dyarn.timeline-service.webapp.address=0.0.0.0:8188" in (
            spec.environment["YARN_NODEMANAGER_OPTS"]
        )

    def test_fixed_port_unavailable(self):
        offer = make_offer({"cpus": 4, "mem": 4096, "ports": [(3500, 3600)]})
        resources = OfferResources(offer)
        with pytest.raises(InsufficientResourcesError):
            self.factory.create_launch_spec(
                resources, "framework1", "t1", self._node_task("timelineserver")
            )
        assert resources.info() == []

    def test_unknown_service(self):
        node_task = NodeTask(ServiceResourceProfile("nosuch", 1, 1), task_prefix="nosuch")
        with pytest.raises(PreconditionError):
            self.factory.create_launch_spec(self.resources, "framework1", "t1", node_task)

    def test_no_command(self):
        config_dict = make_config_dict()
        config_dict["services"]["bare"] = {"cpus": 1}
        config = parse_config(config_dict)
        factory = ServiceTaskFactory(config)
        node_task = NodeTask(service_profile(config, "bare"), task_prefix="bare")
        with pytest.raises(PreconditionError):
            factory.create_launch_spec(self.resources, "framework1", "t1", node_task)
        assert self.resources.info() == []

    def test_no_user(self):
        config = make_config(framework_user=None)
        factory = ServiceTaskFactory(config)
        node_task = NodeTask(service_profile(config, "jobhistory"), task_prefix="jobhistory")
        with pytest.raises(InvalidConfigurationError):
            factory.create_launch_spec(self.resources, "framework1", "t1", node_task)
        assert self.resources.info() == []
        assert self.resources.range("ports").available == 1001

    def test_no_container(self):
        factory = ServiceTaskFactory(make_config())
        spec = factory.create_launch_spec(
            self.resources, "framework1", "t1", self._node_task("timelineserver")
        )
        assert spec.container is None
        assert "container" not in spec.info()
