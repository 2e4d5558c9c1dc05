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


"""Utilities for unit tests"""

import uuid
from typing import Any, Dict as TypingDict, Mapping

from addict import Dict

from yarnbridge.config import Configuration, parse_config


def make_resources(resources: Mapping[str, Any], role: str = "*"):
    """Build Mesos resource messages.

    Scalar values are given as numbers, and ranges as lists of inclusive
    ``(begin, end)`` pairs.
    """
    out = []
    for name, value in resources.items():
        resource = Dict()
        resource.name = name
        resource.role = role
        if isinstance(value, (int, float)):
            resource.type = "SCALAR"
            resource.scalar.value = float(value)
        else:
            resource.type = "RANGES"
            resource.ranges.range = [Dict(begin=begin, end=end) for begin, end in value]
        out.append(resource)
    return out


def make_offer(resources, *, reserved=None, role="yarn", offer_id=None,
               agent_id="agentid", host="agenthost"):
    """Build a Mesos offer with unreserved `resources` and optional `reserved` ones"""
    offer = Dict()
    offer.id.value = offer_id if offer_id is not None else uuid.uuid4().hex
    offer.framework_id.value = "frameworkid"
    offer.agent_id.value = agent_id
    offer.hostname = host
    offer.resources = make_resources(resources)
    if reserved:
        offer.resources.extend(make_resources(reserved, role))
    return offer


def make_status(task_id, state):
    status = Dict()
    status.task_id.value = task_id
    status.state = state
    return status


def make_config_dict(**overrides) -> TypingDict[str, Any]:
    config: TypingDict[str, Any] = {
        "framework_name": "yarnbridge-test",
        "framework_user": "hduser",
        "node_manager": {"cpus": 0.5, "jvm_max_memory_mb": 1024},
        "yarn_environment": {"YARN_HOME": "/usr/local/hadoop"},
        "profiles": {
            "small": {"cpus": 2, "mem": 2048},
            "medium": {"cpus": 7, "mem": 8000},
        },
        "services": {
            "jobhistory": {
                "command": "$YARN_HOME/bin/mapred historyserver",
                "cpus": 0.5,
                "jvm_max_memory_mb": 1024,
                "ports": {
                    "mapreduce.jobhistory.admin.address": 0,
                    "mapreduce.jobhistory.address": 0,
                    "mapreduce.jobhistory.webapp.address": 0,
                },
                "service_opts": "HADOOP_JOB_HISTORYSERVER_OPTS",
                "max_instances": 1,
            },
            "timelineserver": {
                "command": "$YARN_HOME/bin/yarn timelineserver",
                "cpus": 0.2,
                "jvm_max_memory_mb": 512,
                "ports": {"yarn.timeline-service.webapp.address": 8188},
                "env_settings": "-Dcustom.value=1",
            },
        },
    }
    config.update(overrides)
    # None removes a key
    return {key: value for key, value in config.items() if value is not None}


def make_config(**overrides) -> Configuration:
    return parse_config(make_config_dict(**overrides))


DOCKER_CONTAINER = {
    "type": "DOCKER",
    "docker": {
        "image": "mesos/myriad",
        "network": "HOST",
        "privileged": False,
        "parameters": [
            {"key": "label", "value": "yarn"},
            {"key": "memory-swap", "value": "-1"},
        ],
    },
    "volumes": [
        {"container_path": "/etc/hadoop", "host_path": "/etc/hadoop", "mode": "RO"},
        {"container_path": "/tmp/yarn", "mode": "RW"},
    ],
}
