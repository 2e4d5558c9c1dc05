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


"""Constants controlling tunable policies."""

#: Binds services to every local IPv4 address
ALL_LOCAL_IPV4_ADDR = "0.0.0.0"
#: Default mount point of the cgroup hierarchy on the agents
CGROUP_PATH = "/sys/fs/cgroup"
#: Docker network mode used when the configuration does not give one
DOCKER_NETWORK = "BRIDGE"
#: CPUs used by the NodeManager process itself
NODE_MANAGER_CPUS = 1.0
#: Memory (MiB) used by the NodeManager JVM itself
NODE_MANAGER_MEMORY_MB = 2048.0
#: CPUs for an auxiliary service without an explicit setting
SERVICE_CPUS = 0.1
#: Memory (MiB) for an auxiliary service without an explicit setting
SERVICE_MEMORY_MB = 1024.0
#: Number of ports a NodeManager needs (RPC, localizer, web UI, shuffle)
NODE_MANAGER_PORTS = 4
#: Resource manager web port used when no address is configured
RM_WEBAPP_PORT = 8088
#: Resource manager HTTPS web port used when no address is configured
RM_WEBAPP_HTTPS_PORT = 8090
#: YARN's own default for yarn.resourcemanager.hostname
RM_HOSTNAME = "0.0.0.0"
#: Prefix for task IDs of YARN containers reported by the executor
YARN_CONTAINER_TASK_ID_PREFIX = "yarn_"
#: Task prefix identifying NodeManager tasks
NODE_MANAGER_TASK_PREFIX = "nm"
#: Name given to the executor that runs the NodeManager
EXECUTOR_NAME = "yarnbridge_task"
#: Prefix of executor IDs
EXECUTOR_PREFIX = "yarnbridge_executor"
#: Command that starts the executor (installed by setup.py)
EXECUTOR_COMMAND = "yarnbridge_executor.py"
#: Java properties receiving the NodeManager ports, in allocation order
NODE_MANAGER_PORT_PROPERTIES = (
    "yarnbridge.yarn.nodemanager.address",
    "yarnbridge.yarn.nodemanager.localizer.address",
    "yarnbridge.yarn.nodemanager.webapp.address",
    "yarnbridge.mapreduce.shuffle.port",
)
