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


import random

import pytest

from yarnbridge import resources
from yarnbridge.scheduler import TaskIDAllocator

pytest.register_assert_rewrite("test.utils")


@pytest.fixture
def rng() -> random.Random:
    """Seeded generator for wildcard port assignment"""
    return random.Random(1)


@pytest.fixture(autouse=True)
def fresh_task_ids(monkeypatch: pytest.MonkeyPatch) -> None:
    """Restart task ID numbering in each test"""
    monkeypatch.setattr(TaskIDAllocator, "_by_prefix", {})


@pytest.fixture(autouse=True)
def seeded_ranges(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make the default wildcard port assignment reproducible"""
    monkeypatch.setattr(resources.RangeResource, "_random", random.Random(0))
