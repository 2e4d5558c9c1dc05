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


"""Makes packaged JSON schemas available.

The schemas themselves are written in YAML, but restricted to the JSON data
types. YAML is used purely for better readability. Each ``name.yaml`` file in
this package becomes a validator called ``NAME``.
"""

from typing import TYPE_CHECKING

import importlib_resources
import jsonschema
import yaml


def _make_validator(schema) -> jsonschema.protocols.Validator:
    """Check a schema document and create a validator from it"""
    validator_cls = jsonschema.validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema, format_checker=jsonschema.FormatChecker())


for entry in importlib_resources.files(__name__).iterdir():
    name = entry.name
    if name.endswith(".yaml"):
        schema = yaml.safe_load(entry.read_text())
        globals()[name[:-5].upper()] = _make_validator(schema)

if TYPE_CHECKING:
    # Let type checkers know about the defined schemas
    CONFIG: jsonschema.protocols.Validator
