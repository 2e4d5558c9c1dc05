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


"""Accounting of the resources in a single Mesos offer.

An offer is an opaque list of named resources. Scalar resources (cpus, mem,
disk) carry an amount and ranged resources (ports) carry a list of
``[begin, end]`` intervals. Each entry may be tagged with a role: ``*`` (or no
role at all) is the unrestricted default, while anything else has been
reserved for a specific role.

:class:`OfferResources` parses an offer once into one ledger per resource
name, and is the only surface from which task factories allocate. The ledgers
are mutated in place by each allocation, so a single instance must only be
used by one thread, and only for the offer it was built from. Allocations
return Mesos resource messages (as :class:`addict.Dict`) ready to be placed in
a task or executor info.
"""

import copy
import decimal
import logging
import random
import typing
from decimal import Decimal
from typing import Any, ClassVar, Iterable, List, Mapping, Optional, Sequence

from addict import Dict

#: Role used by Mesos for resources that are not reserved
DEFAULT_ROLE = "*"
DECIMAL_CONTEXT = decimal.Context(
    traps=[
        decimal.Overflow,
        decimal.InvalidOperation,
        decimal.DivisionByZero,  # defaults
        decimal.Inexact,
        decimal.FloatOperation,
    ]
)
DECIMAL_CAST_CONTEXT = decimal.Context()
DECIMAL_ZERO = Decimal("0.000")
logger = logging.getLogger(__name__)


def _as_decimal(value):
    """Forces `value` to a Decimal with 3 decimal places"""
    with decimal.localcontext(DECIMAL_CAST_CONTEXT):
        return Decimal(value).quantize(DECIMAL_ZERO)


class InsufficientResourcesError(RuntimeError):
    """There are insufficient resources in an offer to satisfy a request.

    Callers are expected to check with ``satisfies`` before consuming, so
    seeing this usually means the request should be retried against a
    different offer.
    """

    pass


class ScalarResource:
    """Ledger for one scalar resource in an offer.

    The amount is split into a pool reserved for the framework's role and the
    default (unreserved) pool. Reserved capacity is consumed first, so that
    unreserved capacity remains for tasks that could run anywhere.

    Attributes
    ----------
    name : str
        Resource name
    role : str
        Role of the reserved pool (the role of the first reserved resource
        added, or :const:`DEFAULT_ROLE` if there is none)
    default_amount : :class:`Decimal`
        Unreserved amount still available
    role_amount : :class:`Decimal`
        Reserved amount still available
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.role = DEFAULT_ROLE
        self.default_amount = DECIMAL_ZERO
        self.role_amount = DECIMAL_ZERO
        # First resource of each pool, keyed by role, so that records keep
        # fields such as allocation_info and reservations
        self._templates = {}

    def add(self, resource: Dict) -> None:
        """Add a Mesos resource message to the ledger"""
        if resource.name != self.name:
            raise ValueError(f"Name mismatch {self.name} != {resource.name}")
        if resource.type != "SCALAR":
            raise TypeError(f"Expected SCALAR resource, got {resource.type}")
        role = resource.get("role", DEFAULT_ROLE)
        if role != DEFAULT_ROLE:
            if self.role == DEFAULT_ROLE:
                self.role = role
            elif role != self.role:
                logger.debug("Ignoring %s reserved for second role %s", self.name, role)
                return
        if role not in self._templates:
            self._templates[role] = copy.deepcopy(resource)
        self.increment(resource.scalar.value, role != DEFAULT_ROLE)

    def increment(self, amount, role_reserved: bool) -> None:
        amount = _as_decimal(amount)
        if role_reserved:
            self.role_amount += amount
        else:
            self.default_amount += amount

    @property
    def available(self) -> Decimal:
        return self.default_amount + self.role_amount

    def __bool__(self) -> bool:
        return bool(self.available)

    def satisfies(self, amount) -> bool:
        return self.available >= _as_decimal(amount)

    def _make_record(self, amount: Decimal, role: str) -> Dict:
        template = self._templates.get(role)
        if template is not None:
            record = copy.deepcopy(template)
        else:
            record = Dict()
            record.name = self.name
            record.type = "SCALAR"
        record.role = role
        record.scalar.value = float(amount)
        return record

    def consume(self, amount) -> List[Dict]:
        """Take `amount` out of the ledger.

        The reserved pool is drained before the default pool, so the result
        contains at most two records: one for the role and one for the
        remainder taken from the default pool.

        Raises
        ------
        InsufficientResourcesError
            if `amount` is more than the total available. The ledger is not
            modified in this case.
        """
        amount = _as_decimal(amount)
        if amount < DECIMAL_ZERO:
            raise ValueError(f"Cannot consume negative amount {amount} of {self.name}")
        if not self.satisfies(amount):
            raise InsufficientResourcesError(
                f"Requested amount {amount} of {self.name} "
                f"is more than available {self.available}"
            )
        records = []
        if amount == DECIMAL_ZERO:
            return records
        with decimal.localcontext(DECIMAL_CONTEXT):
            if self.role_amount >= amount:
                self.role_amount -= amount
                records.append(self._make_record(amount, self.role))
            elif self.role_amount > DECIMAL_ZERO:
                rest = amount - self.role_amount
                records.append(self._make_record(self.role_amount, self.role))
                records.append(self._make_record(rest, DEFAULT_ROLE))
                self.default_amount -= rest
                self.role_amount = DECIMAL_ZERO
            else:
                self.default_amount -= amount
                records.append(self._make_record(amount, DEFAULT_ROLE))
        return records

    def __str__(self):
        return f"{self.name}:{self.default_amount}; {self.name}({self.role}):{self.role_amount}"


class RangeResource:
    """Ledger for one ranged resource (typically ports) in an offer.

    Only unreserved ranges are used. The ranges are expanded into a set of
    discrete values, so this is only suitable for resources of modest size.

    Requests are sequences of values, in which 0 is a wildcard meaning "any
    free value" and any other value must be available exactly. Wildcards are
    filled by sampling uniformly at random, using :attr:`_random` unless a
    generator is passed to the constructor.

    Attributes
    ----------
    name : str
        Resource name
    values : set of int
        Values not yet allocated
    """

    # Internally used random generator for wildcard assignment. It's used
    # instead of the default one to make it easier to mock out.
    _random: ClassVar[random.Random] = random.Random()

    def __init__(self, name: str, *, use_random: Optional[random.Random] = None) -> None:
        self.name = name
        self.values = set()
        self._template = None
        if use_random is not None:
            self._random = use_random

    def add(self, resource: Dict) -> None:
        """Add the unreserved ranges of a Mesos resource message"""
        if resource.name != self.name:
            raise ValueError(f"Name mismatch {self.name} != {resource.name}")
        if resource.type != "RANGES":
            raise TypeError(f"Expected RANGES resource, got {resource.type}")
        role = resource.get("role", DEFAULT_ROLE)
        if role != DEFAULT_ROLE:
            logger.debug("Skipping %s reserved for role %s", self.name, role)
            return
        if self._template is None:
            self._template = copy.deepcopy(resource)
        for r in resource.ranges.range:
            self.values.update(range(r.begin, r.end + 1))

    def discard(self, values: Iterable[int]) -> None:
        """Remove values that are already in use elsewhere"""
        self.values.difference_update(values)

    @property
    def available(self) -> int:
        return len(self.values)

    def __len__(self):
        return len(self.values)

    def __bool__(self):
        return bool(self.values)

    def __iter__(self):
        return iter(sorted(self.values))

    def satisfies(self, requested: Sequence[int]) -> bool:
        """Whether every fixed (non-zero) value in `requested` is available.

        Wildcards are not counted here, but :meth:`consume` still fails if
        there are not enough free values to fill them.
        """
        fixed = [value for value in requested if value != 0]
        return len(set(fixed)) == len(fixed) and all(value in self.values for value in fixed)

    def _make_record(self, value: int) -> Dict:
        if self._template is not None:
            record = copy.deepcopy(self._template)
        else:
            record = Dict()
            record.name = self.name
            record.type = "RANGES"
        record.role = DEFAULT_ROLE
        record.ranges.range = [Dict(begin=value, end=value)]
        return record

    def consume(self, requested: Sequence[int]) -> List[Dict]:
        """Allocate values, one resource record per requested value.

        The result is aligned with `requested`: fixed values are returned as
        is, and each wildcard is replaced by a distinct randomly chosen value
        that is not one of the fixed values.

        Raises
        ------
        InsufficientResourcesError
            if a fixed value is not available or there are too few free values
            for the wildcards. The ledger is not modified in this case.
        """
        requested = list(requested)
        if not self.satisfies(requested):
            missing = sorted(value for value in requested if value and value not in self.values)
            raise InsufficientResourcesError(
                f"Requested values {missing} of {self.name} are not available"
            )
        fixed = [value for value in requested if value != 0]
        n_wildcards = len(requested) - len(fixed)
        candidates = sorted(self.values.difference(fixed))
        if n_wildcards > len(candidates):
            raise InsufficientResourcesError(
                f"Requested {n_wildcards} arbitrary values of {self.name} "
                f"but only {len(candidates)} are available"
            )
        drawn = iter(self._random.sample(candidates, n_wildcards))
        values = [value if value != 0 else next(drawn) for value in requested]
        self.values.difference_update(values)
        return [self._make_record(value) for value in values]

    def __str__(self):
        return f"{self.name}:[{','.join(str(value) for value in self)}]"


def values_of(records: Iterable[Dict]) -> List[int]:
    """Extract the values from range resource records returned by :meth:`RangeResource.consume`"""
    return [r.begin for record in records for r in record.ranges.range]


class OfferResources:
    """All the resources of one offer, from which tasks are allocated.

    Parameters
    ----------
    offer : :class:`addict.Dict`
        Mesos offer message
    used_ports : iterable of int
        Port values that have already been committed elsewhere and must not be
        handed out again
    use_random : :class:`random.Random`, optional
        Random generator for wildcard port assignment (for reproducible tests)

    Attributes
    ----------
    scalars : dict
        Maps resource names to :class:`ScalarResource`
    ranges : dict
        Maps resource names to :class:`RangeResource`
    """

    def __init__(
        self,
        offer: Dict,
        *,
        used_ports: Iterable[int] = (),
        use_random: Optional[random.Random] = None,
    ) -> None:
        self.offer = offer
        self._random = use_random
        self.scalars: typing.Dict[str, ScalarResource] = {}
        self.ranges: typing.Dict[str, RangeResource] = {}
        self._consumed: List[Dict] = []
        for resource in offer.get("resources", []):
            if resource.type == "SCALAR":
                self.scalar(resource.name).add(resource)
            elif resource.type == "RANGES":
                self.range(resource.name).add(resource)
            else:
                logger.debug("Ignoring %s resource %s", resource.type, resource.name)
        self.range("ports").discard(used_ports)

    @property
    def offer_id(self) -> str:
        return self.offer.id.value

    @property
    def agent_id(self) -> str:
        return self.offer.agent_id.value

    @property
    def hostname(self) -> str:
        return self.offer.hostname

    def scalar(self, name: str) -> ScalarResource:
        """Get the ledger for a scalar resource (empty if the offer has none)"""
        try:
            return self.scalars[name]
        except KeyError:
            resource = self.scalars[name] = ScalarResource(name)
            return resource

    def range(self, name: str) -> RangeResource:
        """Get the ledger for a range resource (empty if the offer has none)"""
        try:
            return self.ranges[name]
        except KeyError:
            resource = self.ranges[name] = RangeResource(name, use_random=self._random)
            return resource

    def satisfies(self, scalars: Mapping[str, Any], ports: Sequence[int] = ()) -> bool:
        """Check several requirements at once, without allocating anything"""
        for name, amount in scalars.items():
            if not self.scalar(name).satisfies(amount):
                logger.debug(
                    "Not enough %s in offer %s (%s < %s)",
                    name,
                    self.offer_id,
                    self.scalar(name).available,
                    amount,
                )
                return False
        ledger = self.range("ports")
        n_free = len(ledger.values.difference(ports))
        n_wildcards = sum(1 for port in ports if port == 0)
        if not ledger.satisfies(ports) or n_wildcards > n_free:
            logger.debug("Not enough ports in offer %s for %s", self.offer_id, list(ports))
            return False
        return True

    def allocate_scalar(self, name: str, amount) -> List[Dict]:
        records = self.scalar(name).consume(amount)
        self._consumed.extend(records)
        return records

    def allocate_ports(self, values: Sequence[int]) -> List[Dict]:
        records = self.range("ports").consume(values)
        self._consumed.extend(records)
        return records

    def info(self) -> List[Dict]:
        """Resource messages for everything allocated so far"""
        return list(self._consumed)

    def __str__(self):
        parts = [str(resource) for resource in self.scalars.values()]
        parts.extend(str(resource) for resource in self.ranges.values())
        return "; ".join(parts)


__all__ = [
    "InsufficientResourcesError",
    "ScalarResource",
    "RangeResource",
    "OfferResources",
    "values_of",
]
