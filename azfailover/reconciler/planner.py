# File: reconciler/planner.py

from dataclasses import dataclass
from typing import FrozenSet, Iterable

from ..cloud.interfaces import NetworkTopologyApi
from ..errors import InfeasiblePlanError


@dataclass(frozen=True)
class NetworkTopology:
    """Network attachment of a service."""

    subnets: FrozenSet[str]
    security_groups: FrozenSet[str]

    @classmethod
    def of(cls, subnets: Iterable[str], security_groups: Iterable[str] = ()) -> "NetworkTopology":
        return cls(subnets=frozenset(subnets), security_groups=frozenset(security_groups))


@dataclass(frozen=True)
class ExclusionPlan:
    excluded_az: str
    original_subnets: FrozenSet[str]
    target_subnets: FrozenSet[str]

    @property
    def excluded_subnets(self) -> FrozenSet[str]:
        return self.original_subnets - self.target_subnets


def plan(
    topology: NetworkTopology,
    excluded_az: str,
    network: NetworkTopologyApi,
    cluster: str = None,
    service: str = None,
) -> ExclusionPlan:
    """
    Compute the subnet set left once every subnet of `excluded_az` is removed.

    Raises InfeasiblePlanError if nothing would be left. Performs no mutation.
    """
    in_zone = {s.subnet_id for s in network.describe_subnets(excluded_az)}
    target = frozenset(s for s in topology.subnets if s not in in_zone)

    if not target:
        raise InfeasiblePlanError(
            f"Every configured subnet is in {excluded_az}; excluding it leaves no placement",
            cluster=cluster,
            service=service,
            step="plan",
        )

    return ExclusionPlan(
        excluded_az=excluded_az,
        original_subnets=frozenset(topology.subnets),
        target_subnets=target,
    )
