# File: cloud/interfaces.py
"""
Collaborator interfaces consumed by the failover controller.

- Compute cluster API (service descriptor, running instances, updates, stops)
- Network topology API (subnets per AZ, instance placement)
- Notification channel
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class Subnet:
    subnet_id: str
    availability_zone: str


@dataclass(frozen=True)
class PlacementRecord:
    """Where a running instance currently sits. Valid for one poll cycle only."""

    instance_id: str
    subnet_id: str
    availability_zone: str


@dataclass(frozen=True)
class ServiceNetworkConfig:
    """Structured awsvpc configuration pushed to the scheduler."""

    subnets: Tuple[str, ...]
    security_groups: Tuple[str, ...]
    assign_public_ip: str = "ENABLED"

    def to_request(self) -> dict:
        return {
            "awsvpcConfiguration": {
                "subnets": list(self.subnets),
                "securityGroups": list(self.security_groups),
                "assignPublicIp": self.assign_public_ip,
            }
        }


@dataclass(frozen=True)
class ServiceDescriptor:
    cluster: str
    service: str
    status: str
    desired_count: int
    running_count: int
    network: Optional[ServiceNetworkConfig] = None


class ComputeClusterApi(ABC):
    @abstractmethod
    def describe_service(self, cluster: str, service: str) -> ServiceDescriptor:
        """Raise ServiceLookupError when the cluster or service does not exist."""

    @abstractmethod
    def list_running_instances(self, cluster: str, service: str) -> List[str]:
        ...

    @abstractmethod
    def update_service_network_config(
        self,
        cluster: str,
        service: str,
        config: ServiceNetworkConfig,
        force_redeploy: bool = True,
    ) -> None:
        """Raise ApplyError when the scheduler rejects the update."""

    @abstractmethod
    def stop_instance(self, cluster: str, instance_id: str, reason: str) -> None:
        ...


class NetworkTopologyApi(ABC):
    @abstractmethod
    def describe_subnets(self, availability_zone: str) -> List[Subnet]:
        ...

    @abstractmethod
    def resolve_placement(self, cluster: str, instance_id: str) -> PlacementRecord:
        """Raise ResolutionError when the placement cannot be determined."""


class Notifier(ABC):
    @abstractmethod
    def publish(self, subject: str, message: str) -> None:
        ...
