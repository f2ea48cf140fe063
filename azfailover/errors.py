# File: errors.py
"""
Failover error taxonomy.

Every error carries the cluster, service and step it happened in so an
operator can rerun the failed step by hand.
"""

from typing import Optional


class FailoverError(Exception):
    """Base class for errors raised by the failover controller."""

    def __init__(
        self,
        message: str,
        cluster: Optional[str] = None,
        service: Optional[str] = None,
        step: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cluster = cluster
        self.service = service
        self.step = step

    def __str__(self):
        context = [
            f"{name}={value}"
            for name, value in (
                ("cluster", self.cluster),
                ("service", self.service),
                ("step", self.step),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ServiceLookupError(FailoverError, LookupError):
    """Cluster or service not found, or not deployed with awsvpc networking."""


class InfeasiblePlanError(FailoverError):
    """Excluding the AZ would leave the service with no subnets."""


class ApplyError(FailoverError):
    """The scheduler rejected the network configuration update."""


class MissingSnapshotError(FailoverError, LookupError):
    """Restore requested with no prior failover for the (cluster, service)."""


class ConflictError(FailoverError):
    """An unconsumed snapshot already exists for the (cluster, service)."""


class ResolutionError(FailoverError):
    """The placement of a single instance could not be determined."""

    def __init__(self, message: str, instance_id: Optional[str] = None, **context):
        super().__init__(message, **context)
        self.instance_id = instance_id


class ClusterApiError(FailoverError):
    """Unexpected failure talking to the cluster or network provider."""
