from .interfaces import (
    ComputeClusterApi,
    NetworkTopologyApi,
    Notifier,
    PlacementRecord,
    ServiceDescriptor,
    ServiceNetworkConfig,
    Subnet,
)
from .notifier import LoggingNotifier, notify
