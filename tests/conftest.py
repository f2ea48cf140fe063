import os
import itertools
from typing import Dict, List, Optional

import pytest

# Keep the REST server's module-level database in memory during tests.
# Set these BEFORE importing any project modules
os.environ["AZFAILOVER_DB_PATH"] = ":memory:"
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from azfailover.api.models import create_session_factory
from azfailover.api.snapshot_store import SnapshotStore
from azfailover.cloud.interfaces import (
    ComputeClusterApi,
    NetworkTopologyApi,
    Notifier,
    PlacementRecord,
    ServiceDescriptor,
    ServiceNetworkConfig,
    Subnet,
)
from azfailover.config import PollSettings
from azfailover.errors import ApplyError, ClusterApiError, ResolutionError, ServiceLookupError
from azfailover.reconciler.reconciler import FailoverController

CLUSTER = "dr-test-cluster"
SERVICE = "dr-test-service"

SUBNET_AZ = {
    "subnet-1": "az-a",
    "subnet-2": "az-b",
    "subnet-3": "az-c",
}


class FakeService:
    def __init__(self, subnets, security_groups, desired_count, instances):
        self.config = ServiceNetworkConfig(tuple(subnets), tuple(security_groups), "ENABLED")
        self.desired_count = desired_count
        self.instances: Dict[str, str] = dict(instances)  # task id -> subnet
        self.status = "ACTIVE"
        self.redeploy_pending = False
        self.describes_since_update = 0


class FakeCloud(ComputeClusterApi, NetworkTopologyApi):
    """
    In-memory scheduler and network provider.

    After a forced redeployment the scheduler replaces misplaced or missing
    tasks the next time the service is described, once `heal_delay` describes
    have passed. Set `frozen` to make it never converge.
    """

    def __init__(self, subnet_az=None):
        self.subnet_az = dict(subnet_az or SUBNET_AZ)
        self.services: Dict[tuple, FakeService] = {}
        self.updates: List[tuple] = []
        self.stopped: List[tuple] = []
        self.unresolvable = set()
        self.unstoppable = set()
        self.reject_updates = False
        self.frozen = False
        self.heal_delay = 0
        self._ids = itertools.count(100)

    def add_service(self, cluster, service, subnets, security_groups=("sg-1",), desired=3, instances=None):
        if instances is None:
            instances = {f"task-{next(self._ids)}": subnets[i % len(subnets)] for i in range(desired)}
        self.services[(cluster, service)] = FakeService(subnets, security_groups, desired, instances)
        return self.services[(cluster, service)]

    def service(self, cluster=CLUSTER, service=SERVICE) -> FakeService:
        return self.services[(cluster, service)]

    def _heal(self, svc: FakeService):
        if self.frozen or not svc.redeploy_pending:
            return
        svc.describes_since_update += 1
        if svc.describes_since_update <= self.heal_delay:
            return
        allowed = list(svc.config.subnets)
        svc.instances = {i: s for i, s in svc.instances.items() if s in allowed}
        slot = 0
        while len(svc.instances) < svc.desired_count:
            svc.instances[f"task-{next(self._ids)}"] = allowed[slot % len(allowed)]
            slot += 1
        svc.redeploy_pending = False

    # compute cluster api
    def describe_service(self, cluster, service):
        svc = self.services.get((cluster, service))
        if svc is None:
            raise ServiceLookupError("Service not found", cluster=cluster, service=service, step="describe")
        self._heal(svc)
        return ServiceDescriptor(
            cluster=cluster,
            service=service,
            status=svc.status,
            desired_count=svc.desired_count,
            running_count=len(svc.instances),
            network=svc.config,
        )

    def list_running_instances(self, cluster, service):
        svc = self.services.get((cluster, service))
        if svc is None:
            raise ServiceLookupError("Service not found", cluster=cluster, service=service)
        return list(svc.instances)

    def update_service_network_config(self, cluster, service, config, force_redeploy=True):
        if self.reject_updates:
            raise ApplyError("InvalidParameterException", cluster=cluster, service=service, step="apply")
        svc = self.services[(cluster, service)]
        self.updates.append((cluster, service, config, force_redeploy))
        svc.config = config
        svc.redeploy_pending = force_redeploy
        svc.describes_since_update = 0

    def stop_instance(self, cluster, instance_id, reason):
        if instance_id in self.unstoppable:
            raise ClusterApiError(f"stop_task failed for {instance_id}", cluster=cluster, step="evict")
        for svc in self.services.values():
            if svc.instances.pop(instance_id, None) is not None:
                svc.redeploy_pending = True
        self.stopped.append((cluster, instance_id, reason))

    # network topology api
    def describe_subnets(self, availability_zone):
        return [Subnet(s, az) for s, az in self.subnet_az.items() if az == availability_zone]

    def resolve_placement(self, cluster, instance_id):
        if instance_id in self.unresolvable:
            raise ResolutionError("No network interface attached yet", instance_id=instance_id)
        for svc in self.services.values():
            subnet = svc.instances.get(instance_id)
            if subnet is not None:
                return PlacementRecord(instance_id, subnet, self.subnet_az[subnet])
        raise ResolutionError("Task no longer exists", instance_id=instance_id)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.messages = []

    def publish(self, subject, message):
        self.messages.append((subject, message))

    @property
    def subjects(self):
        return [subject for subject, _ in self.messages]


class BrokenNotifier(Notifier):
    def publish(self, subject, message):
        raise ConnectionError("SNS unreachable")


@pytest.fixture
def session_factory():
    return create_session_factory("sqlite://")


@pytest.fixture
def store(session_factory):
    return SnapshotStore(session_factory)


@pytest.fixture
def cloud():
    """Scenario A layout: three subnets in three AZs, all three tasks in az-b."""
    fake = FakeCloud()
    fake.add_service(
        CLUSTER,
        SERVICE,
        ["subnet-1", "subnet-2", "subnet-3"],
        security_groups=("sg-web",),
        desired=3,
        instances={"task-1": "subnet-2", "task-2": "subnet-2", "task-3": "subnet-2"},
    )
    return fake


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def poll_settings():
    return PollSettings(
        interval_seconds=0,
        max_interval_seconds=0,
        backoff=1.0,
        jitter=0,
        timeout_seconds=30,
        max_ticks=10,
    )


@pytest.fixture
def controller(cloud, store, notifier, poll_settings):
    return FailoverController(
        cloud, cloud, store, notifier=notifier, poll_settings=poll_settings, resolve_workers=1
    )
