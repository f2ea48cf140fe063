#!/usr/bin/env python3
"""
Failover/Restore Reconciliation Controller

Drives a scheduler-managed service through a simulated AZ outage and back.

Failover:  snapshot -> plan -> apply -> evict -> poll
Restore:   load snapshot -> apply -> poll

Eviction is failover-only: on restore, instances in the returning AZ are
the desired state, not stale ones.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..api.diagnostic_logger import DiagnosticLogger
from ..api.snapshot_store import SnapshotStore
from ..cloud.interfaces import ComputeClusterApi, NetworkTopologyApi, Notifier, ServiceNetworkConfig
from ..cloud.notifier import notify
from ..config import PollSettings
from ..errors import ApplyError, ClusterApiError, ServiceLookupError
from ..metrics import METRICS
from .convergence import ConvergencePoller, ConvergenceResult, ConvergenceStatus
from .placement import resolve_placements
from .planner import ExclusionPlan, NetworkTopology, plan

logger = logging.getLogger("azfailover.reconciler")

EVICTION_REASON = "Simulated AZ failure ({az})"


class DrillStatus(Enum):
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


_STATUS_FROM_CONVERGENCE = {
    ConvergenceStatus.CONVERGED: DrillStatus.CONVERGED,
    ConvergenceStatus.TIMED_OUT: DrillStatus.TIMED_OUT,
    ConvergenceStatus.CANCELLED: DrillStatus.CANCELLED,
}


@dataclass
class DrillResult:
    """Outcome of one failover or restore."""

    operation: str
    cluster: str
    service: str
    status: DrillStatus
    region: Optional[str] = None
    plan: Optional[ExclusionPlan] = None
    applied: Optional[ServiceNetworkConfig] = None
    evicted: int = 0
    convergence: Optional[ConvergenceResult] = None
    placements: Dict[str, str] = field(default_factory=dict)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == DrillStatus.CONVERGED

    @property
    def ticks(self) -> int:
        return self.convergence.ticks if self.convergence else 0


class FailoverController:
    """
    One controller serves one region's collaborators. Calls for the same
    (cluster, service) must not overlap; the snapshot store rejects a second
    failover while the first one's snapshot is unconsumed.
    """

    def __init__(
        self,
        compute: ComputeClusterApi,
        network: NetworkTopologyApi,
        store: SnapshotStore,
        notifier: Optional[Notifier] = None,
        poll_settings: Optional[PollSettings] = None,
        resolve_workers: int = 8,
        poller: Optional[ConvergencePoller] = None,
    ):
        self.compute = compute
        self.network = network
        self.store = store
        self.notifier = notifier
        self.resolve_workers = resolve_workers
        self.poller = poller or ConvergencePoller(
            compute, network, poll_settings, resolve_workers=resolve_workers
        )

    # -- building blocks -----------------------------------------------------

    def capture(
        self,
        cluster: str,
        service: str,
        region: Optional[str] = None,
        excluded_az: Optional[str] = None,
    ) -> NetworkTopology:
        """Read the current topology and persist it before anything is mutated."""
        descriptor = self.compute.describe_service(cluster, service)
        network = descriptor.network
        if network is None or not network.subnets:
            raise ServiceLookupError(
                "Service has no awsvpc network configuration",
                cluster=cluster,
                service=service,
                step="snapshot",
            )

        self.store.save(
            cluster,
            service,
            subnets=list(network.subnets),
            security_groups=list(network.security_groups),
            region=region,
            excluded_az=excluded_az,
        )
        return NetworkTopology.of(network.subnets, network.security_groups)

    def apply(
        self,
        cluster: str,
        service: str,
        target_subnets: Iterable[str],
        security_groups: Optional[Iterable[str]] = None,
    ) -> ServiceNetworkConfig:
        """
        Push a new subnet set with a forced redeployment.

        Security groups and the public-IP setting are carried forward from the
        service as it is now unless given explicitly. Registers intent only;
        placement has to be observed separately.
        """
        current = self.compute.describe_service(cluster, service).network
        if security_groups is None:
            security_groups = current.security_groups if current else ()
        security_groups = tuple(security_groups)
        if not security_groups:
            raise ApplyError(
                "No security groups found for the service; update cannot proceed",
                cluster=cluster,
                service=service,
                step="apply",
            )

        config = ServiceNetworkConfig(
            subnets=tuple(dict.fromkeys(target_subnets)),
            security_groups=security_groups,
            assign_public_ip=current.assign_public_ip if current else "ENABLED",
        )
        logger.info(f"Updating {cluster}/{service} network settings")
        logger.info(f"  -> Subnets: {list(config.subnets)}")
        logger.info(f"  -> Security groups: {list(config.security_groups)}")
        self.compute.update_service_network_config(cluster, service, config, force_redeploy=True)
        logger.info("Service update pushed; the scheduler will redeploy tasks")
        return config

    def evict(
        self,
        cluster: str,
        service: str,
        excluded_az: str,
        diagnostics: Optional[DiagnosticLogger] = None,
    ) -> int:
        """Force-stop running instances located in `excluded_az`. Returns how many were stopped."""
        diagnostics = diagnostics or DiagnosticLogger()
        instance_ids = self.compute.list_running_instances(cluster, service)
        placements, unresolved = resolve_placements(
            self.network, cluster, instance_ids, self.resolve_workers
        )

        for instance_id, reason in unresolved.items():
            diagnostics.log_warning(
                "Skipping eviction of task with unresolved placement",
                {"task": instance_id, "reason": reason},
            )

        reason = EVICTION_REASON.format(az=excluded_az)
        stopped = 0
        for placement in placements:
            if placement.availability_zone != excluded_az:
                continue
            logger.info(f"Stopping task {placement.instance_id} ({reason})")
            try:
                self.compute.stop_instance(cluster, placement.instance_id, reason)
            except ClusterApiError as e:
                diagnostics.log_warning(
                    "Task could not be stopped", {"task": placement.instance_id, "error": str(e)}
                )
                continue
            stopped += 1

        if stopped == 0:
            logger.info(f"No tasks found in {excluded_az} to stop")
        METRICS["evicted_instances_total"].inc(stopped)
        return stopped

    # -- operations ----------------------------------------------------------

    def failover(
        self,
        cluster: str,
        service: str,
        excluded_az: str,
        region: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DrillResult:
        diagnostics = DiagnosticLogger()
        logger.info(f"Starting failover test for {cluster}/{service}, failing {excluded_az}")
        notify(
            self.notifier,
            "AZ Failover Initiated",
            f"Failover for service {service} in cluster {cluster} is starting. "
            f"AZ to fail: {excluded_az}",
        )

        captured = False
        mutated = False
        try:
            topology = self.capture(cluster, service, region, excluded_az)
            captured = True
            exclusion = plan(topology, excluded_az, self.network, cluster, service)

            logger.info(f"Removing subnets in {excluded_az}: {sorted(exclusion.excluded_subnets)}")
            ordered_target = [
                s for s in self.store.load(cluster, service).subnets if s in exclusion.target_subnets
            ]
            applied = self.apply(cluster, service, ordered_target)
            mutated = True

            logger.info(f"Stopping any tasks still running in {excluded_az}")
            evicted = self.evict(cluster, service, excluded_az, diagnostics)

            convergence = self.poller.wait(
                cluster, service, exclusion.target_subnets, cancel_event, operation="failover"
            )
        except Exception as e:
            if captured and not mutated:
                # the service still runs on the captured subnets; a rerun must not conflict
                self.store.discard(cluster, service)
            self._fail("failover", cluster, service, e, diagnostics)
            raise

        result = DrillResult(
            operation="failover",
            cluster=cluster,
            service=service,
            region=region,
            status=_STATUS_FROM_CONVERGENCE[convergence.status],
            plan=exclusion,
            applied=applied,
            evicted=evicted,
            convergence=convergence,
            placements=convergence.placement_report(),
        )
        return self._finish(result, diagnostics)

    def restore(
        self,
        cluster: str,
        service: str,
        region: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DrillResult:
        diagnostics = DiagnosticLogger()
        try:
            snapshot = self.store.load(cluster, service)
            logger.info(f"Restoring {cluster}/{service} to its original subnets: {snapshot.subnets}")
            notify(
                self.notifier,
                "AZ Restore Initiated",
                f"Restoring service {service} in cluster {cluster} to original subnets.",
            )
            applied = self.apply(cluster, service, snapshot.subnets)
            convergence = self.poller.wait(
                cluster, service, frozenset(snapshot.subnets), cancel_event, operation="restore"
            )
        except Exception as e:
            self._fail("restore", cluster, service, e, diagnostics)
            raise

        if convergence.converged:
            self.store.retire(cluster, service)

        result = DrillResult(
            operation="restore",
            cluster=cluster,
            service=service,
            region=region if region is not None else snapshot.region,
            status=_STATUS_FROM_CONVERGENCE[convergence.status],
            applied=applied,
            convergence=convergence,
            placements=convergence.placement_report(),
        )
        return self._finish(result, diagnostics)

    def drill(
        self,
        cluster: str,
        service: str,
        excluded_az: str,
        region: Optional[str] = None,
        restore_delay: float = 300.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[DrillResult]:
        """
        Failover, hold the degraded topology for `restore_delay` seconds, then
        restore. Stops after the failover if it did not converge or the hold
        was cancelled.
        """
        cancel_event = cancel_event or threading.Event()
        results = [self.failover(cluster, service, excluded_az, region, cancel_event)]
        if not results[0].success:
            return results

        logger.info(f"Holding failover topology for {restore_delay:.0f}s before restoring")
        if cancel_event.wait(restore_delay):
            logger.warning("Drill cancelled during hold; original subnets not restored")
            return results

        results.append(self.restore(cluster, service, region, cancel_event))
        return results

    # -- bookkeeping ---------------------------------------------------------

    def _finish(self, result: DrillResult, diagnostics: DiagnosticLogger) -> DrillResult:
        METRICS["drills_total"].labels(
            operation=result.operation, outcome=result.status.value
        ).inc()

        title = result.operation.title()
        where = f"service {result.service} in cluster {result.cluster}"
        if result.success:
            diagnostics.log_success(f"{title} complete for {where}")
            if result.operation == "failover":
                message = f"Failover for {where} has completed. All tasks are now running in healthy subnets."
            else:
                message = f"Restore for {where} has completed. All tasks are back in original subnets."
            notify(self.notifier, f"AZ {title} Complete", message)
        else:
            verdict = result.convergence.verdict if result.convergence else None
            detail = verdict.describe() if verdict else "no observation"
            diagnostics.log_warning(
                f"{title} ended without convergence",
                {"status": result.status.value, "ticks": result.ticks, "last": detail},
            )
            label = "Timed Out" if result.status == DrillStatus.TIMED_OUT else "Cancelled"
            notify(
                self.notifier,
                f"AZ {title} {label}",
                f"{title} for {where} did not converge ({detail}). "
                "The applied configuration was left in place.",
            )

        result.diagnostics = diagnostics.generate_report()
        return result

    def _fail(self, operation: str, cluster: str, service: str, error: Exception, diagnostics):
        METRICS["drills_total"].labels(operation=operation, outcome=DrillStatus.FAILED.value).inc()
        diagnostics.log_error(
            f"{operation.title()} failed: {error}",
            {"cluster": cluster, "service": service, "error_type": type(error).__name__},
        )
        notify(
            self.notifier,
            f"AZ {operation.title()} Failed",
            f"{operation.title()} for service {service} in cluster {cluster} failed: {error}",
        )
