#!/usr/bin/env python3
"""
Convergence Poller

Decides, by repeated observation, when the scheduler has settled on the
target placement.

Implements:
- Fresh observation every tick (no memoisation across ticks)
- Pure convergence predicate with a distinguishable failure reason
- Deadline and tick bounds
- Exponential backoff with jitter between ticks
- External cancellation
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from ..cloud.interfaces import ComputeClusterApi, NetworkTopologyApi, PlacementRecord
from ..config import PollSettings
from ..metrics import METRICS
from .placement import resolve_placements

logger = logging.getLogger("azfailover.convergence")


class ConvergenceStatus(Enum):
    WAITING = "waiting"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class VerdictReason(Enum):
    CONVERGED = "converged"
    # some placements could not be read; the scheduler may still be attaching ENIs
    UNRESOLVED_PLACEMENT = "unresolved_placement"
    # instances are running outside the target subnets
    PLACEMENT_MISMATCH = "placement_mismatch"
    COUNT_MISMATCH = "count_mismatch"


@dataclass(frozen=True)
class ConvergenceObservation:
    desired_count: int
    running_count: int
    placements: Tuple[PlacementRecord, ...]
    unresolved: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConvergenceVerdict:
    converged: bool
    reason: VerdictReason
    running_count: int
    desired_count: int
    misplaced: Tuple[str, ...] = ()
    unresolved: Tuple[str, ...] = ()

    def describe(self) -> str:
        text = f"{self.running_count}/{self.desired_count} tasks"
        if self.reason == VerdictReason.UNRESOLVED_PLACEMENT:
            text += f", {len(self.unresolved)} with unresolved placement"
        elif self.reason == VerdictReason.PLACEMENT_MISMATCH:
            text += f", {len(self.misplaced)} outside target subnets"
        return f"{text} ({self.reason.value})"


def evaluate_convergence(
    observation: ConvergenceObservation, target_subnets: Iterable[str]
) -> ConvergenceVerdict:
    """
    converged = running == desired AND every running instance is resolved
    and placed in a target subnet.

    Depends only on its arguments, so the same observation always yields the
    same verdict.
    """
    target = frozenset(target_subnets)
    misplaced = tuple(p.instance_id for p in observation.placements if p.subnet_id not in target)
    unresolved = tuple(observation.unresolved)

    if unresolved:
        reason = VerdictReason.UNRESOLVED_PLACEMENT
    elif misplaced:
        reason = VerdictReason.PLACEMENT_MISMATCH
    elif observation.running_count != observation.desired_count:
        reason = VerdictReason.COUNT_MISMATCH
    else:
        reason = VerdictReason.CONVERGED

    return ConvergenceVerdict(
        converged=reason == VerdictReason.CONVERGED,
        reason=reason,
        running_count=observation.running_count,
        desired_count=observation.desired_count,
        misplaced=misplaced,
        unresolved=unresolved,
    )


@dataclass
class ConvergenceResult:
    status: ConvergenceStatus
    ticks: int
    elapsed_seconds: float
    observation: Optional[ConvergenceObservation] = None
    verdict: Optional[ConvergenceVerdict] = None

    @property
    def converged(self) -> bool:
        return self.status == ConvergenceStatus.CONVERGED

    def placement_report(self) -> Dict[str, str]:
        """Instance id -> AZ from the last observation."""
        if self.observation is None:
            return {}
        return {p.instance_id: p.availability_zone for p in self.observation.placements}


class ConvergencePoller:
    """
    Polls the scheduler until the target placement is reached.

    Terminal states are CONVERGED, TIMED_OUT (deadline or tick limit reached)
    and CANCELLED (cancel event set). The applied configuration is never
    touched from here.
    """

    def __init__(
        self,
        compute: ComputeClusterApi,
        network: NetworkTopologyApi,
        settings: Optional[PollSettings] = None,
        resolve_workers: int = 1,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.compute = compute
        self.network = network
        self.settings = settings or PollSettings()
        self.resolve_workers = resolve_workers
        self.clock = clock
        self.rng = rng or random.Random()

    def observe(self, cluster: str, service: str) -> ConvergenceObservation:
        descriptor = self.compute.describe_service(cluster, service)
        instance_ids = self.compute.list_running_instances(cluster, service)
        placements, unresolved = resolve_placements(
            self.network, cluster, instance_ids, self.resolve_workers
        )
        if unresolved:
            logger.warning(
                f"{len(unresolved)} task(s) with unresolved placement, retrying next tick: "
                f"{sorted(unresolved)}"
            )
        return ConvergenceObservation(
            desired_count=descriptor.desired_count,
            running_count=len(instance_ids),
            placements=tuple(placements),
            unresolved=tuple(unresolved),
        )

    def next_delay(self, attempt: int) -> float:
        """Delay after the given 0-based attempt: capped exponential backoff with jitter."""
        s = self.settings
        delay = min(s.max_interval_seconds, s.interval_seconds * (s.backoff ** attempt))
        if s.jitter:
            delay *= 1 + self.rng.uniform(-s.jitter, s.jitter)
        return max(0.0, delay)

    def wait(
        self,
        cluster: str,
        service: str,
        target_subnets: FrozenSet[str],
        cancel_event: Optional[threading.Event] = None,
        operation: str = "failover",
    ) -> ConvergenceResult:
        cancel_event = cancel_event or threading.Event()
        start = self.clock()
        deadline = start + self.settings.timeout_seconds
        ticks = 0
        observation = None
        verdict = None
        status = ConvergenceStatus.WAITING

        logger.info(
            f"Waiting for {cluster}/{service} to run all tasks in subnets: {sorted(target_subnets)}"
        )

        while status == ConvergenceStatus.WAITING:
            if cancel_event.is_set():
                status = ConvergenceStatus.CANCELLED
                break

            observation = self.observe(cluster, service)
            ticks += 1
            METRICS["poll_ticks_total"].labels(operation=operation).inc()
            METRICS["unresolved_placements"].set(len(observation.unresolved))

            verdict = evaluate_convergence(observation, target_subnets)
            if verdict.converged:
                status = ConvergenceStatus.CONVERGED
                logger.info(f"All {verdict.running_count} tasks are running where expected")
                break

            logger.info(f"Still waiting... {verdict.describe()}")

            if self.settings.max_ticks is not None and ticks >= self.settings.max_ticks:
                status = ConvergenceStatus.TIMED_OUT
                break
            remaining = deadline - self.clock()
            if remaining <= 0:
                status = ConvergenceStatus.TIMED_OUT
                break

            if cancel_event.wait(min(self.next_delay(ticks - 1), remaining)):
                status = ConvergenceStatus.CANCELLED

        elapsed = self.clock() - start
        METRICS["convergence_duration_seconds"].labels(operation=operation).observe(elapsed)

        if status == ConvergenceStatus.TIMED_OUT:
            last = verdict.describe() if verdict else "no observation"
            logger.warning(f"Convergence not reached after {ticks} ticks / {elapsed:.0f}s: {last}")
        elif status == ConvergenceStatus.CANCELLED:
            logger.warning(f"Convergence wait cancelled after {ticks} ticks")

        return ConvergenceResult(
            status=status,
            ticks=ticks,
            elapsed_seconds=elapsed,
            observation=observation,
            verdict=verdict,
        )
