# File: reconciler/placement.py

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Sequence, Tuple

from ..cloud.interfaces import NetworkTopologyApi, PlacementRecord
from ..errors import ResolutionError

logger = logging.getLogger("azfailover.placement")


def resolve_placements(
    network: NetworkTopologyApi,
    cluster: str,
    instance_ids: Sequence[str],
    workers: int = 1,
) -> Tuple[List[PlacementRecord], Dict[str, str]]:
    """
    Resolve the current subnet/AZ of each instance.

    Returns (placements, unresolved) where unresolved maps instance id to the
    reason it could not be resolved. Lookups are independent, so they may run
    on a thread pool; both results keep the order of `instance_ids`.
    """

    def lookup(instance_id):
        try:
            return network.resolve_placement(cluster, instance_id), None
        except ResolutionError as e:
            return None, e.message

    if workers > 1 and len(instance_ids) > 1:
        with ThreadPoolExecutor(max_workers=min(workers, len(instance_ids))) as pool:
            results = list(pool.map(lookup, instance_ids))
    else:
        results = [lookup(instance_id) for instance_id in instance_ids]

    placements = []
    unresolved = {}
    for instance_id, (record, reason) in zip(instance_ids, results):
        if record is None:
            logger.debug(f"Placement of {instance_id} unresolved: {reason}")
            unresolved[instance_id] = reason
        else:
            placements.append(record)
    return placements, unresolved
