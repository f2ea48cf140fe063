# File: api/snapshot_store.py
"""
Snapshot Store

Durable record of a service's pre-failover topology:
- Keyed by (cluster, service) so drills on different services never collide
- Conflict detection when an unconsumed snapshot already exists
- Retired (not deleted) after a successful restore, for the audit trail
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from ..errors import ConflictError, MissingSnapshotError
from .models import TopologySnapshot

logger = logging.getLogger("azfailover.snapshots")

ACTIVE = "active"
CONSUMED = "consumed"


@dataclass(frozen=True)
class SnapshotRecord:
    cluster: str
    service: str
    region: Optional[str]
    excluded_az: Optional[str]
    subnets: List[str]
    security_groups: List[str]
    status: str
    created_at: Optional[datetime]
    consumed_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: TopologySnapshot) -> "SnapshotRecord":
        return cls(
            cluster=row.cluster,
            service=row.service,
            region=row.region,
            excluded_az=row.excluded_az,
            subnets=list(row.subnets or []),
            security_groups=list(row.security_groups or []),
            status=row.status,
            created_at=row.created_at,
            consumed_at=row.consumed_at,
        )


class SnapshotStore:
    """SQL-backed snapshot persistence. Takes a sessionmaker, opens a session per call."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _get(self, db: Session, cluster: str, service: str) -> Optional[TopologySnapshot]:
        return db.get(TopologySnapshot, (cluster, service))

    def save(
        self,
        cluster: str,
        service: str,
        subnets: List[str],
        security_groups: List[str],
        region: Optional[str] = None,
        excluded_az: Optional[str] = None,
    ) -> SnapshotRecord:
        """Persist a snapshot. A consumed snapshot for the same key is replaced."""
        db = self.session_factory()
        try:
            row = self._get(db, cluster, service)
            if row is not None and row.status == ACTIVE:
                raise ConflictError(
                    "An unconsumed snapshot already exists; restore or discard it first",
                    cluster=cluster,
                    service=service,
                    step="snapshot",
                )
            if row is None:
                row = TopologySnapshot(cluster=cluster, service=service)
                db.add(row)
            row.region = region
            row.excluded_az = excluded_az
            row.subnets = list(subnets)
            row.security_groups = list(security_groups)
            row.status = ACTIVE
            row.created_at = datetime.now(timezone.utc)
            row.consumed_at = None
            db.commit()
            db.refresh(row)
            logger.info(f"Saved original subnets for {cluster}/{service}: {list(subnets)}")
            return SnapshotRecord.from_row(row)
        finally:
            db.close()

    def load(self, cluster: str, service: str) -> SnapshotRecord:
        """Return the active snapshot or raise MissingSnapshotError."""
        db = self.session_factory()
        try:
            row = self._get(db, cluster, service)
            if row is None or row.status != ACTIVE:
                raise MissingSnapshotError(
                    "No saved subnet data found; run a failover first",
                    cluster=cluster,
                    service=service,
                    step="restore",
                )
            return SnapshotRecord.from_row(row)
        finally:
            db.close()

    def get(self, cluster: str, service: str) -> Optional[SnapshotRecord]:
        db = self.session_factory()
        try:
            row = self._get(db, cluster, service)
            return SnapshotRecord.from_row(row) if row is not None else None
        finally:
            db.close()

    def has_active(self, cluster: str, service: str) -> bool:
        snapshot = self.get(cluster, service)
        return snapshot is not None and snapshot.status == ACTIVE

    def retire(self, cluster: str, service: str) -> None:
        """Mark the snapshot consumed after a successful restore."""
        db = self.session_factory()
        try:
            row = self._get(db, cluster, service)
            if row is None:
                return
            row.status = CONSUMED
            row.consumed_at = datetime.now(timezone.utc)
            db.commit()
            logger.info(f"Snapshot for {cluster}/{service} consumed")
        finally:
            db.close()

    def discard(self, cluster: str, service: str) -> bool:
        """Delete a snapshot outright. Returns False if there was none."""
        db = self.session_factory()
        try:
            row = self._get(db, cluster, service)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            logger.info(f"Snapshot for {cluster}/{service} discarded")
            return True
        finally:
            db.close()

    def list_snapshots(self) -> List[SnapshotRecord]:
        db = self.session_factory()
        try:
            rows = db.query(TopologySnapshot).order_by(TopologySnapshot.created_at.desc()).all()
            return [SnapshotRecord.from_row(row) for row in rows]
        finally:
            db.close()
