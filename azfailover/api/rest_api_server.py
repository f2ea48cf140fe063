# File: azfailover/api/rest_api_server.py
"""
AZ Failover REST API Server

FastAPI-based REST API for running failover drills:
- Failover / restore runs (background tasks, cancellable)
- Drill run history
- Persisted topology snapshots
- Health and Prometheus metrics
"""

import logging
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from ..cloud.aws import build_collaborators
from ..config import Settings
from ..metrics import METRICS
from ..reconciler.reconciler import FailoverController
from .models import DrillRun as DrillRunModel
from .models import create_session_factory
from .snapshot_store import SnapshotStore

logger = logging.getLogger("azfailover.api")

settings = Settings.from_env()
SessionLocal = create_session_factory(settings.database_url)

app = FastAPI(
    title="AZ Failover Drill API",
    description="Rehearse the loss of an availability zone for a container service",
    version="1.0.0",
)

# drill id -> cancel signal, for runs still in flight in this process
_cancel_events: Dict[str, threading.Event] = {}
_cancel_lock = threading.Lock()
# serializes the idle check and run creation for start requests
_start_lock = threading.Lock()


def get_session_factory():
    return SessionLocal


def get_store(session_factory=Depends(get_session_factory)) -> SnapshotStore:
    return SnapshotStore(session_factory)


def get_controller_factory(
    store: SnapshotStore = Depends(get_store),
) -> Callable[[str], FailoverController]:
    def factory(region: str) -> FailoverController:
        compute, network, notifier = build_collaborators(region, settings.sns_topic_arn)
        return FailoverController(
            compute,
            network,
            store,
            notifier=notifier,
            poll_settings=settings.poll,
            resolve_workers=settings.resolve_workers,
        )

    return factory


class FailoverRequest(BaseModel):
    cluster: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)
    availability_zone: str = Field(..., min_length=1)
    region: Optional[str] = None


class RestoreRequest(BaseModel):
    cluster: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)
    region: Optional[str] = None


class DrillRunOut(BaseModel):
    id: str
    operation: str
    cluster: str
    service: str
    region: Optional[str]
    excluded_az: Optional[str]
    status: str
    evicted: int
    ticks: int
    duration_seconds: Optional[float]
    placements: Dict[str, str]
    error: Optional[str]
    created_at: Optional[datetime]
    finished_at: Optional[datetime]


class SnapshotOut(BaseModel):
    cluster: str
    service: str
    region: Optional[str]
    excluded_az: Optional[str]
    subnets: List[str]
    security_groups: List[str]
    status: str
    created_at: Optional[datetime]
    consumed_at: Optional[datetime]


def _run_out(run: DrillRunModel) -> DrillRunOut:
    return DrillRunOut(
        id=run.id,
        operation=run.operation,
        cluster=run.cluster,
        service=run.service,
        region=run.region,
        excluded_az=run.excluded_az,
        status=run.status,
        evicted=run.evicted or 0,
        ticks=run.ticks or 0,
        duration_seconds=run.duration_seconds,
        placements=run.placements or {},
        error=run.error,
        created_at=run.created_at,
        finished_at=run.finished_at,
    )


def _create_run(session_factory, operation, cluster, service, region, excluded_az=None) -> DrillRunOut:
    db = session_factory()
    try:
        run = DrillRunModel(
            operation=operation,
            cluster=cluster,
            service=service,
            region=region,
            excluded_az=excluded_az,
            status="running",
        )
        db.add(run)
        db.commit()
        db.refresh(run)
        return _run_out(run)
    finally:
        db.close()


def _update_run(session_factory, drill_id: str, **values):
    db = session_factory()
    try:
        run = db.get(DrillRunModel, drill_id)
        if run is None:
            return
        for key, value in values.items():
            setattr(run, key, value)
        run.finished_at = datetime.now(timezone.utc)
        db.commit()
    finally:
        db.close()


def _ensure_idle(session_factory, cluster: str, service: str):
    """Reject a start while another run for the same service is in flight."""
    db = session_factory()
    try:
        running = (
            db.query(DrillRunModel)
            .filter(
                DrillRunModel.cluster == cluster,
                DrillRunModel.service == service,
                DrillRunModel.status == "running",
            )
            .first()
        )
        if running is not None:
            raise HTTPException(
                status_code=409,
                detail=f"Drill {running.id} ({running.operation}) is still running for this service",
            )
    finally:
        db.close()


def mark_orphaned_runs(session_factory) -> int:
    """Fail runs left 'running' by a previous server process. Returns how many."""
    db = session_factory()
    try:
        orphaned = db.query(DrillRunModel).filter(DrillRunModel.status == "running").all()
        for run in orphaned:
            run.status = "failed"
            run.error = "Server stopped before the run finished"
            run.finished_at = datetime.now(timezone.utc)
        db.commit()
        if orphaned:
            logger.warning(f"Marked {len(orphaned)} interrupted drill run(s) as failed")
        return len(orphaned)
    finally:
        db.close()


def run_drill(
    session_factory,
    controller: FailoverController,
    drill_id: str,
    operation: str,
    cluster: str,
    service: str,
    region: str,
    excluded_az: Optional[str],
    cancel_event: threading.Event,
):
    """Background task body: run the operation and record its outcome."""
    try:
        if operation == "failover":
            result = controller.failover(cluster, service, excluded_az, region, cancel_event)
        else:
            result = controller.restore(cluster, service, region, cancel_event)
    except Exception as e:
        logger.error(f"Drill {drill_id} ({operation}) failed: {e}")
        _update_run(session_factory, drill_id, status="failed", error=str(e))
    else:
        _update_run(
            session_factory,
            drill_id,
            status=result.status.value,
            evicted=result.evicted,
            ticks=result.ticks,
            duration_seconds=result.convergence.elapsed_seconds if result.convergence else None,
            placements=result.placements,
        )
    finally:
        with _cancel_lock:
            _cancel_events.pop(drill_id, None)


def _start(background_tasks, session_factory, controller, run: DrillRunOut):
    cancel_event = threading.Event()
    with _cancel_lock:
        _cancel_events[run.id] = cancel_event
    background_tasks.add_task(
        run_drill,
        session_factory,
        controller,
        run.id,
        run.operation,
        run.cluster,
        run.service,
        run.region,
        run.excluded_az,
        cancel_event,
    )


@app.on_event("startup")
def recover_interrupted_runs():
    mark_orphaned_runs(SessionLocal)


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    METRICS["api_requests"].labels(method=request.method, endpoint=request.url.path).inc()
    return await call_next(request)


@app.post("/drills/failover", response_model=DrillRunOut, status_code=202)
def start_failover(
    body: FailoverRequest,
    background_tasks: BackgroundTasks,
    store: SnapshotStore = Depends(get_store),
    session_factory=Depends(get_session_factory),
    controller_factory=Depends(get_controller_factory),
):
    with _start_lock:
        _ensure_idle(session_factory, body.cluster, body.service)
        if store.has_active(body.cluster, body.service):
            raise HTTPException(
                status_code=409,
                detail="An unconsumed snapshot exists for this service; restore or discard it first",
            )
        region = body.region or settings.region
        controller = controller_factory(region)
        run = _create_run(
            session_factory, "failover", body.cluster, body.service, region, body.availability_zone
        )
    _start(background_tasks, session_factory, controller, run)
    return run


@app.post("/drills/restore", response_model=DrillRunOut, status_code=202)
def start_restore(
    body: RestoreRequest,
    background_tasks: BackgroundTasks,
    store: SnapshotStore = Depends(get_store),
    session_factory=Depends(get_session_factory),
    controller_factory=Depends(get_controller_factory),
):
    with _start_lock:
        _ensure_idle(session_factory, body.cluster, body.service)
        snapshot = store.get(body.cluster, body.service)
        if snapshot is None or snapshot.status != "active":
            raise HTTPException(status_code=404, detail="No saved subnet data found; run a failover first")
        region = body.region or snapshot.region or settings.region
        controller = controller_factory(region)
        run = _create_run(session_factory, "restore", body.cluster, body.service, region)
    _start(background_tasks, session_factory, controller, run)
    return run


@app.get("/drills", response_model=List[DrillRunOut])
def list_drills(session_factory=Depends(get_session_factory)):
    db = session_factory()
    try:
        runs = db.query(DrillRunModel).order_by(DrillRunModel.created_at.desc()).all()
        return [_run_out(run) for run in runs]
    finally:
        db.close()


@app.get("/drills/{drill_id}", response_model=DrillRunOut)
def get_drill(drill_id: str, session_factory=Depends(get_session_factory)):
    db = session_factory()
    try:
        run = db.get(DrillRunModel, drill_id)
        if not run:
            raise HTTPException(status_code=404, detail="Drill not found")
        return _run_out(run)
    finally:
        db.close()


@app.post("/drills/{drill_id}/cancel")
def cancel_drill(drill_id: str):
    with _cancel_lock:
        cancel_event = _cancel_events.get(drill_id)
    if cancel_event is None:
        raise HTTPException(status_code=409, detail="Drill is not running")
    cancel_event.set()
    return {"message": f"Cancellation requested for {drill_id}"}


@app.get("/snapshots", response_model=List[SnapshotOut])
def list_snapshots(store: SnapshotStore = Depends(get_store)):
    return [SnapshotOut(**asdict(s)) for s in store.list_snapshots()]


@app.get("/snapshots/{cluster}/{service}", response_model=SnapshotOut)
def get_snapshot(cluster: str, service: str, store: SnapshotStore = Depends(get_store)):
    snapshot = store.get(cluster, service)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return SnapshotOut(**asdict(snapshot))


@app.delete("/snapshots/{cluster}/{service}")
def discard_snapshot(cluster: str, service: str, store: SnapshotStore = Depends(get_store)):
    if not store.discard(cluster, service):
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return {"message": f"Snapshot for {cluster}/{service} discarded"}
