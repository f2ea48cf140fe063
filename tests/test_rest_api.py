import threading

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from azfailover.api import rest_api_server
from azfailover.api.models import DrillRun
from azfailover.api.rest_api_server import (
    app,
    get_controller_factory,
    get_session_factory,
    get_store,
    mark_orphaned_runs,
)
from azfailover.reconciler.reconciler import FailoverController

from conftest import CLUSTER, SERVICE


@pytest.fixture
def client(session_factory, cloud, notifier, poll_settings):
    def override_get_controller_factory(store=Depends(get_store)):
        def factory(region):
            return FailoverController(
                cloud, cloud, store, notifier=notifier, poll_settings=poll_settings, resolve_workers=1
            )

        return factory

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_controller_factory] = override_get_controller_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


def start_failover(client, az="az-b", service=SERVICE):
    return client.post(
        "/drills/failover",
        json={"cluster": CLUSTER, "service": service, "availability_zone": az, "region": "us-east-1"},
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "azfailover_api_requests_total" in response.text


def test_failover_runs_in_background(client, cloud):
    response = start_failover(client)
    assert response.status_code == 202
    data = response.json()
    assert data["id"].startswith("drill-")
    assert data["operation"] == "failover"
    assert data["excluded_az"] == "az-b"
    assert data["region"] == "us-east-1"

    drill = client.get(f"/drills/{data['id']}").json()
    assert drill["status"] == "converged"
    assert drill["evicted"] == 3
    assert drill["ticks"] >= 1
    assert set(drill["placements"].values()) <= {"az-a", "az-c"}
    assert drill["finished_at"] is not None
    assert set(cloud.service().config.subnets) == {"subnet-1", "subnet-3"}


def test_snapshot_is_exposed_after_failover(client):
    start_failover(client)

    response = client.get(f"/snapshots/{CLUSTER}/{SERVICE}")

    assert response.status_code == 200
    snapshot = response.json()
    assert snapshot["subnets"] == ["subnet-1", "subnet-2", "subnet-3"]
    assert snapshot["security_groups"] == ["sg-web"]
    assert snapshot["status"] == "active"
    assert len(client.get("/snapshots").json()) == 1


def test_second_failover_conflicts(client, cloud):
    start_failover(client)

    response = start_failover(client, az="az-a")

    assert response.status_code == 409
    assert len(cloud.updates) == 1


def test_restore_without_snapshot(client, cloud):
    response = client.post("/drills/restore", json={"cluster": CLUSTER, "service": SERVICE})
    assert response.status_code == 404
    assert cloud.updates == []


def test_failover_then_restore(client, cloud):
    start_failover(client)

    response = client.post("/drills/restore", json={"cluster": CLUSTER, "service": SERVICE})

    assert response.status_code == 202
    run = response.json()
    assert run["region"] == "us-east-1"
    assert client.get(f"/drills/{run['id']}").json()["status"] == "converged"
    assert client.get(f"/snapshots/{CLUSTER}/{SERVICE}").json()["status"] == "consumed"
    assert set(cloud.service().config.subnets) == {"subnet-1", "subnet-2", "subnet-3"}


def test_infeasible_failover_is_recorded_as_failed(client, cloud):
    cloud.add_service(CLUSTER, "single-zone", ["subnet-2"], desired=1)

    run = start_failover(client, service="single-zone").json()

    drill = client.get(f"/drills/{run['id']}").json()
    assert drill["status"] == "failed"
    assert "leaves no placement" in drill["error"]
    assert cloud.updates == []


def test_timed_out_failover(client, cloud):
    cloud.frozen = True

    run = start_failover(client).json()

    assert client.get(f"/drills/{run['id']}").json()["status"] == "timed_out"


def test_list_drills(client):
    start_failover(client)
    client.post("/drills/restore", json={"cluster": CLUSTER, "service": SERVICE})

    drills = client.get("/drills").json()

    assert {d["operation"] for d in drills} == {"failover", "restore"}


def test_get_drill_not_found(client):
    assert client.get("/drills/drill-nonexistent").status_code == 404


def test_cancel_finished_drill(client):
    run = start_failover(client).json()
    assert client.post(f"/drills/{run['id']}/cancel").status_code == 409


def test_cancel_running_drill(client):
    event = threading.Event()
    rest_api_server._cancel_events["drill-inflight"] = event
    try:
        response = client.post("/drills/drill-inflight/cancel")
    finally:
        rest_api_server._cancel_events.pop("drill-inflight", None)

    assert response.status_code == 200
    assert event.is_set()


def test_discard_snapshot(client):
    start_failover(client)

    assert client.delete(f"/snapshots/{CLUSTER}/{SERVICE}").status_code == 200
    assert client.get(f"/snapshots/{CLUSTER}/{SERVICE}").status_code == 404
    assert client.delete(f"/snapshots/{CLUSTER}/{SERVICE}").status_code == 404


def test_failover_request_validation(client):
    response = client.post("/drills/failover", json={"cluster": CLUSTER, "service": SERVICE})
    assert response.status_code == 422


def add_running_run(session_factory, operation="failover", service=SERVICE):
    db = session_factory()
    try:
        run = DrillRun(operation=operation, cluster=CLUSTER, service=service, status="running")
        db.add(run)
        db.commit()
        return run.id
    finally:
        db.close()


def test_restore_rejected_while_failover_in_flight(client, session_factory, cloud):
    start_failover(client)
    add_running_run(session_factory)

    response = client.post("/drills/restore", json={"cluster": CLUSTER, "service": SERVICE})

    assert response.status_code == 409
    assert "still running" in response.json()["detail"]
    assert len(cloud.updates) == 1


def test_failover_rejected_while_another_run_in_flight(client, session_factory, cloud):
    add_running_run(session_factory, operation="restore")

    response = start_failover(client)

    assert response.status_code == 409
    assert cloud.updates == []


def test_run_for_another_service_does_not_block(client, session_factory, cloud):
    cloud.add_service(CLUSTER, "other-service", ["subnet-1", "subnet-2", "subnet-3"])
    add_running_run(session_factory, service="other-service")

    assert start_failover(client).status_code == 202


def test_interrupted_runs_are_failed_on_startup(client, session_factory):
    drill_id = add_running_run(session_factory)

    assert mark_orphaned_runs(session_factory) == 1

    drill = client.get(f"/drills/{drill_id}").json()
    assert drill["status"] == "failed"
    assert drill["error"] is not None
    assert start_failover(client).status_code == 202
    assert mark_orphaned_runs(session_factory) == 0
