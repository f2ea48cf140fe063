"""Tests for the command line entry point"""

from unittest.mock import patch

import pytest

from azfailover.main import build_parser, main

from conftest import CLUSTER, SERVICE


@pytest.fixture
def run_cli(controller, store):
    def run(*argv):
        with patch("azfailover.main.build_controller", return_value=controller), patch(
            "azfailover.main.open_store", return_value=store
        ), patch("azfailover.main.configure_logging"), patch("azfailover.main.signal.signal"):
            return main(list(argv))

    return run


def test_restore_reuses_failover_region(controller, store):
    controller.failover(CLUSTER, SERVICE, "az-b", region="eu-west-1")

    with patch("azfailover.main.build_controller", return_value=controller) as build, patch(
        "azfailover.main.open_store", return_value=store
    ), patch("azfailover.main.configure_logging"), patch("azfailover.main.signal.signal"):
        assert main(["restore", "--cluster", CLUSTER, "--service", SERVICE]) == 0

    assert build.call_args[0][1] == "eu-west-1"


def test_explicit_region_wins_on_restore(controller, store):
    controller.failover(CLUSTER, SERVICE, "az-b", region="eu-west-1")

    with patch("azfailover.main.build_controller", return_value=controller) as build, patch(
        "azfailover.main.open_store", return_value=store
    ), patch("azfailover.main.configure_logging"), patch("azfailover.main.signal.signal"):
        main(["restore", "--cluster", CLUSTER, "--service", SERVICE, "--region", "us-west-2"])

    assert build.call_args[0][1] == "us-west-2"


def test_az_required_for_failover():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["failover", "--cluster", CLUSTER, "--service", SERVICE])


def test_restore_takes_no_az():
    args = build_parser().parse_args(["restore", "--cluster", CLUSTER, "--service", SERVICE])
    assert args.mode == "restore"
    assert not hasattr(args, "az")


def test_failover_converges(run_cli, cloud, capsys):
    code = run_cli("failover", "--cluster", CLUSTER, "--service", SERVICE, "--az", "az-b")

    assert code == 0
    out = capsys.readouterr().out
    assert "Status: converged" in out
    assert "Tasks evicted: 3" in out
    assert "rerun with 'restore'" in out


def test_failover_timeout_exit_code(run_cli, cloud):
    cloud.frozen = True
    assert run_cli("failover", "--cluster", CLUSTER, "--service", SERVICE, "--az", "az-b") == 2


def test_restore_without_failover_is_an_error(run_cli, capsys):
    code = run_cli("restore", "--cluster", CLUSTER, "--service", SERVICE)

    assert code == 1
    assert "No saved subnet data found" in capsys.readouterr().err


def test_drill_runs_both_phases(run_cli, cloud, capsys):
    code = run_cli(
        "drill", "--cluster", CLUSTER, "--service", SERVICE, "--az", "az-b", "--restore-delay", "0"
    )

    assert code == 0
    out = capsys.readouterr().out
    assert "Failover: dr-test-cluster/dr-test-service" in out
    assert "Restore: dr-test-cluster/dr-test-service" in out
    assert len(cloud.updates) == 2


def test_serve_starts_rest_api():
    with patch("azfailover.main.start_rest_api") as start, patch("azfailover.main.configure_logging"):
        assert main(["serve", "--port", "9100"]) == 0
    assert start.call_args[0][1] == 9100
