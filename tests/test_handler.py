"""
Lambda handler, CLI and wiring tests.
"""

import asyncio
import json
import os
import signal

import pytest

import replica_autoscaler.__main__ as cli
from replica_autoscaler import handler
from replica_autoscaler import state as state_module
from replica_autoscaler.bootstrap import build_orchestrator, build_router, build_runtime, build_state_store
from replica_autoscaler.config import load_config
from replica_autoscaler.errors import ConfigError
from replica_autoscaler.limits import ManualOverrides
from replica_autoscaler.models import Apply, MetricsSnapshot, Outcome, OutcomeStatus, ScalingEvent, ScalingIntent
from replica_autoscaler.notifications import JsonLinesNotifier, WebhookNotifier
from replica_autoscaler.routing import ExternalRoutingController, NginxRoutingController
from replica_autoscaler.runtime import ComposeRuntimeController
from replica_autoscaler.state import DynamoDBStateStore, InMemoryStateStore

from conftest import T0


class StubOrchestrator:
    def __init__(self, events):
        self.events = events

    async def run_once(self):
        return self.events

    def request_shutdown(self):
        pass


def event(status=OutcomeStatus.SUCCESS):
    return ScalingEvent(
        service="backend",
        intent=ScalingIntent.SCALE_UP,
        decision=Apply(4),
        outcome=Outcome(status, "scaled to 4 replicas"),
        timestamp=T0,
    )


# -----------------------------------------------------------------------------
# Lambda handler
# -----------------------------------------------------------------------------
def test_lambda_runs_one_cycle(monkeypatch):
    monkeypatch.setattr(handler, "load_config", lambda: load_config({"STATE_BACKEND": "memory"}))
    monkeypatch.setattr(handler, "build_orchestrator", lambda config: StubOrchestrator([event()]))

    response = handler.lambda_handler({"source": "aws.events"}, None)

    assert response["statusCode"] == 200
    body = json.loads(response["body"])
    assert body["events"][0]["decision"] == {"type": "apply", "target_replicas": 4}


def test_lambda_config_error(monkeypatch):
    def broken():
        raise ConfigError("INTERVAL must be positive, got 0.0")

    monkeypatch.setattr(handler, "load_config", broken)

    response = handler.lambda_handler({}, None)

    assert response["statusCode"] == 500
    assert "INTERVAL" in json.loads(response["body"])["error"]


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
@pytest.fixture
def cli_config(tmp_path, monkeypatch):
    config = load_config({
        "STATE_BACKEND": "memory",
        "MANUAL_OVERRIDE_FILE": str(tmp_path / "manual_override.txt"),
        "NOTIFICATION_LOG": str(tmp_path / "notifications.log"),
    })
    monkeypatch.setattr(cli, "load_config", lambda: config)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    return config


def test_cli_set_and_clear_override(cli_config):
    overrides = ManualOverrides(cli_config.manual_override_file)

    assert cli.main(["set-override", "backend", "4"]) == 0
    assert overrides.get("backend") == 4

    assert cli.main(["set-override", "frontend", "5"]) == 1  # frontend max is 3
    assert cli.main(["set-override", "worker", "2"]) == 1

    assert cli.main(["clear-override", "backend"]) == 0
    assert overrides.get("backend") is None


def test_cli_single_exits_2_on_partial_failure(cli_config, monkeypatch, capsys):
    monkeypatch.setattr(cli, "build_orchestrator", lambda config: StubOrchestrator([event(OutcomeStatus.PARTIAL_FAILURE)]))

    assert cli.main(["single"]) == 2
    printed = json.loads(capsys.readouterr().out.splitlines()[0])
    assert printed["severity"] == "critical"


def test_cli_single_success(cli_config, monkeypatch):
    monkeypatch.setattr(cli, "build_orchestrator", lambda config: StubOrchestrator([event()]))
    assert cli.main(["single"]) == 0


def test_cli_single_finishes_cycle_on_sigterm(cli_config, monkeypatch, make_orchestrator, runtime, notifier, clock):
    class SignalledMetrics:
        """Delivers SIGTERM to this process while the cycle is running."""

        async def fetch(self, service):
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.sleep(0.05)
            return MetricsSnapshot(service, 90, 40, 10, clock())

    orchestrator = make_orchestrator(services=("backend",), metrics=SignalledMetrics())
    monkeypatch.setattr(cli, "build_orchestrator", lambda config: orchestrator)

    assert cli.main(["single"]) == 0

    assert orchestrator.shutting_down
    assert runtime.replicas["backend"] == 4
    assert [e.outcome.status for e in notifier.events] == [OutcomeStatus.SUCCESS]


def test_cli_status(cli_config, monkeypatch, capsys):
    ManualOverrides(cli_config.manual_override_file).set("frontend", 2, cli_config.limits["frontend"])
    monkeypatch.setattr(cli, "build_state_store", lambda config: InMemoryStateStore())

    assert cli.main(["status"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["frontend"] == {"state": None, "min_replicas": 1, "max_replicas": 3, "manual_override": 2}
    assert report["backend"]["manual_override"] is None


def test_cli_config_error(monkeypatch):
    def broken():
        raise ConfigError("RUNTIME_BACKEND must be one of compose, ec2, got 'k8s'")

    monkeypatch.setattr(cli, "load_config", broken)
    assert cli.main(["single"]) == 1


# -----------------------------------------------------------------------------
# Wiring
# -----------------------------------------------------------------------------
def test_build_orchestrator_from_config(tmp_path):
    config = load_config({
        "STATE_BACKEND": "memory",
        "NOTIFICATION_WEBHOOK": "http://hooks.local/scaling",
        "NOTIFICATION_LOG": str(tmp_path / "notifications.log"),
        "MANUAL_OVERRIDE_FILE": str(tmp_path / "manual_override.txt"),
        "INTERVAL": "60",
    })

    orchestrator = build_orchestrator(config)

    assert orchestrator.services == ("backend", "frontend")
    assert orchestrator.interval_seconds == 60
    assert isinstance(orchestrator.runtime, ComposeRuntimeController)
    assert isinstance(orchestrator.executor.router, NginxRoutingController)
    assert isinstance(orchestrator.store, InMemoryStateStore)
    assert [type(n) for n in orchestrator.sink.notifiers] == [JsonLinesNotifier, WebhookNotifier]


def test_nginx_reload_targets_compose_project():
    config = load_config({"COMPOSE_COMMAND": "docker compose", "NGINX_CONTAINER": "lb"})
    router = build_router(config, build_runtime(config))
    assert router.reload_command == [
        "docker", "compose", "-f", "docker-compose.prod.yml", "exec", "-T", "lb", "nginx", "-s", "reload",
    ]


def test_external_routing():
    config = load_config({"ROUTING_BACKEND": "external"})
    assert isinstance(build_router(config, build_runtime(config)), ExternalRoutingController)


def test_adapters_plan_within_the_call_timeout():
    config = load_config({"CALL_TIMEOUT_SECONDS": "30", "HEALTH_CHECK_TIMEOUT": "60"})
    runtime = build_runtime(config)
    router = build_router(config, runtime)

    assert runtime.operation_timeout == pytest.approx(24)
    assert runtime.command_timeout == pytest.approx(24)
    assert runtime.settle_seconds == pytest.approx(8)
    assert router.operation_timeout == pytest.approx(24)
    assert router.health_check_timeout == pytest.approx(24)
    assert router.resolver.command_timeout == pytest.approx(6)


def test_dynamodb_lease_outlives_a_stuck_cycle(monkeypatch):
    class FakeResource:
        def Table(self, name):
            return name

    monkeypatch.setattr(state_module.boto3, "resource", lambda name: FakeResource())
    config = load_config({"STATE_BACKEND": "dynamodb", "INTERVAL": "60", "CALL_TIMEOUT_SECONDS": "40"})

    store = build_state_store(config)

    assert isinstance(store, DynamoDBStateStore)
    assert store.table == "autoscaler-service-state"
    assert store.lease_seconds == 160
