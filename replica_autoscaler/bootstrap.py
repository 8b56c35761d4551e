"""
Builds an Orchestrator and its collaborators from configuration.
"""

import logging
import shlex

from replica_autoscaler.config import AutoscalerConfig
from replica_autoscaler.executor import ScalingExecutor
from replica_autoscaler.limits import ManualOverrides
from replica_autoscaler.metrics import PrometheusMetrics
from replica_autoscaler.notifications import JsonLinesNotifier, NotificationSink, WebhookNotifier
from replica_autoscaler.orchestrator import Orchestrator
from replica_autoscaler.routing import ComposeInstanceResolver, ExternalRoutingController, NginxRoutingController
from replica_autoscaler.runtime import ComposeRuntimeController, EC2RuntimeController
from replica_autoscaler.state import DynamoDBStateStore, InMemoryStateStore, JsonFileStateStore

# Share of the per-call timeout an adapter plans its own work within.
ADAPTER_BUDGET_SHARE = 0.8

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    logging.getLogger().setLevel(level)
    # boto3 is chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)


def adapter_budget(config: AutoscalerConfig) -> float:
    return config.call_timeout_seconds * ADAPTER_BUDGET_SHARE


def build_state_store(config: AutoscalerConfig):
    if config.state_backend == "dynamodb":
        # The lease outlives any cycle that could still be holding the lock.
        lease = max(config.interval_seconds, 4 * config.call_timeout_seconds)
        return DynamoDBStateStore(config.dynamodb_table, lease_seconds=lease)
    if config.state_backend == "file":
        return JsonFileStateStore(config.state_file)
    return InMemoryStateStore()


def build_runtime(config: AutoscalerConfig):
    if config.runtime_backend == "ec2":
        return EC2RuntimeController(launch_template=config.ec2_launch_template)
    budget = adapter_budget(config)
    return ComposeRuntimeController(
        compose_file=config.compose_file,
        compose_command=config.compose_command,
        command_timeout=budget,
        settle_seconds=min(10.0, budget / 3),
        operation_timeout=budget,
    )


def build_router(config: AutoscalerConfig, runtime):
    if config.routing_backend == "external":
        return ExternalRoutingController()
    budget = adapter_budget(config)
    resolver = ComposeInstanceResolver(
        runtime,
        ports=config.service_ports,
        command_timeout=budget / 4,
    )
    reload_command = [
        *shlex.split(config.compose_command),
        "-f", config.compose_file,
        "exec", "-T", config.nginx_container,
        "nginx", "-s", "reload",
    ]
    return NginxRoutingController(
        resolver,
        config_dir=config.nginx_config_dir,
        reload_command=reload_command,
        health_check_path=config.health_check_url,
        health_check_timeout=min(config.health_check_timeout, budget),
        operation_timeout=budget,
    )


def build_notifiers(config: AutoscalerConfig) -> list:
    notifiers = []
    if config.notification_log:
        notifiers.append(JsonLinesNotifier(config.notification_log))
    if config.notification_webhook:
        notifiers.append(WebhookNotifier(config.notification_webhook))
    return notifiers


def build_orchestrator(config: AutoscalerConfig) -> Orchestrator:
    runtime = build_runtime(config)
    router = build_router(config, runtime)

    return Orchestrator(
        services=config.services,
        thresholds=config.thresholds,
        limits=config.limits,
        metrics=PrometheusMetrics(config.prometheus_url, timeout=config.call_timeout_seconds),
        runtime=runtime,
        executor=ScalingExecutor(runtime, router, call_timeout=config.call_timeout_seconds),
        sink=NotificationSink(build_notifiers(config), call_timeout=config.call_timeout_seconds),
        store=build_state_store(config),
        overrides=ManualOverrides(config.manual_override_file) if config.manual_override_file else None,
        interval_seconds=config.interval_seconds,
        call_timeout=config.call_timeout_seconds,
    )
