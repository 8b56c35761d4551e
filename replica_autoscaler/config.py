"""
Configuration loader for the autoscaler.
Loads values from environment variables with sensible defaults.

Per-service values use a "_<SERVICE>" suffix, e.g. MAX_REPLICAS_FRONTEND,
and fall back to the global variable (MAX_REPLICAS) and then the default.
"""

import os
from dataclasses import dataclass, field
from datetime import time
from typing import Dict, Mapping, Optional, Tuple

from replica_autoscaler.errors import ConfigError
from replica_autoscaler.models import PolicyThresholds, ScalingLimits, ServiceIdentity

DEFAULTS = {
    "AUTOSCALER_SERVICES": "backend,frontend",
    "INTERVAL": "120",
    "CALL_TIMEOUT_SECONDS": "30",
    "CPU_SCALE_UP_THRESHOLD": "75",
    "CPU_SCALE_DOWN_THRESHOLD": "30",
    "MEM_SCALE_UP_THRESHOLD": "80",
    "MEM_SCALE_DOWN_THRESHOLD": "40",
    "REQ_SCALE_UP_THRESHOLD": "100",
    "PEAK_HOURS_START": "08:00",
    "PEAK_HOURS_END": "20:00",
    "PEAK_MULTIPLIER": "1.0",
    "MIN_REPLICAS": "1",
    "MAX_REPLICAS": "5",
    "COOLDOWN_PERIOD": "300",
    "MAX_STEP_SIZE": "1",
    "PROMETHEUS_URL": "http://localhost:9090",
    "RUNTIME_BACKEND": "compose",
    "ROUTING_BACKEND": "nginx",
    "COMPOSE_FILE": "docker-compose.prod.yml",
    "COMPOSE_COMMAND": "docker-compose",
    "NGINX_CONFIG_DIR": "nginx",
    "NGINX_CONTAINER": "nginx",
    "HEALTH_CHECK_URL": "/health",
    "HEALTH_CHECK_TIMEOUT": "30",
    "SERVICE_PORT": "80",
    "STATE_BACKEND": "file",
    "STATE_FILE": "scripts/autoscaling/state.json",
    "DYNAMODB_TABLE": "autoscaler-service-state",
    "NOTIFICATION_LOG": "scripts/autoscaling/notifications.log",
    "MANUAL_OVERRIDE_FILE": "scripts/autoscaling/manual_override.txt",
    "LOG_LEVEL": "INFO",
}

# Built-in per-service defaults, applied before the global default.
SERVICE_DEFAULTS = {
    "frontend": {"MAX_REPLICAS": "3"},
}

RUNTIME_BACKENDS = ("compose", "ec2")
ROUTING_BACKENDS = ("nginx", "external")
STATE_BACKENDS = ("memory", "file", "dynamodb")


@dataclass(frozen=True)
class AutoscalerConfig:
    services: Tuple[ServiceIdentity, ...]
    thresholds: Dict[ServiceIdentity, PolicyThresholds]
    limits: Dict[ServiceIdentity, ScalingLimits]
    interval_seconds: float = 120.0
    call_timeout_seconds: float = 30.0
    prometheus_url: str = "http://localhost:9090"
    runtime_backend: str = "compose"
    routing_backend: str = "nginx"
    compose_file: str = "docker-compose.prod.yml"
    compose_command: str = "docker-compose"
    nginx_config_dir: str = "nginx"
    nginx_container: str = "nginx"
    health_check_url: str = "/health"
    health_check_timeout: float = 30.0
    service_ports: Dict[ServiceIdentity, int] = field(default_factory=dict)
    state_backend: str = "file"
    state_file: str = "scripts/autoscaling/state.json"
    dynamodb_table: str = "autoscaler-service-state"
    notification_webhook: Optional[str] = None
    notification_log: Optional[str] = "scripts/autoscaling/notifications.log"
    manual_override_file: Optional[str] = "scripts/autoscaling/manual_override.txt"
    ec2_launch_template: Dict[str, object] = field(default_factory=dict)
    log_level: str = "INFO"


def _service_suffix(service: ServiceIdentity) -> str:
    return service.upper().replace("-", "_").replace(".", "_")


def _raw(environ: Mapping[str, str], name: str, service: Optional[ServiceIdentity] = None) -> Optional[str]:
    if service is not None:
        value = environ.get(f"{name}_{_service_suffix(service)}")
        if value not in (None, ""):
            return value
    value = environ.get(name)
    if value not in (None, ""):
        return value
    if service is not None and name in SERVICE_DEFAULTS.get(service, {}):
        return SERVICE_DEFAULTS[service][name]
    return DEFAULTS.get(name)


def _int(environ, name, service=None) -> int:
    value = _raw(environ, name, service)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _float(environ, name, service=None) -> float:
    value = _raw(environ, name, service)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


def _optional_float(environ, name, service=None) -> Optional[float]:
    if _raw(environ, name, service) is None:
        return None
    return _float(environ, name, service)


def _time(environ, name, service=None) -> time:
    value = _raw(environ, name, service)
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError):
        raise ConfigError(f"{name} must be HH:MM, got {value!r}") from None


def load_thresholds(environ: Mapping[str, str], service: ServiceIdentity) -> PolicyThresholds:
    return PolicyThresholds(
        cpu_scale_up_percent=_float(environ, "CPU_SCALE_UP_THRESHOLD", service),
        cpu_scale_down_percent=_float(environ, "CPU_SCALE_DOWN_THRESHOLD", service),
        memory_scale_up_percent=_float(environ, "MEM_SCALE_UP_THRESHOLD", service),
        memory_scale_down_percent=_float(environ, "MEM_SCALE_DOWN_THRESHOLD", service),
        request_rate_scale_up_per_minute=_float(environ, "REQ_SCALE_UP_THRESHOLD", service),
        request_rate_scale_down_per_minute=_optional_float(environ, "REQ_SCALE_DOWN_THRESHOLD", service),
        peak_hours_start=_time(environ, "PEAK_HOURS_START", service),
        peak_hours_end=_time(environ, "PEAK_HOURS_END", service),
        peak_multiplier=_float(environ, "PEAK_MULTIPLIER", service),
    )


def load_limits(environ: Mapping[str, str], service: ServiceIdentity) -> ScalingLimits:
    return ScalingLimits(
        min_replicas=_int(environ, "MIN_REPLICAS", service),
        max_replicas=_int(environ, "MAX_REPLICAS", service),
        cooldown_seconds=_float(environ, "COOLDOWN_PERIOD", service),
        max_step_size=_int(environ, "MAX_STEP_SIZE", service),
    )


def _choice(environ, name, choices) -> str:
    value = _raw(environ, name).lower()
    if value not in choices:
        raise ConfigError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


def load_config(environ: Optional[Mapping[str, str]] = None) -> AutoscalerConfig:
    """Load and validate configuration. Raises ConfigError on bad values."""
    if environ is None:
        environ = os.environ

    services = tuple(s.strip() for s in _raw(environ, "AUTOSCALER_SERVICES").split(",") if s.strip())
    if not services:
        raise ConfigError("AUTOSCALER_SERVICES must name at least one service")
    if len(set(services)) != len(services):
        raise ConfigError(f"AUTOSCALER_SERVICES contains duplicates: {','.join(services)}")

    interval = _float(environ, "INTERVAL")
    call_timeout = _float(environ, "CALL_TIMEOUT_SECONDS")
    if interval <= 0:
        raise ConfigError(f"INTERVAL must be positive, got {interval}")
    if call_timeout <= 0:
        raise ConfigError(f"CALL_TIMEOUT_SECONDS must be positive, got {call_timeout}")

    runtime_backend = _choice(environ, "RUNTIME_BACKEND", RUNTIME_BACKENDS)
    routing_backend = _choice(environ, "ROUTING_BACKEND", ROUTING_BACKENDS)
    if runtime_backend == "ec2" and routing_backend == "nginx":
        raise ConfigError("ROUTING_BACKEND=nginx needs RUNTIME_BACKEND=compose; use ROUTING_BACKEND=external with ec2")

    thresholds = {}
    limits = {}
    for service in services:
        try:
            thresholds[service] = load_thresholds(environ, service)
            limits[service] = load_limits(environ, service)
        except ConfigError as e:
            raise ConfigError(f"Invalid configuration for {service}: {e}") from None

    return AutoscalerConfig(
        services=services,
        thresholds=thresholds,
        limits=limits,
        interval_seconds=interval,
        call_timeout_seconds=call_timeout,
        prometheus_url=_raw(environ, "PROMETHEUS_URL"),
        runtime_backend=runtime_backend,
        routing_backend=routing_backend,
        compose_file=_raw(environ, "COMPOSE_FILE"),
        compose_command=_raw(environ, "COMPOSE_COMMAND"),
        nginx_config_dir=_raw(environ, "NGINX_CONFIG_DIR"),
        nginx_container=_raw(environ, "NGINX_CONTAINER"),
        health_check_url=_raw(environ, "HEALTH_CHECK_URL"),
        health_check_timeout=_float(environ, "HEALTH_CHECK_TIMEOUT"),
        service_ports={service: _int(environ, "SERVICE_PORT", service) for service in services},
        state_backend=_choice(environ, "STATE_BACKEND", STATE_BACKENDS),
        state_file=_raw(environ, "STATE_FILE"),
        dynamodb_table=_raw(environ, "DYNAMODB_TABLE"),
        notification_webhook=_raw(environ, "NOTIFICATION_WEBHOOK"),
        notification_log=_raw(environ, "NOTIFICATION_LOG"),
        manual_override_file=_raw(environ, "MANUAL_OVERRIDE_FILE"),
        ec2_launch_template={
            "ami_id": _raw(environ, "EC2_AMI_ID"),
            "instance_type": _raw(environ, "WORKER_INSTANCE_TYPE"),
            "security_group_id": _raw(environ, "WORKER_SECURITY_GROUP"),
            "subnet_ids": [s for s in (_raw(environ, "SUBNET_1"), _raw(environ, "SUBNET_2")) if s],
            "iam_profile": _raw(environ, "WORKER_IAM_PROFILE"),
            "key_name": _raw(environ, "SSH_KEY_NAME"),
        },
        log_level=_raw(environ, "LOG_LEVEL").upper(),
    )
