"""
Data model for the autoscaler.

Everything here is immutable. The orchestrator replaces a service's
ServiceScalingState wholesale after a successful scaling action, so any
reader holding a reference always sees a consistent record.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, time
from enum import Enum
from typing import Optional, Union

from replica_autoscaler.errors import ConfigError

# Services are identified by their compose/config name, e.g. "backend".
ServiceIdentity = str


class ScalingIntent(Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    NO_SCALE = "no_scale"


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time load reading for one service."""

    service: ServiceIdentity
    cpu_percent: Optional[float]
    memory_percent: Optional[float]
    request_rate_per_minute: Optional[float]
    observed_at: datetime

    def is_complete(self) -> bool:
        """True when every metric is a finite number."""
        for value in (self.cpu_percent, self.memory_percent, self.request_rate_per_minute):
            if value is None:
                return False
            try:
                if not math.isfinite(float(value)):
                    return False
            except (TypeError, ValueError):
                return False
        return True

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "cpu_percent": self.cpu_percent,
            "memory_percent": self.memory_percent,
            "request_rate_per_minute": self.request_rate_per_minute,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class PolicyThresholds:
    """
    Thresholds for the combined scaling policy.

    Any scale-up threshold breached triggers a scale up. Scale down needs
    every dimension at or below its scale-down threshold. The request rate
    scale-down threshold is optional; when unset request rate does not
    block a scale down.

    The memory scale-down default of 40% follows MEM_SCALE_DOWN_THRESHOLD
    of the deployment scripts, so it sits above the CPU scale-down default
    rather than below it.
    """

    cpu_scale_up_percent: float = 75.0
    cpu_scale_down_percent: float = 30.0
    memory_scale_up_percent: float = 80.0
    memory_scale_down_percent: float = 40.0
    request_rate_scale_up_per_minute: float = 100.0
    request_rate_scale_down_per_minute: Optional[float] = None
    peak_hours_start: time = time(8, 0)
    peak_hours_end: time = time(20, 0)
    peak_multiplier: float = 1.0

    def __post_init__(self):
        pairs = [
            ("CPU", self.cpu_scale_up_percent, self.cpu_scale_down_percent),
            ("memory", self.memory_scale_up_percent, self.memory_scale_down_percent),
        ]
        if self.request_rate_scale_down_per_minute is not None:
            pairs.append((
                "request rate",
                self.request_rate_scale_up_per_minute,
                self.request_rate_scale_down_per_minute,
            ))
        for name, up, down in pairs:
            if up <= down:
                raise ConfigError(
                    f"{name} scale-up threshold ({up}) must be greater than scale-down threshold ({down})"
                )
        if self.peak_multiplier <= 0:
            raise ConfigError(f"peak multiplier must be positive, got {self.peak_multiplier}")

    def is_peak(self, at: datetime) -> bool:
        return self.peak_hours_start <= at.time() < self.peak_hours_end

    def scaled(self, factor: float) -> "PolicyThresholds":
        """Copy with every threshold multiplied by factor."""
        if factor == 1.0:
            return self
        req_down = self.request_rate_scale_down_per_minute
        return replace(
            self,
            cpu_scale_up_percent=self.cpu_scale_up_percent * factor,
            cpu_scale_down_percent=self.cpu_scale_down_percent * factor,
            memory_scale_up_percent=self.memory_scale_up_percent * factor,
            memory_scale_down_percent=self.memory_scale_down_percent * factor,
            request_rate_scale_up_per_minute=self.request_rate_scale_up_per_minute * factor,
            request_rate_scale_down_per_minute=req_down * factor if req_down is not None else None,
        )


@dataclass(frozen=True)
class ScalingLimits:
    """Safety limits for one service. Static for the life of the process."""

    min_replicas: int = 1
    max_replicas: int = 5
    cooldown_seconds: float = 300
    max_step_size: int = 1

    def __post_init__(self):
        if self.min_replicas < 1:
            raise ConfigError(f"min_replicas must be >= 1, got {self.min_replicas}")
        if self.max_replicas < self.min_replicas:
            raise ConfigError(
                f"max_replicas ({self.max_replicas}) must be >= min_replicas ({self.min_replicas})"
            )
        if self.cooldown_seconds < 0:
            raise ConfigError(f"cooldown_seconds must be >= 0, got {self.cooldown_seconds}")
        if self.max_step_size < 1:
            raise ConfigError(f"max_step_size must be >= 1, got {self.max_step_size}")


@dataclass(frozen=True)
class ServiceScalingState:
    service: ServiceIdentity
    current_replicas: int
    last_scale_at: Optional[datetime] = None
    last_scale_direction: Optional[ScalingIntent] = None

    def record_scale(self, target: int, direction: ScalingIntent, at: datetime) -> "ServiceScalingState":
        return replace(
            self,
            current_replicas=target,
            last_scale_at=at,
            last_scale_direction=direction,
        )

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "current_replicas": self.current_replicas,
            "last_scale_at": self.last_scale_at.isoformat() if self.last_scale_at else None,
            "last_scale_direction": self.last_scale_direction.value if self.last_scale_direction else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceScalingState":
        last_scale_at = data.get("last_scale_at")
        direction = data.get("last_scale_direction")
        return cls(
            service=data["service"],
            current_replicas=int(data["current_replicas"]),
            last_scale_at=datetime.fromisoformat(last_scale_at) if last_scale_at else None,
            last_scale_direction=ScalingIntent(direction) if direction else None,
        )


@dataclass(frozen=True)
class Apply:
    target_replicas: int

    def to_dict(self) -> dict:
        return {"type": "apply", "target_replicas": self.target_replicas}


@dataclass(frozen=True)
class Reject:
    reason: str

    def to_dict(self) -> dict:
        return {"type": "reject", "reason": self.reason}


ScalingDecision = Union[Apply, Reject]


class OutcomeStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    # Runtime scaled but routing was not updated. Needs operator attention.
    PARTIAL_FAILURE = "partial_failure"


_SEVERITY = {
    OutcomeStatus.SUCCESS: "info",
    OutcomeStatus.FAILURE: "warning",
    OutcomeStatus.PARTIAL_FAILURE: "critical",
}


@dataclass(frozen=True)
class ExecutionResult:
    status: OutcomeStatus
    target_replicas: Optional[int] = None
    reason: str = ""

    @classmethod
    def succeeded(cls, target: int) -> "ExecutionResult":
        return cls(OutcomeStatus.SUCCESS, target_replicas=target)

    @classmethod
    def failed(cls, reason: str) -> "ExecutionResult":
        return cls(OutcomeStatus.FAILURE, reason=reason)

    @classmethod
    def partial(cls, reason: str) -> "ExecutionResult":
        return cls(OutcomeStatus.PARTIAL_FAILURE, reason=reason)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    def to_outcome(self) -> "Outcome":
        if self.ok:
            return Outcome.success(f"scaled to {self.target_replicas} replicas")
        return Outcome(self.status, self.reason)


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    detail: str = ""

    @classmethod
    def success(cls, detail: str = "") -> "Outcome":
        return cls(OutcomeStatus.SUCCESS, detail)

    @classmethod
    def failure(cls, detail: str) -> "Outcome":
        return cls(OutcomeStatus.FAILURE, detail)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def severity(self) -> str:
        return _SEVERITY[self.status]


@dataclass(frozen=True)
class ScalingEvent:
    """Audit record for one service in one cycle. Written once."""

    service: ServiceIdentity
    outcome: Outcome
    timestamp: datetime
    metrics: Optional[MetricsSnapshot] = None
    intent: Optional[ScalingIntent] = None
    decision: Optional[ScalingDecision] = field(default=None)

    @property
    def severity(self) -> str:
        return self.outcome.severity

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "intent": self.intent.value if self.intent else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "outcome": {
                "status": self.outcome.status.value,
                "detail": self.outcome.detail,
            },
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat(),
        }
