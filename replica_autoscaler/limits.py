"""
Scaling limits and safety checks.

validate() is a pure function of its arguments: the orchestrator owns all
state and passes it in, so every branch can be exercised in isolation.
Manual overrides let an operator pin a service to a replica count; the
pinned count still goes through the same cooldown, bound and step checks.
"""

import os
import logging
import tempfile
from datetime import datetime
from typing import Dict, Optional

from replica_autoscaler.models import (
    Apply,
    Reject,
    ScalingDecision,
    ScalingIntent,
    ScalingLimits,
    ServiceIdentity,
    ServiceScalingState,
)

logger = logging.getLogger()

NO_SCALING_REQUESTED = "no scaling requested"
COOLDOWN_ACTIVE = "cooldown active"
AT_REPLICA_BOUND = "at replica bound"


def validate(
    service: ServiceIdentity,
    intent: ScalingIntent,
    state: ServiceScalingState,
    limits: ScalingLimits,
    now: datetime,
    desired: Optional[int] = None,
) -> ScalingDecision:
    """
    Validate a scaling intent against the service's limits.

    desired replaces the default one-replica move when a manual override
    supplies an explicit target.
    """
    if intent is ScalingIntent.NO_SCALE:
        return Reject(NO_SCALING_REQUESTED)

    if state.last_scale_at is not None:
        elapsed = (now - state.last_scale_at).total_seconds()
        if elapsed < limits.cooldown_seconds:
            return Reject(COOLDOWN_ACTIVE)

    current = state.current_replicas
    if desired is not None:
        target = desired
    elif intent is ScalingIntent.SCALE_UP:
        target = current + 1
    else:
        target = current - 1

    target = max(limits.min_replicas, min(limits.max_replicas, target))
    if target == current:
        return Reject(AT_REPLICA_BOUND)

    # Bound the rate of change rather than refusing the move.
    delta = target - current
    if abs(delta) > limits.max_step_size:
        step = limits.max_step_size if delta > 0 else -limits.max_step_size
        target = current + step

    return Apply(target)


def intent_toward(current: int, desired: int) -> ScalingIntent:
    """Intent that moves current toward desired."""
    if desired > current:
        return ScalingIntent.SCALE_UP
    if desired < current:
        return ScalingIntent.SCALE_DOWN
    return ScalingIntent.NO_SCALE


class ManualOverrides:
    """
    Operator overrides stored as "service:replicas" lines in a text file.
    """

    def __init__(self, path: str):
        self.path = path

    def all(self) -> Dict[ServiceIdentity, int]:
        if not os.path.exists(self.path):
            return {}
        overrides = {}
        with open(self.path, encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                service, _, replicas = line.partition(":")
                try:
                    overrides[service.strip()] = int(replicas)
                except ValueError:
                    logger.warning(f"Ignoring malformed override on line {line_no} of {self.path}: {line!r}")
        return overrides

    def get(self, service: ServiceIdentity) -> Optional[int]:
        return self.all().get(service)

    def set(self, service: ServiceIdentity, replicas: int, limits: ScalingLimits) -> None:
        if not limits.min_replicas <= replicas <= limits.max_replicas:
            raise ValueError(
                f"Override of {replicas} replicas for {service} is outside "
                f"[{limits.min_replicas}, {limits.max_replicas}]"
            )
        overrides = self.all()
        overrides[service] = replicas
        self._write(overrides)
        logger.info(f"Manual override set for {service}: {replicas} replicas")

    def clear(self, service: ServiceIdentity) -> bool:
        overrides = self.all()
        if service not in overrides:
            return False
        del overrides[service]
        self._write(overrides)
        logger.info(f"Manual override cleared for {service}")
        return True

    def _write(self, overrides: Dict[ServiceIdentity, int]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".override-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            for service, replicas in sorted(overrides.items()):
                fh.write(f"{service}:{replicas}\n")
        os.replace(tmp_path, self.path)
