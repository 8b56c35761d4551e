"""
LimitValidator and manual override tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from replica_autoscaler.errors import ConfigError
from replica_autoscaler.limits import (
    AT_REPLICA_BOUND,
    COOLDOWN_ACTIVE,
    NO_SCALING_REQUESTED,
    ManualOverrides,
    intent_toward,
    validate,
)
from replica_autoscaler.models import Apply, Reject, ScalingIntent, ScalingLimits, ServiceScalingState

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def state(current, last_scale_ago=None, direction=None):
    last = NOW - timedelta(seconds=last_scale_ago) if last_scale_ago is not None else None
    return ServiceScalingState("backend", current, last, direction)


@pytest.fixture
def limits():
    return ScalingLimits(min_replicas=1, max_replicas=5, cooldown_seconds=120, max_step_size=1)


def test_scale_up_without_prior_scale(limits):
    assert validate("backend", ScalingIntent.SCALE_UP, state(3), limits, NOW) == Apply(4)


def test_scale_down_without_prior_scale(limits):
    assert validate("backend", ScalingIntent.SCALE_DOWN, state(3), limits, NOW) == Apply(2)


def test_no_scale_is_rejected_as_noop(limits):
    assert validate("backend", ScalingIntent.NO_SCALE, state(3), limits, NOW) == Reject(NO_SCALING_REQUESTED)


def test_at_max_bound(limits):
    assert validate("backend", ScalingIntent.SCALE_UP, state(5), limits, NOW) == Reject(AT_REPLICA_BOUND)


def test_at_min_bound(limits):
    assert validate("backend", ScalingIntent.SCALE_DOWN, state(1), limits, NOW) == Reject(AT_REPLICA_BOUND)


def test_cooldown_active(limits):
    decision = validate("backend", ScalingIntent.SCALE_DOWN, state(3, last_scale_ago=30), limits, NOW)
    assert decision == Reject(COOLDOWN_ACTIVE)


def test_cooldown_elapsed(limits):
    decision = validate("backend", ScalingIntent.SCALE_DOWN, state(3, last_scale_ago=120), limits, NOW)
    assert decision == Apply(2)


def test_cooldown_checked_before_bounds(limits):
    decision = validate("backend", ScalingIntent.SCALE_UP, state(5, last_scale_ago=10), limits, NOW)
    assert decision == Reject(COOLDOWN_ACTIVE)


def test_desired_target_is_clamped_to_step_size():
    limits = ScalingLimits(min_replicas=1, max_replicas=10, cooldown_seconds=0, max_step_size=2)
    assert validate("backend", ScalingIntent.SCALE_UP, state(2), limits, NOW, desired=9) == Apply(4)
    assert validate("backend", ScalingIntent.SCALE_DOWN, state(9), limits, NOW, desired=1) == Apply(7)


def test_desired_target_is_clamped_to_bounds(limits):
    assert validate("backend", ScalingIntent.SCALE_UP, state(4), limits, NOW, desired=8) == Apply(5)
    assert validate("backend", ScalingIntent.SCALE_UP, state(5), limits, NOW, desired=8) == Reject(AT_REPLICA_BOUND)


def test_out_of_bounds_baseline_converges_by_step(limits):
    # Replicas started outside the configured bounds move back one step at a time.
    assert validate("backend", ScalingIntent.SCALE_DOWN, state(8), limits, NOW) == Apply(7)


def test_validate_is_idempotent(limits):
    s = state(3, last_scale_ago=30)
    first = validate("backend", ScalingIntent.SCALE_UP, s, limits, NOW)
    second = validate("backend", ScalingIntent.SCALE_UP, s, limits, NOW)
    assert first == second
    assert s.current_replicas == 3


def test_targets_always_within_bounds_and_step():
    limits = ScalingLimits(min_replicas=2, max_replicas=6, cooldown_seconds=0, max_step_size=1)
    for current in range(2, 7):
        for intent in (ScalingIntent.SCALE_UP, ScalingIntent.SCALE_DOWN):
            decision = validate("backend", intent, state(current), limits, NOW)
            if isinstance(decision, Apply):
                assert limits.min_replicas <= decision.target_replicas <= limits.max_replicas
                assert abs(decision.target_replicas - current) <= limits.max_step_size


@pytest.mark.parametrize("kwargs", [
    dict(min_replicas=0),
    dict(min_replicas=3, max_replicas=2),
    dict(cooldown_seconds=-1),
    dict(max_step_size=0),
])
def test_invalid_limits(kwargs):
    with pytest.raises(ConfigError):
        ScalingLimits(**kwargs)


def test_intent_toward():
    assert intent_toward(2, 4) is ScalingIntent.SCALE_UP
    assert intent_toward(4, 2) is ScalingIntent.SCALE_DOWN
    assert intent_toward(3, 3) is ScalingIntent.NO_SCALE


# -----------------------------------------------------------------------------
# Manual overrides
# -----------------------------------------------------------------------------
def test_overrides_set_get_clear(tmp_path, limits):
    overrides = ManualOverrides(str(tmp_path / "overrides" / "manual_override.txt"))
    assert overrides.get("backend") is None

    overrides.set("backend", 4, limits)
    overrides.set("frontend", 2, limits)
    assert overrides.get("backend") == 4
    assert overrides.all() == {"backend": 4, "frontend": 2}

    overrides.set("backend", 2, limits)
    assert overrides.get("backend") == 2

    assert overrides.clear("backend") is True
    assert overrides.clear("backend") is False
    assert overrides.all() == {"frontend": 2}


def test_override_outside_limits_rejected(tmp_path, limits):
    overrides = ManualOverrides(str(tmp_path / "manual_override.txt"))
    with pytest.raises(ValueError):
        overrides.set("backend", 9, limits)
    assert overrides.all() == {}


def test_overrides_file_format_matches_script_convention(tmp_path):
    path = tmp_path / "manual_override.txt"
    path.write_text("backend:3\n# comment\n\nfrontend:oops\n")
    assert ManualOverrides(str(path)).all() == {"backend": 3}
