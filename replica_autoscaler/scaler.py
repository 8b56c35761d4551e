"""
Scaling policy for the autoscaler.
"""

from replica_autoscaler.models import MetricsSnapshot, PolicyThresholds, ScalingIntent


class PolicyEngine:
    """Turns a metrics snapshot into a scaling intent."""

    def decide(self, snapshot: MetricsSnapshot, thresholds: PolicyThresholds) -> ScalingIntent:
        """
        Make a scaling decision based on metrics.

        Scaling Logic:
        - Scale UP when: cpu >= cpu_up OR memory >= memory_up OR requests >= requests_up
        - Scale DOWN when: cpu <= cpu_down AND memory <= memory_down
          (AND requests <= requests_down, if that threshold is set)

        Missing metrics never trigger an action. During peak hours every
        threshold is multiplied by thresholds.peak_multiplier; the hour is
        taken from the snapshot so the result depends only on the inputs.
        """
        if not snapshot.is_complete():
            return ScalingIntent.NO_SCALE

        if thresholds.is_peak(snapshot.observed_at):
            thresholds = thresholds.scaled(thresholds.peak_multiplier)

        cpu = float(snapshot.cpu_percent)
        memory = float(snapshot.memory_percent)
        requests = float(snapshot.request_rate_per_minute)

        # Check for scale UP
        if (
            cpu >= thresholds.cpu_scale_up_percent
            or memory >= thresholds.memory_scale_up_percent
            or requests >= thresholds.request_rate_scale_up_per_minute
        ):
            return ScalingIntent.SCALE_UP

        # Check for scale DOWN
        requests_low = (
            thresholds.request_rate_scale_down_per_minute is None
            or requests <= thresholds.request_rate_scale_down_per_minute
        )
        if (
            cpu <= thresholds.cpu_scale_down_percent
            and memory <= thresholds.memory_scale_down_percent
            and requests_low
        ):
            return ScalingIntent.SCALE_DOWN

        return ScalingIntent.NO_SCALE


def describe_snapshot(snapshot: MetricsSnapshot) -> str:
    """Human readable one-liner used in logs and notifications."""
    return (
        f"CPU: {snapshot.cpu_percent}%, Memory: {snapshot.memory_percent}%, "
        f"Requests: {snapshot.request_rate_per_minute} req/min"
    )
