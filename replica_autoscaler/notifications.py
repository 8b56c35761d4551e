"""
Scaling event notifications.

NotificationSink keeps a bounded history of ScalingEvents, logs each one as
a structured record and forwards it to the configured notifiers. Delivery
is best-effort: a failing notifier is logged and never affects scaling.
"""

import json
import logging
import os
import threading
import urllib.error
import urllib.request
from collections import deque
from typing import Iterable, List, Optional

from replica_autoscaler.calls import bounded_call, describe_error
from replica_autoscaler.errors import NotificationError
from replica_autoscaler.models import Apply, OutcomeStatus, ScalingEvent

logger = logging.getLogger()

_LOG_LEVELS = {
    OutcomeStatus.SUCCESS: logging.INFO,
    OutcomeStatus.FAILURE: logging.WARNING,
    OutcomeStatus.PARTIAL_FAILURE: logging.CRITICAL,
}


def event_title(event: ScalingEvent) -> str:
    status = event.outcome.status
    if status is OutcomeStatus.PARTIAL_FAILURE:
        return "Partial Scaling"
    if status is OutcomeStatus.FAILURE:
        return "Scaling Failed"
    if isinstance(event.decision, Apply):
        return "Scaling Event"
    return "No Scaling"


def event_message(event: ScalingEvent) -> str:
    parts = [f"Service: {event.service}"]
    if event.intent is not None:
        parts.append(f"Action: {event.intent.value}")
    if isinstance(event.decision, Apply):
        parts.append(f"Target: {event.decision.target_replicas}")
    if event.outcome.detail:
        parts.append(f"Detail: {event.outcome.detail}")
    parts.append(f"Time: {event.timestamp.isoformat()}")
    return ", ".join(parts)


def is_actionable(event: ScalingEvent) -> bool:
    """Scaling performed, or anything that went wrong. Excludes plain no-ops."""
    return not event.outcome.ok or isinstance(event.decision, Apply)


class NotificationSink:
    """Records and forwards scaling outcomes."""

    def __init__(self, notifiers: Optional[Iterable] = None, history_size: int = 500, call_timeout: float = 30.0):
        self.notifiers = list(notifiers or [])
        self.call_timeout = call_timeout
        self._history = deque(maxlen=history_size)

    async def emit(self, event: ScalingEvent) -> None:
        self._history.append(event)
        logger.log(_LOG_LEVELS[event.outcome.status], json.dumps(event.to_dict()))

        for notifier in self.notifiers:
            try:
                await bounded_call(notifier.send, event, timeout=self.call_timeout)
            except Exception as e:
                logger.error(
                    f"Notification via {type(notifier).__name__} failed for {event.service}: {describe_error(e)}"
                )

    def recent(self, n: int = 10) -> List[ScalingEvent]:
        return list(self._history)[-n:]

    def summary(self) -> dict:
        counts = {status.value: 0 for status in OutcomeStatus}
        scaled = 0
        for event in self._history:
            counts[event.outcome.status.value] += 1
            if event.outcome.ok and isinstance(event.decision, Apply):
                scaled += 1
        counts["scaled"] = scaled
        counts["total"] = len(self._history)
        return counts


class WebhookNotifier:
    """POSTs actionable events as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0, notify_noop: bool = False):
        self.url = url
        self.timeout = timeout
        self.notify_noop = notify_noop

    def send(self, event: ScalingEvent) -> None:
        if not self.notify_noop and not is_actionable(event):
            return

        payload = {
            "title": event_title(event),
            "message": event_message(event),
            "severity": event.severity,
            "event": event.to_dict(),
        }
        req = urllib.request.Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
        )
        req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise NotificationError(f"Webhook returned HTTP {response.status}")
        except urllib.error.URLError as e:
            raise NotificationError(f"Webhook delivery failed: {e}") from e


class JsonLinesNotifier:
    """Appends every event to a JSON-lines audit log."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def send(self, event: ScalingEvent) -> None:
        line = json.dumps(event.to_dict())
        directory = os.path.dirname(os.path.abspath(self.path))
        with self._lock:
            os.makedirs(directory, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
