"""
Replica autoscaler pytest configuration
---------------------------------------

Shared fakes and fixtures:
 - FakeClock: controllable UTC clock
 - FakeMetrics / FakeRuntime / FakeRouter: in-memory collaborators that
   record the order in which they are called
 - RecordingNotifier: captures delivered events
 - make_orchestrator: builds an Orchestrator wired to the fakes
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from replica_autoscaler.executor import ScalingExecutor
from replica_autoscaler.models import MetricsSnapshot, PolicyThresholds, ScalingLimits
from replica_autoscaler.notifications import NotificationSink
from replica_autoscaler.orchestrator import Orchestrator
from replica_autoscaler.state import InMemoryStateStore

# Outside the default 08:00-20:00 peak window.
T0 = datetime(2024, 3, 1, 2, 0, 0, tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------
class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeMetrics:
    """Returns a fixed reading per service, or raises a configured error."""

    def __init__(self, clock, readings=None, errors=None):
        self.clock = clock
        self.readings = dict(readings or {})
        self.errors = dict(errors or {})
        self.calls = []

    def set(self, service, cpu, memory, requests):
        self.readings[service] = (cpu, memory, requests)

    def fetch(self, service):
        self.calls.append(service)
        if service in self.errors:
            raise self.errors[service]
        cpu, memory, requests = self.readings.get(service, (50.0, 50.0, 50.0))
        return MetricsSnapshot(service, cpu, memory, requests, self.clock())


class FakeRuntime:
    def __init__(self, call_log, replicas=None, set_error=None, count_error=None):
        self.call_log = call_log
        self.replicas = dict(replicas or {})
        self.set_error = set_error
        self.count_error = count_error

    def get_replica_count(self, service):
        self.call_log.append(("runtime.get", service))
        if self.count_error:
            raise self.count_error
        return self.replicas.get(service, 1)

    def set_replica_count(self, service, target):
        self.call_log.append(("runtime.set", service, target))
        if self.set_error:
            raise self.set_error
        self.replicas[service] = target


class FakeRouter:
    def __init__(self, call_log, error=None):
        self.call_log = call_log
        self.error = error
        self.routes = {}

    def update_routing(self, service, target):
        self.call_log.append(("router.update", service, target))
        if self.error:
            raise self.error
        self.routes[service] = target


class RecordingNotifier:
    def __init__(self, error=None):
        self.events = []
        self.error = error

    def send(self, event):
        if self.error:
            raise self.error
        self.events.append(event)


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def call_log():
    return []


@pytest.fixture
def thresholds():
    return PolicyThresholds()


@pytest.fixture
def limits():
    return ScalingLimits(min_replicas=1, max_replicas=5, cooldown_seconds=120, max_step_size=1)


@pytest.fixture
def metrics(clock):
    return FakeMetrics(clock)


@pytest.fixture
def runtime(call_log):
    return FakeRuntime(call_log, replicas={"backend": 3, "frontend": 2})


@pytest.fixture
def router(call_log):
    return FakeRouter(call_log)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def make_orchestrator(clock, thresholds, limits, metrics, runtime, router, notifier, store):
    def _make(services=("backend", "frontend"), **overrides):
        rt = overrides.pop("runtime", runtime)
        rtr = overrides.pop("router", router)
        kwargs = dict(
            services=services,
            thresholds={s: thresholds for s in services},
            limits={s: limits for s in services},
            metrics=metrics,
            runtime=rt,
            executor=ScalingExecutor(rt, rtr, call_timeout=1.0),
            sink=NotificationSink([notifier], call_timeout=1.0),
            store=store,
            interval_seconds=0.05,
            call_timeout=1.0,
            clock=clock,
        )
        kwargs.update(overrides)
        return Orchestrator(**kwargs)
    return _make


@pytest.fixture(autouse=True)
def quiet_logs(caplog):
    caplog.set_level(logging.INFO)
    logging.getLogger("asyncio").setLevel(logging.ERROR)
    yield
