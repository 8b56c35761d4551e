"""
Autoscaling orchestrator.

Each cycle runs, concurrently for every managed service:

    fetch metrics -> decide -> validate -> execute -> report

Stages within one service run strictly in order. A per-service lock
guarantees at most one cycle per service is in flight; a tick that finds the
previous cycle still running skips that service. Once shutdown is requested
no new cycles start, and cycles already running finish and report.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from replica_autoscaler.calls import bounded_call, describe_error, settle
from replica_autoscaler.errors import CallTimeoutError
from replica_autoscaler.limits import intent_toward, validate
from replica_autoscaler.models import (
    Apply,
    Outcome,
    Reject,
    ScalingEvent,
    ServiceIdentity,
    ServiceScalingState,
)
from replica_autoscaler.scaler import PolicyEngine, describe_snapshot

logger = logging.getLogger()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    def __init__(
        self,
        services,
        thresholds,
        limits,
        metrics,
        runtime,
        executor,
        sink,
        store,
        overrides=None,
        policy: Optional[PolicyEngine] = None,
        interval_seconds: float = 120.0,
        call_timeout: float = 30.0,
        clock=utc_now,
    ):
        self.services = tuple(services)
        self.thresholds = thresholds
        self.limits = limits
        self.metrics = metrics
        self.runtime = runtime
        self.executor = executor
        self.sink = sink
        self.store = store
        self.overrides = overrides
        self.policy = policy or PolicyEngine()
        self.interval_seconds = interval_seconds
        self.call_timeout = call_timeout
        self.clock = clock

        self._states: Dict[ServiceIdentity, ServiceScalingState] = {}
        self._locks = {service: asyncio.Lock() for service in self.services}
        self._inflight: Dict[ServiceIdentity, asyncio.Task] = {}
        self._lock_contended_since: Dict[ServiceIdentity, datetime] = {}
        self._shutdown = asyncio.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def status(self) -> Dict[ServiceIdentity, Optional[dict]]:
        """Consistent snapshot of every service's scaling state."""
        states = dict(self._states)
        return {service: (states[service].to_dict() if service in states else None) for service in self.services}

    def request_shutdown(self) -> None:
        if not self._shutdown.is_set():
            logger.info("Shutdown requested, finishing in-flight cycles...")
            self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    async def run_once(self) -> List[ScalingEvent]:
        """Run one cycle across all services and return the emitted events."""
        logger.info(f"=== Starting Orchestration Cycle: {self.clock().isoformat()} ===")
        results = await asyncio.gather(*(self.run_service_cycle(service) for service in self.services))
        logger.info("=== Orchestration Cycle Complete ===")
        return [event for event in results if event is not None]

    async def run_forever(self) -> None:
        """Tick every interval until shutdown is requested."""
        logger.info(f"Starting Auto-Scaling Orchestrator (interval: {self.interval_seconds}s)")
        while not self._shutdown.is_set():
            self._schedule_cycles()
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        await self.drain()
        logger.info("Autoscaler orchestrator stopped")

    async def drain(self) -> None:
        """Wait for every in-flight cycle to finish."""
        pending = list(self._inflight.values())
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight cycle(s) to finish")
            await asyncio.gather(*pending, return_exceptions=True)

    async def run_service_cycle(self, service: ServiceIdentity) -> Optional[ScalingEvent]:
        """
        One cycle for one service. Returns None when skipped because a
        previous cycle for the service is still running or shutdown was
        requested.
        """
        if self._shutdown.is_set():
            logger.info(f"Shutdown requested, not starting a cycle for {service}")
            return None
        lock = self._locks[service]
        if lock.locked():
            logger.warning(f"Previous cycle for {service} still in flight, skipping this tick")
            return None

        async with lock:
            logger.info(f"--- Processing {service} ---")
            try:
                event = await self._cycle(service)
            except Exception as e:
                logger.exception(f"Unexpected error in cycle for {service}")
                event = ScalingEvent(
                    service=service,
                    outcome=Outcome.failure(f"unexpected error: {describe_error(e)}"),
                    timestamp=self.clock(),
                )
            await self.sink.emit(event)
            return event

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule_cycles(self) -> None:
        for service in self.services:
            task = self._inflight.get(service)
            if task is not None and not task.done():
                logger.warning(f"Previous cycle for {service} still in flight, skipping this tick")
                continue
            task = asyncio.create_task(self.run_service_cycle(service))
            self._inflight[service] = task

    async def _load_state(self, service: ServiceIdentity) -> ServiceScalingState:
        state = self._states.get(service)
        if state is not None:
            return state

        try:
            state = await bounded_call(self.store.load, service, timeout=self.call_timeout)
        except Exception as e:
            logger.error(f"Failed to load stored state for {service}: {describe_error(e)}")
            state = None

        if state is None:
            replicas = await bounded_call(self.runtime.get_replica_count, service, timeout=self.call_timeout)
            state = ServiceScalingState(service=service, current_replicas=int(replicas))
            logger.info(f"Initialised {service} state from runtime: {state.current_replicas} replicas")

        self._states[service] = state
        return state

    async def _cycle(self, service: ServiceIdentity) -> ScalingEvent:
        try:
            state = await self._load_state(service)
        except Exception as e:
            logger.error(f"Replica count unavailable for {service}: {describe_error(e)}")
            return ScalingEvent(
                service=service,
                outcome=Outcome.failure(f"replica count unavailable: {describe_error(e)}"),
                timestamp=self.clock(),
            )

        # Idle -> MetricsFetched
        try:
            snapshot = await bounded_call(self.metrics.fetch, service, timeout=self.call_timeout)
        except Exception as e:
            logger.error(f"Failed to fetch metrics for {service}: {describe_error(e)}")
            return ScalingEvent(
                service=service,
                outcome=Outcome.failure(f"metrics unavailable: {describe_error(e)}"),
                timestamp=self.clock(),
            )
        logger.info(f"Metrics - {describe_snapshot(snapshot)}")

        # MetricsFetched -> Decided
        intent = self.policy.decide(snapshot, self.thresholds[service])
        desired = None
        if self.overrides is not None:
            try:
                desired = self.overrides.get(service)
            except OSError as e:
                logger.error(f"Failed to read manual overrides: {e}")
            if desired is not None:
                logger.info(f"Manual override active for {service}: {desired} replicas (policy said {intent.value})")
                intent = intent_toward(state.current_replicas, desired)
        logger.info(f"Initial decision for {service}: {intent.value}")

        # Decided -> Validated
        now = self.clock()
        decision = validate(service, intent, state, self.limits[service], now, desired=desired)

        if isinstance(decision, Reject):
            logger.info(f"No scaling for {service}: {decision.reason}")
            return ScalingEvent(
                service=service,
                metrics=snapshot,
                intent=intent,
                decision=decision,
                outcome=Outcome.success(f"no-op: {decision.reason}"),
                timestamp=now,
            )

        # Validated -> Executing
        outcome = await self._execute(service, decision, intent, state, now)
        return ScalingEvent(
            service=service,
            metrics=snapshot,
            intent=intent,
            decision=decision,
            outcome=outcome,
            timestamp=self.clock(),
        )

    async def _acquire_store_lock(self, service) -> bool:
        try:
            return await bounded_call(self.store.acquire_lock, service, timeout=self.call_timeout)
        except CallTimeoutError as e:
            # A late grant would otherwise leave the lock held with nobody to release it.
            if await settle(e) is None and e.pending.result():
                await bounded_call(self.store.release_lock, service, timeout=self.call_timeout)
            raise

    def _lock_contended(self, service, now) -> Outcome:
        since = self._lock_contended_since.setdefault(service, now)
        held_for = (now - since).total_seconds()
        if held_for >= self.interval_seconds:
            logger.error(f"Scaling lock for {service} has been held elsewhere for {held_for:.0f}s")
            return Outcome.failure(f"scaling lock held elsewhere for {held_for:.0f}s")
        return Outcome.success("no-op: scaling lock held elsewhere")

    async def _execute(self, service, decision: Apply, intent, state, now) -> Outcome:
        try:
            locked = await self._acquire_store_lock(service)
        except Exception as e:
            return Outcome.failure(f"could not acquire scaling lock: {describe_error(e)}")
        if not locked:
            return self._lock_contended(service, now)
        self._lock_contended_since.pop(service, None)

        try:
            result = await self.executor.execute(service, decision)
            if result.ok:
                # Direction of the actual move; it can differ from the intent while
                # an out-of-bounds count converges.
                direction = intent_toward(state.current_replicas, result.target_replicas)
                new_state = state.record_scale(result.target_replicas, direction, now)
                self._states[service] = new_state
                try:
                    await bounded_call(self.store.save, new_state, timeout=self.call_timeout)
                except Exception as e:
                    logger.error(f"Failed to persist state for {service}: {describe_error(e)}")
            return result.to_outcome()
        finally:
            try:
                await bounded_call(self.store.release_lock, service, timeout=self.call_timeout)
            except Exception as e:
                logger.error(f"Failed to release scaling lock for {service}: {describe_error(e)}")
