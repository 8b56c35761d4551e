"""
Applies validated scaling decisions to the runtime and the load balancer.
"""

import logging
from typing import Optional

from replica_autoscaler.calls import bounded_call, describe_error, settle
from replica_autoscaler.errors import CallTimeoutError
from replica_autoscaler.models import Apply, ExecutionResult, ScalingDecision, ServiceIdentity

logger = logging.getLogger()


class ScalingExecutor:
    """
    Runs the runtime change, then the routing change.

    Routing is never updated before the runtime has confirmed the new
    replica count, so traffic cannot be sent to replicas that do not exist
    yet. No retries: the orchestrator re-evaluates on the next cycle.

    A blocking change that outlives the call timeout is awaited until it
    finishes, and the result reports what it actually did. The caller keeps
    the service locked meanwhile, so changes to one service never overlap.
    """

    def __init__(self, runtime, router, call_timeout: float = 30.0):
        self.runtime = runtime
        self.router = router
        self.call_timeout = call_timeout

    async def _apply(self, func, service: ServiceIdentity, target: int, what: str) -> Optional[BaseException]:
        """Run one change; None on success, else the error that ended it."""
        try:
            await bounded_call(func, service, target, timeout=self.call_timeout)
        except CallTimeoutError as e:
            logger.warning(f"{what} for {service} exceeded {self.call_timeout}s, waiting for it to finish")
            late_error = await settle(e)
            if late_error is None:
                logger.warning(f"{what} for {service} completed after the timeout")
            return late_error
        except Exception as e:
            return e
        return None

    async def execute(self, service: ServiceIdentity, decision: ScalingDecision) -> ExecutionResult:
        if not isinstance(decision, Apply):
            raise ValueError(f"execute() requires an Apply decision, got {decision!r}")

        target = decision.target_replicas
        logger.info(f"Scaling {service} to {target} replicas")

        error = await self._apply(self.runtime.set_replica_count, service, target, "Runtime update")
        if error is not None:
            logger.error(f"Runtime update failed for {service}: {describe_error(error)}")
            return ExecutionResult.failed(f"runtime update failed: {describe_error(error)}")

        error = await self._apply(self.router.update_routing, service, target, "Routing update")
        if error is not None:
            logger.critical(
                f"PARTIAL SCALING for {service}: runtime is at {target} replicas "
                f"but routing was not updated: {describe_error(error)}"
            )
            return ExecutionResult.partial(
                f"routing update failed after runtime succeeded: {describe_error(error)}"
            )

        logger.info(f"Successfully scaled {service} to {target} replicas")
        return ExecutionResult.succeeded(target)
