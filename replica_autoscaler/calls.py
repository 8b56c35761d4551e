"""
Timeout-bounded calls to external collaborators.

Adapters may be plain blocking functions (urllib, boto3, subprocess) or
coroutine functions. Blocking ones run in the event loop's default executor
so one slow service never stalls the others.

A worker thread cannot be cancelled. When a blocking call times out the
CallTimeoutError carries the still-running future as `pending`; callers that
mutate a service await it with settle() before releasing that service.
"""

import asyncio
import functools
import inspect
from typing import Optional

from replica_autoscaler.errors import CallTimeoutError


async def bounded_call(func, *args, timeout: float):
    """Call func(*args), raising CallTimeoutError after timeout seconds."""
    if inspect.iscoroutinefunction(func):
        awaitable = func(*args)
    else:
        loop = asyncio.get_running_loop()
        awaitable = loop.run_in_executor(None, functools.partial(func, *args))
    try:
        # shield keeps an executor future alive past the timeout; a coroutine is cancelled
        if asyncio.isfuture(awaitable):
            return await asyncio.wait_for(asyncio.shield(awaitable), timeout)
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        name = getattr(func, "__qualname__", repr(func))
        pending = None
        if asyncio.isfuture(awaitable):
            pending = awaitable
            pending.add_done_callback(_retrieve)
        raise CallTimeoutError(f"{name} timed out after {timeout}s", pending=pending) from None


def _retrieve(future) -> None:
    # Late failures nobody settles are reported by the caller's timeout already.
    if not future.cancelled():
        future.exception()


async def settle(error: CallTimeoutError) -> Optional[BaseException]:
    """
    Wait for a timed-out call to finish.

    Returns None if it completed successfully after the timeout, otherwise
    the exception that ended it (the timeout itself when it was cancelled).
    """
    if error.pending is None:
        return error
    try:
        await error.pending
    except Exception as e:
        return e
    return None


def describe_error(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__
