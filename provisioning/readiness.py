from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from botocore.exceptions import ClientError

from core.errors import ProvisioningConflict, ProvisioningError, ProvisioningTimeout
from providers.impl.aws import error_code

log = logging.getLogger(__name__)

T = TypeVar("T")

_READY_STATES = (None, "Active", "Inactive")
_READY_UPDATE_STATUSES = (None, "Successful")


async def get_function(lambda_client: Any, function_name: str) -> Optional[Dict[str, Any]]:
    """GetFunction, or None when the function does not exist."""
    try:
        return await asyncio.to_thread(lambda_client.get_function, FunctionName=function_name)
    except ClientError as e:
        if error_code(e) == "ResourceNotFoundException":
            return None
        raise


async def wait_for_function_ready(
    lambda_client: Any,
    function_name: str,
    *,
    timeout: float = 60.0,
    interval: float = 0.8,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[Dict[str, Any]]:
    """
    Poll until the function accepts mutations.

    - absent function: ready immediately (returns None)
    - LastUpdateStatus=Failed or State=Failed: ProvisioningError
    - LastUpdateStatus Successful/missing and State not Pending: ready,
      returns the function Configuration
    - a transient 404 mid-poll (emulators during updates) is tolerated
    - deadline exceeded: ProvisioningTimeout
    """
    if await get_function(lambda_client, function_name) is None:
        return None

    deadline = clock() + timeout
    while True:
        fn = await get_function(lambda_client, function_name)
        if fn is None:
            log.warning("[waitForFunctionReady] %s briefly not found; retrying", function_name)
        else:
            cfg = fn.get("Configuration") or {}
            status = cfg.get("LastUpdateStatus")
            state = cfg.get("State")
            if status == "Failed" or state == "Failed":
                reason = cfg.get("LastUpdateStatusReason") or cfg.get("StateReason") or ""
                raise ProvisioningError(f"Lambda {function_name} is in a failed state: {reason}".rstrip(": "))
            if status in _READY_UPDATE_STATUSES and state in _READY_STATES:
                return cfg

        if clock() >= deadline:
            raise ProvisioningTimeout(f"Timeout waiting for Lambda {function_name} to become ready")
        await sleep(interval)


async def with_conflict_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    wait: Callable[[], Awaitable[Any]],
    attempts: int = 6,
    label: str = "",
) -> T:
    """
    Run a control-plane mutation; on ResourceConflictException (another update
    in flight) wait for readiness and try again, at most `attempts` times.
    """
    last: Optional[ClientError] = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            return await fn()
        except ClientError as e:
            if error_code(e) != "ResourceConflictException":
                raise
            last = e
            log.info("[conflictRetry] %s conflict (attempt %s/%s); waiting", label or "update", attempt, attempts)
            await wait()
    raise ProvisioningConflict(
        f"{label or 'Update'} still conflicting after {attempts} attempts: {last}",
        cause=last,
    ) from last
