from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from files.models import FileAction, FileRecord, FileSummary

log = logging.getLogger(__name__)

Subject = Union[FileSummary, FileRecord]
PermissionCheck = Callable[[Subject, FileAction, Optional[str], Dict[str, Any]], Union[bool, Awaitable[bool]]]


async def maybe_await(v: Any) -> Any:
    if inspect.isawaitable(v):
        return await v
    return v


class PermissionGate:
    """
    Wraps the application's permission predicate.

    - skip=True: every action allowed (trusted server-side callers only)
    - no predicate: every action denied (fail closed), with a warning
    - predicate may be sync or async; exceptions propagate to the caller
    """

    def __init__(self, check: Optional[PermissionCheck] = None, *, skip: bool = False, instance: str = ""):
        self.check = check
        self.skip = skip
        self.instance = instance

    async def allowed(
        self,
        subject: Subject,
        action: FileAction,
        requester_id: Optional[str],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        file_ref = getattr(subject, "id", None) or subject.filename
        if self.skip:
            log.debug("[PermissionGate::%s] skipping check action=%s file=%s", self.instance, action, file_ref)
            return True

        if self.check is None:
            log.warning(
                "[PermissionGate::%s] No permission check configured; denying action=%s file=%s",
                self.instance, action, file_ref,
            )
            return False

        result = await maybe_await(self.check(subject, action, requester_id, dict(context or {})))
        return result is True
