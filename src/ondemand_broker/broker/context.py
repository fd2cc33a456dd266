"""Per-request correlation context and context-aware logging."""

from __future__ import annotations

import logging
import time
from collections.abc import MutableMapping
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

logger = logging.getLogger("ondemand_broker")


@dataclass(slots=True, frozen=True)
class RequestContext:
    """Correlation data attached to every operator log line and generic error.

    ``deadline`` is a ``time.monotonic()`` timestamp supplied by the caller;
    outbound calls must not outlive it.
    """

    service_name: str
    instance_id: str
    request_id: str
    operation: str = ""
    task_id: int = 0
    deadline: float | None = None

    @classmethod
    def new(
        cls,
        *,
        service_name: str,
        instance_id: str,
        operation: str = "",
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> RequestContext:
        return cls(
            service_name=service_name,
            instance_id=instance_id,
            request_id=request_id or str(uuid4()),
            operation=operation,
            deadline=deadline,
        )

    def with_task_id(self, task_id: int) -> RequestContext:
        return replace(self, task_id=task_id)

    def with_operation(self, operation: str) -> RequestContext:
        return replace(self, operation=operation)

    def remaining_seconds(self) -> float | None:
        """Seconds left before the caller's deadline, never negative."""

        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def logger(self) -> RequestLogger:
        return RequestLogger(logger, {"ctx": self})


class RequestLogger(logging.LoggerAdapter):
    """Prefix messages with the service name and broker request id."""

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        ctx: RequestContext = self.extra["ctx"]  # type: ignore[index]
        kwargs.setdefault("extra", {})["request_id"] = ctx.request_id
        return f"[{ctx.service_name}] [{ctx.request_id}] {msg}", kwargs
