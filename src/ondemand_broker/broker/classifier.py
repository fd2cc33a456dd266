"""Deterministic classification of backend and adapter failures.

Errors are classified once, where the failing call is made. Layers above
inspect only the resulting :class:`Disposition`, never raw error text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ondemand_broker.broker.backend.base import (
    AdapterError,
    AdapterErrorKind,
    BackendError,
    BackendErrorKind,
)
from ondemand_broker.broker.context import RequestContext
from ondemand_broker.broker.errors import (
    BrokerError,
    DisplayableError,
    GenericError,
    OperationInProgressError,
    OsbError,
    OsbErrorCode,
    backend_request_error,
)

_ADAPTER_SENTINELS: dict[AdapterErrorKind, OsbErrorCode] = {
    AdapterErrorKind.ALREADY_EXISTS: OsbErrorCode.BINDING_ALREADY_EXISTS,
    AdapterErrorKind.BINDING_NOT_FOUND: OsbErrorCode.BINDING_DOES_NOT_EXIST,
    AdapterErrorKind.APP_GUID_MISSING: OsbErrorCode.APP_GUID_NOT_PROVIDED,
    AdapterErrorKind.NOT_IMPLEMENTED: OsbErrorCode.NOT_IMPLEMENTED,
}


class Disposition(str, Enum):
    """How a failure reaches the platform user."""

    RETRY = "retry"
    CONFLICT = "conflict"
    VERBATIM = "verbatim"
    GENERIC = "generic"


@dataclass(slots=True)
class ErrorClassification:
    """Normalized classification result."""

    disposition: Disposition
    reason_code: str
    error: BrokerError

    def to_log_details(self) -> dict[str, str]:
        """Classification fields for operator logs. The message itself is logged separately."""

        return {"disposition": self.disposition.value, "reason_code": self.reason_code}


def classify_error(
    ctx: RequestContext,
    action: str,
    error: Exception,
    *,
    detail: str = "",
) -> ErrorClassification:
    """Classify a failure raised while performing ``action`` on an instance.

    ``detail`` prefixes the operator message with what the broker was doing.
    """

    operator_message = f"{detail}: {error}" if detail else str(error)

    if isinstance(error, BrokerError):
        return ErrorClassification(
            disposition=(
                Disposition.GENERIC if isinstance(error, GenericError) else Disposition.VERBATIM
            ),
            reason_code=f"{action}_broker_error",
            error=error,
        )

    if isinstance(error, BackendError):
        if error.kind is BackendErrorKind.REQUEST:
            return ErrorClassification(
                disposition=Disposition.RETRY,
                reason_code=f"{action}_backend_request",
                error=backend_request_error(action, operator_message),
            )
        if error.kind is BackendErrorKind.TASK_IN_PROGRESS:
            return ErrorClassification(
                disposition=Disposition.CONFLICT,
                reason_code=f"{action}_task_in_progress",
                error=OperationInProgressError(operator_message),
            )
        return ErrorClassification(
            disposition=Disposition.GENERIC,
            reason_code=f"{action}_backend_{error.kind.value}",
            error=GenericError(ctx, operator_message),
        )

    if isinstance(error, AdapterError):
        return classify_adapter_error(ctx, action, error)

    return ErrorClassification(
        disposition=Disposition.GENERIC,
        reason_code=f"{action}_unexpected",
        error=GenericError(ctx, operator_message),
    )


def classify_adapter_error(
    ctx: RequestContext,
    action: str,
    error: AdapterError,
) -> ErrorClassification:
    """Map adapter failures onto OSB sentinels."""

    sentinel = _ADAPTER_SENTINELS.get(error.kind)
    if sentinel is not None:
        return ErrorClassification(
            disposition=Disposition.VERBATIM,
            reason_code=f"{action}_adapter_{error.kind.value}",
            error=DisplayableError(OsbError(sentinel), error),
        )

    message = str(error)
    if message:
        return ErrorClassification(
            disposition=Disposition.VERBATIM,
            reason_code=f"{action}_adapter_unknown_with_message",
            error=DisplayableError(message, error),
        )
    return ErrorClassification(
        disposition=Disposition.GENERIC,
        reason_code=f"{action}_adapter_unknown_without_message",
        error=GenericError(ctx, "service adapter reported an unknown failure without a message"),
    )

