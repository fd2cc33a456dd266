"""Errors surfaced by broker operations.

Every error carries two channels: text that is safe to show the platform user
and text that is logged for the operator. Raw backend or adapter text only ever
travels in the operator channel unless an adapter supplied a user-facing
message on purpose.
"""

from __future__ import annotations

from enum import Enum

from ondemand_broker.broker.context import RequestContext

GENERIC_ERROR_PREFIX = (
    "There was a problem completing your request. "
    "Please contact your operations team providing the following information:"
)
OPERATION_IN_PROGRESS_MESSAGE = (
    "An operation is in progress for your service instance. Please try again later."
)


class OsbErrorCode(str, Enum):
    """OSB sentinel errors understood by platform clients."""

    INSTANCE_ALREADY_EXISTS = "instance_already_exists"
    INSTANCE_DOES_NOT_EXIST = "instance_does_not_exist"
    BINDING_ALREADY_EXISTS = "binding_already_exists"
    BINDING_DOES_NOT_EXIST = "binding_does_not_exist"
    APP_GUID_NOT_PROVIDED = "app_guid_not_provided"
    ASYNC_REQUIRED = "async_required"
    RAW_PARAMS_INVALID = "raw_params_invalid"
    NOT_IMPLEMENTED = "not_implemented"


_OSB_ERRORS: dict[OsbErrorCode, tuple[str, int]] = {
    OsbErrorCode.INSTANCE_ALREADY_EXISTS: ("instance already exists", 409),
    OsbErrorCode.INSTANCE_DOES_NOT_EXIST: ("instance does not exist", 410),
    OsbErrorCode.BINDING_ALREADY_EXISTS: ("binding already exists", 409),
    OsbErrorCode.BINDING_DOES_NOT_EXIST: ("binding does not exist", 410),
    OsbErrorCode.APP_GUID_NOT_PROVIDED: (
        "app_guid is a required field but was not provided",
        422,
    ),
    OsbErrorCode.ASYNC_REQUIRED: (
        "This service plan requires client support for asynchronous service operations.",
        422,
    ),
    OsbErrorCode.RAW_PARAMS_INVALID: ("The format of the parameters is not valid JSON", 400),
    OsbErrorCode.NOT_IMPLEMENTED: ("the service adapter does not implement this operation", 501),
}


class BrokerError(Exception):
    """Base class for errors returned from broker operations."""

    status: int = 500

    @property
    def user_message(self) -> str:
        return str(self)

    @property
    def operator_message(self) -> str:
        return str(self)


class OsbError(BrokerError):
    """OSB sentinel error, passed to the platform verbatim."""

    def __init__(self, code: OsbErrorCode) -> None:
        message, status = _OSB_ERRORS[code]
        super().__init__(message)
        self.code = code
        self.status = status


class DisplayableError(BrokerError):
    """Error with separate user-facing and operator-facing messages."""

    def __init__(self, user_error: str | BrokerError, operator_error: str | BaseException) -> None:
        self.user_error = user_error
        self.operator_error = operator_error
        if isinstance(user_error, BrokerError):
            self.status = user_error.status
        super().__init__(str(self))

    @property
    def user_message(self) -> str:
        if isinstance(self.user_error, BrokerError):
            return self.user_error.user_message
        return self.user_error

    @property
    def operator_message(self) -> str:
        return str(self.operator_error)

    def extended_user_message(self) -> str:
        """User message with the operator detail appended."""

        return f"{self.user_message} - error-message: {self.operator_message}"

    def __str__(self) -> str:
        return f"error: {self.operator_message}. error for user: {self.user_message}."


class GenericError(DisplayableError):
    """Opaque user message carrying only correlation data."""

    def __init__(self, ctx: RequestContext, operator_error: str | BaseException | None) -> None:
        super().__init__(generic_message(ctx), operator_error or "")
        self.ctx = ctx


class OperationInProgressError(DisplayableError):
    """Another operation already owns the service instance."""

    status = 409

    def __init__(self, operator_error: str | BaseException) -> None:
        super().__init__(OPERATION_IN_PROGRESS_MESSAGE, operator_error)


class QuotaExceededError(BrokerError):
    """One or more quota layers would be exceeded by a new instance."""

    status = 422

    def __init__(self, violations: list[str]) -> None:
        super().__init__(", ".join(violations))
        self.violations = violations


class TokenError(BrokerError):
    """Continuation token could not be used."""


class MissingOperationData(TokenError):
    def __init__(self) -> None:
        super().__init__(
            "Request missing operation data, please check your platform supports async polling",
        )


class MalformedToken(TokenError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"operation data cannot be parsed: {detail}")


class MissingTaskID(TokenError):
    def __init__(self) -> None:
        super().__init__("no task ID found in operation data")


def generic_message(ctx: RequestContext) -> str:
    """Build the correlation-only message shown instead of raw errors."""

    message = (
        f"{GENERIC_ERROR_PREFIX} service: {ctx.service_name}, "
        f"service-instance-guid: {ctx.instance_id}, broker-request-id: {ctx.request_id}"
    )
    if ctx.task_id:
        message += f", task-id: {ctx.task_id}"
    if ctx.operation:
        message += f", operation: {ctx.operation}"
    return message


def backend_request_error(action: str, cause: str | BaseException) -> DisplayableError:
    """Transient backend failure the user may simply retry."""

    return DisplayableError(
        f"Currently unable to {action} service instance, please try again later",
        cause,
    )


def plan_not_found_error(plan_id: str) -> DisplayableError:
    return DisplayableError(f"plan {plan_id} not found", f"finding plan ID {plan_id}")
