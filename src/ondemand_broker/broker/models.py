"""Domain models for broker operations and backend task state."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

INSTANCE_PREFIX = "service-instance_"


class OperationType(str, Enum):
    """Closed set of broker operations carried in continuation tokens."""

    CREATE = "create"
    UPDATE = "update"
    UPGRADE = "upgrade"
    DELETE = "delete"
    FORCE_DELETE = "force-delete"
    BIND = "bind"
    UNBIND = "unbind"
    RECREATE = "recreate"


POST_DEPLOY_OPERATIONS = frozenset(
    {
        OperationType.CREATE,
        OperationType.UPDATE,
        OperationType.UPGRADE,
        OperationType.RECREATE,
    },
)
PRE_DELETE_OPERATIONS = frozenset({OperationType.DELETE, OperationType.FORCE_DELETE})


class TaskState(str, Enum):
    """Raw task states reported by the deployment backend."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"
    CANCELLING = "cancelling"
    TIMEOUT = "timeout"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: str) -> TaskState:
        """Map a backend state string, keeping unknown values representable."""

        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.UNRECOGNIZED


class TaskStateType(str, Enum):
    """Coarse task outcome used by lifecycle decisions."""

    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    FAILED = "failed"
    UNKNOWN = "unknown"


_STATE_TYPES: dict[TaskState, TaskStateType] = {
    TaskState.QUEUED: TaskStateType.INCOMPLETE,
    TaskState.PROCESSING: TaskStateType.INCOMPLETE,
    TaskState.CANCELLING: TaskStateType.INCOMPLETE,
    TaskState.DONE: TaskStateType.COMPLETE,
    TaskState.ERROR: TaskStateType.FAILED,
    TaskState.CANCELLED: TaskStateType.FAILED,
    TaskState.TIMEOUT: TaskStateType.FAILED,
}


@dataclass(slots=True, frozen=True)
class Task:
    """Backend task snapshot. Owned by the backend, only ever polled."""

    id: int
    state: TaskState
    description: str = ""
    result: str = ""
    context_id: str = ""

    @property
    def state_type(self) -> TaskStateType:
        return _STATE_TYPES.get(self.state, TaskStateType.UNKNOWN)

    @property
    def is_complete(self) -> bool:
        return self.state_type is TaskStateType.COMPLETE

    def to_log(self) -> str:
        return f"{self.id}: {self.state.value} ({self.description})"


def incomplete_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Return tasks that have not reached a terminal state."""

    return [task for task in tasks if task.state_type is TaskStateType.INCOMPLETE]


def tasks_to_log(tasks: Iterable[Task]) -> str:
    return ", ".join(task.to_log() for task in tasks)


@dataclass(slots=True, frozen=True)
class Errand:
    """One-off job run against a deployment."""

    name: str
    instances: tuple[str, ...] = ()


@dataclass(slots=True)
class Quotas:
    """Instance-count and resource limits. Zero or absent means unlimited."""

    service_instance_limit: int | None = None
    resource_limits: dict[str, int] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.service_instance_limit) or any(self.resource_limits.values())


@dataclass(slots=True)
class LifecycleErrands:
    """Errands chained around deploy and delete for one plan."""

    post_deploy: Errand | None = None
    pre_delete: tuple[Errand, ...] = ()


@dataclass(slots=True)
class Plan:
    """Service plan as configured by the operator."""

    id: str
    name: str
    quotas: Quotas = field(default_factory=Quotas)
    resource_costs: dict[str, int] = field(default_factory=dict)
    lifecycle_errands: LifecycleErrands | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def post_deploy_errand(self) -> Errand | None:
        if self.lifecycle_errands is None:
            return None
        return self.lifecycle_errands.post_deploy

    @property
    def pre_delete_errands(self) -> tuple[Errand, ...]:
        if self.lifecycle_errands is None:
            return ()
        return self.lifecycle_errands.pre_delete


@dataclass(slots=True)
class ServiceOffering:
    """Service offering with its plans and offering-wide quotas."""

    id: str
    name: str
    plans: tuple[Plan, ...] = ()
    global_quotas: Quotas = field(default_factory=Quotas)
    global_properties: dict[str, Any] = field(default_factory=dict)

    def find_plan(self, plan_id: str) -> Plan | None:
        for plan in self.plans:
            if plan.id == plan_id:
                return plan
        return None


@dataclass(slots=True)
class OperationData:
    """Continuation token payload handed back to the platform between polls.

    ``pre_delete_errand`` is the legacy single-errand encoding; new tokens use
    ``pre_delete_errands``.
    """

    operation_type: OperationType
    task_id: int
    context_id: str = ""
    plan_id: str = ""
    post_deploy_errand: Errand | None = None
    pre_delete_errand: Errand | None = None
    pre_delete_errands: tuple[Errand, ...] = ()


class LastOperationState(str, Enum):
    """OSB last-operation states."""

    IN_PROGRESS = "in progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class LastOperation:
    state: LastOperationState
    description: str


@dataclass(slots=True)
class DeployResult:
    """Outcome of a deploy submission."""

    task_id: int
    manifest: str


@dataclass(slots=True)
class AsyncOperation:
    """Accepted asynchronous operation returned to the platform."""

    operation_data: str
    dashboard_url: str = ""
    is_async: bool = True


@dataclass(slots=True)
class Binding:
    credentials: dict[str, Any] = field(default_factory=dict)
    syslog_drain_url: str = ""
    route_service_url: str = ""
    backup_agent_url: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProvisionDetails:
    plan_id: str
    service_id: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UpdateDetails:
    plan_id: str
    previous_plan_id: str = ""
    service_id: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DeprovisionDetails:
    plan_id: str
    service_id: str = ""
    force: bool = False


@dataclass(slots=True)
class BindDetails:
    plan_id: str
    service_id: str = ""
    app_guid: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UnbindDetails:
    plan_id: str
    service_id: str = ""


def deployment_name(instance_id: str) -> str:
    return f"{INSTANCE_PREFIX}{instance_id}"
