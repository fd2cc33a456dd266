"""Interfaces of the external collaborators driven by the broker."""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from ondemand_broker.broker.context import RequestContext
from ondemand_broker.broker.models import Binding, DeployResult, Plan, Task


class BackendErrorKind(str, Enum):
    """Closed classification of deployment-backend failures."""

    REQUEST = "request"
    NOT_FOUND = "not_found"
    TASK_IN_PROGRESS = "task_in_progress"
    UNEXPECTED = "unexpected"


class BackendError(RuntimeError):
    """Deployment backend failure tagged with its kind."""

    def __init__(self, message: str, *, kind: BackendErrorKind) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind is BackendErrorKind.REQUEST


class AdapterErrorKind(str, Enum):
    """Closed classification of service-adapter failures."""

    ALREADY_EXISTS = "already_exists"
    BINDING_NOT_FOUND = "binding_not_found"
    APP_GUID_MISSING = "app_guid_missing"
    UNKNOWN = "unknown"
    NOT_IMPLEMENTED = "not_implemented"


class AdapterError(RuntimeError):
    """Service-adapter failure. An ``UNKNOWN`` message is user-facing when present."""

    def __init__(self, message: str = "", *, kind: AdapterErrorKind) -> None:
        super().__init__(message)
        self.kind = kind


class DeploymentBackend(Protocol):
    """Deployment automation backend reached through asynchronous tasks."""

    def get_deployment(self, name: str, *, ctx: RequestContext) -> str | None:
        """Return the deployment manifest, or ``None`` when it does not exist."""

    def submit_deploy(  # noqa: PLR0913
        self,
        name: str,
        plan_id: str,
        params: dict[str, Any],
        context_id: str,
        *,
        ctx: RequestContext,
        previous_plan_id: str | None = None,
        secrets: dict[str, str] | None = None,
    ) -> DeployResult:
        """Generate and submit a manifest, returning the deploy task."""

    def submit_recreate(self, name: str, context_id: str, *, ctx: RequestContext) -> int:
        """Recreate every VM of the deployment."""

    def submit_errand(
        self,
        name: str,
        errand_name: str,
        instances: tuple[str, ...],
        context_id: str,
        *,
        ctx: RequestContext,
    ) -> int:
        """Run an errand and return its task ID."""

    def submit_delete(
        self,
        name: str,
        context_id: str,
        *,
        ctx: RequestContext,
        force: bool = False,
    ) -> int:
        """Delete the deployment and return the delete task ID."""

    def get_task(self, task_id: int, *, ctx: RequestContext) -> Task:
        """Fetch one task by ID."""

    def get_tasks_by_context(self, name: str, context_id: str, *, ctx: RequestContext) -> list[Task]:
        """Fetch tasks sharing a context ID, oldest first."""

    def get_tasks_in_progress(self, name: str, *, ctx: RequestContext) -> list[Task]:
        """Fetch non-terminal tasks of a deployment."""

    def get_vms(self, name: str, *, ctx: RequestContext) -> dict[str, list[str]]:
        """Return instance-group name to VM addresses."""

    def get_variables(self, name: str, *, ctx: RequestContext) -> list[dict[str, str]]:
        """Return the deployment's credential variables."""

    def delete_configs(self, name: str, *, ctx: RequestContext) -> None:
        """Remove backend configs registered for the deployment."""


class InstanceCounter(Protocol):
    """Platform-side service instance counting."""

    def count_instances_of_plan(self, plan_id: str, *, ctx: RequestContext) -> int:
        """Count existing instances of one plan."""

    def count_instances_of_service_offering(self, *, ctx: RequestContext) -> dict[str, int]:
        """Count existing instances per plan ID across the offering."""


class ServiceAdapter(Protocol):
    """Service-specific adapter invoked for bindings and dashboards."""

    def create_binding(  # noqa: PLR0913
        self,
        binding_id: str,
        vms: dict[str, list[str]],
        manifest: str,
        params: dict[str, Any],
        secrets: dict[str, str],
    ) -> Binding:
        """Create credentials for one binding."""

    def delete_binding(  # noqa: PLR0913
        self,
        binding_id: str,
        vms: dict[str, list[str]],
        manifest: str,
        params: dict[str, Any],
        secrets: dict[str, str],
    ) -> None:
        """Revoke credentials for one binding."""

    def generate_dashboard_url(self, instance_id: str, plan: Plan, manifest: str) -> str:
        """Return the dashboard URL of a service instance."""


class SecretManager(Protocol):
    """Credential store holding secrets referenced from manifests."""

    def resolve_manifest_secrets(
        self,
        manifest: str,
        variables: list[dict[str, str]],
    ) -> dict[str, str]:
        """Resolve secret references in a manifest to their values."""

    def delete_secrets_for_instance(self, instance_id: str) -> None:
        """Remove every secret stored for the instance."""
