"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from ondemand_broker.broker.backend.base import BackendError, BackendErrorKind
from ondemand_broker.broker.broker import Broker
from ondemand_broker.broker.context import RequestContext
from ondemand_broker.broker.models import (
    Binding,
    DeployResult,
    Errand,
    LifecycleErrands,
    Plan,
    Quotas,
    ServiceOffering,
    Task,
    TaskState,
)


class FakeBackend:
    """Deployment backend keeping tasks in memory, oldest first per context."""

    def __init__(self) -> None:
        self.deployments: dict[str, str] = {}
        self.tasks: dict[int, Task] = {}
        self.context_tasks: dict[tuple[str, str], list[int]] = {}
        self.in_progress: dict[str, list[Task]] = {}
        self.vms: dict[str, dict[str, list[str]]] = {}
        self.variables: dict[str, list[dict[str, str]]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, Any]] = []
        self.submitted_state = TaskState.PROCESSING
        self._next_task_id = 100

    def add_task(
        self,
        name: str,
        context_id: str = "",
        state: TaskState = TaskState.DONE,
        *,
        result: str = "",
    ) -> Task:
        task = Task(
            id=self._next_task_id,
            state=state,
            description=f"task {self._next_task_id}",
            result=result,
            context_id=context_id,
        )
        self._next_task_id += 1
        self.tasks[task.id] = task
        if context_id:
            self.context_tasks.setdefault((name, context_id), []).append(task.id)
        return task

    def get_deployment(self, name: str, *, ctx: RequestContext) -> str | None:
        self._record("get_deployment", name)
        return self.deployments.get(name)

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
        self._record(
            "submit_deploy",
            {
                "name": name,
                "plan_id": plan_id,
                "params": params,
                "context_id": context_id,
                "previous_plan_id": previous_plan_id,
                "secrets": secrets,
            },
        )
        task = self.add_task(name, context_id, self.submitted_state)
        manifest = f"name: {name}\nplan: {plan_id}\n"
        self.deployments[name] = manifest
        return DeployResult(task_id=task.id, manifest=manifest)

    def submit_recreate(self, name: str, context_id: str, *, ctx: RequestContext) -> int:
        self._record("submit_recreate", {"name": name, "context_id": context_id})
        return self.add_task(name, context_id, self.submitted_state).id

    def submit_errand(
        self,
        name: str,
        errand_name: str,
        instances: tuple[str, ...],
        context_id: str,
        *,
        ctx: RequestContext,
    ) -> int:
        self._record(
            "submit_errand",
            {"name": name, "errand": errand_name, "instances": instances, "context_id": context_id},
        )
        return self.add_task(name, context_id, self.submitted_state).id

    def submit_delete(
        self,
        name: str,
        context_id: str,
        *,
        ctx: RequestContext,
        force: bool = False,
    ) -> int:
        self._record("submit_delete", {"name": name, "context_id": context_id, "force": force})
        # Delete without errands uses its own context, which tokens do not track.
        tracked = context_id if not context_id.startswith("delete-") else ""
        return self.add_task(name, tracked, self.submitted_state).id

    def get_task(self, task_id: int, *, ctx: RequestContext) -> Task:
        self._record("get_task", task_id)
        try:
            return self.tasks[task_id]
        except KeyError as error:
            raise BackendError(f"task {task_id} not found", kind=BackendErrorKind.NOT_FOUND) from error

    def get_tasks_by_context(self, name: str, context_id: str, *, ctx: RequestContext) -> list[Task]:
        self._record("get_tasks_by_context", (name, context_id))
        return [self.tasks[task_id] for task_id in self.context_tasks.get((name, context_id), [])]

    def get_tasks_in_progress(self, name: str, *, ctx: RequestContext) -> list[Task]:
        self._record("get_tasks_in_progress", name)
        return list(self.in_progress.get(name, []))

    def get_vms(self, name: str, *, ctx: RequestContext) -> dict[str, list[str]]:
        self._record("get_vms", name)
        return self.vms.get(name, {"main": ["10.0.0.1"]})

    def get_variables(self, name: str, *, ctx: RequestContext) -> list[dict[str, str]]:
        self._record("get_variables", name)
        return self.variables.get(name, [])

    def delete_configs(self, name: str, *, ctx: RequestContext) -> None:
        self._record("delete_configs", name)

    def calls_to(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, args: Any) -> None:
        self.calls.append((method, args))
        error = self.errors.get(method)
        if error is not None:
            raise error


class FakeCounter:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.error: Exception | None = None
        self.calls: list[str] = []
        self.contexts: list[RequestContext] = []

    def count_instances_of_plan(self, plan_id: str, *, ctx: RequestContext) -> int:
        self.calls.append(f"plan:{plan_id}")
        self.contexts.append(ctx)
        if self.error is not None:
            raise self.error
        return self.counts.get(plan_id, 0)

    def count_instances_of_service_offering(self, *, ctx: RequestContext) -> dict[str, int]:
        self.calls.append("offering")
        self.contexts.append(ctx)
        if self.error is not None:
            raise self.error
        return dict(self.counts)


class FakeAdapter:
    def __init__(self) -> None:
        self.binding = Binding(credentials={"user": "admin", "password": "secret"})
        self.dashboard_url = "https://dashboard.example.com/instance"
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, Any]] = []

    def create_binding(  # noqa: PLR0913
        self,
        binding_id: str,
        vms: dict[str, list[str]],
        manifest: str,
        params: dict[str, Any],
        secrets: dict[str, str],
    ) -> Binding:
        self._record("create_binding", (binding_id, vms, manifest, params, secrets))
        return self.binding

    def delete_binding(  # noqa: PLR0913
        self,
        binding_id: str,
        vms: dict[str, list[str]],
        manifest: str,
        params: dict[str, Any],
        secrets: dict[str, str],
    ) -> None:
        self._record("delete_binding", (binding_id, vms, manifest, params, secrets))

    def generate_dashboard_url(self, instance_id: str, plan: Plan, manifest: str) -> str:
        self._record("generate_dashboard_url", (instance_id, plan.id))
        return self.dashboard_url

    def _record(self, method: str, args: Any) -> None:
        self.calls.append((method, args))
        error = self.errors.get(method)
        if error is not None:
            raise error


class FakeSecretManager:
    def __init__(self) -> None:
        self.secrets: dict[str, str] = {"/admin_password": "hunter2"}
        self.resolve_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.deleted: list[str] = []

    def resolve_manifest_secrets(
        self,
        manifest: str,
        variables: list[dict[str, str]],
    ) -> dict[str, str]:
        if self.resolve_error is not None:
            raise self.resolve_error
        return dict(self.secrets)

    def delete_secrets_for_instance(self, instance_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(instance_id)


def make_plan(  # noqa: PLR0913
    plan_id: str,
    *,
    instance_limit: int | None = None,
    resource_limits: dict[str, int] | None = None,
    resource_costs: dict[str, int] | None = None,
    post_deploy: Errand | None = None,
    pre_delete: tuple[Errand, ...] = (),
) -> Plan:
    errands = None
    if post_deploy is not None or pre_delete:
        errands = LifecycleErrands(post_deploy=post_deploy, pre_delete=pre_delete)
    return Plan(
        id=plan_id,
        name=f"{plan_id}-name",
        quotas=Quotas(
            service_instance_limit=instance_limit,
            resource_limits=resource_limits or {},
        ),
        resource_costs=resource_costs or {},
        lifecycle_errands=errands,
    )


def make_offering(*plans: Plan, global_quotas: Quotas | None = None) -> ServiceOffering:
    return ServiceOffering(
        id="service-id",
        name="redis",
        plans=plans or (make_plan("p1"),),
        global_quotas=global_quotas or Quotas(),
    )


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def counter() -> FakeCounter:
    return FakeCounter()


@pytest.fixture()
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture()
def secret_manager() -> FakeSecretManager:
    return FakeSecretManager()


@pytest.fixture()
def ctx() -> RequestContext:
    return RequestContext.new(
        service_name="redis",
        instance_id="i1",
        operation="create",
        request_id="req-1",
    )


@pytest.fixture()
def make_broker(
    backend: FakeBackend,
    counter: FakeCounter,
    adapter: FakeAdapter,
    secret_manager: FakeSecretManager,
) -> Callable[..., Broker]:
    def _make(offering: ServiceOffering | None = None, **kwargs: Any) -> Broker:
        return Broker(
            backend=backend,
            counter=counter,
            adapter=adapter,
            secret_manager=secret_manager,
            service_offering=offering or make_offering(),
            **kwargs,
        )

    return _make
