"""OSB verbs composed from the backend client, quota engine and lifecycle runner."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

from ondemand_broker.broker.backend.base import (
    AdapterError,
    AdapterErrorKind,
    BackendError,
    DeploymentBackend,
    InstanceCounter,
    SecretManager,
    ServiceAdapter,
)
from ondemand_broker.broker.classifier import classify_error
from ondemand_broker.broker.context import RequestContext
from ondemand_broker.broker.contracts import decode_operation_data, encode_operation_data
from ondemand_broker.broker.errors import (
    BrokerError,
    DisplayableError,
    GenericError,
    OperationInProgressError,
    OsbError,
    OsbErrorCode,
    TokenError,
    plan_not_found_error,
)
from ondemand_broker.broker.lifecycle_runner import LifecycleRunner
from ondemand_broker.broker.locks import InstanceLockRegistry
from ondemand_broker.broker.models import (
    PRE_DELETE_OPERATIONS,
    AsyncOperation,
    BindDetails,
    Binding,
    DeprovisionDetails,
    LastOperation,
    LastOperationState,
    OperationData,
    OperationType,
    Plan,
    ProvisionDetails,
    ServiceOffering,
    Task,
    TaskStateType,
    UnbindDetails,
    UpdateDetails,
    deployment_name,
    incomplete_tasks,
    tasks_to_log,
)
from ondemand_broker.broker.quotas import check_quotas

_DESCRIPTIONS: dict[LastOperationState, dict[OperationType, str]] = {
    LastOperationState.IN_PROGRESS: {
        OperationType.CREATE: "Instance provisioning in progress",
        OperationType.UPDATE: "Instance update in progress",
        OperationType.UPGRADE: "Instance upgrade in progress",
        OperationType.DELETE: "Instance deletion in progress",
        OperationType.FORCE_DELETE: "Instance forced deletion in progress",
        OperationType.RECREATE: "Instance recreate in progress",
    },
    LastOperationState.SUCCEEDED: {
        OperationType.CREATE: "Instance provisioning completed",
        OperationType.UPDATE: "Instance update completed",
        OperationType.UPGRADE: "Instance upgrade completed",
        OperationType.DELETE: "Instance deletion completed",
        OperationType.FORCE_DELETE: "Instance forced deletion completed",
        OperationType.RECREATE: "Instance recreate completed",
    },
    LastOperationState.FAILED: {
        OperationType.CREATE: "Instance provisioning failed",
        OperationType.UPDATE: "Instance update failed",
        OperationType.UPGRADE: "Failed for backend task",
        OperationType.DELETE: "Instance deletion failed",
        OperationType.FORCE_DELETE: "Instance forced deletion failed",
        OperationType.RECREATE: "Instance recreate failed",
    },
}

_TASK_STATES: dict[TaskStateType, LastOperationState] = {
    TaskStateType.INCOMPLETE: LastOperationState.IN_PROGRESS,
    TaskStateType.COMPLETE: LastOperationState.SUCCEEDED,
    TaskStateType.FAILED: LastOperationState.FAILED,
}


class Broker:
    """Stateless OSB control plane for on-demand service instances.

    The only in-process state is the pair of lock registries. Progress of
    multi-step operations lives in the backend's task history and in the
    continuation token handed back to the platform.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: DeploymentBackend,
        counter: InstanceCounter,
        adapter: ServiceAdapter,
        secret_manager: SecretManager,
        service_offering: ServiceOffering,
        expose_operational_errors: bool = False,
        disable_backend_configs: bool = False,
    ) -> None:
        self.backend = backend
        self.counter = counter
        self.adapter = adapter
        self.secret_manager = secret_manager
        self.service_offering = service_offering
        self.expose_operational_errors = expose_operational_errors
        self.disable_backend_configs = disable_backend_configs
        self.instance_locks = InstanceLockRegistry("instance")
        self.binding_locks = InstanceLockRegistry("binding")
        self._runner = LifecycleRunner(backend, service_offering.plans)

    def provision(
        self,
        instance_id: str,
        details: ProvisionDetails,
        async_allowed: bool,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> AsyncOperation:
        ctx = self._context(instance_id, OperationType.CREATE, request_id, deadline)
        with self._surfacing(ctx):
            _require_async(async_allowed)
            with self.instance_locks.hold(instance_id):
                return self._provision(ctx, instance_id, details)

    def update(
        self,
        instance_id: str,
        details: UpdateDetails,
        async_allowed: bool,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> AsyncOperation:
        ctx = self._context(instance_id, OperationType.UPDATE, request_id, deadline)
        with self._surfacing(ctx):
            _require_async(async_allowed)
            with self.instance_locks.hold(instance_id):
                return self._update(ctx, instance_id, details)

    def upgrade(
        self,
        instance_id: str,
        details: UpdateDetails,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> AsyncOperation:
        """Redeploy an instance with the current plan definition."""

        ctx = self._context(instance_id, OperationType.UPGRADE, request_id, deadline)
        with self._surfacing(ctx), self.instance_locks.hold(instance_id):
            return self._upgrade(ctx, instance_id, details)

    def recreate(
        self,
        instance_id: str,
        plan_id: str,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> AsyncOperation:
        """Recreate every VM of an instance without changing its manifest."""

        ctx = self._context(instance_id, OperationType.RECREATE, request_id, deadline)
        with self._surfacing(ctx), self.instance_locks.hold(instance_id):
            return self._recreate(ctx, instance_id, plan_id)

    def deprovision(
        self,
        instance_id: str,
        details: DeprovisionDetails,
        async_allowed: bool,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> AsyncOperation:
        operation = OperationType.FORCE_DELETE if details.force else OperationType.DELETE
        ctx = self._context(instance_id, operation, request_id, deadline)
        with self._surfacing(ctx):
            _require_async(async_allowed)
            with self.instance_locks.hold(instance_id):
                return self._deprovision(ctx, instance_id, details, operation)

    def last_operation(
        self,
        instance_id: str,
        operation_data: str,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> LastOperation:
        """Report progress of an operation, advancing its errand chain if needed."""

        ctx = RequestContext.new(
            service_name=self.service_offering.name,
            instance_id=instance_id,
            request_id=request_id,
            deadline=deadline,
        )
        with self._surfacing(ctx):
            return self._last_operation(ctx, instance_id, operation_data)

    def bind(
        self,
        instance_id: str,
        binding_id: str,
        details: BindDetails,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> Binding:
        ctx = self._context(instance_id, OperationType.BIND, request_id, deadline)
        with self._surfacing(ctx), self.binding_locks.hold((instance_id, binding_id)):
            return self._bind(ctx, instance_id, binding_id, details)

    def unbind(
        self,
        instance_id: str,
        binding_id: str,
        details: UnbindDetails,
        *,
        request_id: str | None = None,
        deadline: float | None = None,
    ) -> None:
        ctx = self._context(instance_id, OperationType.UNBIND, request_id, deadline)
        with self._surfacing(ctx), self.binding_locks.hold((instance_id, binding_id)):
            self._unbind(ctx, instance_id, binding_id, details)

    def _provision(
        self,
        ctx: RequestContext,
        instance_id: str,
        details: ProvisionDetails,
    ) -> AsyncOperation:
        plan = self._find_plan(details.plan_id)
        name = deployment_name(instance_id)

        try:
            manifest = self.backend.get_deployment(name, ctx=ctx)
        except BackendError as error:
            raise self._classified(ctx, "create", error, detail="could not get manifest") from error
        if manifest is not None:
            raise DisplayableError(
                OsbError(OsbErrorCode.INSTANCE_ALREADY_EXISTS),
                f"deploying instance {instance_id}",
            )

        self._check_quotas(ctx, plan, action="create")

        context_id = str(uuid4()) if plan.lifecycle_errands is not None else ""
        try:
            result = self.backend.submit_deploy(
                name,
                plan.id,
                details.parameters,
                context_id,
                ctx=ctx,
            )
        except (BackendError, AdapterError) as error:
            raise self._classified(ctx, "create", error) from error

        ctx = ctx.with_task_id(result.task_id)
        ctx.logger().info("backend task id for create instance %s was %d", instance_id, result.task_id)
        dashboard_url = self._dashboard_url(ctx, instance_id, plan, result.manifest)
        token = self._post_deploy_token(OperationType.CREATE, result.task_id, context_id, plan)
        return AsyncOperation(operation_data=token, dashboard_url=dashboard_url)

    def _update(
        self,
        ctx: RequestContext,
        instance_id: str,
        details: UpdateDetails,
    ) -> AsyncOperation:
        plan = self._find_plan(details.plan_id)
        name = deployment_name(instance_id)

        if details.previous_plan_id != plan.id:
            self._check_quotas(ctx, plan, action="update")

        secrets = self._manifest_secrets(ctx, name)
        context_id = str(uuid4()) if plan.post_deploy_errand is not None else ""
        ctx.logger().info("updating instance %s", instance_id)
        try:
            result = self.backend.submit_deploy(
                name,
                plan.id,
                details.parameters,
                context_id,
                ctx=ctx,
                previous_plan_id=details.previous_plan_id or None,
                secrets=secrets,
            )
        except (BackendError, AdapterError) as error:
            raise self._classified(
                ctx,
                "update",
                error,
                detail="error deploying instance",
            ) from error

        token = self._post_deploy_token(OperationType.UPDATE, result.task_id, context_id, plan)
        return AsyncOperation(operation_data=token)

    def _upgrade(
        self,
        ctx: RequestContext,
        instance_id: str,
        details: UpdateDetails,
    ) -> AsyncOperation:
        if not details.plan_id:
            raise DisplayableError(
                "no plan ID provided in upgrade request body",
                f"upgrading instance {instance_id} without a plan ID",
            )
        plan = self._find_plan(details.plan_id)
        name = deployment_name(instance_id)

        self._check_quotas(ctx, plan, action="upgrade")

        context_id = str(uuid4()) if plan.post_deploy_errand is not None else ""
        ctx.logger().info("upgrading instance %s", instance_id)
        try:
            result = self.backend.submit_deploy(
                name,
                plan.id,
                details.parameters,
                context_id,
                ctx=ctx,
                previous_plan_id=plan.id,
            )
        except (BackendError, AdapterError) as error:
            raise self._classified(
                ctx,
                "upgrade",
                error,
                detail="error deploying instance",
            ) from error

        ctx = ctx.with_task_id(result.task_id)
        dashboard_url = self._dashboard_url(ctx, instance_id, plan, result.manifest)
        token = self._post_deploy_token(OperationType.UPGRADE, result.task_id, context_id, plan)
        return AsyncOperation(operation_data=token, dashboard_url=dashboard_url)

    def _recreate(self, ctx: RequestContext, instance_id: str, plan_id: str) -> AsyncOperation:
        plan = self._find_plan(plan_id)
        name = deployment_name(instance_id)

        try:
            manifest = self.backend.get_deployment(name, ctx=ctx)
        except BackendError as error:
            raise self._classified(
                ctx,
                "recreate",
                error,
                detail="could not get manifest",
            ) from error
        if manifest is None:
            raise DisplayableError(
                OsbError(OsbErrorCode.INSTANCE_DOES_NOT_EXIST),
                f"error recreating: instance {instance_id}, not found",
            )

        context_id = str(uuid4()) if plan.post_deploy_errand is not None else ""
        try:
            task_id = self.backend.submit_recreate(name, context_id, ctx=ctx)
        except BackendError as error:
            raise self._classified(
                ctx,
                "recreate",
                error,
                detail="error recreating instance",
            ) from error

        token = self._post_deploy_token(OperationType.RECREATE, task_id, context_id, plan)
        return AsyncOperation(operation_data=token)

    def _deprovision(
        self,
        ctx: RequestContext,
        instance_id: str,
        details: DeprovisionDetails,
        operation: OperationType,
    ) -> AsyncOperation:
        name = deployment_name(instance_id)

        try:
            manifest = self.backend.get_deployment(name, ctx=ctx)
        except BackendError as error:
            raise self._classified(
                ctx,
                "delete",
                error,
                detail=f"error deprovisioning: cannot get deployment {name}",
            ) from error
        if manifest is None:
            self._clean_up_orphan(ctx, instance_id)
            raise DisplayableError(
                OsbError(OsbErrorCode.INSTANCE_DOES_NOT_EXIST),
                f"error deprovisioning: instance {instance_id}, not found",
            )

        self._assert_no_operations_in_progress(ctx, name)

        # A plan removed from the catalog must not block deletion.
        plan = self.service_offering.find_plan(details.plan_id)
        errands = plan.pre_delete_errands if plan is not None else ()
        if errands:
            context_id = str(uuid4())
            first = errands[0]
            ctx.logger().info("running pre-delete errand %s for instance %s", first.name, instance_id)
            try:
                task_id = self.backend.submit_errand(
                    name,
                    first.name,
                    first.instances,
                    context_id,
                    ctx=ctx,
                )
            except BackendError as error:
                raise self._classified(ctx, "delete", error) from error
            data = OperationData(
                operation_type=operation,
                task_id=task_id,
                context_id=context_id,
                pre_delete_errands=errands,
            )
            return AsyncOperation(operation_data=encode_operation_data(data))

        ctx.logger().info("deleting deployment for instance %s", instance_id)
        try:
            task_id = self.backend.submit_delete(
                name,
                f"delete-{instance_id}",
                ctx=ctx,
                force=operation is OperationType.FORCE_DELETE,
            )
        except BackendError as error:
            raise self._classified(
                ctx,
                "delete",
                error,
                detail="error deprovisioning: deleting deployment",
            ) from error
        ctx.logger().info("backend task id for delete instance %s was %d", instance_id, task_id)
        data = OperationData(operation_type=operation, task_id=task_id)
        return AsyncOperation(operation_data=encode_operation_data(data))

    def _last_operation(
        self,
        ctx: RequestContext,
        instance_id: str,
        raw: str,
    ) -> LastOperation:
        try:
            operation_data = decode_operation_data(raw)
        except TokenError as error:
            raise GenericError(ctx, error) from error

        ctx = ctx.with_operation(operation_data.operation_type.value).with_task_id(
            operation_data.task_id,
        )
        name = deployment_name(instance_id)
        try:
            task = self._runner.get_task(name, operation_data, ctx=ctx)
        except Exception as error:  # noqa: BLE001
            raise GenericError(
                ctx,
                f"error retrieving tasks from backend, for deployment '{name}': {error}",
            ) from error

        operation = operation_data.operation_type
        if operation in PRE_DELETE_OPERATIONS and task.is_complete:
            try:
                self._delete_configs_and_secrets(ctx, instance_id)
            except Exception as error:  # noqa: BLE001
                ctx.logger().error(
                    "failed to clean up after deleting instance %s: %s",
                    instance_id,
                    error,
                )
                return self._describe(ctx.with_task_id(0), LastOperationState.FAILED, task, operation)

        ctx = ctx.with_task_id(task.id)
        state = _TASK_STATES.get(task.state_type)
        if state is None:
            ctx.logger().warning("unrecognised backend task state: %s", task.state.value)
            state = LastOperationState.FAILED
        ctx.logger().info(
            "backend task ID %d status: %s %s deployment for instance %s: "
            "Description: %s Result: %s",
            task.id,
            task.state.value,
            operation.value,
            instance_id,
            task.description,
            task.result,
        )
        return self._describe(ctx, state, task, operation)

    def _bind(
        self,
        ctx: RequestContext,
        instance_id: str,
        binding_id: str,
        details: BindDetails,
    ) -> Binding:
        name = deployment_name(instance_id)
        manifest, vms = self._deployment_info(ctx, instance_id, action="bind")
        secrets = self._best_effort_secrets(ctx, name, manifest)

        params: dict[str, Any] = {
            "plan_id": details.plan_id,
            "service_id": details.service_id,
            "app_guid": details.app_guid,
            "parameters": details.parameters,
        }
        ctx.logger().info(
            "service adapter will create binding with ID %s for instance %s",
            binding_id,
            instance_id,
        )
        try:
            return self.adapter.create_binding(binding_id, vms, manifest, params, secrets)
        except AdapterError as error:
            ctx.logger().info("creating binding: %s", error)
            raise self._classified(ctx, "bind", error) from error

    def _unbind(
        self,
        ctx: RequestContext,
        instance_id: str,
        binding_id: str,
        details: UnbindDetails,
    ) -> None:
        name = deployment_name(instance_id)
        manifest, vms = self._deployment_info(ctx, instance_id, action="unbind")
        secrets = self._best_effort_secrets(ctx, name, manifest)

        params: dict[str, Any] = {"plan_id": details.plan_id, "service_id": details.service_id}
        ctx.logger().info(
            "service adapter will delete binding with ID %s for instance %s",
            binding_id,
            instance_id,
        )
        try:
            self.adapter.delete_binding(binding_id, vms, manifest, params, secrets)
        except AdapterError as error:
            ctx.logger().info("delete binding: %s", error)
            raise self._classified(ctx, "unbind", error) from error

    def _context(
        self,
        instance_id: str,
        operation: OperationType,
        request_id: str | None,
        deadline: float | None,
    ) -> RequestContext:
        return RequestContext.new(
            service_name=self.service_offering.name,
            instance_id=instance_id,
            operation=operation.value,
            request_id=request_id,
            deadline=deadline,
        )

    @contextmanager
    def _surfacing(self, ctx: RequestContext) -> Iterator[None]:
        """Log every surfaced error once, with correlation data."""

        try:
            yield
        except Exception as error:  # noqa: BLE001
            if isinstance(error, BrokerError):
                surfaced = error
            else:
                surfaced = self._classified(ctx, ctx.operation or "operation", error)
            ctx.logger().error("%s", surfaced)
            if self.expose_operational_errors and isinstance(surfaced, DisplayableError):
                exposed = DisplayableError(surfaced.extended_user_message(), surfaced.operator_error)
                exposed.status = surfaced.status
                raise exposed from error
            if surfaced is error:
                raise
            raise surfaced from error

    def _classified(
        self,
        ctx: RequestContext,
        action: str,
        error: Exception,
        *,
        detail: str = "",
    ) -> BrokerError:
        classification = classify_error(ctx, action, error, detail=detail)
        ctx.logger().info("%s failure classified: %s", action, classification.to_log_details())
        return classification.error

    def _find_plan(self, plan_id: str) -> Plan:
        plan = self.service_offering.find_plan(plan_id)
        if plan is None:
            raise plan_not_found_error(plan_id)
        return plan

    def _check_quotas(self, ctx: RequestContext, plan: Plan, *, action: str) -> None:
        global_quotas = self.service_offering.global_quotas
        try:
            if global_quotas.configured:
                counts = self.counter.count_instances_of_service_offering(ctx=ctx)
            elif plan.quotas.configured:
                counts = {plan.id: self.counter.count_instances_of_plan(plan.id, ctx=ctx)}
            else:
                return
        except Exception as error:  # noqa: BLE001
            raise self._classified(
                ctx,
                action,
                error,
                detail="could not count service instances",
            ) from error

        check_quotas(
            plan,
            self.service_offering.plans,
            counts,
            global_quotas,
            self.service_offering.id,
        )

    def _dashboard_url(
        self,
        ctx: RequestContext,
        instance_id: str,
        plan: Plan,
        manifest: str,
    ) -> str:
        try:
            return self.adapter.generate_dashboard_url(instance_id, plan, manifest)
        except AdapterError as error:
            if error.kind is AdapterErrorKind.NOT_IMPLEMENTED:
                ctx.logger().debug("service adapter does not generate dashboard URLs")
            else:
                ctx.logger().warning("generating dashboard: %s", error)
        except Exception as error:  # noqa: BLE001
            ctx.logger().warning("generating dashboard: %s", error)
        return ""

    def _post_deploy_token(
        self,
        operation: OperationType,
        task_id: int,
        context_id: str,
        plan: Plan,
    ) -> str:
        data = OperationData(operation_type=operation, task_id=task_id)
        if context_id:
            data.context_id = context_id
            data.plan_id = plan.id
            data.post_deploy_errand = plan.post_deploy_errand
        return encode_operation_data(data)

    def _manifest_secrets(self, ctx: RequestContext, name: str) -> dict[str, str]:
        try:
            manifest = self.backend.get_deployment(name, ctx=ctx) or ""
            variables = self.backend.get_variables(name, ctx=ctx)
            return self.secret_manager.resolve_manifest_secrets(manifest, variables)
        except Exception as error:  # noqa: BLE001
            raise GenericError(ctx, f"could not resolve manifest secrets: {error}") from error

    def _best_effort_secrets(self, ctx: RequestContext, name: str, manifest: str) -> dict[str, str]:
        try:
            variables = self.backend.get_variables(name, ctx=ctx)
        except BackendError as error:
            ctx.logger().warning(
                "failed to retrieve deployment variables for deployment '%s': %s",
                name,
                error,
            )
            variables = []
        try:
            return self.secret_manager.resolve_manifest_secrets(manifest, variables)
        except Exception as error:  # noqa: BLE001
            ctx.logger().warning("failed to resolve manifest secrets: %s", error)
            return {}

    def _deployment_info(
        self,
        ctx: RequestContext,
        instance_id: str,
        *,
        action: str,
    ) -> tuple[str, dict[str, list[str]]]:
        name = deployment_name(instance_id)
        try:
            manifest = self.backend.get_deployment(name, ctx=ctx)
            if manifest is None:
                raise DisplayableError(
                    OsbError(OsbErrorCode.INSTANCE_DOES_NOT_EXIST),
                    f"error {action}ing: instance {instance_id}, not found",
                )
            vms = self.backend.get_vms(name, ctx=ctx)
        except BackendError as error:
            raise self._classified(
                ctx,
                action,
                error,
                detail=f"gathering {action}ing info",
            ) from error
        return manifest, vms

    def _assert_no_operations_in_progress(self, ctx: RequestContext, name: str) -> None:
        try:
            tasks = self.backend.get_tasks_in_progress(name, ctx=ctx)
        except BackendError as error:
            raise self._classified(
                ctx,
                "delete",
                error,
                detail=f"error deprovisioning: cannot get tasks for deployment {name}",
            ) from error
        in_progress = incomplete_tasks(tasks)
        if in_progress:
            raise OperationInProgressError(
                f"error deprovisioning: deployment {name} is still in progress: "
                f"tasks {tasks_to_log(in_progress)}",
            )

    def _clean_up_orphan(self, ctx: RequestContext, instance_id: str) -> None:
        ctx.logger().info("cleaning up records of missing instance %s", instance_id)
        try:
            self._delete_configs_and_secrets(ctx, instance_id)
        except Exception as error:  # noqa: BLE001
            raise self._classified(
                ctx,
                "delete",
                error,
                detail=f"error deprovisioning: failed to clean up records of instance {instance_id}",
            ) from error

    def _delete_configs_and_secrets(self, ctx: RequestContext, instance_id: str) -> None:
        if not self.disable_backend_configs:
            self.backend.delete_configs(deployment_name(instance_id), ctx=ctx)
        self.secret_manager.delete_secrets_for_instance(instance_id)

    def _describe(
        self,
        ctx: RequestContext,
        state: LastOperationState,
        task: Task,
        operation: OperationType,
    ) -> LastOperation:
        description = _DESCRIPTIONS[state].get(operation, "")
        if state is LastOperationState.FAILED:
            if operation is OperationType.UPGRADE:
                description = f"{description}: {task.id}"
            else:
                description = f"{description}: {GenericError(ctx, None).user_message}"
            if self.expose_operational_errors:
                description = f"{description}, error-message: {task.result}"
        return LastOperation(state=state, description=description)


def _require_async(async_allowed: bool) -> None:
    if not async_allowed:
        raise OsbError(OsbErrorCode.ASYNC_REQUIRED)
