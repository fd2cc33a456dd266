"""Advance post-deploy and pre-delete errand chains from backend task history.

The broker keeps no workflow state between polls. The number of backend tasks
sharing a context ID tells the runner how far the chain has progressed, so
polling the same token repeatedly submits each step at most once.
"""

from __future__ import annotations

from collections.abc import Iterable

from ondemand_broker.broker.backend.base import DeploymentBackend
from ondemand_broker.broker.context import RequestContext
from ondemand_broker.broker.models import (
    POST_DEPLOY_OPERATIONS,
    PRE_DELETE_OPERATIONS,
    Errand,
    OperationData,
    OperationType,
    Plan,
    Task,
    TaskStateType,
)

_POST_DEPLOY_MAX_TASKS = 2


class LifecycleError(RuntimeError):
    """Backend task history does not match the expected errand chain."""


class LifecycleRunner:
    """Reconstructs the current task of an operation and submits the next step."""

    def __init__(self, backend: DeploymentBackend, plans: Iterable[Plan]) -> None:
        self._backend = backend
        self._plans = {plan.id: plan for plan in plans}

    def get_task(
        self,
        deployment_name: str,
        operation_data: OperationData,
        *,
        ctx: RequestContext,
    ) -> Task:
        """Return the task that currently represents the operation's progress."""

        if not operation_data.context_id:
            return self._backend.get_task(operation_data.task_id, ctx=ctx)
        if operation_data.operation_type in POST_DEPLOY_OPERATIONS:
            return self._process_post_deploy(deployment_name, operation_data, ctx=ctx)
        if operation_data.operation_type in PRE_DELETE_OPERATIONS:
            return self._process_pre_delete(deployment_name, operation_data, ctx=ctx)
        return self._backend.get_task(operation_data.task_id, ctx=ctx)

    def _process_post_deploy(
        self,
        deployment_name: str,
        operation_data: OperationData,
        *,
        ctx: RequestContext,
    ) -> Task:
        log = ctx.logger()
        tasks = self._tasks_for_context(deployment_name, operation_data, ctx=ctx)

        if len(tasks) > _POST_DEPLOY_MAX_TASKS:
            raise LifecycleError(
                f"unexpected tasks found with context id: {operation_data.context_id}, "
                f"tasks: {', '.join(task.to_log() for task in tasks)}",
            )
        if len(tasks) == _POST_DEPLOY_MAX_TASKS:
            return tasks[-1]

        deploy_task = tasks[0]
        if deploy_task.state_type is not TaskStateType.COMPLETE:
            return deploy_task

        errand = operation_data.post_deploy_errand
        if errand is None and operation_data.plan_id:
            plan = self._plans.get(operation_data.plan_id)
            if plan is None:
                log.warning(
                    "plan %s not found, skipping post-deploy errand",
                    operation_data.plan_id,
                )
                return deploy_task
            errand = plan.post_deploy_errand
            if errand is None:
                log.info("plan %s has no post-deploy errand configured", plan.id)
                return deploy_task
        if errand is None:
            log.info(
                "can't determine lifecycle errands, neither plan ID nor post-deploy errand is present",
            )
            return deploy_task

        return self._run_errand(deployment_name, errand, operation_data.context_id, ctx=ctx)

    def _process_pre_delete(
        self,
        deployment_name: str,
        operation_data: OperationData,
        *,
        ctx: RequestContext,
    ) -> Task:
        tasks = self._tasks_for_context(deployment_name, operation_data, ctx=ctx)
        current = tasks[-1]
        if not self._current_task_settled(current, operation_data.operation_type, ctx=ctx):
            return current

        errands = operation_data.pre_delete_errands
        if len(tasks) == len(errands) or _is_legacy_pre_delete(tasks, operation_data):
            ctx.logger().info("pre-delete errands finished, deleting %s", deployment_name)
            task_id = self._backend.submit_delete(
                deployment_name,
                operation_data.context_id,
                ctx=ctx,
                force=operation_data.operation_type is OperationType.FORCE_DELETE,
            )
            return self._backend.get_task(task_id, ctx=ctx)

        if len(tasks) > len(errands):
            return current

        return self._run_errand(
            deployment_name,
            errands[len(tasks)],
            operation_data.context_id,
            ctx=ctx,
        )

    def _tasks_for_context(
        self,
        deployment_name: str,
        operation_data: OperationData,
        *,
        ctx: RequestContext,
    ) -> list[Task]:
        tasks = self._backend.get_tasks_by_context(
            deployment_name,
            operation_data.context_id,
            ctx=ctx,
        )
        if not tasks:
            raise LifecycleError(f"no tasks found for context id: {operation_data.context_id}")
        return tasks

    def _current_task_settled(
        self,
        task: Task,
        operation_type: OperationType,
        *,
        ctx: RequestContext,
    ) -> bool:
        state_type = task.state_type
        if state_type is TaskStateType.FAILED and operation_type is OperationType.FORCE_DELETE:
            ctx.logger().info(
                "pre-delete errand failed during %r, continuing to next operation",
                operation_type.value,
            )
            return True
        return state_type is TaskStateType.COMPLETE

    def _run_errand(
        self,
        deployment_name: str,
        errand: Errand,
        context_id: str,
        *,
        ctx: RequestContext,
    ) -> Task:
        ctx.logger().info("submitting errand %s for %s", errand.name, deployment_name)
        task_id = self._backend.submit_errand(
            deployment_name,
            errand.name,
            errand.instances,
            context_id,
            ctx=ctx,
        )
        return self._backend.get_task(task_id, ctx=ctx)


def _is_legacy_pre_delete(tasks: list[Task], operation_data: OperationData) -> bool:
    # Compatibility with tokens issued before the errand list existed.
    # Removable once no such token can still be polled.
    return len(tasks) == 1 and operation_data.pre_delete_errand is not None
