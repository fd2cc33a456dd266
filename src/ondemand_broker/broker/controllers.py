"""Controllers for broker operator CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ondemand_broker.broker.backend.director_client import DirectorClient
from ondemand_broker.broker.context import RequestContext
from ondemand_broker.broker.contracts import decode_operation_data
from ondemand_broker.broker.errors import TokenError
from ondemand_broker.broker.models import Errand, deployment_name
from ondemand_broker.broker.quotas import quota_violations
from ondemand_broker.config import Settings, load_service_offering


@dataclass(slots=True)
class TokenInspectCommand:
    """CLI input for continuation token inspection."""

    token: str


@dataclass(slots=True)
class CatalogCheckCommand:
    """CLI input for catalog validation."""

    catalog_path: Path | None


@dataclass(slots=True)
class QuotaCheckCommand:
    """CLI input for an offline quota evaluation."""

    catalog_path: Path | None
    plan_id: str
    counts: tuple[str, ...]


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for listing director tasks of one instance."""

    instance_id: str
    context_id: str | None


@dataclass(slots=True)
class CheckResult:
    lines: list[str]
    success: bool


class BrokerCliController:
    """Coordinates operator-facing inspection commands."""

    def inspect_token(self, command: TokenInspectCommand) -> CheckResult:
        try:
            data = decode_operation_data(command.token)
        except TokenError as error:
            return CheckResult(lines=[f"Invalid token: {error}"], success=False)

        lines = [
            f"Operation: {data.operation_type.value}",
            f"Task ID: {data.task_id}",
            f"Context ID: {data.context_id or '-'}",
            f"Plan ID: {data.plan_id or '-'}",
        ]
        if data.post_deploy_errand is not None:
            lines.append(f"Post-deploy errand: {_errand_label(data.post_deploy_errand)}")
        if data.pre_delete_errand is not None:
            lines.append(f"Pre-delete errand (legacy): {_errand_label(data.pre_delete_errand)}")
        for position, errand in enumerate(data.pre_delete_errands, start=1):
            lines.append(f"Pre-delete errand {position}: {_errand_label(errand)}")
        return CheckResult(lines=lines, success=True)

    def check_catalog(self, command: CatalogCheckCommand) -> CheckResult:
        settings = Settings.from_env(catalog_path=command.catalog_path)
        path = settings.broker.catalog_path
        try:
            offering = load_service_offering(path)
        except ValueError as error:
            return CheckResult(lines=[f"Catalog {path} is invalid:", str(error)], success=False)

        lines = [f"Catalog {path}: service {offering.name} ({offering.id})"]
        global_quotas = offering.global_quotas
        if global_quotas.configured:
            lines.append(
                "Global quotas: "
                f"instances={global_quotas.service_instance_limit or 'unlimited'} "
                f"resources={_format_limits(global_quotas.resource_limits)}",
            )
        for plan in offering.plans:
            lines.append(
                f"- plan {plan.name} ({plan.id}): "
                f"instances={plan.quotas.service_instance_limit or 'unlimited'} "
                f"resources={_format_limits(plan.quotas.resource_limits)} "
                f"costs={_format_limits(plan.resource_costs)}",
            )
            if plan.post_deploy_errand is not None:
                lines.append(f"    post-deploy: {_errand_label(plan.post_deploy_errand)}")
            for errand in plan.pre_delete_errands:
                lines.append(f"    pre-delete: {_errand_label(errand)}")
        return CheckResult(lines=lines, success=True)

    def check_quota(self, command: QuotaCheckCommand) -> CheckResult:
        settings = Settings.from_env(catalog_path=command.catalog_path)
        try:
            offering = load_service_offering(settings.broker.catalog_path)
            counts = _parse_counts(command.counts)
        except ValueError as error:
            return CheckResult(lines=["Quota check:", str(error)], success=False)
        plan = offering.find_plan(command.plan_id)
        if plan is None:
            return CheckResult(lines=[f"Plan {command.plan_id} not found"], success=False)

        violations = quota_violations(
            plan,
            offering.plans,
            counts,
            offering.global_quotas,
            offering.id,
        )
        if violations:
            return CheckResult(
                lines=[f"Quota check for plan {plan.id}: exceeded", *violations],
                success=False,
            )
        return CheckResult(lines=[f"Quota check for plan {plan.id}: ok"], success=True)

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env()
        settings.validate()
        ctx = RequestContext.new(
            service_name=settings.broker.service_name,
            instance_id=command.instance_id,
        )
        name = deployment_name(command.instance_id)
        with DirectorClient(
            settings.director.url,
            timeout_seconds=settings.director.request_timeout_seconds,
            max_retries=settings.director.max_retries,
            username=settings.director.username,
            password=settings.director.password,
        ) as client:
            if command.context_id:
                tasks = client.get_tasks_by_context(name, command.context_id, ctx=ctx)
            else:
                tasks = client.get_tasks_in_progress(name, ctx=ctx)

        if not tasks:
            return [f"No tasks for deployment {name}"]
        return [f"Tasks for deployment {name}:", *(f"- {task.to_log()}" for task in tasks)]


def _parse_counts(values: tuple[str, ...]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for value in values:
        if "=" not in value:
            raise ValueError(f"Invalid count {value!r}. Expected format '<plan_id>=<instances>'.")
        plan_id, raw = value.rsplit("=", 1)
        try:
            count = int(raw)
        except ValueError as error:
            raise ValueError(f"Invalid instance count for plan {plan_id!r}: {raw!r}") from error
        if count < 0:
            raise ValueError(f"Instance count for plan {plan_id!r} must be >= 0.")
        counts[plan_id.strip()] = count
    return counts


def _format_limits(values: dict[str, int]) -> str:
    if not values:
        return "-"
    return ",".join(f"{kind}:{value}" for kind, value in sorted(values.items()))


def _errand_label(errand: Errand) -> str:
    if not errand.instances:
        return errand.name
    return f"{errand.name} on {', '.join(errand.instances)}"
