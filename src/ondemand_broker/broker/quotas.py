"""Instance-count and resource-cost quota evaluation.

All checks are pure functions of the plan catalog and the current instance
counts. Every layer is evaluated so that the caller sees all violations at
once.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from ondemand_broker.broker.errors import QuotaExceededError
from ondemand_broker.broker.models import Plan, Quotas


@dataclass(slots=True, frozen=True)
class ExceededResource:
    """One resource kind whose limit would be crossed."""

    kind: str
    limit: int
    used: int
    required: int

    def describe(self) -> str:
        return f"{self.kind}: (limit {self.limit}, used {self.used}, requires {self.required})"


def quota_violations(
    plan: Plan,
    plans: Iterable[Plan],
    counts: Mapping[str, int],
    global_quotas: Quotas,
    service_id: str,
) -> list[str]:
    """Return a message per quota layer that adding one ``plan`` instance would exceed.

    ``counts`` maps plan IDs to their current number of instances. Plans missing
    from it count as zero.
    """

    plans = tuple(plans)
    violations: list[str] = []

    plan_limit = plan.quotas.service_instance_limit
    if plan_limit:
        count = counts.get(plan.id, 0)
        if count >= plan_limit:
            violations.append(
                f"plan instance limit exceeded for service ID: {service_id}. "
                f"Total instances: {count}",
            )

    global_limit = global_quotas.service_instance_limit
    if global_limit:
        total = sum(counts.values())
        if total >= global_limit:
            violations.append(
                f"global instance limit exceeded for service ID: {service_id}. "
                f"Total instances: {total}",
            )

    exceeded = _exceeded_global_resources(plan, plans, counts, global_quotas.resource_limits)
    if exceeded:
        violations.append(
            f"global quotas [{_describe(exceeded)}] would be exceeded by this deployment",
        )

    exceeded = _exceeded_plan_resources(plan, counts)
    if exceeded:
        violations.append(
            f"plan quotas [{_describe(exceeded)}] would be exceeded by this deployment",
        )
    return violations


def check_quotas(
    plan: Plan,
    plans: Iterable[Plan],
    counts: Mapping[str, int],
    global_quotas: Quotas,
    service_id: str,
) -> None:
    """Raise :class:`QuotaExceededError` listing every exceeded layer."""

    violations = quota_violations(plan, plans, counts, global_quotas, service_id)
    if violations:
        raise QuotaExceededError(violations)


def _exceeded_global_resources(
    plan: Plan,
    plans: tuple[Plan, ...],
    counts: Mapping[str, int],
    limits: Mapping[str, int],
) -> list[ExceededResource]:
    exceeded: list[ExceededResource] = []
    for kind in sorted(limits):
        limit = limits[kind]
        if not limit:
            continue
        used = sum(
            other.resource_costs.get(kind, 0) * counts.get(other.id, 0) for other in plans
        )
        required = plan.resource_costs.get(kind, 0)
        if used + required > limit:
            exceeded.append(ExceededResource(kind, limit, used, required))
    return exceeded


def _exceeded_plan_resources(plan: Plan, counts: Mapping[str, int]) -> list[ExceededResource]:
    exceeded: list[ExceededResource] = []
    limits = plan.quotas.resource_limits
    for kind in sorted(limits):
        limit = limits[kind]
        if not limit:
            continue
        cost = plan.resource_costs.get(kind, 0)
        used = cost * counts.get(plan.id, 0)
        if used + cost > limit:
            exceeded.append(ExceededResource(kind, limit, used, cost))
    return exceeded


def _describe(exceeded: list[ExceededResource]) -> str:
    return ", ".join(item.describe() for item in exceeded)
