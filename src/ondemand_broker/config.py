"""Runtime configuration for the broker and its director client."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from ondemand_broker.broker.models import Errand, LifecycleErrands, Plan, Quotas, ServiceOffering


@dataclass(slots=True)
class BrokerSettings:
    """Broker behaviour settings."""

    service_name: str = "on-demand-service"
    expose_operational_errors: bool = False
    disable_backend_configs: bool = False
    catalog_path: Path = Path("catalog.json")


@dataclass(slots=True)
class DirectorSettings:
    """Deployment director connection settings."""

    url: str = "http://127.0.0.1:25555"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    username: str | None = None
    password: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    broker: BrokerSettings = field(default_factory=BrokerSettings)
    director: DirectorSettings = field(default_factory=DirectorSettings)

    @classmethod
    def from_env(cls, catalog_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            broker=BrokerSettings(
                service_name=os.getenv("ONDEMAND_BROKER_SERVICE_NAME", "on-demand-service"),
                expose_operational_errors=_env_bool(
                    "ONDEMAND_BROKER_EXPOSE_OPERATIONAL_ERRORS",
                    default=False,
                ),
                disable_backend_configs=_env_bool(
                    "ONDEMAND_BROKER_DISABLE_BACKEND_CONFIGS",
                    default=False,
                ),
                catalog_path=catalog_path
                or Path(os.getenv("ONDEMAND_BROKER_CATALOG_PATH", "catalog.json")),
            ),
            director=DirectorSettings(
                url=os.getenv("ONDEMAND_BROKER_DIRECTOR_URL", "http://127.0.0.1:25555"),
                request_timeout_seconds=float(
                    os.getenv("ONDEMAND_BROKER_DIRECTOR_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("ONDEMAND_BROKER_DIRECTOR_MAX_RETRIES", "3")),
                username=os.getenv("ONDEMAND_BROKER_DIRECTOR_USERNAME") or None,
                password=os.getenv("ONDEMAND_BROKER_DIRECTOR_PASSWORD") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the broker cannot run with."""

        if not self.broker.service_name.strip():
            raise ValueError("ONDEMAND_BROKER_SERVICE_NAME must not be empty.")
        parsed = urlparse(self.director.url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid ONDEMAND_BROKER_DIRECTOR_URL: "
                f"{self.director.url!r}. Expected an absolute URL with http:// or https:// scheme.",
            )
        if self.director.request_timeout_seconds <= 0:
            raise ValueError("ONDEMAND_BROKER_DIRECTOR_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.director.max_retries < 0:
            raise ValueError("ONDEMAND_BROKER_DIRECTOR_MAX_RETRIES must be >= 0.")
        if self.director.password and not self.director.username:
            raise ValueError(
                "ONDEMAND_BROKER_DIRECTOR_PASSWORD is set without ONDEMAND_BROKER_DIRECTOR_USERNAME.",
            )


def load_service_offering(path: Path) -> ServiceOffering:
    """Read the service offering catalog document."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as error:
        raise ValueError(f"Cannot read catalog {path}: {error}") from error
    except json.JSONDecodeError as error:
        raise ValueError(f"Catalog {path} is not valid JSON: {error}") from error
    return parse_service_offering(raw)


def parse_service_offering(raw: Any) -> ServiceOffering:
    """Build a :class:`ServiceOffering` from its decoded JSON form."""

    if not isinstance(raw, dict):
        raise ValueError("Catalog must be a JSON object.")
    offering_id = _required_str(raw, "id", where="service offering")
    name = _required_str(raw, "name", where="service offering")
    raw_plans = raw.get("plans")
    if not isinstance(raw_plans, list) or not raw_plans:
        raise ValueError("Service offering must define a non-empty 'plans' list.")

    plans = tuple(_parse_plan(item, index) for index, item in enumerate(raw_plans))
    seen: set[str] = set()
    for plan in plans:
        if plan.id in seen:
            raise ValueError(f"Duplicate plan id in catalog: {plan.id!r}")
        seen.add(plan.id)

    return ServiceOffering(
        id=offering_id,
        name=name,
        plans=plans,
        global_quotas=_parse_quotas(raw.get("global_quotas"), where="global_quotas"),
        global_properties=_optional_dict(raw, "global_properties", where="service offering"),
    )


def _parse_plan(raw: Any, index: int) -> Plan:
    where = f"plans[{index}]"
    if not isinstance(raw, dict):
        raise ValueError(f"{where} must be an object.")
    return Plan(
        id=_required_str(raw, "id", where=where),
        name=_required_str(raw, "name", where=where),
        quotas=_parse_quotas(raw.get("quotas"), where=f"{where}.quotas"),
        resource_costs=_int_map(raw.get("resource_costs"), where=f"{where}.resource_costs"),
        lifecycle_errands=_parse_lifecycle_errands(
            raw.get("lifecycle_errands"),
            where=f"{where}.lifecycle_errands",
        ),
        properties=_optional_dict(raw, "properties", where=where),
    )


def _parse_quotas(raw: Any, *, where: str) -> Quotas:
    if raw is None:
        return Quotas()
    if not isinstance(raw, dict):
        raise ValueError(f"{where} must be an object.")
    limit = raw.get("service_instance_limit")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
        raise ValueError(f"{where}.service_instance_limit must be a non-negative integer.")
    return Quotas(
        service_instance_limit=limit,
        resource_limits=_int_map(raw.get("resource_limits"), where=f"{where}.resource_limits"),
    )


def _parse_lifecycle_errands(raw: Any, *, where: str) -> LifecycleErrands | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError(f"{where} must be an object.")
    post_deploy = raw.get("post_deploy")
    pre_delete = raw.get("pre_delete") or []
    if not isinstance(pre_delete, list):
        raise ValueError(f"{where}.pre_delete must be a list of errands.")
    return LifecycleErrands(
        post_deploy=_parse_errand(post_deploy, where=f"{where}.post_deploy")
        if post_deploy is not None
        else None,
        pre_delete=tuple(
            _parse_errand(item, where=f"{where}.pre_delete[{index}]")
            for index, item in enumerate(pre_delete)
        ),
    )


def _parse_errand(raw: Any, *, where: str) -> Errand:
    if not isinstance(raw, dict):
        raise ValueError(f"{where} must be an object.")
    instances = raw.get("instances") or []
    if not isinstance(instances, list) or not all(isinstance(item, str) for item in instances):
        raise ValueError(f"{where}.instances must be a list of strings.")
    return Errand(name=_required_str(raw, "name", where=where), instances=tuple(instances))


def _int_map(raw: Any, *, where: str) -> dict[str, int]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"{where} must be an object.")
    values: dict[str, int] = {}
    for key, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"{where}.{key} must be a non-negative integer, got {value!r}.")
        values[str(key)] = value
    return values


def _required_str(raw: dict[str, Any], key: str, *, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{where} requires a non-empty string '{key}'.")
    return value


def _optional_dict(raw: dict[str, Any], key: str, *, where: str) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{where}.{key} must be an object.")
    return value


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
