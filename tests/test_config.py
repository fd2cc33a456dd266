from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from ondemand_broker.broker.models import Errand
from ondemand_broker.config import (
    BrokerSettings,
    DirectorSettings,
    Settings,
    load_service_offering,
    parse_service_offering,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings & Catalog"),
]


def _catalog(**overrides) -> dict:
    raw = {
        "id": "service-id",
        "name": "redis",
        "plans": [
            {
                "id": "small",
                "name": "Small",
                "quotas": {"service_instance_limit": 5, "resource_limits": {"memory": 10}},
                "resource_costs": {"memory": 2},
                "lifecycle_errands": {
                    "post_deploy": {"name": "smoke", "instances": ["redis/0"]},
                    "pre_delete": [{"name": "drain"}, {"name": "backup"}],
                },
            },
        ],
        "global_quotas": {"service_instance_limit": 20},
    }
    raw.update(overrides)
    return raw


def test_from_env_reads_prefixed_variables(monkeypatch) -> None:
    monkeypatch.setenv("ONDEMAND_BROKER_SERVICE_NAME", "redis")
    monkeypatch.setenv("ONDEMAND_BROKER_EXPOSE_OPERATIONAL_ERRORS", "yes")
    monkeypatch.setenv("ONDEMAND_BROKER_DIRECTOR_URL", "https://director.internal:25555")
    monkeypatch.setenv("ONDEMAND_BROKER_DIRECTOR_REQUEST_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("ONDEMAND_BROKER_DIRECTOR_USERNAME", "admin")

    settings = Settings.from_env()

    assert settings.broker.service_name == "redis"
    assert settings.broker.expose_operational_errors is True
    assert settings.broker.disable_backend_configs is False
    assert settings.director.url == "https://director.internal:25555"
    assert settings.director.request_timeout_seconds == 12.5
    assert settings.director.username == "admin"
    assert settings.director.password is None
    settings.validate()


def test_catalog_path_argument_overrides_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ONDEMAND_BROKER_CATALOG_PATH", "/etc/broker/catalog.json")

    settings = Settings.from_env(catalog_path=tmp_path / "catalog.json")

    assert settings.broker.catalog_path == tmp_path / "catalog.json"


def test_invalid_boolean_names_the_variable(monkeypatch) -> None:
    monkeypatch.setenv("ONDEMAND_BROKER_DISABLE_BACKEND_CONFIGS", "maybe")

    with pytest.raises(ValueError, match="ONDEMAND_BROKER_DISABLE_BACKEND_CONFIGS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(broker=BrokerSettings(service_name=" ")), "SERVICE_NAME"),
        (Settings(director=DirectorSettings(url="ftp://director")), "Invalid .*DIRECTOR_URL"),
        (Settings(director=DirectorSettings(request_timeout_seconds=0)), "REQUEST_TIMEOUT_SECONDS"),
        (Settings(director=DirectorSettings(max_retries=-1)), "MAX_RETRIES"),
        (Settings(director=DirectorSettings(password="secret")), "without .*DIRECTOR_USERNAME"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_parse_service_offering_builds_plans() -> None:
    offering = parse_service_offering(_catalog())

    plan = offering.find_plan("small")
    assert plan is not None
    assert plan.quotas.service_instance_limit == 5
    assert plan.quotas.resource_limits == {"memory": 10}
    assert plan.resource_costs == {"memory": 2}
    assert plan.post_deploy_errand == Errand(name="smoke", instances=("redis/0",))
    assert plan.pre_delete_errands == (Errand(name="drain"), Errand(name="backup"))
    assert offering.global_quotas.service_instance_limit == 20


def test_plan_without_errands_has_no_lifecycle() -> None:
    raw = _catalog(plans=[{"id": "plain", "name": "Plain"}])

    plan = parse_service_offering(raw).plans[0]

    assert plan.lifecycle_errands is None
    assert plan.post_deploy_errand is None
    assert plan.pre_delete_errands == ()


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"plans": []}, "non-empty 'plans'"),
        ({"id": ""}, "non-empty string 'id'"),
        (
            {"plans": [{"id": "a", "name": "A"}, {"id": "a", "name": "B"}]},
            "Duplicate plan id",
        ),
        (
            {"plans": [{"id": "a", "name": "A", "resource_costs": {"memory": -1}}]},
            "must be a non-negative integer",
        ),
        (
            {"global_quotas": {"service_instance_limit": "ten"}},
            "service_instance_limit",
        ),
        (
            {"plans": [{"id": "a", "name": "A", "lifecycle_errands": {"pre_delete": "drain"}}]},
            "pre_delete must be a list",
        ),
    ],
)
def test_parse_service_offering_rejects_bad_catalogs(overrides: dict, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_service_offering(_catalog(**overrides))


def test_load_service_offering_reports_unreadable_files(tmp_path: Path) -> None:
    missing = tmp_path / "missing.json"
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", "utf-8")
    valid = tmp_path / "catalog.json"
    valid.write_text(json.dumps(_catalog()), "utf-8")

    with pytest.raises(ValueError, match="Cannot read catalog"):
        load_service_offering(missing)
    with pytest.raises(ValueError, match="is not valid JSON"):
        load_service_offering(broken)
    assert load_service_offering(valid).name == "redis"
