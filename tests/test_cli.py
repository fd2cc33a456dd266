from __future__ import annotations

import json
from pathlib import Path

import allure
import httpx
from click.testing import CliRunner

from ondemand_broker.broker.backend.director_client import DirectorClient
from ondemand_broker.broker.contracts import encode_operation_data
from ondemand_broker.broker.models import Errand, OperationData, OperationType
from ondemand_broker.main import ondemand_broker

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Inspection Commands"),
]


def _write_catalog(path: Path) -> Path:
    path.write_text(
        json.dumps(
            {
                "id": "service-id",
                "name": "redis",
                "plans": [
                    {
                        "id": "small",
                        "name": "Small",
                        "quotas": {"service_instance_limit": 2},
                        "resource_costs": {"memory": 1},
                        "lifecycle_errands": {"pre_delete": [{"name": "drain"}]},
                    },
                    {"id": "large", "name": "Large", "resource_costs": {"memory": 4}},
                ],
                "global_quotas": {"resource_limits": {"memory": 10}},
            },
        ),
        "utf-8",
    )
    return path


def test_token_inspect_prints_decoded_fields() -> None:
    token = encode_operation_data(
        OperationData(
            operation_type=OperationType.DELETE,
            task_id=42,
            context_id="ctx-1",
            pre_delete_errands=(Errand(name="drain", instances=("redis/0",)), Errand(name="backup")),
        ),
    )

    result = CliRunner().invoke(ondemand_broker, ["token", "inspect", token])

    assert result.exit_code == 0, result.output
    assert "Operation: delete" in result.output
    assert "Task ID: 42" in result.output
    assert "Context ID: ctx-1" in result.output
    assert "Pre-delete errand 1: drain on redis/0" in result.output
    assert "Pre-delete errand 2: backup" in result.output


def test_token_inspect_rejects_malformed_token() -> None:
    result = CliRunner().invoke(ondemand_broker, ["token", "inspect", "{not json"])

    assert result.exit_code == 1
    assert "Invalid token: operation data cannot be parsed" in result.output
    assert "Check failed." in result.output


def test_catalog_check_lists_plans(tmp_path: Path) -> None:
    catalog = _write_catalog(tmp_path / "catalog.json")

    result = CliRunner().invoke(ondemand_broker, ["catalog", "check", "--catalog", str(catalog)])

    assert result.exit_code == 0, result.output
    assert "service redis (service-id)" in result.output
    assert "Global quotas: instances=unlimited resources=memory:10" in result.output
    assert "- plan Small (small): instances=2" in result.output
    assert "pre-delete: drain" in result.output


def test_catalog_check_reports_invalid_catalog(tmp_path: Path) -> None:
    catalog = tmp_path / "catalog.json"
    catalog.write_text('{"id": "service-id", "name": "redis", "plans": []}', "utf-8")

    result = CliRunner().invoke(ondemand_broker, ["catalog", "check", "--catalog", str(catalog)])

    assert result.exit_code == 1
    assert "is invalid" in result.output


def test_quota_check_reports_violations(tmp_path: Path) -> None:
    catalog = _write_catalog(tmp_path / "catalog.json")

    result = CliRunner().invoke(
        ondemand_broker,
        [
            "quota",
            "check",
            "small",
            "--catalog",
            str(catalog),
            "--count",
            "small=2",
            "--count",
            "large=2",
        ],
    )

    assert result.exit_code == 1
    assert "Quota check for plan small: exceeded" in result.output
    assert "plan instance limit exceeded for service ID: service-id" in result.output
    assert "global quotas [memory: (limit 10, used 10, requires 1)]" in result.output


def test_quota_check_passes_with_room_left(tmp_path: Path) -> None:
    catalog = _write_catalog(tmp_path / "catalog.json")

    result = CliRunner().invoke(
        ondemand_broker,
        ["quota", "check", "large", "--catalog", str(catalog), "--count", "small=1"],
    )

    assert result.exit_code == 0, result.output
    assert "Quota check for plan large: ok" in result.output


def test_quota_check_rejects_malformed_counts(tmp_path: Path) -> None:
    catalog = _write_catalog(tmp_path / "catalog.json")

    result = CliRunner().invoke(
        ondemand_broker,
        ["quota", "check", "small", "--catalog", str(catalog), "--count", "small"],
    )

    assert result.exit_code == 1
    assert "Expected format '<plan_id>=<instances>'" in result.output


def test_tasks_lists_in_progress_director_tasks(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["deployment"] == "service-instance_i1"
        return httpx.Response(
            200,
            json=[{"id": 9, "state": "processing", "description": "create deployment"}],
        )

    def _client(url: str, **kwargs) -> DirectorClient:
        return DirectorClient(url, transport=httpx.MockTransport(handler))

    monkeypatch.setattr("ondemand_broker.broker.controllers.DirectorClient", _client)

    result = CliRunner().invoke(ondemand_broker, ["tasks", "i1"])

    assert result.exit_code == 0, result.output
    assert "Tasks for deployment service-instance_i1:" in result.output
    assert "- 9: processing (create deployment)" in result.output


def test_tasks_reports_director_failure_without_traceback(monkeypatch) -> None:
    def _client(url: str, **kwargs) -> DirectorClient:
        return DirectorClient(
            url,
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )

    monkeypatch.setattr("ondemand_broker.broker.controllers.DirectorClient", _client)

    result = CliRunner().invoke(ondemand_broker, ["tasks", "i1"])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "expected success status" in result.output


def test_tasks_reports_invalid_settings(monkeypatch) -> None:
    monkeypatch.setenv("ONDEMAND_BROKER_DIRECTOR_URL", "ftp://director")

    result = CliRunner().invoke(ondemand_broker, ["tasks", "i1"])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Invalid ONDEMAND_BROKER_DIRECTOR_URL" in result.output
