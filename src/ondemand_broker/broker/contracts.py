"""Continuation token wire format.

The token is the JSON object the platform stores and replays on every
last-operation poll. Field names stay compatible with tokens issued by earlier
broker releases, including the legacy single ``PreDeleteErrand`` and
``PostDeployErrand`` objects.
"""

from __future__ import annotations

import json
from typing import Any

from ondemand_broker.broker.errors import MalformedToken, MissingOperationData, MissingTaskID
from ondemand_broker.broker.models import Errand, OperationData, OperationType


def encode_operation_data(data: OperationData) -> str:
    """Serialize operation data into an opaque token."""

    payload: dict[str, Any] = {
        "BoshTaskID": data.task_id,
        "OperationType": data.operation_type.value,
    }
    if data.context_id:
        payload["BoshContextID"] = data.context_id
    if data.plan_id:
        payload["PlanID"] = data.plan_id
    if data.post_deploy_errand is not None:
        payload["PostDeployErrand"] = _errand_to_wire(data.post_deploy_errand)
    if data.pre_delete_errand is not None:
        payload["PreDeleteErrand"] = _errand_to_wire(data.pre_delete_errand)
    if data.pre_delete_errands:
        payload["Errands"] = [_errand_to_wire(errand) for errand in data.pre_delete_errands]
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def decode_operation_data(raw: str) -> OperationData:
    """Parse and validate a token replayed by the platform."""

    if not raw or not raw.strip():
        raise MissingOperationData
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise MalformedToken(str(error)) from error
    if not isinstance(payload, dict):
        raise MalformedToken(f"expected a JSON object, got {type(payload).__name__}")

    operation_raw = payload.get("OperationType")
    try:
        operation_type = OperationType(operation_raw)
    except ValueError as error:
        raise MalformedToken(f"unknown operation type {operation_raw!r}") from error

    task_id = payload.get("BoshTaskID", 0)
    if isinstance(task_id, bool) or not isinstance(task_id, int):
        raise MalformedToken("BoshTaskID must be an integer")
    if task_id == 0:
        raise MissingTaskID

    raw_errands = payload.get("Errands") or []
    if not isinstance(raw_errands, list):
        raise MalformedToken("Errands must be an array")

    return OperationData(
        operation_type=operation_type,
        task_id=task_id,
        context_id=_optional_str(payload, "BoshContextID"),
        plan_id=_optional_str(payload, "PlanID"),
        post_deploy_errand=_errand_from_wire(payload.get("PostDeployErrand"), "PostDeployErrand"),
        pre_delete_errand=_errand_from_wire(payload.get("PreDeleteErrand"), "PreDeleteErrand"),
        pre_delete_errands=tuple(
            errand
            for errand in (_errand_from_wire(item, "Errands") for item in raw_errands)
            if errand is not None
        ),
    )


def _errand_to_wire(errand: Errand) -> dict[str, Any]:
    wire: dict[str, Any] = {"Name": errand.name}
    if errand.instances:
        wire["Instances"] = list(errand.instances)
    return wire


def _errand_from_wire(raw: Any, field_name: str) -> Errand | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise MalformedToken(f"{field_name} must be an object")
    name = raw.get("Name") or ""
    instances = raw.get("Instances") or []
    if not isinstance(name, str):
        raise MalformedToken(f"{field_name}.Name must be a string")
    if not isinstance(instances, list) or not all(isinstance(item, str) for item in instances):
        raise MalformedToken(f"{field_name}.Instances must be an array of strings")
    if not name:
        return None
    return Errand(name=name, instances=tuple(instances))


def _optional_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key) or ""
    if not isinstance(value, str):
        raise MalformedToken(f"{key} must be a string")
    return value
