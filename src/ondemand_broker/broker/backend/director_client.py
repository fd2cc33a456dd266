"""HTTP client for the deployment director API."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any

import httpx

from ondemand_broker.broker.backend.base import BackendError, BackendErrorKind
from ondemand_broker.broker.context import RequestContext
from ondemand_broker.broker.models import DeployResult, Task, TaskState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
CONTEXT_ID_HEADER = "X-Bosh-Context-Id"
IN_PROGRESS_STATES = ("queued", "processing", "cancelling")
_TRANSIENT_STATUSES = frozenset({502, 503, 504})


class DirectorClient:
    """Deployment backend client speaking the director's JSON task API."""

    def __init__(  # noqa: PLR0913
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        username: str | None = None,
        password: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        auth = httpx.BasicAuth(username, password or "") if username else None
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            auth=auth,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def get_deployment(self, name: str, *, ctx: RequestContext) -> str | None:
        try:
            payload = self._request_json("GET", f"/deployments/{name}", ctx=ctx)
        except BackendError as error:
            if error.kind is BackendErrorKind.NOT_FOUND:
                return None
            raise
        return str(payload.get("manifest", ""))

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
        ctx.logger().info("submitting deploy of %s for plan %s", name, plan_id)
        payload = self._request_json(
            "POST",
            f"/deployments/{name}/deploys",
            ctx=ctx,
            context_id=context_id,
            body={
                "plan_id": plan_id,
                "parameters": params,
                "previous_plan_id": previous_plan_id,
                "secrets": secrets or {},
            },
        )
        return DeployResult(task_id=_task_id(payload), manifest=str(payload.get("manifest", "")))

    def submit_recreate(self, name: str, context_id: str, *, ctx: RequestContext) -> int:
        ctx.logger().info("submitting recreate of %s", name)
        payload = self._request_json(
            "POST",
            f"/deployments/{name}/recreate",
            ctx=ctx,
            context_id=context_id,
        )
        return _task_id(payload)

    def submit_errand(
        self,
        name: str,
        errand_name: str,
        instances: tuple[str, ...],
        context_id: str,
        *,
        ctx: RequestContext,
    ) -> int:
        ctx.logger().info("running errand %s on %s", errand_name, name)
        payload = self._request_json(
            "POST",
            f"/deployments/{name}/errands/{errand_name}/runs",
            ctx=ctx,
            context_id=context_id,
            body={"instances": list(instances)},
        )
        return _task_id(payload)

    def submit_delete(
        self,
        name: str,
        context_id: str,
        *,
        ctx: RequestContext,
        force: bool = False,
    ) -> int:
        ctx.logger().info("deleting deployment %s (force=%s)", name, force)
        payload = self._request_json(
            "DELETE",
            f"/deployments/{name}",
            ctx=ctx,
            context_id=context_id,
            params={"force": "true"} if force else None,
        )
        return _task_id(payload)

    def get_task(self, task_id: int, *, ctx: RequestContext) -> Task:
        ctx.logger().debug("getting task %d", task_id)
        return _to_task(self._request_json("GET", f"/tasks/{task_id}", ctx=ctx))

    def get_tasks_by_context(self, name: str, context_id: str, *, ctx: RequestContext) -> list[Task]:
        ctx.logger().debug("getting tasks for deployment %s with context %s", name, context_id)
        raw = self._request_json(
            "GET",
            "/tasks",
            ctx=ctx,
            params={"deployment": name, "context_id": context_id},
        )
        # The director lists newest first.
        tasks = [_to_task(item) for item in reversed(_as_list(raw))]
        return [self._resolve_errand_state(task, ctx=ctx) for task in tasks]

    def get_tasks_in_progress(self, name: str, *, ctx: RequestContext) -> list[Task]:
        raw = self._request_json(
            "GET",
            "/tasks",
            ctx=ctx,
            params={"deployment": name, "state": ",".join(IN_PROGRESS_STATES)},
        )
        return [_to_task(item) for item in _as_list(raw)]

    def get_vms(self, name: str, *, ctx: RequestContext) -> dict[str, list[str]]:
        raw = self._request_json("GET", f"/deployments/{name}/vms", ctx=ctx)
        vms: dict[str, list[str]] = {}
        for item in _as_list(raw):
            vms.setdefault(str(item.get("job", "")), []).extend(
                str(ip) for ip in item.get("ips") or []
            )
        return vms

    def get_variables(self, name: str, *, ctx: RequestContext) -> list[dict[str, str]]:
        raw = self._request_json("GET", f"/deployments/{name}/variables", ctx=ctx)
        return [
            {"id": str(item.get("id", "")), "name": str(item.get("name", ""))}
            for item in _as_list(raw)
        ]

    def delete_configs(self, name: str, *, ctx: RequestContext) -> None:
        ctx.logger().info("deleting configs for %s", name)
        self._request("DELETE", "/configs", ctx=ctx, params={"name": name})

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DirectorClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _resolve_errand_state(self, task: Task, *, ctx: RequestContext) -> Task:
        """Report a finished errand with a non-zero exit code as failed."""

        if task.state is not TaskState.DONE:
            return task
        response = self._request(
            "GET",
            f"/tasks/{task.id}/output",
            ctx=ctx,
            params={"type": "result"},
        )
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                output = json.loads(line)
            except json.JSONDecodeError:
                return task
            if isinstance(output, dict) and output.get("exit_code", 0) != 0:
                return replace(task, state=TaskState.ERROR)
            return task
        return task

    def _request_json(  # noqa: PLR0913
        self,
        method: str,
        path: str,
        *,
        ctx: RequestContext,
        context_id: str = "",
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        response = self._request(
            method,
            path,
            ctx=ctx,
            context_id=context_id,
            params=params,
            body=body,
        )
        try:
            return response.json()
        except ValueError as error:
            raise BackendError(
                f"invalid JSON from director for {method} {path}: {error}",
                kind=BackendErrorKind.UNEXPECTED,
            ) from error

    def _request(  # noqa: PLR0913
        self,
        method: str,
        path: str,
        *,
        ctx: RequestContext,
        context_id: str = "",
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = {CONTEXT_ID_HEADER: context_id} if context_id else None
        try:
            response = self._client.request(
                method,
                path,
                params=params,
                json=body,
                headers=headers,
                timeout=self._timeout_for(ctx),
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling director %s %s", method, path)
            raise BackendError(
                f"timeout calling director {method} {path}",
                kind=BackendErrorKind.REQUEST,
            ) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling director %s %s: %s", method, path, error)
            raise BackendError(
                f"error calling director {method} {path}: {error}",
                kind=BackendErrorKind.REQUEST,
            ) from error

        if response.is_success:
            return response
        raise BackendError(
            f"expected success status for {method} {path}, was {response.status_code}. "
            f"Response Body: {response.text}",
            kind=_kind_for_status(response.status_code),
        )

    def _timeout_for(self, ctx: RequestContext) -> httpx.Timeout:
        remaining = ctx.remaining_seconds()
        if remaining is None:
            return httpx.Timeout(self._timeout_seconds, connect=10.0)
        if remaining <= 0:
            raise BackendError(
                "request deadline exceeded before calling director",
                kind=BackendErrorKind.REQUEST,
            )
        bounded = min(self._timeout_seconds, remaining)
        return httpx.Timeout(bounded, connect=min(10.0, bounded))


def _kind_for_status(status_code: int) -> BackendErrorKind:
    if status_code == 404:  # noqa: PLR2004
        return BackendErrorKind.NOT_FOUND
    if status_code == 409:  # noqa: PLR2004
        return BackendErrorKind.TASK_IN_PROGRESS
    if status_code in _TRANSIENT_STATUSES:
        return BackendErrorKind.REQUEST
    return BackendErrorKind.UNEXPECTED


def _task_id(payload: Any) -> int:
    if not isinstance(payload, dict) or not isinstance(payload.get("task_id"), int):
        raise BackendError(
            f"director response has no task_id: {payload!r}",
            kind=BackendErrorKind.UNEXPECTED,
        )
    return int(payload["task_id"])


def _to_task(item: Any) -> Task:
    if not isinstance(item, dict) or not isinstance(item.get("id"), int):
        raise BackendError(
            f"director returned a malformed task: {item!r}",
            kind=BackendErrorKind.UNEXPECTED,
        )
    return Task(
        id=int(item["id"]),
        state=TaskState.parse(str(item.get("state", ""))),
        description=str(item.get("description") or ""),
        result=str(item.get("result") or ""),
        context_id=str(item.get("context_id") or ""),
    )


def _as_list(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise BackendError(
            f"director returned {type(raw).__name__}, expected a list",
            kind=BackendErrorKind.UNEXPECTED,
        )
    return [item for item in raw if isinstance(item, dict)]
