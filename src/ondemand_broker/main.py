"""CLI entrypoint for ondemand-broker."""

from pathlib import Path

import rich_click as click

from ondemand_broker import __version__
from ondemand_broker.broker.backend.base import BackendError
from ondemand_broker.broker.controllers import (
    BrokerCliController,
    CatalogCheckCommand,
    CheckResult,
    QuotaCheckCommand,
    TaskListCommand,
    TokenInspectCommand,
)

click.rich_click.USE_MARKDOWN = True
BROKER_CONTROLLER = BrokerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ondemand-broker")
def ondemand_broker() -> None:
    """On-demand service broker operator CLI."""


@ondemand_broker.group()
def token() -> None:
    """Continuation token commands."""


@token.command("inspect")
@click.argument("raw_token")
def token_inspect(raw_token: str) -> None:
    """Decode a continuation token returned to the platform."""

    _emit_result(BROKER_CONTROLLER.inspect_token(TokenInspectCommand(token=raw_token)))


@ondemand_broker.group()
def catalog() -> None:
    """Service offering catalog commands."""


@catalog.command("check")
@click.option(
    "--catalog",
    "catalog_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Catalog JSON path (defaults to ONDEMAND_BROKER_CATALOG_PATH).",
)
def catalog_check(catalog_path: Path | None) -> None:
    """Validate the catalog and print its plans, quotas and errands."""

    _emit_result(BROKER_CONTROLLER.check_catalog(CatalogCheckCommand(catalog_path=catalog_path)))


@ondemand_broker.group()
def quota() -> None:
    """Quota commands."""


@quota.command("check")
@click.argument("plan_id")
@click.option(
    "--catalog",
    "catalog_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Catalog JSON path (defaults to ONDEMAND_BROKER_CATALOG_PATH).",
)
@click.option(
    "--count",
    "counts",
    multiple=True,
    help="Current instances of a plan as `PLAN_ID=N`. Can be repeated.",
)
def quota_check(plan_id: str, catalog_path: Path | None, counts: tuple[str, ...]) -> None:
    """Check whether one more instance of PLAN_ID would fit the quotas."""

    _emit_result(
        BROKER_CONTROLLER.check_quota(
            QuotaCheckCommand(catalog_path=catalog_path, plan_id=plan_id, counts=counts),
        ),
    )


@ondemand_broker.command("tasks")
@click.argument("instance_id")
@click.option(
    "--context-id",
    default=None,
    help="List tasks of one operation instead of the tasks still in progress.",
)
def tasks(instance_id: str, context_id: str | None) -> None:
    """List director tasks of a service instance."""

    try:
        lines = BROKER_CONTROLLER.list_tasks(
            TaskListCommand(instance_id=instance_id, context_id=context_id),
        )
    except (ValueError, BackendError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_result(result: CheckResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Check failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ondemand_broker()
