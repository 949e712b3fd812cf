"""CLI entrypoint for oneshot."""

import logging
from pathlib import Path

import rich_click as click

from oneshot import __version__
from oneshot.config import Settings
from oneshot.controllers import (
    ItemCommand,
    ListItemsCommand,
    OneshotCliController,
    RunCommand,
    SubmitCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OneshotCliController()


@click.group()
@click.version_option(version=__version__, prog_name="oneshot")
def oneshot() -> None:
    """Run work items on single-use, exclusively bound workers.

    Configure the worker bootstrap with `ONESHOT_START_COMMAND`,
    `ONESHOT_STOP_COMMAND` and `ONESHOT_EXEC_PREFIX`.
    """

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.logging_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@oneshot.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Display name of the work item.")
@click.option(
    "--label",
    default=None,
    help="Label expression; defaults to the provisioner label (`ONESHOT_LABEL`).",
)
@click.option("--item-id", default=None, help="Explicit item id; generated when omitted.")
@click.option(
    "--oneshot/--no-oneshot",
    "oneshot_flag",
    default=False,
    show_default=True,
    help="Require a one-shot node regardless of the label.",
)
@click.argument("command", nargs=-1, required=True)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    label: str | None,
    item_id: str | None,
    oneshot_flag: bool,
    command: tuple[str, ...],
) -> None:
    """Queue a work item; everything after `--` is the command to run."""

    _emit_lines(
        CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                name=name,
                command=command,
                label=label,
                item_id=item_id,
                oneshot=oneshot_flag,
            ),
        ),
    )


@oneshot.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Run a single scheduling pass.")
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many scheduling passes.",
)
@click.option(
    "--max-idle-passes",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive idle passes.",
)
def run(db_path: Path | None, once: bool, max_passes: int | None, max_idle_passes: int) -> None:
    """Provision one-shot nodes for queued items and run them."""

    _emit_lines(
        CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                once=once,
                max_passes=max_passes,
                max_idle_passes=max_idle_passes,
            ),
        ),
    )


@oneshot.command("items")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["queued", "running", "completed", "canceled"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max items to print.",
)
def items(db_path: Path | None, status: str | None, limit: int) -> None:
    """List work items."""

    _emit_lines(
        CONTROLLER.list_items(
            ListItemsCommand(
                db_path=db_path,
                status=status,
                limit=limit,
            ),
        ),
    )


@oneshot.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--item-id", required=True, help="Work item id.")
def inspect(db_path: Path | None, item_id: str) -> None:
    """Inspect one work item with its event history."""

    _emit_lines(CONTROLLER.inspect_item(ItemCommand(db_path=db_path, item_id=item_id)))


@oneshot.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--item-id", required=True, help="Work item id.")
def cancel(db_path: Path | None, item_id: str) -> None:
    """Cancel a queued work item; its one-shot node is removed on the next pass."""

    try:
        lines = CONTROLLER.cancel_item(ItemCommand(db_path=db_path, item_id=item_id))
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    oneshot()
