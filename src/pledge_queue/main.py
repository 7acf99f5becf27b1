"""CLI entrypoint for pledge-queue."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from pledge_queue import __version__
from pledge_queue.engine.controllers import (
    DEFAULT_OUTBOX_FAILURE_NOTE,
    OutboxCliController,
    OutboxEnqueueCommand,
    OutboxWorkflowCommand,
    QueueCliController,
    QueueEnqueueCommand,
    QueueItemCommand,
    QueueItemsCommand,
    QueueStatusCommand,
    WorkerCommand,
)
from pledge_queue.matching.controllers import (
    MatchCliController,
    MatchCreateCommand,
    MatchDeactivateCommand,
    MatchDonorCommand,
    MatchListCommand,
)
from pledge_queue.sky.models import TRANSACTION_TYPE_PLEDGE_CREATE

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
OUTBOX_CONTROLLER = OutboxCliController()
MATCH_CONTROLLER = MatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="pledge-queue")
def pledge_queue() -> None:
    """Durable pledge submission queue for the SKY gift API."""


@pledge_queue.group()
def queue() -> None:
    """Structured work queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--workflow-id", required=True, help="Business key of the gift workflow.")
@click.option(
    "--request-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON file with the pledge request.",
)
@click.option(
    "--transaction-type",
    default=TRANSACTION_TYPE_PLEDGE_CREATE,
    show_default=True,
    help="Transaction type of the work item.",
)
def queue_enqueue(
    db_path: Path | None,
    workflow_id: str,
    request_file: Path,
    transaction_type: str,
) -> None:
    """Enqueue a pledge submission, or refresh a not-yet-finished one."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.enqueue(
                QueueEnqueueCommand(
                    db_path=db_path,
                    workflow_id=workflow_id,
                    request_file=request_file,
                    transaction_type=transaction_type,
                ),
            ),
        ),
    )


@queue.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-drain cycle or poll until interrupted.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for polling cycles in loop mode.",
)
def queue_worker(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Run the structured queue worker."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.run_worker(
                WorkerCommand(db_path=db_path, once=once, max_cycles=max_cycles),
                on_log_line=click.echo,
            ),
        ),
    )


@queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_status(db_path: Path | None) -> None:
    """Show per-status item counts."""

    _emit_lines(QUEUE_CONTROLLER.status(QueueStatusCommand(db_path=db_path)))


@queue.command("items")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "succeeded", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max items to print.",
)
def queue_items(db_path: Path | None, status: str | None, limit: int) -> None:
    """List most recently enqueued items."""

    _emit_lines(
        QUEUE_CONTROLLER.list_items(
            QueueItemsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--item-id", type=int, required=True, help="Work item id.")
def queue_inspect(db_path: Path | None, item_id: int) -> None:
    """Inspect one item with its event history."""

    _emit_lines(QUEUE_CONTROLLER.inspect_item(QueueItemCommand(db_path=db_path, item_id=item_id)))


@queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--item-id", type=int, required=True, help="Work item id.")
def queue_retry(db_path: Path | None, item_id: int) -> None:
    """Manually re-queue a failed item with a fresh attempt budget."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.retry_item(QueueItemCommand(db_path=db_path, item_id=item_id)),
        ),
    )


@pledge_queue.group()
def outbox() -> None:
    """Status-trail outbox commands."""


@outbox.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--workflow-id", required=True, help="Gift workflow id.")
@click.option(
    "--request-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON file with the pledge request.",
)
@click.option(
    "--error",
    "error_message",
    default=DEFAULT_OUTBOX_FAILURE_NOTE,
    show_default=True,
    help="Error of the failed direct submission.",
)
def outbox_enqueue(
    db_path: Path | None,
    workflow_id: str,
    request_file: Path,
    error_message: str,
) -> None:
    """Record a failed direct submission for outbox retry."""

    _emit_lines(
        _guarded(
            lambda: OUTBOX_CONTROLLER.enqueue(
                OutboxEnqueueCommand(
                    db_path=db_path,
                    workflow_id=workflow_id,
                    request_file=request_file,
                    error_message=error_message,
                ),
            ),
        ),
    )


@outbox.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one retry cycle or poll until interrupted.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for polling cycles in loop mode.",
)
def outbox_worker(db_path: Path | None, once: bool, max_cycles: int | None) -> None:
    """Run the outbox retry worker."""

    _emit_lines(
        _guarded(
            lambda: OUTBOX_CONTROLLER.run_worker(
                WorkerCommand(db_path=db_path, once=once, max_cycles=max_cycles),
                on_log_line=click.echo,
            ),
        ),
    )


@outbox.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--workflow-id", required=True, help="Gift workflow id.")
def outbox_inspect(db_path: Path | None, workflow_id: str) -> None:
    """Inspect one workflow with its status trail."""

    _emit_lines(
        OUTBOX_CONTROLLER.inspect(OutboxWorkflowCommand(db_path=db_path, workflow_id=workflow_id)),
    )


@outbox.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--workflow-id", required=True, help="Gift workflow id.")
def outbox_clear(db_path: Path | None, workflow_id: str) -> None:
    """Clear suppression so the outbox retries the workflow again."""

    _emit_lines(
        _guarded(
            lambda: OUTBOX_CONTROLLER.clear(
                OutboxWorkflowCommand(db_path=db_path, workflow_id=workflow_id),
            ),
        ),
    )


@pledge_queue.group()
def match() -> None:
    """Match challenge administration."""


@match.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def match_list(db_path: Path | None) -> None:
    """List match challenges and the anonymous donor."""

    _emit_lines(MATCH_CONTROLLER.list_challenges(MatchListCommand(db_path=db_path)))


@match.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Challenge name.")
@click.option("--budget", required=True, help="Challenge budget, for example 5000.00.")
def match_create(db_path: Path | None, name: str, budget: str) -> None:
    """Create an active match challenge."""

    _emit_lines(
        _guarded(
            lambda: MATCH_CONTROLLER.create(
                MatchCreateCommand(db_path=db_path, name=name, budget=budget),
            ),
        ),
    )


@match.command("deactivate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--challenge-id", type=int, required=True, help="Challenge id.")
def match_deactivate(db_path: Path | None, challenge_id: int) -> None:
    """Deactivate a match challenge."""

    _emit_lines(
        _guarded(
            lambda: MATCH_CONTROLLER.deactivate(
                MatchDeactivateCommand(db_path=db_path, challenge_id=challenge_id),
            ),
        ),
    )


@match.command("set-donor")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--constituent-id", required=True, help="Anonymous match donor constituent id.")
def match_set_donor(db_path: Path | None, constituent_id: str) -> None:
    """Set the constituent credited with match pledges."""

    _emit_lines(
        _guarded(
            lambda: MATCH_CONTROLLER.set_donor(
                MatchDonorCommand(db_path=db_path, constituent_id=constituent_id),
            ),
        ),
    )


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pledge_queue()
