"""CLI entrypoint for taskhub."""

from pathlib import Path

import rich_click as click

from taskhub import __version__
from taskhub.controllers import (
    TaskhubCliController,
    TaskInspectCommand,
    TaskMutateCommand,
    TaskResultsCommand,
    TasksListCommand,
)
from taskhub.models import JobStatus, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskhubCliController()

TASK_STATUS_CHOICES = [status.value for status in TaskStatus]
JOB_STATUS_CHOICES = [status.value for status in JobStatus]


@click.group()
@click.version_option(version=__version__, prog_name="taskhub")
def taskhub() -> None:
    """Adaptive job dispatch hub CLI."""


@taskhub.group()
def tasks() -> None:
    """Inspect and maintain persisted tasks."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUS_CHOICES),
    default=None,
    help="Only show tasks in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum number of tasks to show.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TasksListCommand(
                db_path=db_path,
                status=status,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with live job counts."""

    _emit_lines(
        CONTROLLER.inspect_task(
            TaskInspectCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


@tasks.command("results")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--status",
    type=click.Choice(JOB_STATUS_CHOICES),
    default=None,
    help="Only show jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=100,
    show_default=True,
    help="Page size.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Number of jobs to skip.",
)
def tasks_results(
    db_path: Path | None,
    task_id: str,
    status: str | None,
    limit: int,
    offset: int,
) -> None:
    """Page through the jobs of a task with their outputs and errors."""

    _emit_lines(
        CONTROLLER.results(
            TaskResultsCommand(
                db_path=db_path,
                task_id=task_id,
                status=status,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@tasks.command("retry-failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_retry_failed(db_path: Path | None, task_id: str) -> None:
    """Return terminally failed jobs to pending."""

    _emit_lines(CONTROLLER.retry_failed(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@tasks.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_recover(db_path: Path | None, task_id: str) -> None:
    """Reset jobs stuck in active after a crash and park the task as paused."""

    _emit_lines(CONTROLLER.recover(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@tasks.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task and all of its jobs."""

    _emit_lines(CONTROLLER.delete_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskhub()
