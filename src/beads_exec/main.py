"""CLI entrypoint for beads-exec."""

from pathlib import Path

import rich_click as click

from beads_exec import __version__
from beads_exec.execution.controllers import (
    ExecClassifyCommand,
    ExecCliController,
    ExecRunCommand,
    LocksCommand,
)

click.rich_click.USE_MARKDOWN = True
EXEC_CONTROLLER = ExecCliController()


@click.group()
@click.version_option(version=__version__, prog_name="beads-exec")
def beads_exec() -> None:
    """Resilient bd store command runner."""


@beads_exec.command(
    "run",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option(
    "--repo",
    "repo_path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Repository the command targets. Defaults to the current directory.",
)
@click.option(
    "--bypass/--no-bypass",
    default=None,
    help="Force or disable the no-db bypass mode. Defaults to bypass for reads.",
)
@click.argument("args", nargs=-1, required=True, type=click.UNPROCESSED)
def run_command(repo_path: Path | None, bypass: bool | None, args: tuple[str, ...]) -> None:
    """Run one bd command with repo serialization, locking and recovery.

    Pass bd arguments after `--`, for example `beads-exec run -- list --json`.
    """

    try:
        result = EXEC_CONTROLLER.run(
            ExecRunCommand(
                argv=args,
                repo_path=repo_path,
                bypass=bypass,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code != 0:
        raise SystemExit(result.exit_code)


@beads_exec.command(
    "classify",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("args", nargs=-1, required=True, type=click.UNPROCESSED)
def classify_command(args: tuple[str, ...]) -> None:
    """Show category, timeout and retry budget for a bd command."""

    try:
        lines = EXEC_CONTROLLER.classify(ExecClassifyCommand(argv=args))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@beads_exec.group()
def locks() -> None:
    """Cross-process repo lock commands."""


@locks.command("list")
@click.option(
    "--lock-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Lock root directory. Defaults to BEADS_EXEC_LOCK_DIR.",
)
def locks_list(lock_dir: Path | None) -> None:
    """List repo locks with owner, age and staleness."""

    _emit_lines(EXEC_CONTROLLER.list_locks(LocksCommand(lock_dir=lock_dir)))


@locks.command("evict-stale")
@click.option(
    "--lock-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Lock root directory. Defaults to BEADS_EXEC_LOCK_DIR.",
)
def locks_evict_stale(lock_dir: Path | None) -> None:
    """Remove locks whose owner is dead or which exceed the staleness ceiling."""

    _emit_lines(EXEC_CONTROLLER.evict_stale(LocksCommand(lock_dir=lock_dir)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    beads_exec()
