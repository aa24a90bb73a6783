"""CLI entrypoint for runledger."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from runledger import __version__
from runledger.orchestrator.controllers import (
    CancelCommand,
    CredentialAddCommand,
    CredentialListCommand,
    CredentialSlotCommand,
    DispatchCommand,
    FeedbackCommand,
    ListRunsCommand,
    PruneCommand,
    ReconcileCommand,
    RunCliController,
    RunRefCommand,
    ShowRunCommand,
    UnitRunCommand,
)
from runledger.orchestrator.errors import OrchestratorError
from runledger.orchestrator.models import FeedbackDecision, RunStatus

click.rich_click.USE_MARKDOWN = True
RUN_CONTROLLER = RunCliController()

T = TypeVar("T")

home_option = click.option(
    "--home",
    type=click.Path(path_type=Path),
    default=None,
    help="State directory (default: $RUNLEDGER_HOME or .runledger).",
)


@click.group()
@click.version_option(version=__version__, prog_name="runledger")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def runledger(log_level: str) -> None:
    """Resumable job execution orchestrator."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@runledger.command("dispatch")
@home_option
@click.argument("spec_id")
@click.option("--template", default="default", show_default=True, help="Unit template name.")
@click.option(
    "--resource",
    "resources",
    multiple=True,
    help="Unit resource as KEY=VALUE. Can be repeated.",
)
@click.option("--run-id", default=None, help="Dispatch (or resume) an explicit run id.")
@click.option(
    "--deadline-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Fail the run if it is still executing after this many minutes.",
)
def dispatch(  # noqa: PLR0913
    home: Path | None,
    spec_id: str,
    template: str,
    resources: tuple[str, ...],
    run_id: str | None,
    deadline_minutes: int | None,
) -> None:
    """Create a run from a spec and start an execution unit for it."""

    _emit_lines(
        _run(
            lambda: RUN_CONTROLLER.dispatch(
                DispatchCommand(
                    home=home,
                    spec_id=spec_id,
                    template=template,
                    resources=_parse_resources(resources),
                    run_id=run_id,
                    deadline_minutes=deadline_minutes,
                ),
            ),
        ),
    )


@runledger.command("resume")
@home_option
@click.argument("run_id")
def resume(home: Path | None, run_id: str) -> None:
    """Start an execution unit for an unfinished run unless one is alive."""

    _emit_lines(_run(lambda: RUN_CONTROLLER.resume(RunRefCommand(home=home, run_id=run_id))))


@runledger.group()
def runs() -> None:
    """Run inspection commands."""


@runs.command("list")
@home_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in RunStatus]),
    default=None,
    help="Only show runs in this status.",
)
def runs_list(home: Path | None, status: str | None) -> None:
    """List runs from published status records."""

    _emit_lines(_run(lambda: RUN_CONTROLLER.list_runs(ListRunsCommand(home=home, status=status))))


@runs.command("show")
@home_option
@click.argument("run_id")
@click.option("--fresh", is_flag=True, help="Read status through to the channel.")
@click.option(
    "--events",
    type=click.IntRange(min=0, max=500),
    default=20,
    show_default=True,
    help="How many latest events to print.",
)
def runs_show(home: Path | None, run_id: str, fresh: bool, events: int) -> None:
    """Show one run: persisted tasks plus published status and liveness."""

    _emit_lines(
        _run(
            lambda: RUN_CONTROLLER.show_run(
                ShowRunCommand(home=home, run_id=run_id, fresh=fresh, events=events),
            ),
        ),
    )


@runledger.command("cancel")
@home_option
@click.argument("run_id")
@click.option("--force", is_flag=True, help="Kill the running task without a grace period.")
def cancel(home: Path | None, run_id: str, force: bool) -> None:
    """Cancel a run."""

    _emit_lines(
        _run(lambda: RUN_CONTROLLER.cancel(CancelCommand(home=home, run_id=run_id, force=force))),
    )


@runledger.command("feedback")
@home_option
@click.argument("run_id")
@click.argument("decision", type=click.Choice([decision.value for decision in FeedbackDecision]))
@click.option("--notes", default=None, help="Free-form reviewer notes.")
@click.option("--task-id", default=None, help="Gate task the decision is meant for.")
def feedback(
    home: Path | None,
    run_id: str,
    decision: str,
    notes: str | None,
    task_id: str | None,
) -> None:
    """Approve or reject the human gate a run is blocked on."""

    _emit_lines(
        _run(
            lambda: RUN_CONTROLLER.feedback(
                FeedbackCommand(
                    home=home,
                    run_id=run_id,
                    decision=decision,
                    notes=notes,
                    task_id=task_id,
                ),
            ),
        ),
    )


@runledger.group()
def credentials() -> None:
    """Credential slot commands."""


@credentials.command("add")
@home_option
@click.option("--provider", default=None, help="Provider name (default from settings).")
@click.option("--key", prompt=True, hide_input=True, help="Key material for the new slot.")
@click.option("--label", default=None, help="Human-readable slot label.")
def credentials_add(home: Path | None, provider: str | None, key: str, label: str | None) -> None:
    """Append a credential slot."""

    _emit_lines(
        _run(
            lambda: RUN_CONTROLLER.add_credential(
                CredentialAddCommand(home=home, provider=provider, key=key, label=label),
            ),
        ),
    )


@credentials.command("remove")
@home_option
@click.option("--provider", default=None, help="Provider name (default from settings).")
@click.option("--slot", "slot_index", type=click.IntRange(min=0), required=True)
def credentials_remove(home: Path | None, provider: str | None, slot_index: int) -> None:
    """Retire a credential slot."""

    _emit_lines(
        _run(
            lambda: RUN_CONTROLLER.remove_credential(
                CredentialSlotCommand(home=home, provider=provider, slot_index=slot_index),
            ),
        ),
    )


@credentials.command("rotate")
@home_option
@click.option("--provider", default=None, help="Provider name (default from settings).")
@click.option(
    "--slot",
    "slot_index",
    type=click.IntRange(min=0),
    default=None,
    help="Point at this slot instead of the next active one.",
)
def credentials_rotate(home: Path | None, provider: str | None, slot_index: int | None) -> None:
    """Move the provider's current-slot pointer."""

    _emit_lines(
        _run(
            lambda: RUN_CONTROLLER.rotate_credential(
                CredentialSlotCommand(home=home, provider=provider, slot_index=slot_index),
            ),
        ),
    )


@credentials.command("list")
@home_option
def credentials_list(home: Path | None) -> None:
    """Show credential slots with masked keys."""

    _emit_lines(_run(lambda: RUN_CONTROLLER.list_credentials(CredentialListCommand(home=home))))


@runledger.group()
def unit() -> None:
    """Execution unit commands."""


@unit.command("run")
@home_option
@click.argument("run_id")
@click.option("--unit-id", default=None, help="Unit id whose lease to adopt.")
def unit_run(home: Path | None, run_id: str, unit_id: str | None) -> None:
    """Execute a run in the foreground until it settles."""

    result = _run(
        lambda: RUN_CONTROLLER.run_unit(
            UnitRunCommand(home=home, run_id=run_id, unit_id=unit_id),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Run {run_id} failed.")


@runledger.command("reconcile")
@home_option
@click.option("--auto-resume", is_flag=True, help="Resume runs whose unit is gone.")
def reconcile(home: Path | None, auto_resume: bool) -> None:
    """Refresh published status and report liveness."""

    _emit_lines(
        _run(
            lambda: RUN_CONTROLLER.reconcile(
                ReconcileCommand(home=home, auto_resume=auto_resume),
            ),
        ),
    )


@runledger.command("gc")
@home_option
@click.option("--days", type=int, default=None, help="Override retention window in days.")
@click.option("--dry-run", is_flag=True, help="Report without deleting.")
def gc(home: Path | None, days: int | None, dry_run: bool) -> None:
    """Delete terminal runs older than the retention window."""

    _emit_lines(
        _run(lambda: RUN_CONTROLLER.prune(PruneCommand(home=home, days=days, dry_run=dry_run))),
    )


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _parse_resources(values: tuple[str, ...]) -> dict[str, str]:
    resources: dict[str, str] = {}
    for value in values:
        key, sep, raw = value.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {value!r}.", param_hint="--resource")
        resources[key.strip()] = raw.strip()
    return resources


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    runledger()
