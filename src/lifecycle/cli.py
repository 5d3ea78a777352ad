"""Lifecycle engine CLI (lce).

Usage:
    lce plan -f manifest.yaml       # Show what apply would do
    lce apply -f manifest.yaml      # Reconcile Azure to the manifest
    lce destroy                     # Delete everything in state
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from .drift import DriftAction
from .main import ApplyAction, ResourcePlan, RunResult, run_command, setup_logging

ACTION_COLORS: dict[str, str] = {
    DriftAction.CREATE.value: "green",
    DriftAction.ADOPT.value: "cyan",
    DriftAction.UPDATE.value: "yellow",
    DriftAction.REPLACE.value: "magenta",
    DriftAction.DELETE.value: "red",
    DriftAction.CONFLICT.value: "red",
    DriftAction.UNKNOWN.value: "yellow",
    ApplyAction.FAILED.value: "red",
    ApplyAction.SKIPPED.value: "yellow",
}

manifest_option = click.option(
    "--manifest",
    "-f",
    "manifest_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Manifest YAML file",
)
state_option = click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="State file (default: $LCE_STATE_FILE or lce-state.json)",
)


def _run(
    command: str, manifest_path: Path | None, state_file: Path | None
) -> tuple[int, list[ResourcePlan] | RunResult | None]:
    exit_code, result = asyncio.run(run_command(command, manifest_path, state_file))
    return exit_code, result


def _echo_action(name: str, kind: str, action: str, detail: str | None = None) -> None:
    label = click.style(f"{action:>9}", fg=ACTION_COLORS.get(action), bold=True)
    line = f"{label}  {name} ({kind})"
    if detail:
        line += f": {detail}"
    click.echo(line)


def _echo_run(result: RunResult) -> None:
    for outcome in result.outcomes:
        _echo_action(outcome.name, outcome.kind, outcome.action.value, outcome.error)
    if result.cancelled:
        click.secho("Run cancelled before completion.", fg="yellow")
    elif result.success:
        click.secho(f"✓ Done in {result.duration_seconds:.1f}s", fg="green")
    else:
        failed = sum(1 for o in result.outcomes if o.action is ApplyAction.FAILED)
        click.secho(f"✗ {failed} resource(s) failed", fg="red")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="lce")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Resource lifecycle engine (lce).

    Reconciles Azure resources to a declarative manifest, adopting existing
    resources where their fixed settings match.

    \b
    Quick Start:
        lce plan -f manifest.yaml
        lce apply -f manifest.yaml
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@manifest_option
@state_option
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan(manifest_path: Path, state_file: Path | None, as_json: bool) -> None:
    """Show what apply would do, without changing anything."""
    exit_code, plans = _run("plan", manifest_path, state_file)
    if exit_code != 0 or not isinstance(plans, list):
        sys.exit(exit_code or 1)

    if as_json:
        click.echo(json.dumps([p.to_dict() for p in plans], indent=2, default=str))
        return

    entries: list[ResourcePlan] = plans
    for entry in entries:
        _echo_action(entry.name, entry.kind, entry.action.value)
        for note in entry.notes:
            click.echo(f"             {note}")
        if entry.report is not None:
            for drift in entry.report.drifts:
                click.echo(
                    f"             ~ {drift.field} ({drift.role.value}): "
                    f"{drift.actual!r} -> {drift.desired!r}"
                )

    changes = sum(1 for e in entries if e.action is not DriftAction.NONE)
    click.echo(f"\n{changes} of {len(entries)} resource(s) need action.")


@cli.command()
@manifest_option
@state_option
def apply(manifest_path: Path, state_file: Path | None) -> None:
    """Reconcile Azure to the manifest."""
    exit_code, result = _run("apply", manifest_path, state_file)
    if isinstance(result, RunResult):
        _echo_run(result)
    sys.exit(exit_code)


@cli.command()
@click.option(
    "--manifest",
    "-f",
    "manifest_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Manifest used to order deletion (optional)",
)
@state_option
@click.confirmation_option(prompt="Delete every resource recorded in state?")
def destroy(manifest_path: Path | None, state_file: Path | None) -> None:
    """Delete every resource recorded in state."""
    exit_code, result = _run("destroy", manifest_path, state_file)
    if isinstance(result, RunResult):
        _echo_run(result)
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
