"""bakery CLI: typer-based command interface."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import asdict
from pathlib import Path

import typer
import yaml

from . import __version__
from .config import load_config, mask_secret, user_config_path
from .errors import BakeryError
from .normalize import truncate_text
from .pipeline import STATUS_ERROR, BakeResult, run_bake

app = typer.Typer(
    name="bakery",
    help="bakery: turn a tracker work item into an OpenSpec change proposal",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# ~/.bakery/config.yaml: user configuration
# Environment variables AZURE_DEVOPS_PAT, AZURE_DEVOPS_ORG and
# AZURE_DEVOPS_PROJECT override the tracker values below.

tracker:
  organization: your-organization
  project: your-project
  pat_token: your-pat-token-here
  # base_url: https://dev.azure.com
  # api_version: "7.1"
  # auth_scheme: basic
  # max_attempts: 3

storage:
  base_directory: ~/devops-data
  # local_baking: false

generator:
  command: claude -p
  timeout_sec: 600
  auto_generate: true
  # prompt_template must contain {work_item} exactly once
  # prompt_template: |
  #   Draft a change proposal for:
  #   {work_item}

validator:
  command: openspec
  strict: true

display:
  truncate_at: 150
"""

MACHINE_KEYS = ("work_item_id", "work_item_title", "ticket_path", "change_path", "status")


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    return asyncio.run(coro)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


def _overrides(organization, project, pat_token, base_directory) -> dict:
    return {
        "tracker": {
            "organization": organization,
            "project": project,
            "pat_token": pat_token,
        },
        "storage": {"base_directory": base_directory},
    }


def _machine_value(value) -> str:
    # the block stays one line per key
    return " ".join(str(value).splitlines()).strip()


def _machine_block(values: dict) -> str:
    return "\n".join(f"{key}: {_machine_value(values.get(key, ''))}" for key in MACHINE_KEYS)


def _result_values(result: BakeResult) -> dict:
    return {
        "work_item_id": result.work_item.id,
        "work_item_title": result.work_item.title,
        "ticket_path": result.ticket_path,
        "change_path": result.change_path or "",
        "status": result.status,
    }


def _print_summary(result: BakeResult, truncate_at: int) -> None:
    wi = result.work_item
    typer.echo(f"\n  Work Item #{wi.id}: {wi.title}")
    typer.echo(f"  Type: {wi.work_item_type or 'Unknown'} | State: {wi.state or 'Unknown'}")
    if wi.description:
        typer.echo(f"  Description: {truncate_text(wi.description, truncate_at)}")
    typer.echo(
        f"  Comments: {len(wi.comments)} | Attachments: {len(wi.attachments)}"
        f" | Images: {len(wi.images)}"
    )
    typer.echo(f"  Ticket saved to {result.ticket_path}")

    if result.change_path is None:
        typer.echo("  Change generation skipped.")
        return
    counts = ", ".join(f"{n} {kind}" for kind, n in result.counts.items() if n)
    typer.echo(f"  Change written to {result.change_path}" + (f" ({counts})" if counts else ""))

    validation = result.validation
    if validation is None or validation.skipped:
        typer.echo("  Validation skipped.")
        for warning in result.warnings:
            typer.echo(f"    {warning}")
    elif validation.passed:
        typer.echo("  Validation passed.")
    else:
        typer.echo(f"  Validation reported {len(validation.issues)} issue(s):")
        for issue in validation.issues:
            typer.echo(f"    {issue}")
    typer.echo("")


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    ticket_id: int = typer.Option(None, "--ticket-id", "-t", help="Work item ID to bake"),
    organization: str = typer.Option(None, "--organization", "-o", help="Tracker organization"),
    project: str = typer.Option(None, "--project", "-p", help="Tracker project"),
    pat_token: str = typer.Option(None, "--pat-token", help="Personal access token"),
    base_directory: str = typer.Option(None, "--base-directory", "-b", help="Storage root"),
    no_openspec: bool = typer.Option(False, "--no-openspec", help="Download only; skip generation"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show diagnostic logging"),
    machine: bool = typer.Option(False, "--machine", help="Print a key: value summary block"),
):
    """Fetch a work item and generate its change proposal."""
    _setup_logging(verbose)
    if ctx.invoked_subcommand is not None:
        return
    if ticket_id is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)

    try:
        config = load_config(
            _get_project_root(),
            overrides=_overrides(organization, project, pat_token, base_directory),
        )
        result = _run_async(run_bake(config, ticket_id, generate=False if no_openspec else None))
    except BakeryError as exc:
        typer.echo(f"Error: {exc}", err=True)
        if machine:
            typer.echo(_machine_block({"work_item_id": ticket_id, "status": STATUS_ERROR}))
        raise typer.Exit(1)

    if machine:
        typer.echo(_machine_block(_result_values(result)))
    else:
        _print_summary(result, config.display.truncate_at)


@app.command()
def init():
    """Write a user config template to ~/.bakery/config.yaml."""
    path = user_config_path()
    if path.exists():
        typer.echo(f"  Exists  {path}")
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    typer.echo(f"  Created {path}")
    typer.echo("\n  Edit it to set your organization, project and PAT.")


@app.command("config")
def config_show():
    """Show merged configuration with the PAT masked."""
    try:
        config = load_config(_get_project_root())
    except BakeryError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)

    data = asdict(config)
    data["tracker"]["pat_token"] = mask_secret(data["tracker"]["pat_token"])

    typer.echo("\n  bakery: Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


@app.command()
def version():
    """Print the bakery version."""
    typer.echo(f"bakery {__version__}")


if __name__ == "__main__":
    app()
