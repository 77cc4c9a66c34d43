"""Tenant sync CLI (tenant-sync).

Offline helpers for operators preparing a tenant spec. Nothing here talks
to a remote service.

Usage:
    tenant-sync validate tenant.yaml
    tenant-sync plan tenant.yaml                       # plan against an empty tenant
    tenant-sync plan tenant.yaml --current rules.yaml  # plan against an exported snapshot
    tenant-sync config                                 # show configuration from env
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from .batching import allocate, normalize_desired
from .config import (
    DEFAULT_EXCEPTION_RULE_NAME,
    DEFAULT_RULE_PREFIX,
    MAX_BATCH_CAPACITY,
    ConfigurationError,
    SyncConfig,
)
from .main import setup_logging
from .planner import PlanAction, build_plan, is_shard_name
from .spec_loader import SpecLoadError, load_rule_snapshot, load_tenant_spec


@click.group()
@click.version_option(version="0.1.0", prog_name="tenant-sync")
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON debug logs on stdout.")
def cli(verbose: bool) -> None:
    """Tenant sync CLI.

    \b
    Quick Start:
        tenant-sync validate tenant.yaml
        tenant-sync plan tenant.yaml --current rules.yaml
    """
    if verbose:
        setup_logging(logging.DEBUG)


@cli.command()
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(spec_file: Path) -> None:
    """Validate a tenant spec file."""
    try:
        spec = load_tenant_spec(spec_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    roster = normalize_desired(spec.roster)
    click.secho(f"✓ {spec_file} is valid", fg="green")
    click.echo(f"  Roster: {len(roster)} unique display names")
    click.echo(f"  Disclaimer: {'configured' if spec.disclaimer else 'not configured'}")
    header, value = spec.exception.header_match
    click.echo(f"  Exception header: {header}: {value}")
    if spec.grant is not None:
        rights = ", ".join(r.value for r in spec.grant.rights)
        click.echo(f"  Grant: {rights} to {spec.grant.grantee} (automap={spec.grant.automap})")


@cli.command()
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--current",
    "current_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML export of the tenant's current rules.",
)
@click.option(
    "--capacity",
    type=click.IntRange(1, MAX_BATCH_CAPACITY),
    default=MAX_BATCH_CAPACITY,
    show_default=True,
    help="Display names per rule shard.",
)
@click.option("--prefix", default=DEFAULT_RULE_PREFIX, show_default=True, help="Rule name prefix.")
@click.option(
    "--exception-name",
    default=DEFAULT_EXCEPTION_RULE_NAME,
    show_default=True,
    help="Exception rule name, excluded from the shard plan.",
)
@click.option("--as-json", is_flag=True, help="Print the plan as JSON.")
def plan(
    spec_file: Path,
    current_file: Path | None,
    capacity: int,
    prefix: str,
    exception_name: str,
    as_json: bool,
) -> None:
    """Show the shard plan for a tenant spec."""
    try:
        spec = load_tenant_spec(spec_file)
        current = load_rule_snapshot(current_file) if current_file else []
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    current = [
        obj for obj in current if is_shard_name(obj.name, prefix) and obj.name != exception_name
    ]
    shards = allocate(normalize_desired(spec.roster), capacity)
    result = build_plan(shards, current, prefix=prefix, disclaimer=spec.disclaimer_payload)

    if as_json:
        entries = [
            {
                "index": entry.index,
                "action": entry.action.value,
                "name": entry.label,
                "current": entry.current.name if entry.current else None,
                "priority": entry.payload.priority if entry.payload else None,
                "members": len(entry.payload.member_words) if entry.payload else 0,
                "noop": entry.is_noop,
            }
            for entry in result
        ]
        click.echo(json.dumps(entries, indent=2))
        return

    click.echo(f"{len(shards)} shard(s), capacity {capacity}")
    for entry in result:
        if entry.action == PlanAction.DELETE:
            click.secho(f"  - delete  {entry.label}", fg="red")
        elif entry.action == PlanAction.CREATE:
            assert entry.payload is not None
            click.secho(
                f"  + create  {entry.label} (priority {entry.payload.priority}, "
                f"{len(entry.payload.member_words)} names)",
                fg="green",
            )
        else:
            assert entry.payload is not None and entry.current is not None
            status = "unchanged" if entry.is_noop else f"from {entry.current.name}"
            click.secho(
                f"  ~ update  {entry.label} (priority {entry.payload.priority}, "
                f"{len(entry.payload.member_words)} names, {status})",
                fg=None if entry.is_noop else "yellow",
            )
    click.echo(
        f"Plan: {result.creates} to create, {result.updates} to update, {result.deletes} to delete"
    )


@cli.command("config")
def show_config() -> None:
    """Show the run configuration loaded from the environment."""
    try:
        config = SyncConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Tenant:           {config.tenant_id}")
    click.echo(f"Rule prefix:      {config.rule_prefix}")
    click.echo(f"Exception rule:   {config.exception_rule_name}")
    click.echo(f"Batch capacity:   {config.batch_capacity}")
    click.echo(f"Deadline:         {config.effective_deadline_seconds or 'disabled'}")
    click.echo(f"Retry:            {'enabled' if config.enable_retry else 'disabled'}")
    click.echo(f"Mailbox types:    {', '.join(config.mailbox_filter.recipient_types)}")
    click.echo(f"Dry run:          {config.dry_run}")


if __name__ == "__main__":
    cli()
