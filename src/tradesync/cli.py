"""CLI entry point for tradesync."""

from __future__ import annotations

import asyncio
import json

import click

from .core.enums import Exchange

_EXCHANGES = click.Choice([e.value for e in Exchange])


@click.group()
def main() -> None:
    """Exchange position sync and trade journal."""


@main.command()
@click.option("--config", default="configs/tradesync.toml", help="Config file path")
def run(config: str) -> None:
    """Run the reconciliation scheduler until interrupted."""
    from .main import run as run_scheduler

    asyncio.run(run_scheduler(config_path=config))


@main.command()
@click.option("--config", default="configs/tradesync.toml", help="Config file path")
def sync(config: str) -> None:
    """Run one reconciliation pass and print its summary as JSON."""
    from .main import run_once

    summary = asyncio.run(run_once(config_path=config))
    if summary is None:
        click.echo("A pass is already running.", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(summary.as_dict(), indent=2))
    if summary.auth_failed:
        raise SystemExit(2)


@main.command()
@click.option("--config", default="configs/tradesync.toml", help="Config file path")
def pending(config: str) -> None:
    """List pending evaluations and unresolved positions."""
    from .main import list_pending

    tasks, counts, unresolved = asyncio.run(list_pending(config_path=config))

    click.echo(f"\nPending evaluations: {counts.opening} opening, {counts.closing} closing")
    if tasks:
        click.echo(f"\n{'Kind':9s} {'Exchange':9s} {'Symbol':14s} {'Side':6s} Position")
        click.echo("-" * 70)
        for task in tasks:
            click.echo(
                f"{task.kind.value:9s} {task.exchange.value:9s} {task.symbol:14s} "
                f"{task.side.value:6s} {task.position_id}"
            )

    if unresolved:
        click.echo(f"\nUnresolved positions ({len(unresolved)}):")
        for row in unresolved:
            last = (
                row.last_close_attempt_at.strftime("%Y-%m-%d %H:%M")
                if row.last_close_attempt_at
                else "-"
            )
            click.echo(
                f"  {row.exchange.value:9s} {row.symbol:14s} {row.position_id}  "
                f"attempts={row.close_attempts} last={last}"
            )
    click.echo()


@main.command("import-history")
@click.option("--config", default="configs/tradesync.toml", help="Config file path")
@click.option("--exchange", "exchange", type=_EXCHANGES, required=True, help="Exchange to import")
@click.option("--days", default=7, type=click.IntRange(min=1), help="How many days back")
def import_history(config: str, exchange: str, days: int) -> None:
    """Journal closed positions from the exchange history feed."""
    from .main import run_import

    summary = asyncio.run(run_import(Exchange(exchange), days, config_path=config))
    click.echo(
        f"Imported {len(summary.imported)} trade(s), "
        f"{len(summary.unchanged)} already journaled, "
        f"{len(summary.skipped)} still tracked, {len(summary.errors)} error(s)"
    )
    for error in summary.errors:
        click.echo(f"  {error.position_id}: {error.message}", err=True)


@main.command()
@click.option("--config", default="configs/tradesync.toml", help="Config file path")
@click.option("--exchange", "exchange", type=_EXCHANGES, required=True)
@click.option("--position", "position_id", required=True, help="Position id")
@click.option("--retry", "action", flag_value="retry", help="Return the position to open")
@click.option("--discard", "action", flag_value="discard", help="Delete the position")
def resolve(config: str, exchange: str, position_id: str, action: str | None) -> None:
    """Resolve an unresolved position manually."""
    from .main import resolve as resolve_position

    if action is None:
        raise click.UsageError("Pass either --retry or --discard")
    asyncio.run(
        resolve_position(
            Exchange(exchange), position_id, retry=action == "retry", config_path=config
        )
    )
    click.echo(f"{position_id}: {'queued for retry' if action == 'retry' else 'discarded'}")


@main.command("encrypt-secret")
@click.option("--secret-env", default="TRADESYNC_SECRET", help="Env var holding the vault key")
@click.password_option("--value", prompt="Value to encrypt", help="Plaintext to encrypt")
def encrypt_secret(secret_env: str, value: str) -> None:
    """Encrypt an API credential for use in the environment or config."""
    from .security.vault import CredentialVault

    click.echo(CredentialVault(secret_env=secret_env).encrypt(value))


if __name__ == "__main__":
    main()
