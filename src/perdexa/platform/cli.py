#!/usr/bin/env python
"""
CLI management commands for the Perdexa platform.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import click

from perdexa.platform.auth.bootstrap import ensure_superadmin
from perdexa.platform.db import init_db
from perdexa.platform.tasks import run_subscription_sweep


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    init_db: Callable[[], Awaitable[None]]
    ensure_superadmin: Callable[..., Awaitable[Any]]
    sweep: Callable[[], Awaitable[Any]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        init_db=init_db,
        ensure_superadmin=ensure_superadmin,
        sweep=run_subscription_sweep,
    )


@click.group()
def cli() -> None:
    """Perdexa platform CLI."""
    pass


@cli.command()
def init_database() -> None:
    """Create any missing tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.init_db())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--email", prompt=True, help="Super admin email")
@click.option("--password", prompt=True, hide_input=True, help="Super admin password")
@click.option("--name", default=None, help="Display name")
def create_superadmin(email: str, password: str, name: str | None) -> None:
    """Create a super admin, or promote an existing account."""
    deps = _get_cli_dependencies()
    user = asyncio.run(deps.ensure_superadmin(email, password, name=name))
    click.echo(f"Super admin {user.email} is ready (id={user.id})")


@cli.command()
def sweep_subscriptions() -> None:
    """Apply due trial expiries and lapsed paid periods once."""
    deps = _get_cli_dependencies()
    result = asyncio.run(deps.sweep())
    click.echo(
        f"Canceled {result.free_canceled} expired trial(s), "
        f"marked {result.paid_past_due} subscription(s) past due"
    )


if __name__ == "__main__":
    cli()
