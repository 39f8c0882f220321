#!/usr/bin/env python3
"""
Command-line interface for transactional soft deletes.

Inspect delete transactions, restore them and manage configuration.
"""

import importlib
import logging
import sys
from typing import Any, List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import __version__
from .config import get_config
from .coordinator import TransactionCoordinator
from .exceptions import TransactionalSoftDeleteError
from .mixins import TransactionalSoftDeleteMixin
from .registry import EntityRegistry, register_soft_delete_models

console = Console()


def _open_session(ctx: click.Context) -> Session:
    """Open a session on the configured database or exit."""
    database_url = ctx.obj.get("database_url") or get_config().database_url
    if not database_url:
        console.print(
            "[red]Error: Database URL required. "
            "Use --database-url or set TSD_DATABASE_URL.[/red]"
        )
        sys.exit(1)

    engine = create_engine(database_url)
    return Session(engine)


def _load_models(
    model_paths: Tuple[str, ...], registry: EntityRegistry
) -> List[str]:
    """Import model modules and register their soft-deletable classes.

    Each path is ``package.module:Base`` for a declarative base or model class,
    or ``package.module`` to register every soft-deletable class in the module.
    """
    type_ids: List[str] = []

    for model_path in model_paths:
        module_name, _, attribute = model_path.partition(":")
        module = importlib.import_module(module_name)

        if attribute:
            target: Any = getattr(module, attribute)
            if isinstance(target, type) and issubclass(
                target, TransactionalSoftDeleteMixin
            ):
                type_ids.append(registry.register(target))
            else:
                type_ids.extend(register_soft_delete_models(target, registry))
            continue

        for value in vars(module).values():
            if (
                isinstance(value, type)
                and issubclass(value, TransactionalSoftDeleteMixin)
                and hasattr(value, "__mapper__")
            ):
                type_ids.append(registry.register(value))

    return type_ids


def _format_timestamp(value: Optional[Any]) -> str:
    if value is None:
        return "[dim]-[/dim]"
    return value.strftime("%Y-%m-%d %H:%M:%S")


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--database-url",
    envvar="TSD_DATABASE_URL",
    help="SQLAlchemy database URL",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx: click.Context, database_url: Optional[str], verbose: bool) -> None:
    """Transactional Soft Deletes - inspect and restore delete transactions."""
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )

    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]Transactional Soft Deletes[/bold blue] v{__version__}\n"
                "[dim]Bulk-recoverable soft deletion[/dim]\n\n"
                "Use [bold]tsd --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.group()
def config() -> None:
    """Show configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    try:
        config_dict = get_config().to_dict()
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)

    if format == "json":
        console.print_json(data=config_dict)
    elif format == "yaml":
        import yaml

        console.print(yaml.dump(config_dict, default_flow_style=False))
    else:
        table = Table(title="Soft Delete Configuration", show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        for setting, value in config_dict.items():
            if value is None:
                value = "[dim]Not configured[/dim]"
            elif isinstance(value, bool):
                value = "✓" if value else "✗"
            table.add_row(setting, str(value))

        console.print(table)


@cli.group()
def transactions() -> None:
    """Inspect and restore delete transactions."""
    pass


@transactions.command("list")
@click.option("--open", "open_only", is_flag=True, help="Only unrestored transactions")
@click.option("--limit", type=int, default=50, help="Maximum transactions to show")
@click.pass_context
def transactions_list(ctx: click.Context, open_only: bool, limit: int) -> None:
    """List delete transactions, newest first."""
    session = _open_session(ctx)
    try:
        summaries = TransactionCoordinator(session).list_transactions(
            open_only=open_only, limit=limit
        )
    except (SQLAlchemyError, TransactionalSoftDeleteError) as e:
        console.print(f"[red]Error listing transactions: {e}[/red]")
        sys.exit(1)
    finally:
        session.close()

    if not summaries:
        console.print("[yellow]No delete transactions found[/yellow]")
        return

    table = Table(title="Delete Transactions", show_header=True)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Deleted By", justify="right")
    table.add_column("Deleted At")
    table.add_column("Entries", justify="right")
    table.add_column("Outstanding", justify="right")
    table.add_column("Restored At")

    for summary in summaries:
        table.add_row(
            str(summary.id),
            str(summary.deleted_by_id),
            _format_timestamp(summary.deleted_at),
            str(summary.total),
            str(summary.outstanding),
            _format_timestamp(summary.restored_at),
        )

    console.print(table)


@transactions.command("show")
@click.argument("transaction_id", type=int)
@click.pass_context
def transactions_show(ctx: click.Context, transaction_id: int) -> None:
    """Show one delete transaction and what it still has outstanding."""
    session = _open_session(ctx)
    try:
        coordinator = TransactionCoordinator(session)
        summary = coordinator.summarize(transaction_id)
        entries = coordinator.outstanding_items(transaction_id)
    except (SQLAlchemyError, TransactionalSoftDeleteError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    finally:
        session.close()

    status = (
        "[green]Restored[/green]" if summary.is_restored else "[yellow]Open[/yellow]"
    )
    console.print(
        Panel.fit(
            f"[bold]Delete transaction {summary.id}[/bold]  {status}\n"
            f"Deleted by {summary.deleted_by_id} at "
            f"{_format_timestamp(summary.deleted_at)}\n"
            f"Restored by {summary.restored_by_id or '-'} at "
            f"{_format_timestamp(summary.restored_at)}\n"
            f"{summary.outstanding} of {summary.total} entries outstanding",
            border_style="blue",
        )
    )

    if summary.by_type:
        table = Table(title="Outstanding by Type", show_header=True)
        table.add_column("Entity Type", style="cyan")
        table.add_column("Count", justify="right")
        for entity_type, count in summary.by_type.items():
            table.add_row(entity_type, str(count))
        console.print(table)

    if entries:
        table = Table(title="Outstanding Entries", show_header=True)
        table.add_column("Log ID", justify="right")
        table.add_column("Entity Type", style="cyan")
        table.add_column("Entity ID", justify="right")
        for entry in entries:
            table.add_row(str(entry.log_id), entry.entity_type, entry.entity_id)
        console.print(table)


@transactions.command("restore")
@click.argument("transaction_id", type=int)
@click.option(
    "--models",
    "model_paths",
    multiple=True,
    required=True,
    help="Module (or module:Base) defining the soft-deletable models",
)
@click.option("--actor-id", type=int, help="User id recorded as the restorer")
@click.pass_context
def transactions_restore(
    ctx: click.Context,
    transaction_id: int,
    model_paths: Tuple[str, ...],
    actor_id: Optional[int],
) -> None:
    """Restore every outstanding entry of a delete transaction."""
    registry = EntityRegistry()
    try:
        _load_models(model_paths, registry)
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        console.print(f"[red]Error loading models: {e}[/red]")
        sys.exit(1)

    session = _open_session(ctx)
    try:
        coordinator = TransactionCoordinator(
            session,
            registry=registry,
            user_id_provider=(lambda: actor_id) if actor_id is not None else None,
        )
        result = coordinator.restore_transaction(transaction_id)
    except TransactionalSoftDeleteError as e:
        console.print(f"[red]Restore aborted, nothing was changed: {e}[/red]")
        sys.exit(1)
    finally:
        session.close()

    console.print(
        f"[green]✓ Restored delete transaction {transaction_id} "
        f"({result.restored_count} entries)[/green]"
    )


@transactions.command("purge")
@click.option("--yes", is_flag=True, help="Confirm purging every transaction")
@click.pass_context
def transactions_purge(ctx: click.Context, yes: bool) -> None:
    """Delete every delete transaction and log entry."""
    if not yes:
        console.print("[red]Error: Refusing to purge without --yes[/red]")
        sys.exit(1)

    session = _open_session(ctx)
    try:
        TransactionCoordinator(session).truncate()
    except TransactionalSoftDeleteError as e:
        console.print(f"[red]Error purging transactions: {e}[/red]")
        sys.exit(1)
    finally:
        session.close()

    console.print("[green]✓ Purged all delete transactions[/green]")


if __name__ == "__main__":
    cli()
