"""
CLI interface for API Key Manager.

Provides command-line access to the admin operations and runs the
aggregation and lifecycle timers with ``serve``.
"""

import logging
import sys
import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from api_key_manager.config.loader import StorageConfig, load_manager_config
from api_key_manager.core.aggregator import CycleOutcome
from api_key_manager.core.errors import KeyManagerError, mask_secret
from api_key_manager.core.manager import KeyManager

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_RETRY = 2  # Pool exhausted; the peer should retry later


def _open_manager(ctx: typer.Context) -> KeyManager:
    """Load configuration and persisted state for a command."""
    options = ctx.obj or {}
    config = load_manager_config(options.get("config"))
    if options.get("db"):
        config = replace(config, storage=StorageConfig(db_path=options["db"]))
    return KeyManager.open(config)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_currency(amount: Decimal, currency: str = "USD") -> str:
    """Format currency with proper symbols and formatting."""
    if currency == "USD":
        return f"${abs(amount):,.2f}"
    return f"{abs(amount):,.2f} {currency}"


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """API Key Manager CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": config, "db": db}
    if ctx.invoked_subcommand is None:
        console.print("API Key Manager - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the API Key Manager database."""
    try:
        _open_manager(ctx)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("add-key")
def add_key(
    ctx: typer.Context,
    api_key: str = typer.Argument(..., help="API key to add to the pool"),
    remote_id: Optional[str] = typer.Option(None, "--remote-id", help="Billing system id of the key"),
    workspace_id: Optional[str] = typer.Option(None, "--workspace-id", help="Workspace the key lives in"),
):
    """Add an API key to the active pool."""
    try:
        _open_manager(ctx).add_credential(api_key, remote_id=remote_id, workspace_id=workspace_id)
    except (KeyManagerError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] API key {mask_secret(api_key)} added successfully")


@app.command("retire-key")
def retire_key(ctx: typer.Context, api_key: str = typer.Argument(...)):
    """Stop issuing an API key; its peers and cost history are kept."""
    try:
        _open_manager(ctx).retire_credential(api_key)
    except KeyManagerError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] API key {mask_secret(api_key)} retired")


@app.command("delete-key")
def delete_key(ctx: typer.Context, api_key: str = typer.Argument(...)):
    """Delete an API key and ask the billing API to deactivate it."""
    try:
        manager = _open_manager(ctx)
        credential = manager.delete_credential(api_key)
    except KeyManagerError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] API key {mask_secret(api_key)} deleted")
    if not credential.remote_id:
        console.print(
            "[yellow]No remote id known; run sync-ids so the key can be deactivated[/]"
        )
    if api_key in manager.lifecycle.pending_revocations:
        console.print("[yellow]Remote revocation failed; it will be retried on the next scan[/]")


@app.command("list-keys")
def list_keys(
    ctx: typer.Context,
    all_keys: bool = typer.Option(False, "--all", "-a", help="Include deleted keys"),
    reveal: bool = typer.Option(False, "--reveal", help="Show full key values"),
):
    """List API keys with their assigned peers and total cost."""
    manager = _open_manager(ctx)
    credentials = manager.list_credentials(include_deleted=all_keys)
    if not credentials:
        console.print("\n[dim]No API keys in the pool.[/]")
        return

    table = Table(title="API Keys")
    table.add_column("Key")
    table.add_column("Status")
    table.add_column("Total cost", justify="right")
    table.add_column("Assigned peers")
    for info in credentials:
        table.add_row(
            info.value if reveal else mask_secret(info.value),
            info.status,
            _format_currency(info.total_cost),
            ", ".join(info.assigned_peers) or "-",
        )
    console.print(table)


@app.command("key-status")
def key_status(ctx: typer.Context, api_key: str = typer.Argument(...)):
    """Show one API key's state, peers and total cost."""
    manager = _open_manager(ctx)
    console.print(f"Status: {manager.credential_status(api_key)}")
    console.print(f"Assigned peers: {', '.join(manager.registry.peers_for(api_key)) or '-'}")
    console.print(f"Total cost: {_format_currency(manager.credential_costs(api_key).total)}")


@app.command("request-key")
def request_key(ctx: typer.Context, peer_id: str = typer.Argument(..., help="Requesting peer")):
    """Issue (or re-issue) the API key for a peer, as the transport would."""
    try:
        response = _open_manager(ctx).on_credential_request(peer_id)
    except ValueError as e:
        _fail(str(e))
    if not response.granted:
        console.print(f"[yellow]Unavailable:[/] {response.message}")
        sys.exit(EXIT_CODE_RETRY)
    console.print(response.credential)


@app.command()
def history(ctx: typer.Context):
    """Show every peer assignment, oldest first."""
    records = _open_manager(ctx).node_history()
    if not records:
        console.print("\n[dim]No assignments yet.[/]")
        return
    table = Table(title="Assignments")
    table.add_column("Peer")
    table.add_column("Key")
    table.add_column("Issued at")
    for record in records:
        table.add_row(record.peer_id, mask_secret(record.credential), record.issued_at.isoformat())
    console.print(table)


@app.command()
def costs(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", help="ISO date, inclusive"),
    end: Optional[str] = typer.Option(None, "--end", help="ISO date, inclusive"),
):
    """Show total cost and cost per key."""
    try:
        totals = _open_manager(ctx).total_costs(_parse_date(start), _parse_date(end))
    except ValueError as e:
        _fail(str(e))

    console.print("\n[bold]API Key Costs[/bold]")
    console.print("-" * 40)
    for value, currency, amount in totals.by_credential:
        console.print(f"{mask_secret(value)}: {_format_currency(amount, currency)}")
    if totals.total is not None:
        console.print(f"\n[bold]Total:[/bold] {_format_currency(totals.total, totals.currency)}")
    else:
        console.print("\n[bold]Totals by currency:[/bold]")
        for currency, amount in sorted(totals.by_currency.items()):
            console.print(f"{currency}: {_format_currency(amount, currency)}")
    if totals.stale:
        console.print("[yellow]Stale: the last cost refresh failed after all retries[/]")


@app.command("key-costs")
def key_costs(
    ctx: typer.Context,
    api_key: str = typer.Argument(...),
    start: Optional[str] = typer.Option(None, "--start", help="ISO date, inclusive"),
    end: Optional[str] = typer.Option(None, "--end", help="ISO date, inclusive"),
):
    """Show the cost series of one API key."""
    try:
        result = _open_manager(ctx).credential_costs(api_key, _parse_date(start), _parse_date(end))
    except ValueError as e:
        _fail(str(e))

    table = Table(title=f"Costs for {mask_secret(api_key)}")
    table.add_column("Bucket start")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    for sample in result.samples:
        table.add_row(
            sample.bucket_start.isoformat(),
            sample.description,
            _format_currency(sample.amount, sample.currency),
        )
    console.print(table)
    console.print(f"[bold]Total:[/bold] {_format_currency(result.total)}")


@app.command("set-admin-key")
def set_admin_key(ctx: typer.Context, admin_key: str = typer.Argument(..., help="Billing admin key")):
    """Store the admin key used to query the billing API."""
    try:
        _open_manager(ctx).set_admin_key(admin_key)
    except ValueError as e:
        _fail(str(e))
    console.print("[green]✓[/] Admin key set successfully")


@app.command("admin-key-status")
def admin_key_status(ctx: typer.Context):
    """Show whether an admin key is configured."""
    status = _open_manager(ctx).admin_key_status()
    if status.has_admin_key:
        console.print(f"Admin key configured ({status.key_prefix})")
    else:
        console.print("[yellow]No admin key configured[/]")


@app.command()
def refresh(ctx: typer.Context):
    """Run one cost aggregation cycle now."""
    try:
        result = _open_manager(ctx).refresh_costs()
    except KeyManagerError as e:
        _fail(str(e))

    if result.outcome == CycleOutcome.COMPLETED:
        console.print(f"[green]✓[/] {result.message or 'Costs are up to date'}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Refresh {result.outcome.value}:[/] {result.message}")
    sys.exit(EXIT_CODE_FAIL)


@app.command("reset-costs")
def reset_costs(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Clear all accumulated cost history."""
    if not yes:
        typer.confirm("Delete all cost history?", abort=True)
    _open_manager(ctx).reset_costs()
    console.print("[green]✓[/] Cost history cleared")


@app.command()
def scan(ctx: typer.Context):
    """Apply the retirement and deletion policy once."""
    report = _open_manager(ctx).run_lifecycle_scan()
    console.print(f"Retired: {len(report.retired)}")
    console.print(f"Deleted: {len(report.deleted)}")
    if report.revocation_failures:
        console.print(f"[yellow]Revocations pending: {len(report.revocation_failures)}[/]")
    if report.unrevocable:
        console.print(f"[yellow]Deleted without a remote id: {len(report.unrevocable)}[/]")
    for error in report.errors:
        console.print(f"[red]{error}[/]")


@app.command("sync-ids")
def sync_ids(ctx: typer.Context):
    """Resolve billing ids for keys added without one."""
    resolved = _open_manager(ctx).sync_remote_ids()
    console.print(f"Resolved {resolved} remote id(s)")


@app.command("create-workspace")
def create_workspace(ctx: typer.Context, name: str = typer.Argument(...)):
    """Create a billing workspace for a new key."""
    try:
        workspace_id = _open_manager(ctx).provision_workspace(name)
    except (KeyManagerError, ValueError) as e:
        _fail(str(e))
    console.print(workspace_id)


@app.command()
def serve(ctx: typer.Context):
    """Run the aggregation and lifecycle timers until interrupted."""
    manager = _open_manager(ctx)
    manager.start()
    console.print("[green]✓[/] API Key Manager running - press Ctrl+C to stop")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        manager.stop()
        console.print("Stopped")


if __name__ == "__main__":
    app()
