#!/usr/bin/env python3
"""Polymarket PnL Tracker - Main CLI entry point."""
import click
import sys
import signal
import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Tuple

from rich.table import Table

from utils import (
    setup_logging,
    console,
    format_currency,
    format_percentage,
    format_time_ago,
    truncate_address,
    validate_wallet_address,
    InvalidWalletAddressError,
)
from api_client import DataAPIClient
from backfill import BackfillService
from config_loader import (
    ConfigError,
    load_config,
    validate_config,
    get_all_accounts,
    get_db_path,
    get_webhook_url,
)
from database import AccountNotFoundError, Database
from health_server import HealthServer
from notifications import NotificationService, WebhookValidationError
from reconciler import LEADERBOARD_SORT_KEYS, compute_account_stats, compute_leaderboard, compute_persona_stats
from pnl import compute_ledger, open_inventory
from sync_service import SyncService
from wallet_tracker import UpstreamFetchError, WalletTracker

# Exit code for unknown accounts or personas
EXIT_NOT_FOUND = 2

# Global shutdown event for graceful termination
shutdown_event = threading.Event()


def signal_handler(signum: int, frame) -> None:
    """Handle shutdown signals gracefully."""
    signal_name = signal.Signals(signum).name
    console.print(f"\n[bold yellow]Received {signal_name}, shutting down...[/bold yellow]")
    shutdown_event.set()


CONTEXT_SETTINGS = dict(help_option_names=['-h', '--help'])


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option('--config', '-c', type=click.Path(), default=None,
              help='Path to config file (optional, uses config.yaml by default)')
@click.pass_context
def cli(ctx, config):
    """Polymarket PnL Tracker - Reconstruct P&L history for tracked accounts."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config

    # Load config with environment variable support
    ctx.obj['config'] = load_config(config)

    log_level = ctx.obj['config'].get('reporting', {}).get('log_level', 'INFO')
    ctx.obj['logger'] = setup_logging(log_level)


def _pnl_color(value: float) -> str:
    return "green" if value >= 0 else "red"


def _open_db(config: Dict[str, Any]) -> Database:
    return Database(get_db_path(config))


def _build_notifier(config: Dict[str, Any]) -> NotificationService:
    try:
        return NotificationService(get_webhook_url(config))
    except WebhookValidationError as e:
        console.print(f"[yellow]Webhook disabled: {e}[/yellow]")
        return NotificationService(None)


def _build_sync_service(config: Dict[str, Any], db: Database, notifier) -> Tuple[SyncService, WalletTracker]:
    tracker = WalletTracker(DataAPIClient.from_config(config.get('api', {})))
    sync_config = config.get('sync', {})
    service = SyncService(
        db,
        tracker,
        get_all_accounts(config),
        interval_minutes=sync_config.get('interval_minutes', 5),
        trade_limit=sync_config.get('trade_limit', 100),
        notifier=notifier,
        personas=config.get('personas') or {},
    )
    return service, tracker


def _validated_config(ctx) -> Dict[str, Any]:
    config = ctx.obj['config']
    try:
        validate_config(config)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)
    return config


@cli.command()
@click.option('--health-port', type=int, default=None, help='Port for the HTTP server (default: server.port)')
@click.pass_context
def run(ctx, health_port):
    """Run the periodic sync service with its HTTP endpoints."""
    config = _validated_config(ctx)
    logger = ctx.obj['logger']

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    db = _open_db(config)
    notifier = _build_notifier(config)
    sync_service, tracker = _build_sync_service(config, db, notifier)
    backfill_service = BackfillService(
        db,
        carry_forward=config.get('backfill', {}).get('carry_forward', False),
        notifier=notifier,
    )

    server_config = config.get('server', {})
    health_server = HealthServer(
        port=health_port if health_port is not None else server_config.get('port', 8080),
        host=server_config.get('host', '0.0.0.0'),
        sync_service=sync_service,
        backfill_service=backfill_service,
        db=db,
    )
    health_server.start()

    console.print("\n[bold blue]Polymarket PnL Tracker[/bold blue]")
    console.print(f"Accounts: [green]{len(sync_service.accounts)}[/green]")
    console.print(f"Sync interval: {config['sync']['interval_minutes']} min")
    console.print(f"HTTP server: port {health_server.port}\n")

    notifier.send_startup_notification(len(sync_service.accounts), config['sync']['interval_minutes'])

    try:
        sync_service.start(run_on_start=config['sync'].get('run_on_start', True))
        shutdown_event.wait()
    except Exception as e:
        logger.exception("Tracker stopped on error")
        notifier.send_shutdown_notification(reason=f"Error: {e}")
        raise
    else:
        notifier.send_shutdown_notification(reason="Signal received")
    finally:
        console.print("\n[bold yellow]Shutting down tracker...[/bold yellow]")
        sync_service.stop()
        health_server.stop()
        tracker.close()
        db.close()
        console.print("[green]Cleanup complete.[/green]")


@cli.command()
@click.pass_context
def sync(ctx):
    """Run a single sync cycle over all configured accounts."""
    config = _validated_config(ctx)
    db = _open_db(config)
    notifier = _build_notifier(config)
    sync_service, tracker = _build_sync_service(config, db, notifier)
    try:
        sync_service.ensure_accounts()
        sync_service.ensure_personas()
        report = sync_service.trigger_sync()
    finally:
        tracker.close()
        db.close()

    table = Table(title="Sync Summary")
    table.add_column("Synced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("New Trades", justify="right")
    table.add_column("Duration", justify="right")
    duration = (report.finished_at - report.started_at).total_seconds()
    table.add_row(
        str(report.accounts_synced),
        f"[red]{report.accounts_failed}[/red]" if report.accounts_failed else "0",
        str(report.trades_inserted),
        f"{duration:.1f}s",
    )
    console.print(table)
    for username, error in report.failures.items():
        console.print(f"  [red]{username}: {error}[/red]")


@cli.command()
@click.argument('username', required=False)
@click.option('--all', 'all_accounts', is_flag=True, help='Backfill every stored account')
@click.option('--carry-forward/--no-carry-forward', default=None,
              help='Emit a snapshot for every day between the first and last trade')
@click.pass_context
def backfill(ctx, username, all_accounts: bool, carry_forward):
    """Rebuild daily P&L snapshots from stored trades."""
    config = ctx.obj['config']
    if not username and not all_accounts:
        raise click.UsageError("Pass a USERNAME or --all")

    if carry_forward is None:
        carry_forward = config.get('backfill', {}).get('carry_forward', False)

    db = _open_db(config)
    service = BackfillService(db, carry_forward=carry_forward, notifier=_build_notifier(config))
    try:
        if all_accounts:
            results = service.backfill_all()
        else:
            try:
                results = [service.backfill_account(username)]
            except AccountNotFoundError as e:
                console.print(f"[red]Error: {e}[/red]")
                sys.exit(EXIT_NOT_FOUND)
    finally:
        db.close()

    table = Table(title="Backfill Results")
    table.add_column("Account")
    table.add_column("Trades", justify="right")
    table.add_column("Snapshots", justify="right")
    table.add_column("Realized P&L", justify="right")
    table.add_column("First Trade")
    table.add_column("Last Trade")
    for result in results:
        color = _pnl_color(result.total_realized_pnl)
        table.add_row(
            result.username,
            str(result.trades_processed),
            str(result.snapshots_created),
            f"[{color}]{format_currency(result.total_realized_pnl)}[/{color}]",
            result.oldest_trade_time.strftime("%Y-%m-%d") if result.oldest_trade_time else "-",
            result.newest_trade_time.strftime("%Y-%m-%d") if result.newest_trade_time else "-",
        )
    console.print(table)


@cli.command()
@click.argument('username')
@click.pass_context
def stats(ctx, username: str):
    """Show current P&L statistics for an account."""
    db = _open_db(ctx.obj['config'])
    try:
        account_stats = compute_account_stats(db, username)
    except AccountNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(EXIT_NOT_FOUND)
    finally:
        db.close()

    console.print(f"\n[bold blue]{account_stats.username}[/bold blue]")
    for address in account_stats.addresses:
        console.print(f"  [dim]{truncate_address(address)}[/dim]")
    console.print()
    for label, value in (
        ("Total P&L", account_stats.total_pnl),
        ("Realized P&L", account_stats.realized_pnl),
        ("Unrealized P&L", account_stats.unrealized_pnl),
    ):
        color = _pnl_color(value)
        console.print(f"{label}: [{color}]{format_currency(value)}[/{color}]")
    console.print(f"Open Positions: {account_stats.open_positions}")
    console.print(f"Trades: {account_stats.total_trades}")
    console.print(
        f"Win Rate: {format_percentage(account_stats.win_rate)} "
        f"({account_stats.wins}W / {account_stats.losses}L)"
    )
    if account_stats.official_volume is not None:
        console.print(f"Lifetime Volume: {format_currency(account_stats.official_volume)}")
    if account_stats.last_synced:
        console.print(f"Last Synced: {format_time_ago(account_stats.last_synced)}")


@cli.command()
@click.argument('slug')
@click.pass_context
def persona(ctx, slug: str):
    """Show combined statistics for a persona."""
    db = _open_db(ctx.obj['config'])
    try:
        persona_stats = compute_persona_stats(db, slug)
    except AccountNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(EXIT_NOT_FOUND)
    finally:
        db.close()

    table = Table(title=f"{persona_stats.display_name} ({persona_stats.slug})")
    table.add_column("Account")
    table.add_column("Total P&L", justify="right")
    table.add_column("Win Rate", justify="right")
    table.add_column("Trades", justify="right")
    for account_stats in persona_stats.accounts:
        color = _pnl_color(account_stats.total_pnl)
        table.add_row(
            account_stats.username,
            f"[{color}]{format_currency(account_stats.total_pnl)}[/{color}]",
            format_percentage(account_stats.win_rate),
            str(account_stats.total_trades),
        )
    color = _pnl_color(persona_stats.total_pnl)
    table.add_row(
        "[bold]Total[/bold]",
        f"[bold {color}]{format_currency(persona_stats.total_pnl)}[/bold {color}]",
        format_percentage(persona_stats.win_rate),
        str(persona_stats.total_trades),
    )
    console.print(table)


@cli.command()
@click.option('--sort', 'sort_by', type=click.Choice(LEADERBOARD_SORT_KEYS), default='total_pnl',
              help='Field to rank accounts by')
@click.option('--asc', is_flag=True, help='Sort ascending instead of descending')
@click.pass_context
def leaderboard(ctx, sort_by: str, asc: bool):
    """Rank all stored accounts."""
    db = _open_db(ctx.obj['config'])
    try:
        board = compute_leaderboard(db, sort_by=sort_by, descending=not asc)
    finally:
        db.close()

    table = Table(title="Leaderboard")
    table.add_column("#", justify="right")
    table.add_column("Account")
    table.add_column("Total P&L", justify="right")
    table.add_column("Realized", justify="right")
    table.add_column("Unrealized", justify="right")
    table.add_column("Win Rate", justify="right")
    for rank, account_stats in enumerate(board, start=1):
        color = _pnl_color(account_stats.total_pnl)
        table.add_row(
            str(rank),
            account_stats.username,
            f"[{color}]{format_currency(account_stats.total_pnl)}[/{color}]",
            format_currency(account_stats.realized_pnl),
            format_currency(account_stats.unrealized_pnl),
            format_percentage(account_stats.win_rate),
        )
    console.print(table)


@cli.command()
@click.argument('username')
@click.option('--days', type=int, default=None, help='Only show the last N days')
@click.pass_context
def history(ctx, username: str, days):
    """Show stored P&L snapshots for an account."""
    db = _open_db(ctx.obj['config'])
    try:
        account = db.get_account(username)
        if account is None:
            console.print(f"[red]Error: Account not found: {username}[/red]")
            sys.exit(EXIT_NOT_FOUND)
        since = datetime.now(UTC) - timedelta(days=days) if days else None
        snapshots = db.get_pnl_history(account.id, since=since)
    finally:
        db.close()

    if not snapshots:
        console.print("No snapshots stored.")
        return

    table = Table(title=f"P&L History - {username}")
    table.add_column("Time")
    table.add_column("Total", justify="right")
    table.add_column("Realized", justify="right")
    table.add_column("Unrealized", justify="right")
    for snapshot in snapshots:
        total = snapshot.total_pnl or 0.0
        color = _pnl_color(total)
        table.add_row(
            snapshot.timestamp.strftime("%Y-%m-%d %H:%M"),
            f"[{color}]{format_currency(total)}[/{color}]",
            format_currency(snapshot.realized_pnl or 0.0),
            format_currency(snapshot.unrealized_pnl or 0.0),
        )
    console.print(table)


@cli.command()
@click.argument('username')
@click.option('--ledger', is_flag=True,
              help='Show open inventory rebuilt from stored trades instead of the cached positions')
@click.pass_context
def positions(ctx, username: str, ledger: bool):
    """Show open positions of an account."""
    db = _open_db(ctx.obj['config'])
    try:
        account = db.get_account(username)
        if account is None:
            console.print(f"[red]Error: Account not found: {username}[/red]")
            sys.exit(EXIT_NOT_FOUND)
        if ledger:
            inventory = open_inventory(compute_ledger(db.get_trades_chronological(account.id)))
        else:
            cached = db.get_positions(account.id)
    finally:
        db.close()

    if ledger:
        table = Table(title=f"Ledger Inventory - {username}")
        table.add_column("Market")
        table.add_column("Outcome")
        table.add_column("Shares", justify="right")
        table.add_column("Avg Price", justify="right")
        table.add_column("Cost Basis", justify="right")
        for key, summary in sorted(inventory.items()):
            table.add_row(
                key.condition_id,
                key.outcome,
                f"{summary['shares']:.4f}",
                f"{summary['avg_price']:.2f}",
                format_currency(summary['cost_basis']),
            )
        console.print(table)
        return

    table = Table(title=f"Open Positions - {username}")
    table.add_column("Market")
    table.add_column("Outcome")
    table.add_column("Size", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("P&L", justify="right")
    for p in cached:
        pnl = p.unrealized_pnl or 0.0
        color = _pnl_color(pnl)
        table.add_row(
            p.market_title or p.market_slug or p.condition_id,
            p.outcome,
            f"{p.size or 0.0:.4f}",
            f"{p.avg_price or 0.0:.2f}",
            format_currency(p.current_value or 0.0),
            f"[{color}]{format_currency(pnl)}[/{color}]",
        )
    console.print(table)


@cli.command()
@click.argument('username')
@click.option('--limit', type=int, default=20, show_default=True, help='Number of trades to show')
@click.pass_context
def trades(ctx, username: str, limit: int):
    """Show the most recent stored trades of an account."""
    db = _open_db(ctx.obj['config'])
    try:
        account = db.get_account(username)
        if account is None:
            console.print(f"[red]Error: Account not found: {username}[/red]")
            sys.exit(EXIT_NOT_FOUND)
        recent =db.get_recent_trades(account.id, limit=limit)
    finally:
        db.close()

    if not recent:
        console.print("No trades stored.")
        return

    table = Table(title=f"Recent Trades - {username}")
    table.add_column("Time")
    table.add_column("Side")
    table.add_column("Market")
    table.add_column("Outcome")
    table.add_column("Size", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Value", justify="right")
    for t in recent:
        side_color = "green" if t.side == "BUY" else "red"
        table.add_row(
            t.timestamp.strftime("%Y-%m-%d %H:%M") if t.timestamp else "-",
            f"[{side_color}]{t.side}[/{side_color}]",
            t.market_title or t.market_slug or t.condition_id,
            t.outcome,
            f"{t.size:.4f}",
            f"{t.price:.2f}",
            format_currency(t.value or 0.0),
        )
    console.print(table)


@cli.command()
@click.argument('username')
@click.option('--limit', type=int, default=50, show_default=True, help='Number of markets to show')
@click.pass_context
def results(ctx, username: str, limit: int):
    """Show markets with realized P&L for an account."""
    db = _open_db(ctx.obj['config'])
    try:
        account = db.get_account(username)
        if account is None:
            console.print(f"[red]Error: Account not found: {username}[/red]")
            sys.exit(EXIT_NOT_FOUND)
        rows =db.get_results(account.id, limit=limit)
    finally:
        db.close()

    if not rows:
        console.print("No results yet.")
        return

    table = Table(title=f"Results - {username}")
    table.add_column("Market")
    table.add_column("Outcome")
    table.add_column("Invested", justify="right")
    table.add_column("Realized P&L", justify="right")
    table.add_column("Ends")
    for r in rows:
        color = _pnl_color(r.realized_pnl)
        table.add_row(
            r.market_title or r.market_slug or r.condition_id,
            r.outcome,
            format_currency(r.initial_value or 0.0),
            f"[{color}]{format_currency(r.realized_pnl)}[/{color}]",
            r.end_date or "-",
        )
    total = sum(r.realized_pnl for r in rows)
    color = _pnl_color(total)
    table.add_row("[bold]Total[/bold]", "", "", f"[bold {color}]{format_currency(total)}[/bold {color}]", "")
    console.print(table)


@cli.command()
@click.argument('address')
@click.pass_context
def watch(ctx, address: str):
    """Show live positions of a wallet without storing anything."""
    try:
        address = validate_wallet_address(address)
    except InvalidWalletAddressError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    tracker = WalletTracker(DataAPIClient.from_config(ctx.obj['config'].get('api', {})))
    console.print(f"\n[bold blue]Watching {truncate_address(address)}...[/bold blue]\n")

    try:
        positions = tracker.fetch_positions(address)
    except UpstreamFetchError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    finally:
        tracker.close()

    total_value = sum(p.current_value or 0.0 for p in positions)
    console.print(f"Portfolio Value: [green]{format_currency(total_value)}[/green]")
    console.print(f"Positions: {len(positions)}\n")

    for p in positions:
        console.print(f"  {p.market_title or p.market_slug or p.condition_id}")
        console.print(f"    Outcome: {p.outcome}")
        console.print(f"    Size: {p.size or 0.0:.4f} shares @ {p.avg_price or 0.0:.2f}")
        console.print(f"    Value: {format_currency(p.current_value or 0.0)}")
        pnl = p.unrealized_pnl or 0.0
        if pnl != 0:
            color = _pnl_color(pnl)
            console.print(f"    P&L: [{color}]{format_currency(pnl)}[/{color}]")
        console.print()


@cli.command()
@click.argument('username')
@click.option('--yes', is_flag=True, help='Confirm deletion without prompting')
@click.pass_context
def reset(ctx, username: str, yes: bool):
    """Delete an account's trades, positions and snapshots."""
    if not yes:
        click.confirm(f"Delete all stored history for {username}?", abort=True)

    db = _open_db(ctx.obj['config'])
    try:
        account = db.get_account(username)
        if account is None:
            console.print(f"[red]Error: Account not found: {username}[/red]")
            sys.exit(EXIT_NOT_FOUND)
        deleted = db.reset_account(account.id)
    finally:
        db.close()

    console.print(
        f"[green]Reset {username}:[/green] {deleted['trades']} trades, "
        f"{deleted['positions']} positions, {deleted['snapshots']} snapshots deleted"
    )


if __name__ == '__main__':
    cli()
