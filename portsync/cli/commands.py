"""
portsync command line interface.

Commands:
- refresh: run one live refresh for an account and print the result
- snapshot: print the last persisted snapshot (no gateway traffic)
- status: show per-category refresh timestamps and whether a refresh is due
- watch: keep accounts fresh with the auto-refresh scheduler
- stream: keep one account stream open and persist it periodically
- init-db: create the storage schema
"""

import asyncio
import logging
from typing import List, NoReturn, Optional

import typer

from portsync.config.gateway_config import GatewayConfig
from portsync.config.settings import get_logging_settings
from portsync.engine import get_shared_engine, shutdown_shared_engine
from portsync.logging import apply_component_levels, configure_logging, get_logger, set_debug_mode
from portsync.models import AccountSnapshot
from portsync.persistence.database import DatabaseManager
from portsync.cli.output import console, print_error, print_refresh_status, print_snapshot

logger = get_logger(__name__)

app = typer.Typer(
    name="portsync",
    help="Broker gateway portfolio synchronization",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_dir: Optional[str] = typer.Option(None, "--log-dir", help="Also write rotating log files here"),
):
    settings = get_logging_settings()
    debug = verbose or settings.debug
    configure_logging(
        log_dir=log_dir or settings.log_dir or None,
        console_level=logging.DEBUG if debug else getattr(logging, settings.level.upper(), logging.INFO),
    )
    apply_component_levels(settings.component_levels)
    set_debug_mode(debug)


def _gateway_config(
    host: Optional[str], port: Optional[int], client_id: Optional[int], account: Optional[str]
) -> GatewayConfig:
    return GatewayConfig.from_env(host=host, port=port, client_id=client_id, account_code=account)


def _fail(error: Exception) -> NoReturn:
    logger.debug(f"Command failed: {error!r}")
    print_error(error)
    raise typer.Exit(1) from error


@app.command("refresh")
def refresh(
    account_id: int = typer.Option(..., "--account-id", "-a", help="Account id used as the storage key"),
    host: Optional[str] = typer.Option(None, "--host", help="Gateway host (default IB_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Gateway port (default IB_PORT)"),
    client_id: Optional[int] = typer.Option(None, "--client-id", help="Client id (default IB_CLIENT_ID)"),
    account: Optional[str] = typer.Option(None, "--account", help="Broker account code (default IB_ACCOUNT)"),
    db_url: Optional[str] = typer.Option(None, "--db-url", help="Database URL (default PORTSYNC_DB_URL)"),
):
    """
    Run one live refresh and print the persisted snapshot.

    Examples:
        portsync refresh --account-id 1
        portsync refresh -a 2 --port 4001 --account U1234567
    """
    try:
        config = _gateway_config(host, port, client_id, account)
        snapshot = asyncio.run(_refresh(account_id, config, db_url))
    except Exception as e:
        _fail(e)
    print_snapshot(snapshot)


async def _refresh(account_id: int, config: GatewayConfig, db_url: Optional[str]) -> AccountSnapshot:
    engine = await get_shared_engine(db_url)
    try:
        return await engine.orchestrator.refresh(account_id, config, manual=True)
    finally:
        await shutdown_shared_engine()


@app.command("snapshot")
def snapshot(
    account_id: int = typer.Option(..., "--account-id", "-a", help="Account id used as the storage key"),
    db_url: Optional[str] = typer.Option(None, "--db-url", help="Database URL (default PORTSYNC_DB_URL)"),
):
    """Print the last persisted snapshot without contacting the gateway."""
    try:
        result = asyncio.run(_snapshot(account_id, db_url))
    except Exception as e:
        _fail(e)
    print_snapshot(result)


async def _snapshot(account_id: int, db_url: Optional[str]) -> AccountSnapshot:
    engine = await get_shared_engine(db_url)
    try:
        return await engine.orchestrator.get_snapshot(account_id)
    finally:
        await shutdown_shared_engine()


@app.command("status")
def status(
    account_id: int = typer.Option(..., "--account-id", "-a", help="Account id used as the storage key"),
    db_url: Optional[str] = typer.Option(None, "--db-url", help="Database URL (default PORTSYNC_DB_URL)"),
):
    """Show when each data category was last refreshed and whether it is due."""
    try:
        result = asyncio.run(_status(account_id, db_url))
    except Exception as e:
        _fail(e)
    print_refresh_status(account_id, result)


async def _status(account_id: int, db_url: Optional[str]):
    engine = await get_shared_engine(db_url)
    try:
        return await engine.persistence.refresh_status(account_id)
    finally:
        await shutdown_shared_engine()


@app.command("watch")
def watch(
    account_ids: List[int] = typer.Option(..., "--account-id", "-a", help="Account id (repeatable)"),
    host: Optional[str] = typer.Option(None, "--host", help="Gateway host (default IB_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Gateway port (default IB_PORT)"),
    client_id: Optional[int] = typer.Option(None, "--client-id", help="Client id (default IB_CLIENT_ID)"),
    account: Optional[str] = typer.Option(None, "--account", help="Broker account code (default IB_ACCOUNT)"),
    db_url: Optional[str] = typer.Option(None, "--db-url", help="Database URL (default PORTSYNC_DB_URL)"),
):
    """Refresh the given accounts whenever their data goes stale. Ctrl-C to stop."""
    try:
        config = _gateway_config(host, port, client_id, account)
        asyncio.run(_watch(account_ids, config, db_url))
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
    except Exception as e:
        _fail(e)


async def _watch(account_ids: List[int], config: GatewayConfig, db_url: Optional[str]) -> None:
    engine = await get_shared_engine(db_url)
    try:
        for account_id in account_ids:
            engine.scheduler.register(account_id, config)
        engine.scheduler.start()
        console.print(
            f"Watching account(s) {', '.join(map(str, account_ids))} "
            f"every {engine.scheduler.settings.auto_refresh_minutes:g} minutes"
        )
        await asyncio.Event().wait()
    finally:
        await shutdown_shared_engine()


@app.command("stream")
def stream(
    account_id: int = typer.Option(..., "--account-id", "-a", help="Account id used as the storage key"),
    host: Optional[str] = typer.Option(None, "--host", help="Gateway host (default IB_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Gateway port (default IB_PORT)"),
    client_id: Optional[int] = typer.Option(None, "--client-id", help="Client id (default IB_CLIENT_ID)"),
    account: Optional[str] = typer.Option(None, "--account", help="Broker account code (default IB_ACCOUNT)"),
    db_url: Optional[str] = typer.Option(None, "--db-url", help="Database URL (default PORTSYNC_DB_URL)"),
):
    """Keep the account stream open and persist it periodically. Ctrl-C to stop."""
    try:
        config = _gateway_config(host, port, client_id, account)
        asyncio.run(_stream(account_id, config, db_url))
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
    except Exception as e:
        _fail(e)


async def _stream(account_id: int, config: GatewayConfig, db_url: Optional[str]) -> None:
    engine = await get_shared_engine(db_url)
    try:
        snapshot = await engine.orchestrator.start_streaming(account_id, config)
        print_snapshot(snapshot)
        console.print(
            f"Streaming account {account_id}, "
            f"syncing every {engine.orchestrator.settings.stream_sync_seconds:g}s"
        )
        await asyncio.Event().wait()
    finally:
        await shutdown_shared_engine()


@app.command("init-db")
def init_db(
    db_url: Optional[str] = typer.Option(None, "--db-url", help="Database URL (default PORTSYNC_DB_URL)"),
):
    """Create the storage schema."""
    try:
        asyncio.run(_init_db(db_url))
    except Exception as e:
        _fail(e)
    console.print("[green]Database schema ready[/green]")


async def _init_db(db_url: Optional[str]) -> None:
    db = DatabaseManager(db_url)
    try:
        await db.create_tables()
    finally:
        await db.close()
