from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer

from .core.config import load_config, resolve_config_path
from .core.exceptions import ConfigurationError
from .core.logging_utils import setup_rotating_logger
from .fluxer.channel import (
    FluxerAccount,
    build_account_snapshot,
    describe_account,
    notify_approval,
    probe_account,
    resolve_account,
    start_account,
)
from .fluxer.config import FluxerChannelConfig
from .fluxer.constants import DEFAULT_PROBE_TIMEOUT_MS, FLUXER_CHANNEL_ID
from .fluxer.errors import FluxerAPIError, FluxerGatewayHalted
from .fluxer.media import LocalMediaStore
from .fluxer.outbound import OutboundDelivery
from .fluxer.pairing_store import SqlitePairingStore
from .fluxer.rest import FluxerRestClient
from .fluxer.system_events import (
    LocalRuntime,
    LoggingErrorReporter,
    LoggingSystemEventSink,
)

LOGGER_NAME = "fluxer-channel"

app = typer.Typer(add_completion=False, help="Fluxer chat channel adapter.")
pairing_app = typer.Typer(add_completion=False, help="Manage DM pairing requests.")
app.add_typer(pairing_app, name="pairing")


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _load(
    path: Optional[Path],
) -> tuple[dict[str, Any], FluxerAccount, FluxerChannelConfig]:
    try:
        cfg = load_config(path)
        account = resolve_account(cfg)
        channel_cfg = FluxerChannelConfig.from_raw(
            account.config, root=resolve_config_path(path).parent
        )
    except ConfigurationError as exc:
        raise_exit(str(exc), cause=exc)
    return cfg, account, channel_cfg


async def _run_forever(
    cfg: dict[str, Any],
    account: FluxerAccount,
    channel_cfg: FluxerChannelConfig,
    *,
    root: Path,
    logger: logging.Logger,
) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    store = SqlitePairingStore(channel_cfg.state_file)
    await store.initialize()
    runtime = LocalRuntime(
        pairing_store=store,
        media_fetcher=LocalMediaStore(
            channel_cfg.media_dir, max_bytes=channel_cfg.media_max_bytes
        ),
        system_events=LoggingSystemEventSink(logger),
        error_reporter=LoggingErrorReporter(logger),
    )
    try:
        await start_account(
            account,
            host_config=cfg,
            stop_event=stop_event,
            logger=logger,
            runtime=runtime,
            root=root,
        )
    finally:
        await store.close()


@app.command("start")
def start(
    path: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    log_path: Optional[Path] = typer.Option(None, "--log", help="Log file path"),
) -> None:
    """Connect to the gateway and handle inbound messages until interrupted."""

    cfg, account, channel_cfg = _load(path)
    if not account.enabled:
        raise_exit(
            f"channels.{FLUXER_CHANNEL_ID} is disabled; "
            f"set channels.{FLUXER_CHANNEL_ID}.enabled: true"
        )
    logger = setup_rotating_logger(LOGGER_NAME, log_path)
    try:
        asyncio.run(
            _run_forever(
                cfg,
                account,
                channel_cfg,
                root=resolve_config_path(path).parent,
                logger=logger,
            )
        )
    except ConfigurationError as exc:
        raise_exit(str(exc), cause=exc)
    except FluxerGatewayHalted as exc:
        raise_exit(f"Fluxer gateway halted: {exc}", cause=exc)
    except KeyboardInterrupt:
        pass
    typer.echo("Fluxer channel stopped.")


@app.command("probe")
def probe(
    path: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    timeout_ms: int = typer.Option(
        DEFAULT_PROBE_TIMEOUT_MS, "--timeout-ms", help="Probe timeout"
    ),
) -> None:
    """Check the bot token against ``/users/@me``."""

    _, account, _ = _load(path)
    result = asyncio.run(probe_account(account, timeout_ms=timeout_ms))
    snapshot = build_account_snapshot(account, probe=result)
    typer.echo(json.dumps(snapshot, indent=2))
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("status")
def status(
    path: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
) -> None:
    """Print the resolved account without contacting the API."""

    _, account, _ = _load(path)
    typer.echo(json.dumps(describe_account(account), indent=2))


async def _list_pending(state_file: Path) -> list[Any]:
    store = SqlitePairingStore(state_file)
    try:
        return await store.list_pending(FLUXER_CHANNEL_ID)
    finally:
        await store.close()


async def _approve(
    state_file: Path, code: str, *, token: Optional[str], notify: bool
) -> Optional[str]:
    store = SqlitePairingStore(state_file)
    try:
        sender_id = await store.approve(FLUXER_CHANNEL_ID, code)
    finally:
        await store.close()
    if sender_id is None or not notify or not token:
        return sender_id
    async with FluxerRestClient(bot_token=token) as rest:
        outbound = OutboundDelivery(rest, logger=logging.getLogger(LOGGER_NAME))
        try:
            await notify_approval(outbound, sender_id)
        except FluxerAPIError as exc:
            typer.echo(f"Approved, but notifying {sender_id} failed: {exc}", err=True)
    return sender_id


@pairing_app.command("list")
def pairing_list(
    path: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
) -> None:
    """List senders waiting for approval."""

    _, _, channel_cfg = _load(path)
    pending = asyncio.run(_list_pending(channel_cfg.state_file))
    if not pending:
        typer.echo("No pending pairing requests.")
        return
    for request in pending:
        name = request.meta.get("name") or ""
        typer.echo(f"{request.code}\t{request.sender_id}\t{name}\t{request.created_at}")


@pairing_app.command("approve")
def pairing_approve(
    code: str = typer.Argument(..., help="Pairing code sent to the user"),
    path: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    notify: bool = typer.Option(
        True, "--notify/--no-notify", help="Message the approved user"
    ),
) -> None:
    """Approve a pending pairing code."""

    _, account, channel_cfg = _load(path)
    sender_id = asyncio.run(
        _approve(channel_cfg.state_file, code, token=account.token, notify=notify)
    )
    if sender_id is None:
        raise_exit(f"No pending pairing request for code {code}.")
    typer.echo(f"Approved {sender_id}.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
