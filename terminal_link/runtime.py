"""Process wiring for a terminal: logging, components, signal handling."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import structlog

from .bus import (
    CONNECTED,
    DISCONNECTED,
    MAX_RECONNECT_ATTEMPTS_REACHED,
    TERMINAL_ASSIGNED,
    DispatchBus,
)
from .config import TerminalLinkConfig
from .connection import ConnectionManager, websocket_connector
from .identity import FileIdentityStore, TerminalIdentityResolver
from .lifecycle import HostLifecycle
from .registry import TerminalRegistry
from .snapshot import SnapshotBuilder
from .status import StatusReporter

logger = structlog.get_logger()


def configure_logging(level: str = "info") -> None:
    """Configure structlog with JSON rendering and ISO timestamps."""
    min_level = logging.getLevelName(level.upper())
    if not isinstance(min_level, int):
        min_level = logging.INFO
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


@dataclass
class Terminal:
    """Every long-lived component of one terminal, built once at start-up."""

    config: TerminalLinkConfig
    bus: DispatchBus
    identity: TerminalIdentityResolver
    connection: ConnectionManager
    lifecycle: HostLifecycle
    reporter: StatusReporter


def build_terminal(config: TerminalLinkConfig, bus: Optional[DispatchBus] = None) -> Terminal:
    bus = bus if bus is not None else DispatchBus()
    identity = TerminalIdentityResolver(FileIdentityStore(config.identity_path))
    terminal_id = identity.resolve()

    connection = ConnectionManager(
        config.ws_url,
        bus=bus,
        policy=config.reconnect,
        terminal_identity=terminal_id,
        connector=websocket_connector(max_size=config.max_frame_bytes),
        max_frame_bytes=config.max_frame_bytes,
    )
    registry = TerminalRegistry.with_static_token(
        config.api_url, config.auth_token, timeout=config.http_timeout
    )
    snapshots = SnapshotBuilder(
        identity,
        port=config.terminal_port,
        software_version=config.software_version,
        server_url=config.api_url,
        address_lookup=registry.client_ip,
    )
    lifecycle = HostLifecycle()
    reporter = StatusReporter(
        registry,
        snapshots,
        lifecycle=lifecycle,
        connection=connection,
        interval=config.status_interval,
    )
    return Terminal(config, bus, identity, connection, lifecycle, reporter)


def _log_lifecycle(bus: DispatchBus) -> None:
    bus.subscribe(CONNECTED, lambda p: logger.info("terminal_online", **p))
    bus.subscribe(DISCONNECTED, lambda p: logger.info("terminal_offline", **p))
    bus.subscribe(TERMINAL_ASSIGNED, lambda p: logger.info("session_identity", payload=p))
    bus.subscribe(
        MAX_RECONNECT_ATTEMPTS_REACHED,
        lambda p: logger.error("terminal_persistently_offline", **p),
    )


async def run_terminal(config: TerminalLinkConfig) -> None:
    """Run a terminal link until SIGINT/SIGTERM."""
    terminal = build_terminal(config)
    _log_lifecycle(terminal.bus)

    stopped = asyncio.Event()
    terminal.lifecycle.on_unload(lambda _p: stopped.set())
    terminal.lifecycle.install_signal_handlers(asyncio.get_running_loop())

    logger.info(
        "terminal_starting",
        terminal_id=terminal.identity.resolve(),
        ws_url=config.ws_url,
        api_url=config.api_url,
    )
    terminal.connection.connect()
    terminal.reporter.start()
    try:
        await stopped.wait()
    finally:
        await terminal.reporter.aclose()
        await terminal.connection.disconnect()
        logger.info("terminal_stopped")
