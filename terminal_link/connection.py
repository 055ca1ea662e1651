"""Connection manager for the terminal WebSocket link.

Owns exactly one logical connection to the server and enforces the
reconnection policy. Decoded inbound messages and lifecycle events are
published on a DispatchBus held by composition.

State machine:

    DISCONNECTED --connect()/timer--> CONNECTING --open--> CONNECTED
         ^                                |                    |
         +---------- close / error -------+--------------------+

Every connection attempt is tagged with an epoch. ``disconnect()`` and
``connect()`` bump the epoch so a pending reconnect timer or a finishing
reader task from an older attempt can tell it is stale and do nothing.

Example:
    bus = DispatchBus()
    manager = ConnectionManager("ws://branch:3000/ws", bus=bus)
    bus.subscribe("price_response", show_price)

    async with manager:
        await manager.request_price("p-1", "4006381333931")
"""

from __future__ import annotations

import asyncio
import enum
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from .bus import (
    CONNECTED,
    DISCONNECTED,
    ERROR,
    MAX_RECONNECT_ATTEMPTS_REACHED,
    RECONNECT_SCHEDULED,
    TERMINAL_ASSIGNED,
    UNKNOWN_MESSAGE,
    DispatchBus,
)
from .config import DEFAULT_MAX_FRAME_BYTES, ReconnectPolicy
from .errors import (
    ClientError,
    ConnectionError,
    DecodeError,
    EncodeError,
    FrameTooLargeError,
    TransportError,
)
from .messages import (
    CONNECTION_ACK,
    INBOUND_TYPES,
    INVENTORY_CHANGE,
    PRICE_REQUEST,
    TERMINAL_STATUS_UPDATE,
    TRANSACTION_SYNC,
    Envelope,
    InventoryChange,
    Payload,
    PriceRequest,
    TerminalStatusUpdate,
    decode,
    encode,
)

logger = structlog.get_logger()

CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006
CLOSE_INTERNAL_ERROR = 1011
CLIENT_DISCONNECT_REASON = "Client disconnect"
READER_FAILED_REASON = "Reader failed"


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(Protocol):
    """The slice of a websockets client connection the manager relies on."""

    close_code: Optional[int]
    close_reason: Optional[str]

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]: ...

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


def websocket_connector(max_size: Optional[int] = DEFAULT_MAX_FRAME_BYTES, open_timeout: float = 10.0) -> Connector:
    """Return a connector that opens a websockets client connection."""

    async def _connect(url: str) -> Transport:
        return await ws_connect(url, max_size=max_size, open_timeout=open_timeout)

    return _connect


@dataclass
class ReconnectState:
    """Backoff bookkeeping for the current outage."""

    attempt_count: int = 0
    base_delay: float = 1.0
    max_attempts: int = 5
    last_delay: float = 0.0

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def reset(self) -> None:
        self.attempt_count = 0
        self.last_delay = 0.0


class ConnectionManager:
    """Owns the socket, its lifecycle state and the reconnection algorithm."""

    def __init__(
        self,
        url: str,
        bus: Optional[DispatchBus] = None,
        policy: Optional[ReconnectPolicy] = None,
        terminal_identity: Optional[str] = None,
        connector: Optional[Connector] = None,
        max_frame_bytes: Optional[int] = DEFAULT_MAX_FRAME_BYTES,
        rng: Optional[random.Random] = None,
    ):
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self.terminal_identity = terminal_identity
        self._bus = bus if bus is not None else DispatchBus()
        self._connector = connector or websocket_connector(max_size=max_frame_bytes)
        self._max_frame_bytes = max_frame_bytes
        self._rng = rng or random.Random()

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._session_terminal_id: Optional[str] = None
        self._epoch = 0
        self._active_epoch = 0
        self._reconnect = ReconnectState(
            base_delay=self.policy.base_delay,
            max_attempts=self.policy.max_attempts,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def bus(self) -> DispatchBus:
        return self._bus

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def terminal_id(self) -> Optional[str]:
        """Server-assigned identifier for the current session, if any."""
        return self._session_terminal_id

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._reconnect

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Start a connection attempt on the running event loop.

        No-op while connecting or connected. A manual connect resets the
        attempt counter, so it also recovers from a give-up.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            logger.debug("connect_ignored", state=self._state.value)
            return
        self._cancel_reconnect_timer()
        self._reconnect.reset()
        self._start_attempt()

    async def disconnect(self) -> None:
        """Close the connection cleanly (code 1000) and suppress reconnection."""
        self._epoch += 1
        self._cancel_reconnect_timer()

        task, transport = self._task, self._transport
        if transport is not None:
            await self._close_transport(transport, CLOSE_NORMAL, CLIENT_DISCONNECT_REASON)
        elif task is not None and not task.done():
            task.cancel()

        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

        if self._state is not ConnectionState.DISCONNECTED:
            self._handle_close(self._active_epoch, CLOSE_NORMAL, CLIENT_DISCONNECT_REASON)
        self._task = None
        logger.info("connection_closed_by_client", url=self.url)

    async def __aenter__(self) -> "ConnectionManager":
        self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message_type: str, payload: Any = None) -> bool:
        """Send one message on the current session.

        Returns False, without raising or queuing, when the socket is not
        open, the payload cannot be encoded, or the transport write fails.
        """
        transport = self._transport
        if self._state is not ConnectionState.CONNECTED or transport is None:
            logger.warning("send_while_disconnected", type=message_type, state=self._state.value)
            return False

        if isinstance(payload, Payload):
            payload = payload.to_payload()

        envelope = Envelope(
            type=message_type,
            payload=payload,
            terminal_id=self._session_terminal_id,
        )
        try:
            frame = encode(envelope, self._max_frame_bytes)
        except (EncodeError, FrameTooLargeError) as e:
            logger.error("send_rejected", type=message_type, error=str(e))
            return False

        try:
            await transport.send(frame)
        except Exception as e:
            self._report_error(TransportError(e))
            return False

        logger.debug("message_sent", type=message_type, terminal_id=self._session_terminal_id)
        return True

    async def request_price(self, product_id: str, barcode: str) -> bool:
        return await self.send(PRICE_REQUEST, PriceRequest(product_id=product_id, barcode=barcode))

    async def report_inventory_change(
        self, product_id: str, old_quantity: float, new_quantity: float, reason: str
    ) -> bool:
        change = InventoryChange(
            product_id=product_id,
            old_quantity=old_quantity,
            new_quantity=new_quantity,
            reason=reason,
        )
        return await self.send(INVENTORY_CHANGE, change)

    async def sync_transaction(self, record: Any) -> bool:
        """Push a completed transaction record for reconciliation."""
        return await self.send(TRANSACTION_SYNC, record)

    async def update_terminal_status(self, status: str) -> bool:
        return await self.send(TERMINAL_STATUS_UPDATE, TerminalStatusUpdate(status=status))

    # ------------------------------------------------------------------
    # Attempt / reader task
    # ------------------------------------------------------------------

    def _start_attempt(self) -> None:
        self._epoch += 1
        epoch = self._epoch
        self._active_epoch = epoch
        self._set_state(ConnectionState.CONNECTING)
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(epoch), name=f"terminal-link-{epoch}")

    def _connect_url(self) -> str:
        if not self.terminal_identity:
            return self.url
        parts = urlsplit(self.url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "terminal"]
        query.append(("terminal", self.terminal_identity))
        return urlunsplit(parts._replace(query=urlencode(query)))

    async def _run(self, epoch: int) -> None:
        log = logger.bind(epoch=epoch, url=self.url)
        log.info("connecting", attempt=self._reconnect.attempt_count)

        try:
            transport = await self._connector(self._connect_url())
        except asyncio.CancelledError:
            self._handle_close(epoch, CLOSE_NORMAL, CLIENT_DISCONNECT_REASON)
            raise
        except Exception as e:
            self._report_error(ConnectionError(str(e) or type(e).__name__, url=self.url))
            self._handle_close(epoch, CLOSE_ABNORMAL, str(e))
            return

        if epoch != self._epoch:
            log.info("stale_connection_discarded")
            await self._close_transport(transport, CLOSE_NORMAL, CLIENT_DISCONNECT_REASON)
            self._handle_close(epoch, CLOSE_NORMAL, CLIENT_DISCONNECT_REASON)
            return

        self._transport = transport
        self._on_open(epoch)

        code: Optional[int] = None
        reason = ""
        try:
            async for frame in transport:
                self._on_frame(frame)
        except ConnectionClosedError as e:
            self._report_error(TransportError(e))
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            await self._close_transport(transport, CLOSE_NORMAL, CLIENT_DISCONNECT_REASON)
            self._handle_close(epoch, CLOSE_NORMAL, CLIENT_DISCONNECT_REASON)
            raise
        except Exception as e:
            # The socket may still be open; it must not outlive this session.
            self._report_error(TransportError(e))
            await self._close_transport(transport, CLOSE_INTERNAL_ERROR, READER_FAILED_REASON)
            code, reason = CLOSE_ABNORMAL, str(e)

        if code is None:
            code = getattr(transport, "close_code", None) or CLOSE_ABNORMAL
            reason = getattr(transport, "close_reason", None) or ""
        self._handle_close(epoch, code, reason)

    async def _close_transport(self, transport: Transport, code: int, reason: str) -> None:
        try:
            await transport.close(code=code, reason=reason)
        except Exception as e:
            logger.warning("transport_close_failed", error=str(e))

    # ------------------------------------------------------------------
    # Event handlers (never raise)
    # ------------------------------------------------------------------

    def _on_open(self, epoch: int) -> None:
        self._set_state(ConnectionState.CONNECTED)
        self._reconnect.reset()
        logger.info("connected", url=self.url, epoch=epoch)
        self._bus.publish(CONNECTED, {"url": self.url})

    def _on_frame(self, frame: Union[str, bytes]) -> None:
        """Decode and dispatch one frame. A bad frame is dropped, never fatal."""
        try:
            self._dispatch(decode(frame))
        except DecodeError as e:
            logger.warning("frame_dropped", error=str(e))
        except Exception:
            logger.exception("frame_handling_failed")

    def _dispatch(self, envelope: Envelope) -> None:
        if envelope.type == CONNECTION_ACK:
            payload = envelope.payload
            terminal_id = payload.get("terminalId") if isinstance(payload, Mapping) else None
            if not isinstance(terminal_id, str) or not terminal_id:
                logger.warning("connection_ack_without_terminal_id", payload=payload)
                return
            self._session_terminal_id = terminal_id
            logger.info("terminal_assigned", terminal_id=terminal_id)
            self._bus.publish(TERMINAL_ASSIGNED, payload)
            return

        if envelope.type in INBOUND_TYPES:
            self._bus.publish(envelope.type, envelope.payload)
            return

        logger.info("unknown_message", type=envelope.type)
        self._bus.publish(UNKNOWN_MESSAGE, envelope)

    def _handle_close(self, epoch: int, code: int, reason: str) -> None:
        if epoch != self._active_epoch:
            # A newer attempt owns the state now.
            return
        if self._state is ConnectionState.DISCONNECTED:
            return

        self._transport = None
        self._session_terminal_id = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("disconnected", code=code, reason=reason, epoch=epoch)
        self._bus.publish(DISCONNECTED, {"code": code, "reason": reason})

        if code != CLOSE_NORMAL and epoch == self._epoch:
            self._schedule_reconnect()

    def _report_error(self, error: ClientError) -> None:
        logger.warning("transport_error", error=str(error))
        self._bus.publish(ERROR, error)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("connection_state_changed", old=self._state.value, new=state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def _next_delay(self) -> float:
        delay = self.policy.delay_for(self._reconnect.attempt_count)
        if self.policy.jitter:
            delay += delay * self.policy.jitter * self._rng.random()
        delay = max(delay, self._reconnect.last_delay)
        self._reconnect.last_delay = delay
        return delay

    def _schedule_reconnect(self) -> None:
        if self._reconnect.exhausted:
            logger.error(
                "max_reconnect_attempts_reached",
                attempts=self._reconnect.attempt_count,
                url=self.url,
            )
            self._bus.publish(
                MAX_RECONNECT_ATTEMPTS_REACHED,
                {"attempts": self._reconnect.attempt_count},
            )
            return

        self._reconnect.attempt_count += 1
        attempt = self._reconnect.attempt_count
        delay = self._next_delay()
        epoch = self._epoch

        logger.info("reconnect_scheduled", attempt=attempt, delay=delay)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_reconnect_timer, epoch)
        self._bus.publish(RECONNECT_SCHEDULED, {"attempt": attempt, "delay": delay})

    def _on_reconnect_timer(self, epoch: int) -> None:
        self._timer = None
        if epoch != self._epoch or self._state is not ConnectionState.DISCONNECTED:
            logger.debug("stale_reconnect_ignored", epoch=epoch, current=self._epoch)
            return
        self._start_attempt()

    def _cancel_reconnect_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
