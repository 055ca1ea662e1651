"""Tests for ConnectionManager."""

import asyncio
import json
import random

import pytest
from websockets.exceptions import ConnectionClosedError

from terminal_link.bus import (
    CONNECTED,
    DISCONNECTED,
    ERROR,
    MAX_RECONNECT_ATTEMPTS_REACHED,
    RECONNECT_SCHEDULED,
    TERMINAL_ASSIGNED,
    UNKNOWN_MESSAGE,
    DispatchBus,
)
from terminal_link.config import ReconnectPolicy
from terminal_link.connection import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    ConnectionManager,
    ConnectionState,
)
from terminal_link.errors import ConnectionError, InvalidArgumentError, TransportError
from terminal_link.messages import Envelope, decode

from .fakes import FakeConnector, FakeTransport, Recorder, ack_frame, wait_for

URL = "ws://branch.local:3000/ws"
BASE = 0.01

LIFECYCLE = (
    CONNECTED,
    DISCONNECTED,
    ERROR,
    MAX_RECONNECT_ATTEMPTS_REACHED,
    RECONNECT_SCHEDULED,
    TERMINAL_ASSIGNED,
    UNKNOWN_MESSAGE,
)


def _manager(connector, max_attempts: int = 5, base: float = BASE, **kwargs):
    bus = DispatchBus()
    recorder = Recorder(bus, *LIFECYCLE)
    manager = ConnectionManager(
        URL,
        bus=bus,
        policy=ReconnectPolicy(base_delay=base, max_attempts=max_attempts),
        connector=connector,
        **kwargs,
    )
    return manager, recorder


async def _connected(manager: ConnectionManager) -> None:
    manager.connect()
    await wait_for(lambda: manager.state is ConnectionState.CONNECTED)


class TestSend:
    """Outbound messages."""

    def test_send_while_disconnected_returns_false(self) -> None:
        """No socket, no write, no exception."""
        connector = FakeConnector()
        manager, _ = _manager(connector)

        assert asyncio.run(manager.send("price_request", {"productId": "p-1"})) is False
        assert connector.calls == []

    def test_convenience_senders_return_false_while_disconnected(self) -> None:
        manager, _ = _manager(FakeConnector())

        async def scenario():
            return [
                await manager.request_price("p-1", "123"),
                await manager.report_inventory_change("p-1", 5, 4, "sale"),
                await manager.sync_transaction({"id": "tx-1"}),
                await manager.update_terminal_status("active"),
            ]

        assert asyncio.run(scenario()) == [False, False, False, False]

    def test_send_after_ack_carries_session_terminal_id(self) -> None:
        """connection_ack binds T1; the next price request is stamped with it."""
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport))

        async def scenario():
            await _connected(manager)
            transport.feed(ack_frame("T1"))
            await wait_for(lambda: manager.terminal_id == "T1")
            sent = await manager.request_price("p-1", "4006381333931")
            await manager.disconnect()
            return sent

        assert asyncio.run(scenario()) is True
        envelope = decode(transport.sent[0])
        assert envelope.type == "price_request"
        assert envelope.terminal_id == "T1"
        assert envelope.payload == {"productId": "p-1", "barcode": "4006381333931"}
        assert recorder.of(TERMINAL_ASSIGNED)[0]["terminalId"] == "T1"

    def test_send_before_ack_omits_terminal_id(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport))

        async def scenario():
            await _connected(manager)
            await manager.sync_transaction({"id": "tx-9", "total": 12.5})
            await manager.disconnect()

        asyncio.run(scenario())
        wire = json.loads(transport.sent[0])
        assert "terminalId" not in wire
        assert wire["payload"] == {"id": "tx-9", "total": 12.5}
        assert wire["timestamp"].endswith("Z")

    def test_inventory_change_payload_shape(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport))

        async def scenario():
            await _connected(manager)
            await manager.report_inventory_change("p-7", 10, 8, "sale")
            await manager.update_terminal_status("inactive")
            await manager.disconnect()

        asyncio.run(scenario())
        first, second = (json.loads(frame) for frame in transport.sent)
        assert first["type"] == "inventory_change"
        assert first["payload"] == {
            "productId": "p-7",
            "oldQuantity": 10,
            "newQuantity": 8,
            "reason": "sale",
        }
        assert second["type"] == "terminal_status_update"
        assert second["payload"] == {"status": "inactive"}

    def test_invalid_status_raises_invalid_argument(self) -> None:
        manager, _ = _manager(FakeConnector())

        with pytest.raises(InvalidArgumentError):
            asyncio.run(manager.update_terminal_status("sleeping"))

    def test_transport_send_failure_returns_false(self) -> None:
        """A failing write is reported like 'not connected' plus an error event."""
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport))

        async def scenario():
            await _connected(manager)
            transport.fail_sends = True
            sent = await manager.send("transaction_sync", {"id": "tx-1"})
            await manager.disconnect()
            return sent

        assert asyncio.run(scenario()) is False
        assert isinstance(recorder.of(ERROR)[0], TransportError)

    def test_oversized_frame_is_rejected(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport), max_frame_bytes=128)

        async def scenario():
            await _connected(manager)
            sent = await manager.sync_transaction({"items": ["x" * 200]})
            await manager.disconnect()
            return sent

        assert asyncio.run(scenario()) is False
        assert transport.sent == []

    def test_unserializable_payload_returns_false(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport))

        async def scenario():
            await _connected(manager)
            sent = await manager.send("transaction_sync", {"when": object()})
            await manager.disconnect()
            return sent

        assert asyncio.run(scenario()) is False
        assert transport.sent == []


class TestLifecycle:
    """Connect, disconnect and close handling."""

    def test_connect_publishes_connected(self) -> None:
        manager, recorder = _manager(FakeConnector(FakeTransport()))

        async def scenario():
            await _connected(manager)
            assert manager.is_connected
            await manager.disconnect()

        asyncio.run(scenario())
        assert recorder.of(CONNECTED) == [{"url": URL}]

    def test_connect_is_noop_while_connecting_or_connected(self) -> None:
        connector = FakeConnector(FakeTransport(), FakeTransport())
        manager, _ = _manager(connector)

        async def scenario():
            manager.connect()
            manager.connect()
            await wait_for(lambda: manager.is_connected)
            manager.connect()
            await asyncio.sleep(0.01)
            await manager.disconnect()

        asyncio.run(scenario())
        assert len(connector.calls) == 1

    def test_connect_url_announces_persisted_identity(self) -> None:
        connector = FakeConnector(FakeTransport())
        manager, _ = _manager(connector, terminal_identity="POS-LZ3K9")

        async def scenario():
            await _connected(manager)
            await manager.disconnect()

        asyncio.run(scenario())
        assert connector.calls == [URL + "?terminal=POS-LZ3K9"]

    def test_disconnect_closes_cleanly_and_never_retries(self) -> None:
        transport = FakeTransport()
        connector = FakeConnector(transport, succeed_by_default=True)
        manager, recorder = _manager(connector)

        async def scenario():
            await _connected(manager)
            await manager.disconnect()
            await asyncio.sleep(BASE * 5)

        asyncio.run(scenario())
        assert transport.close_code == CLOSE_NORMAL
        assert manager.state is ConnectionState.DISCONNECTED
        assert recorder.of(DISCONNECTED) == [{"code": 1000, "reason": "Client disconnect"}]
        assert recorder.of(RECONNECT_SCHEDULED) == []
        assert len(connector.calls) == 1

    def test_server_clean_close_suppresses_retry(self) -> None:
        transport = FakeTransport()
        connector = FakeConnector(transport, succeed_by_default=True)
        manager, recorder = _manager(connector)

        async def scenario():
            await _connected(manager)
            transport.drop(1000, "shutdown")
            await wait_for(lambda: manager.state is ConnectionState.DISCONNECTED)
            await asyncio.sleep(BASE * 5)

        asyncio.run(scenario())
        assert recorder.of(DISCONNECTED) == [{"code": 1000, "reason": "shutdown"}]
        assert recorder.of(RECONNECT_SCHEDULED) == []
        assert len(connector.calls) == 1

    def test_close_clears_session_terminal_id(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport), max_attempts=0)

        async def scenario():
            await _connected(manager)
            transport.feed(ack_frame("T1"))
            await wait_for(lambda: manager.terminal_id == "T1")
            transport.drop(1006)
            await wait_for(lambda: manager.state is ConnectionState.DISCONNECTED)

        asyncio.run(scenario())
        assert manager.terminal_id is None

    def test_open_failure_reports_error_then_disconnected(self) -> None:
        manager, recorder = _manager(FakeConnector(), max_attempts=0)

        async def scenario():
            manager.connect()
            await wait_for(lambda: recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED))

        asyncio.run(scenario())
        assert recorder.categories() == [ERROR, DISCONNECTED, MAX_RECONNECT_ATTEMPTS_REACHED]
        assert isinstance(recorder.of(ERROR)[0], ConnectionError)
        assert recorder.of(ERROR)[0].url == URL
        assert recorder.of(DISCONNECTED)[0]["code"] == 1006

    def test_async_context_manager(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport))

        async def scenario():
            async with manager:
                await wait_for(lambda: manager.is_connected)
                assert await manager.request_price("p-1", "") is True

        asyncio.run(scenario())
        assert manager.state is ConnectionState.DISCONNECTED
        assert transport.close_code == CLOSE_NORMAL


class TestReconnection:
    """Backoff, attempt cap and epoch guard."""

    def test_abnormal_close_backs_off_exponentially(self) -> None:
        """Close 1006: reconnect at base; that fails; next at 2x base."""
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport), max_attempts=2)

        async def scenario():
            await _connected(manager)
            transport.drop(1006, "")
            await wait_for(lambda: recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED))

        asyncio.run(scenario())
        scheduled = recorder.of(RECONNECT_SCHEDULED)
        assert [s["attempt"] for s in scheduled] == [1, 2]
        assert [s["delay"] for s in scheduled] == pytest.approx([BASE, 2 * BASE])

    def test_gives_up_after_max_attempts(self) -> None:
        """Five failed reconnects: exactly one give-up event, no sixth attempt."""
        connector = FakeConnector()
        manager, recorder = _manager(connector, max_attempts=5)

        async def scenario():
            manager.connect()
            await wait_for(lambda: recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED))
            await asyncio.sleep(BASE * 40)

        asyncio.run(scenario())
        # initial attempt + 5 reconnects
        assert len(connector.calls) == 6
        assert recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED) == [{"attempts": 5}]
        delays = [s["delay"] for s in recorder.of(RECONNECT_SCHEDULED)]
        assert delays == pytest.approx([BASE, 2 * BASE, 4 * BASE, 8 * BASE, 16 * BASE])
        assert manager.state is ConnectionState.DISCONNECTED
        assert not manager.reconnect_pending

    def test_delays_never_decrease_with_jitter(self) -> None:
        bus = DispatchBus()
        recorder = Recorder(bus, RECONNECT_SCHEDULED, MAX_RECONNECT_ATTEMPTS_REACHED)
        manager = ConnectionManager(
            URL,
            bus=bus,
            policy=ReconnectPolicy(base_delay=0.002, max_attempts=5, jitter=1.0),
            connector=FakeConnector(),
            rng=random.Random(7),
        )

        async def scenario():
            manager.connect()
            await wait_for(lambda: recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED))

        asyncio.run(scenario())
        delays = [s["delay"] for s in recorder.of(RECONNECT_SCHEDULED)]
        assert len(delays) == 5
        assert delays == sorted(delays)
        assert delays[0] >= 0.002

    def test_backoff_resets_after_successful_connect(self) -> None:
        transport = FakeTransport()
        connector = FakeConnector(OSError("refused"), transport)
        manager, recorder = _manager(connector, max_attempts=1)

        async def scenario():
            manager.connect()
            await wait_for(lambda: manager.is_connected)
            assert manager.reconnect_state.attempt_count == 0
            transport.drop(1011)
            await wait_for(lambda: recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED))

        asyncio.run(scenario())
        scheduled = recorder.of(RECONNECT_SCHEDULED)
        assert [s["attempt"] for s in scheduled] == [1, 1]
        assert [s["delay"] for s in scheduled] == pytest.approx([BASE, BASE])

    def test_disconnect_cancels_pending_reconnect(self) -> None:
        """A reconnect timer armed before disconnect() must never fire."""
        connector = FakeConnector(succeed_by_default=False)
        manager, recorder = _manager(connector, base=0.05)

        async def scenario():
            manager.connect()
            await wait_for(lambda: manager.reconnect_pending)
            await manager.disconnect()
            assert not manager.reconnect_pending
            await asyncio.sleep(0.15)

        asyncio.run(scenario())
        assert len(connector.calls) == 1
        assert manager.state is ConnectionState.DISCONNECTED

    def test_stale_timer_is_ignored(self) -> None:
        connector = FakeConnector()
        manager, _ = _manager(connector, base=10.0)

        async def scenario():
            manager.connect()
            await wait_for(lambda: manager.reconnect_pending)
            stale_epoch = manager.epoch
            await manager.disconnect()
            manager._on_reconnect_timer(stale_epoch)
            await asyncio.sleep(0.01)

        asyncio.run(scenario())
        assert len(connector.calls) == 1

    def test_disconnect_while_connecting(self) -> None:

        async def slow_connector(url):
            await asyncio.sleep(10)

        manager, recorder = _manager(slow_connector)

        async def scenario():
            manager.connect()
            await asyncio.sleep(0)
            assert manager.state is ConnectionState.CONNECTING
            await manager.disconnect()

        asyncio.run(scenario())
        assert manager.state is ConnectionState.DISCONNECTED
        assert recorder.of(DISCONNECTED) == [{"code": 1000, "reason": "Client disconnect"}]
        assert recorder.of(RECONNECT_SCHEDULED) == []

    def test_manual_connect_after_give_up_gets_fresh_budget(self) -> None:
        transport = FakeTransport()
        connector = FakeConnector(OSError("refused"), OSError("refused"), transport)
        manager, recorder = _manager(connector, max_attempts=1)

        async def scenario():
            manager.connect()
            await wait_for(lambda: recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED))
            manager.connect()
            await wait_for(lambda: manager.is_connected)
            await manager.disconnect()

        asyncio.run(scenario())
        assert len(connector.calls) == 3
        assert len(recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED)) == 1


class TestInboundDispatch:
    """Frames decoded and published on the bus."""

    def test_known_types_are_published_with_payload(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport))
        received = Recorder(manager.bus, "price_response", "inventory_changed", "terminal_status")

        async def scenario():
            await _connected(manager)
            transport.feed({"type": "price_response", "payload": {"productId": "p-1", "price": 2.5}})
            transport.feed({"type": "inventory_changed", "payload": {"productId": "p-2"}})
            transport.feed({"type": "terminal_status", "payload": {"id": "T2", "status": "active"}})
            await wait_for(lambda: len(received.events) == 3)
            await manager.disconnect()

        asyncio.run(scenario())
        assert received.categories() == ["price_response", "inventory_changed", "terminal_status"]
        assert received.of("price_response") == [{"productId": "p-1", "price": 2.5}]

    def test_unknown_type_published_as_unknown_message(self) -> None:
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport))

        async def scenario():
            await _connected(manager)
            transport.feed({"type": "loyalty_points", "payload": {"points": 3}})
            await wait_for(lambda: recorder.of(UNKNOWN_MESSAGE))
            await manager.disconnect()

        asyncio.run(scenario())
        envelope = recorder.of(UNKNOWN_MESSAGE)[0]
        assert isinstance(envelope, Envelope)
        assert envelope.type == "loyalty_points"
        assert envelope.payload == {"points": 3}

    def test_malformed_frame_is_dropped_and_connection_survives(self) -> None:
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport))
        received = Recorder(manager.bus, "employee_action")

        async def scenario():
            await _connected(manager)
            transport.feed("{not json")
            transport.feed('{"payload": {}}')
            transport.feed({"type": "employee_action", "payload": {"action": "clock_in"}})
            await wait_for(lambda: received.events)
            assert manager.is_connected
            await manager.disconnect()

        asyncio.run(scenario())
        assert received.of("employee_action") == [{"action": "clock_in"}]
        assert recorder.of(ERROR) == []

    def test_deeply_nested_frame_is_dropped_and_connection_survives(self) -> None:
        """A frame too deep for the JSON parser is a bad frame, not a broken socket."""
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport))
        received = Recorder(manager.bus, "employee_action")

        async def scenario():
            await _connected(manager)
            transport.feed("[" * 200_000 + "]" * 200_000)
            transport.feed({"type": "employee_action", "payload": {"action": "clock_out"}})
            await wait_for(lambda: received.events)
            assert manager.is_connected
            await manager.disconnect()

        asyncio.run(scenario())
        assert received.of("employee_action") == [{"action": "clock_out"}]
        assert recorder.of(ERROR) == []
        assert recorder.of(RECONNECT_SCHEDULED) == []
        assert recorder.of(DISCONNECTED) == [{"code": 1000, "reason": "Client disconnect"}]

    def test_abnormal_socket_close_reports_transport_error(self) -> None:
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport), max_attempts=1)

        async def scenario():
            await _connected(manager)
            transport.fail(ConnectionClosedError(None, None))
            await wait_for(lambda: recorder.of(DISCONNECTED))

        asyncio.run(scenario())
        assert recorder.categories() == [CONNECTED, ERROR, DISCONNECTED, RECONNECT_SCHEDULED]
        error = recorder.of(ERROR)[0]
        assert isinstance(error, TransportError)
        assert isinstance(error.cause, ConnectionClosedError)
        assert recorder.of(DISCONNECTED)[0]["code"] == 1006

    def test_ack_without_terminal_id_is_ignored(self) -> None:
        transport = FakeTransport()
        manager, recorder = _manager(FakeConnector(transport))
        received = Recorder(manager.bus, "employee_action")

        async def scenario():
            await _connected(manager)
            transport.feed({"type": "connection_ack", "payload": {}})
            transport.feed({"type": "employee_action", "payload": None})
            await wait_for(lambda: received.events)
            await manager.disconnect()

        asyncio.run(scenario())
        assert manager.terminal_id is None
        assert recorder.of(TERMINAL_ASSIGNED) == []

    def test_failing_subscriber_does_not_break_reader(self) -> None:
        transport = FakeTransport()
        manager, _ = _manager(FakeConnector(transport))
        seen = []

        def explode(payload):
            raise RuntimeError("ui crashed")

        manager.bus.subscribe("transaction_sync", explode)
        manager.bus.subscribe("transaction_sync", seen.append)

        async def scenario():
            await _connected(manager)
            transport.feed({"type": "transaction_sync", "payload": {"id": "tx-1"}})
            transport.feed({"type": "transaction_sync", "payload": {"id": "tx-2"}})
            await wait_for(lambda: len(seen) == 2)
            assert manager.is_connected
            await manager.disconnect()

        asyncio.run(scenario())
        assert seen == [{"id": "tx-1"}, {"id": "tx-2"}]

    def test_reader_error_reports_and_reconnects(self) -> None:
        transport = FakeTransport()
        connector = FakeConnector(transport)
        manager, recorder = _manager(connector, max_attempts=1)
        closed_when_disconnected = []
        manager.bus.subscribe(DISCONNECTED, lambda p: closed_when_disconnected.append(transport.closed))

        async def scenario():
            await _connected(manager)
            transport.fail(RuntimeError("socket reset"))
            await wait_for(lambda: recorder.of(MAX_RECONNECT_ATTEMPTS_REACHED))

        asyncio.run(scenario())
        assert isinstance(recorder.of(ERROR)[0], TransportError)
        assert recorder.of(DISCONNECTED)[0]["code"] == 1006
        assert recorder.of(RECONNECT_SCHEDULED)[0]["attempt"] == 1
        assert closed_when_disconnected[0] is True
        assert transport.close_code == CLOSE_INTERNAL_ERROR
        assert len(connector.calls) == 2
