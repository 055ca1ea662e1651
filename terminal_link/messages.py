"""Wire envelope codec and typed payloads for the terminal protocol.

Every application message travels as one JSON text frame:

    {"type": "price_request",
     "payload": {"productId": "p-1", "barcode": "4006381333931"},
     "terminalId": "T1",
     "timestamp": "2026-01-02T03:04:05.678Z"}

``terminalId`` is omitted when the session has no server-assigned identity.
Payload dataclasses convert between snake_case attributes and the camelCase
wire shape via ``to_payload()`` / ``from_payload()``.
"""

from __future__ import annotations

import json
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, ClassVar, Mapping, Optional, Union

from .errors import DecodeError, EncodeError, FrameTooLargeError, InvalidArgumentError
from .helpers import now_iso
from .validation import (
    require_any,
    require_non_negative,
    require_not_blank,
    require_number,
    require_one_of,
)

# client -> server
PRICE_REQUEST = "price_request"
INVENTORY_CHANGE = "inventory_change"
TRANSACTION_SYNC = "transaction_sync"
TERMINAL_STATUS_UPDATE = "terminal_status_update"

# server -> client
CONNECTION_ACK = "connection_ack"
PRICE_RESPONSE = "price_response"
INVENTORY_CHANGED = "inventory_changed"
TERMINAL_STATUS = "terminal_status"
EMPLOYEE_ACTION = "employee_action"

INBOUND_TYPES = frozenset(
    {
        CONNECTION_ACK,
        PRICE_RESPONSE,
        INVENTORY_CHANGED,
        TERMINAL_STATUS,
        TRANSACTION_SYNC,
        EMPLOYEE_ACTION,
    }
)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"


@dataclass(frozen=True)
class Envelope:
    """One protocol message as it appears on the wire."""

    type: str
    payload: Any = None
    terminal_id: Optional[str] = None
    timestamp: str = field(default_factory=now_iso)

    def to_wire(self) -> dict:
        """Return the JSON-ready dict with wire key names."""
        wire = {"type": self.type, "payload": self.payload}
        if self.terminal_id:
            wire["terminalId"] = self.terminal_id
        wire["timestamp"] = self.timestamp
        return wire

    @classmethod
    def from_wire(cls, data: Any) -> "Envelope":
        """Build an Envelope from a decoded JSON value.

        Raises:
            DecodeError: If the value does not have the envelope shape.
        """
        if not isinstance(data, Mapping):
            raise DecodeError(f"envelope must be an object, got {type(data).__name__}", data)

        msg_type = data.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            raise DecodeError("envelope is missing a message type", data)

        terminal_id = data.get("terminalId")
        if terminal_id is not None and not isinstance(terminal_id, str):
            raise DecodeError("terminalId must be a string", data)

        timestamp = data.get("timestamp")
        if timestamp is None:
            timestamp = now_iso()
        elif not isinstance(timestamp, str):
            raise DecodeError("timestamp must be a string", data)

        return cls(
            type=msg_type,
            payload=data.get("payload"),
            terminal_id=terminal_id,
            timestamp=timestamp,
        )


def encode(envelope: Envelope, max_bytes: Optional[int] = None) -> str:
    """Serialize an envelope to a JSON text frame.

    Raises:
        EncodeError: If the payload is not JSON-serializable.
        FrameTooLargeError: If the UTF-8 frame exceeds ``max_bytes``.
    """
    try:
        frame = json.dumps(envelope.to_wire(), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise EncodeError(e) from e

    if max_bytes is not None:
        size = len(frame.encode("utf-8"))
        if size > max_bytes:
            raise FrameTooLargeError(size, max_bytes)
    return frame


def decode(frame: Union[str, bytes, bytearray]) -> Envelope:
    """Parse one inbound frame into an Envelope.

    Raises:
        DecodeError: If the frame is not valid UTF-8 JSON or lacks the envelope shape.
    """
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = bytes(frame).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError("frame is not valid UTF-8", frame, e) from e

    try:
        data = json.loads(frame)
    except (TypeError, ValueError) as e:
        raise DecodeError("frame is not valid JSON", frame, e) from e
    except RecursionError as e:
        raise DecodeError("frame is nested too deeply", frame, e) from e

    return Envelope.from_wire(data)


# ============================================================================
# Typed payloads
# ============================================================================


def _wire_name(attr: str) -> str:
    head, *rest = attr.split("_")
    return head + "".join(part.capitalize() for part in rest)


class Payload:
    """Mixin converting dataclass payloads to and from the camelCase wire shape."""

    message_type: ClassVar[str] = ""

    def to_payload(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.default is None:
                continue
            out[_wire_name(f.name)] = value
        return out

    @classmethod
    def from_payload(cls, payload: Any):
        """Build the payload type from a wire dict.

        Raises:
            DecodeError: If required keys are missing or values are invalid.
        """
        if not isinstance(payload, Mapping):
            raise DecodeError(f"{cls.__name__} payload must be an object", payload)

        kwargs = {}
        for f in fields(cls):
            key = _wire_name(f.name)
            if key in payload:
                kwargs[f.name] = payload[key]
            elif f.default is MISSING and f.default_factory is MISSING:
                raise DecodeError(f"{cls.__name__} payload is missing '{key}'", payload)

        try:
            return cls(**kwargs)
        except InvalidArgumentError as e:
            raise DecodeError(f"{cls.__name__} payload is invalid", payload, e) from e


@dataclass(frozen=True)
class PriceRequest(Payload):
    """Ask the server for the live price and availability of a product."""

    message_type: ClassVar[str] = PRICE_REQUEST

    product_id: str = ""
    barcode: str = ""

    def __post_init__(self) -> None:
        require_any((self.product_id, self.barcode), "price request needs a product id or barcode")


@dataclass(frozen=True)
class PriceResponse(Payload):
    message_type: ClassVar[str] = PRICE_RESPONSE

    product_id: str
    barcode: str
    price: float
    available: bool

    def __post_init__(self) -> None:
        require_non_negative(self.price, "price must be a non-negative number")
        if not isinstance(self.available, bool):
            raise InvalidArgumentError("available must be a boolean")


@dataclass(frozen=True)
class InventoryChange(Payload):
    """A stock mutation, reported by us or broadcast by the server."""

    message_type: ClassVar[str] = INVENTORY_CHANGE

    product_id: str
    old_quantity: float
    new_quantity: float
    reason: str

    def __post_init__(self) -> None:
        require_not_blank(self.product_id, "inventory change needs a product id")
        require_number(self.old_quantity, "old quantity must be a number")
        require_number(self.new_quantity, "new quantity must be a number")
        require_not_blank(self.reason, "inventory change needs a reason")

    @property
    def delta(self) -> float:
        return self.new_quantity - self.old_quantity


@dataclass(frozen=True)
class TerminalStatusUpdate(Payload):
    message_type: ClassVar[str] = TERMINAL_STATUS_UPDATE

    status: str

    def __post_init__(self) -> None:
        require_one_of(
            self.status,
            (STATUS_ACTIVE, STATUS_INACTIVE),
            f"terminal status must be '{STATUS_ACTIVE}' or '{STATUS_INACTIVE}'",
        )


@dataclass(frozen=True)
class TerminalStatus(Payload):
    """Broadcast describing one terminal as the server sees it."""

    message_type: ClassVar[str] = TERMINAL_STATUS

    id: str
    name: str
    status: str
    last_activity: str
    user_id: Optional[str] = None
    user_role: Optional[str] = None

    def __post_init__(self) -> None:
        require_not_blank(self.id, "terminal status needs an id")


@dataclass(frozen=True)
class ConnectionAck(Payload):
    message_type: ClassVar[str] = CONNECTION_ACK

    terminal_id: str
    message: Optional[str] = None

    def __post_init__(self) -> None:
        require_not_blank(self.terminal_id, "connection ack needs a terminal id")


PAYLOAD_TYPES = {
    cls.message_type: cls
    for cls in (
        PriceRequest,
        PriceResponse,
        InventoryChange,
        TerminalStatusUpdate,
        TerminalStatus,
        ConnectionAck,
    )
}
# The server echoes inventory changes under the past-tense type.
PAYLOAD_TYPES[INVENTORY_CHANGED] = InventoryChange


def parse_payload(message_type: str, payload: Any) -> Any:
    """Return the typed payload for known message types, the raw payload otherwise.

    Raises:
        DecodeError: If a known type carries a malformed payload.
    """
    payload_cls = PAYLOAD_TYPES.get(message_type)
    if payload_cls is None:
        return payload
    return payload_cls.from_payload(payload)
