"""Real-time link between a point-of-sale terminal and its branch server."""

__version__ = "1.0.0"

from .errors import (
    ClientError,
    ConnectionError,
    TransportError,
    DecodeError,
    EncodeError,
    FrameTooLargeError,
    InvalidArgumentError,
    InvalidTimestampError,
    StatusReportError,
)
from .helpers import now, now_iso, format_timestamp, parse_timestamp, to_base36
from .messages import (
    PRICE_REQUEST,
    INVENTORY_CHANGE,
    TRANSACTION_SYNC,
    TERMINAL_STATUS_UPDATE,
    CONNECTION_ACK,
    PRICE_RESPONSE,
    INVENTORY_CHANGED,
    TERMINAL_STATUS,
    EMPLOYEE_ACTION,
    Envelope,
    Payload,
    PriceRequest,
    PriceResponse,
    InventoryChange,
    TerminalStatus,
    TerminalStatusUpdate,
    ConnectionAck,
    encode,
    decode,
    parse_payload,
)
from .bus import (
    CONNECTED,
    DISCONNECTED,
    TERMINAL_ASSIGNED,
    ERROR,
    MAX_RECONNECT_ATTEMPTS_REACHED,
    RECONNECT_SCHEDULED,
    UNKNOWN_MESSAGE,
    DispatchBus,
    Subscription,
)
from .config import ReconnectPolicy, TerminalLinkConfig
from .connection import (
    CLOSE_NORMAL,
    CLOSE_ABNORMAL,
    ConnectionManager,
    ConnectionState,
    ReconnectState,
    websocket_connector,
)
from .identity import (
    FileIdentityStore,
    MemoryIdentityStore,
    TerminalIdentityResolver,
    generate_terminal_id,
)
from .lifecycle import HostLifecycle
from .snapshot import HardwareFacts, StatusSnapshot, SnapshotBuilder, collect_hardware_facts
from .registry import (
    STATUS_ONLINE,
    STATUS_OFFLINE,
    STATUS_MAINTENANCE,
    STATUS_ERROR,
    TerminalRegistry,
)
from .status import StatusReporter
from .runtime import configure_logging, build_terminal, run_terminal, Terminal

__all__ = [
    "__version__",
    # Errors
    "ClientError",
    "ConnectionError",
    "TransportError",
    "DecodeError",
    "EncodeError",
    "FrameTooLargeError",
    "InvalidArgumentError",
    "InvalidTimestampError",
    "StatusReportError",
    # Helpers
    "now",
    "now_iso",
    "format_timestamp",
    "parse_timestamp",
    "to_base36",
    # Messages
    "PRICE_REQUEST",
    "INVENTORY_CHANGE",
    "TRANSACTION_SYNC",
    "TERMINAL_STATUS_UPDATE",
    "CONNECTION_ACK",
    "PRICE_RESPONSE",
    "INVENTORY_CHANGED",
    "TERMINAL_STATUS",
    "EMPLOYEE_ACTION",
    "Envelope",
    "Payload",
    "PriceRequest",
    "PriceResponse",
    "InventoryChange",
    "TerminalStatus",
    "TerminalStatusUpdate",
    "ConnectionAck",
    "encode",
    "decode",
    "parse_payload",
    # Bus
    "CONNECTED",
    "DISCONNECTED",
    "TERMINAL_ASSIGNED",
    "ERROR",
    "MAX_RECONNECT_ATTEMPTS_REACHED",
    "RECONNECT_SCHEDULED",
    "UNKNOWN_MESSAGE",
    "DispatchBus",
    "Subscription",
    # Config
    "ReconnectPolicy",
    "TerminalLinkConfig",
    # Connection
    "CLOSE_NORMAL",
    "CLOSE_ABNORMAL",
    "ConnectionManager",
    "ConnectionState",
    "ReconnectState",
    "websocket_connector",
    # Identity
    "FileIdentityStore",
    "MemoryIdentityStore",
    "TerminalIdentityResolver",
    "generate_terminal_id",
    # Status reporting
    "HostLifecycle",
    "HardwareFacts",
    "StatusSnapshot",
    "SnapshotBuilder",
    "collect_hardware_facts",
    "STATUS_ONLINE",
    "STATUS_OFFLINE",
    "STATUS_MAINTENANCE",
    "STATUS_ERROR",
    "TerminalRegistry",
    "StatusReporter",
    # Runtime
    "configure_logging",
    "build_terminal",
    "run_terminal",
    "Terminal",
]
