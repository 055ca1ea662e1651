"""Environment-driven configuration for the terminal link.

Environment variables:
    POS_WS_URL: WebSocket endpoint (default: ws://localhost:3000/ws)
    POS_API_URL: HTTP side channel base URL (default: http://localhost:3000/api)
    POS_AUTH_TOKEN: Bearer token for the side channel (default: unset)
    POS_RECONNECT_BASE_DELAY: First reconnect delay in seconds (default: 1.0)
    POS_RECONNECT_MAX_ATTEMPTS: Reconnect attempts before giving up (default: 5)
    POS_RECONNECT_JITTER: Extra random fraction of each delay, 0..1 (default: 0)
    POS_STATUS_INTERVAL: Seconds between status reports (default: 30)
    POS_IDENTITY_PATH: Identity store file (default: ~/.terminal-link/identity.json)
    POS_TERMINAL_PORT: Port this terminal reports for itself (default: 5173)
    POS_SOFTWARE_VERSION: Reported software version (default: package version)
    POS_MAX_FRAME_BYTES: Largest outbound frame (default: 1 MiB)
    POS_HTTP_TIMEOUT: Side channel timeout in seconds (default: 5)
    LOG_LEVEL: structlog minimum level (default: info)
"""

import os
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, TypeVar

from . import __version__
from .errors import InvalidArgumentError

T = TypeVar("T")

DEFAULT_WS_URL = "ws://localhost:3000/ws"
DEFAULT_API_URL = "http://localhost:3000/api"
DEFAULT_IDENTITY_PATH = os.path.join("~", ".terminal-link", "identity.json")
DEFAULT_MAX_FRAME_BYTES = 1024 * 1024

# Reconnection policy: 1s, 2s, 4s, 8s, 16s then give up.
DEFAULT_RECONNECT_BASE_DELAY = 1.0
DEFAULT_RECONNECT_MAX_ATTEMPTS = 5
DEFAULT_STATUS_INTERVAL = 30.0


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff parameters.

    delay(n) = base_delay * 2 ** (n - 1) for attempt n >= 1. ``jitter`` adds up
    to that fraction of the delay at random.
    """

    base_delay: float = DEFAULT_RECONNECT_BASE_DELAY
    max_attempts: int = DEFAULT_RECONNECT_MAX_ATTEMPTS
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise InvalidArgumentError("reconnect base delay must be positive")
        if self.max_attempts < 0:
            raise InvalidArgumentError("reconnect max attempts must be zero or greater")
        if not 0.0 <= self.jitter <= 1.0:
            raise InvalidArgumentError("reconnect jitter must be between 0 and 1")

    def delay_for(self, attempt: int) -> float:
        """Return the un-jittered delay before the given attempt number."""
        if attempt < 1:
            raise InvalidArgumentError("attempt numbers start at 1")
        return self.base_delay * (2 ** (attempt - 1))


@dataclass(frozen=True)
class TerminalLinkConfig:
    ws_url: str = DEFAULT_WS_URL
    api_url: str = DEFAULT_API_URL
    auth_token: Optional[str] = None
    reconnect: ReconnectPolicy = ReconnectPolicy()
    status_interval: float = DEFAULT_STATUS_INTERVAL
    identity_path: str = DEFAULT_IDENTITY_PATH
    terminal_port: int = 5173
    software_version: str = __version__
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES
    http_timeout: float = 5.0
    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TerminalLinkConfig":
        """Build a configuration from environment variables with defaults."""
        env = os.environ if environ is None else environ

        policy = ReconnectPolicy(
            base_delay=_read(env, "POS_RECONNECT_BASE_DELAY", float, DEFAULT_RECONNECT_BASE_DELAY),
            max_attempts=_read(env, "POS_RECONNECT_MAX_ATTEMPTS", int, DEFAULT_RECONNECT_MAX_ATTEMPTS),
            jitter=_read(env, "POS_RECONNECT_JITTER", float, 0.0),
        )

        return cls(
            ws_url=env.get("POS_WS_URL", DEFAULT_WS_URL),
            api_url=env.get("POS_API_URL", DEFAULT_API_URL).rstrip("/"),
            auth_token=env.get("POS_AUTH_TOKEN") or None,
            reconnect=policy,
            status_interval=_read(env, "POS_STATUS_INTERVAL", float, DEFAULT_STATUS_INTERVAL),
            identity_path=os.path.expanduser(env.get("POS_IDENTITY_PATH", DEFAULT_IDENTITY_PATH)),
            terminal_port=_read(env, "POS_TERMINAL_PORT", int, 5173),
            software_version=env.get("POS_SOFTWARE_VERSION", __version__),
            max_frame_bytes=_read(env, "POS_MAX_FRAME_BYTES", int, DEFAULT_MAX_FRAME_BYTES),
            http_timeout=_read(env, "POS_HTTP_TIMEOUT", float, 5.0),
            log_level=env.get("LOG_LEVEL", "info").strip().lower(),
        )


def _read(env: Mapping[str, str], name: str, convert: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return convert(raw.strip())
    except ValueError as e:
        raise InvalidArgumentError(f"{name}={raw!r} is not a valid {convert.__name__}") from e
