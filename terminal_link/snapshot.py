"""Immutable status snapshots describing this terminal.

A snapshot is rebuilt from scratch every time one is reported; nothing
mutates a snapshot after it is built.
"""

from __future__ import annotations

import locale
import os
import platform
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

import structlog

from . import __version__
from .identity import LOCAL_ADDRESS_KEY, IdentityStore, TerminalIdentityResolver

logger = structlog.get_logger()

FALLBACK_ADDRESS = "127.0.0.1"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class HardwareFacts:
    platform: str
    user_agent: str
    locale: str
    screen_resolution: str
    memory_hint: Optional[float] = None

    def to_wire(self) -> dict:
        return {
            "platform": self.platform,
            "userAgent": self.user_agent,
            "language": self.locale,
            "screenResolution": self.screen_resolution,
            "memory": self.memory_hint,
        }


@dataclass(frozen=True)
class StatusSnapshot:
    terminal_id: str
    local_address: str
    port: int
    software_version: str
    hardware: HardwareFacts

    def registration_body(self) -> dict:
        """Body of the registration upsert call."""
        return {
            "terminal_id": self.terminal_id,
            "name": f"Terminal {self.terminal_id}",
            "ip_address": self.local_address,
            "port": self.port,
            "software_version": self.software_version,
            "hardware_info": self.hardware.to_wire(),
        }

    def status_body(self, status: str) -> dict:
        """Body of the status patch call."""
        return {
            "status": status,
            "hardware_info": self.hardware.to_wire(),
            "software_version": self.software_version,
        }


def _memory_hint() -> Optional[float]:
    """Physical memory in GiB rounded to one decimal, when the OS exposes it."""
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return None
    if pages <= 0 or page_size <= 0:
        return None
    return round(pages * page_size / 2**30, 1)


def _locale_name() -> str:
    lang, _encoding = locale.getlocale()
    return (lang or os.environ.get("LANG", "") or UNKNOWN).split(".")[0].replace("_", "-")


def collect_hardware_facts(screen_resolution: Optional[str] = None) -> HardwareFacts:
    """Gather the host facts reported alongside every status update."""
    return HardwareFacts(
        platform=platform.platform(),
        user_agent=f"terminal-link/{__version__} Python/{platform.python_version()}",
        locale=_locale_name(),
        screen_resolution=screen_resolution or os.environ.get("POS_SCREEN_RESOLUTION", UNKNOWN),
        memory_hint=_memory_hint(),
    )


def detect_local_address(target_url: str) -> Optional[str]:
    """Return the local address the OS would use to reach the target host.

    Opens a UDP socket (no packets are sent) and reads back its bound address.
    """
    parts = urlsplit(target_url)
    host = parts.hostname
    if not host:
        return None
    port = parts.port or (443 if parts.scheme in ("https", "wss") else 80)
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((host, port))
            return sock.getsockname()[0]
    except OSError as e:
        logger.debug("local_address_detection_failed", host=host, error=str(e))
        return None


AddressLookup = Callable[[], Awaitable[Optional[str]]]


class SnapshotBuilder:
    """Builds fresh StatusSnapshots on demand.

    The local address is resolved once (server-side lookup first, then a
    socket lookup) and cached in the identity store.
    """

    def __init__(
        self,
        identity: TerminalIdentityResolver,
        port: int,
        software_version: str = __version__,
        server_url: Optional[str] = None,
        address_lookup: Optional[AddressLookup] = None,
        hardware: Callable[[], HardwareFacts] = collect_hardware_facts,
    ):
        self._identity = identity
        self._port = port
        self._software_version = software_version
        self._server_url = server_url
        self._address_lookup = address_lookup
        self._hardware = hardware

    @property
    def store(self) -> IdentityStore:
        return self._identity.store

    async def local_address(self) -> str:
        cached = self.store.get(LOCAL_ADDRESS_KEY)
        if cached:
            return cached

        address = None
        if self._address_lookup is not None:
            address = await self._address_lookup()
        if not address and self._server_url:
            address = detect_local_address(self._server_url)
        if not address:
            return FALLBACK_ADDRESS

        self.store.set(LOCAL_ADDRESS_KEY, address)
        return address

    async def build(self) -> StatusSnapshot:
        return StatusSnapshot(
            terminal_id=self._identity.resolve(),
            local_address=await self.local_address(),
            port=self._port,
            software_version=self._software_version,
            hardware=self._hardware(),
        )
