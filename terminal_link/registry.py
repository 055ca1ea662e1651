"""HTTP side channel for terminal registration and status reporting.

Endpoints (relative to the API base URL):
    POST  /network/terminals                              registration upsert
    PATCH /network/terminals/by-terminal-id/{id}/status   status update
    GET   /network/config                                 network configuration
    GET   /network/client-ip                              address as seen by the server

Status reporting is advisory: the public methods log failures and return
False (or an empty value) instead of raising.
"""

from __future__ import annotations

from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx
import structlog

from .errors import InvalidArgumentError, StatusReportError
from .snapshot import StatusSnapshot

logger = structlog.get_logger()

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_MAINTENANCE = "maintenance"
STATUS_ERROR = "error"

REPORTABLE_STATUSES = frozenset({STATUS_ONLINE, STATUS_OFFLINE, STATUS_MAINTENANCE, STATUS_ERROR})

TokenProvider = Callable[[], Optional[str]]


class TerminalRegistry:
    """Client for the terminal registration endpoints."""

    def __init__(
        self,
        base_url: str,
        token: Optional[TokenProvider] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @classmethod
    def with_static_token(cls, base_url: str, token: Optional[str], **kwargs: Any) -> "TerminalRegistry":
        return cls(base_url, token=(lambda: token) if token else None, **kwargs)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._token() if self._token else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> httpx.Response:
        response = await self._client.request(method, path, json=body, headers=self._headers())
        if response.is_error:
            raise StatusReportError(response.status_code, str(response.request.url))
        return response

    async def register(self, snapshot: StatusSnapshot) -> bool:
        """Register (or re-register) this terminal. Idempotent server-side."""
        try:
            await self._request("POST", "/network/terminals", snapshot.registration_body())
        except (httpx.HTTPError, StatusReportError) as e:
            logger.warning("terminal_registration_failed", terminal_id=snapshot.terminal_id, error=str(e))
            return False
        logger.info("terminal_registered", terminal_id=snapshot.terminal_id)
        return True

    async def update_status(self, status: str, snapshot: StatusSnapshot) -> bool:
        if status not in REPORTABLE_STATUSES:
            raise InvalidArgumentError(f"unknown terminal status '{status}'")
        path = f"/network/terminals/by-terminal-id/{quote(snapshot.terminal_id, safe='')}/status"
        try:
            await self._request("PATCH", path, snapshot.status_body(status))
        except (httpx.HTTPError, StatusReportError) as e:
            logger.warning(
                "terminal_status_update_failed",
                terminal_id=snapshot.terminal_id,
                status=status,
                error=str(e),
            )
            return False
        logger.debug("terminal_status_updated", terminal_id=snapshot.terminal_id, status=status)
        return True

    async def get_network_config(self) -> list:
        try:
            response = await self._request("GET", "/network/config")
            data = response.json()
        except (httpx.HTTPError, StatusReportError, ValueError) as e:
            logger.warning("network_config_fetch_failed", error=str(e))
            return []
        if isinstance(data, dict):
            return data.get("data") or []
        return []

    async def client_ip(self) -> Optional[str]:
        """Return this terminal's address as seen by the server."""
        try:
            response = await self._request("GET", "/network/client-ip")
            data = response.json()
        except (httpx.HTTPError, StatusReportError, ValueError) as e:
            logger.debug("client_ip_lookup_failed", error=str(e))
            return None
        ip = data.get("ip") if isinstance(data, dict) else None
        return ip if isinstance(ip, str) and ip else None

    async def aclose(self) -> None:
        await self._client.aclose()
