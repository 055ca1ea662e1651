"""Persisted terminal identity.

The identity is generated once per installation as ``"POS-" + base36(ms)``
upper-cased and kept in an identity store so it survives restarts. It is
what the terminal announces about itself; the server-assigned session id
from ``connection_ack`` lives on the connection manager instead.
"""

import json
import os
import tempfile
import time
from typing import Callable, Optional, Protocol

import structlog

from .helpers import to_base36

logger = structlog.get_logger()

TERMINAL_ID_KEY = "terminal_id"
LOCAL_ADDRESS_KEY = "local_address"
TERMINAL_ID_PREFIX = "POS-"


class IdentityStore(Protocol):
    """Small string key/value store backing the identity."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryIdentityStore:
    """In-process store; identities do not outlive the object."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileIdentityStore:
    """JSON document on disk, rewritten atomically on every change."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def _load(self) -> dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("identity_store_unreadable", path=self.path, error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning("identity_store_unreadable", path=self.path, error="not an object")
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: dict[str, str]) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".identity-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)


def generate_terminal_id(now_ms: int) -> str:
    """Return a fresh identity for the given creation time in epoch milliseconds."""
    return TERMINAL_ID_PREFIX + to_base36(now_ms).upper()


class TerminalIdentityResolver:
    """Derives, persists and returns the stable terminal identity."""

    def __init__(self, store: IdentityStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    @property
    def store(self) -> IdentityStore:
        return self._store

    def resolve(self) -> str:
        """Return the persisted identity, creating it on first use."""
        terminal_id = self._store.get(TERMINAL_ID_KEY)
        if terminal_id:
            return terminal_id

        terminal_id = generate_terminal_id(int(self._clock() * 1000))
        self._store.set(TERMINAL_ID_KEY, terminal_id)
        logger.info("terminal_identity_created", terminal_id=terminal_id)
        return terminal_id

    def peek(self) -> Optional[str]:
        """Return the persisted identity without creating one."""
        return self._store.get(TERMINAL_ID_KEY) or None

    def reset(self) -> None:
        """Forget the identity; the next ``resolve()`` generates a new one."""
        self._store.delete(TERMINAL_ID_KEY)
        logger.info("terminal_identity_reset")
