"""Error types for the terminal link."""

from typing import Optional


class ClientError(Exception):
    """Base class for every error raised by the terminal link."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message


class ConnectionError(ClientError):
    """Failed to open the terminal socket to the branch server."""

    def __init__(self, message: str, url: Optional[str] = None):
        target = f" to {url}" if url else ""
        super().__init__(f"connection failed{target}: {message}")
        self.url = url


class TransportError(ClientError):
    """The open terminal socket failed while reading or writing."""

    def __init__(self, cause: Exception):
        super().__init__("transport error", cause)


class DecodeError(ClientError):
    """Inbound frame could not be decoded into an envelope."""

    def __init__(self, message: str, frame: object = None, cause: Optional[Exception] = None):
        super().__init__(f"decode error: {message}", cause)
        self.frame = frame


class EncodeError(ClientError):
    """Outbound envelope could not be serialized."""

    def __init__(self, cause: Exception):
        super().__init__("encode error", cause)


class FrameTooLargeError(ClientError):
    """Encoded frame exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"frame too large: {size} bytes exceeds limit of {limit}")
        self.size = size
        self.limit = limit


class InvalidArgumentError(ClientError):
    """Invalid argument provided by caller."""

    def __init__(self, message: str):
        super().__init__(f"invalid argument: {message}")


class InvalidTimestampError(ClientError):
    """Failed to parse timestamp."""

    def __init__(self, message: str):
        super().__init__(f"invalid timestamp: {message}")


class StatusReportError(ClientError):
    """Status side channel answered with a non-success response."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"status report rejected: HTTP {status_code} from {url}")
        self.status_code = status_code
        self.url = url

    def is_not_found(self) -> bool:
        """Return True if the server does not know this terminal."""
        return self.status_code == 404

    def is_unauthorized(self) -> bool:
        """Return True if the bearer token was rejected."""
        return self.status_code in (401, 403)
