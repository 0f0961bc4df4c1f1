"""
chat-relay error types.

Only SessionClosingError, MessagingError and ConfigError ever reach callers of
the public API; the rest are raised and handled inside the relay.
"""

from typing import Any, Optional


class RelayError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class TransportError(RelayError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("transport_error", message, details)


class EncodingError(RelayError):
    def __init__(self, message: str, code: str = "encoding_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class EncodingTooLargeError(EncodingError):
    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Encoded event is {size} bytes, broker limit is {limit}",
            code="encoding_too_large",
            details={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class DecodeError(RelayError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("decode_error", message, details)


class VisibilityProviderError(RelayError):
    def __init__(self, message: str):
        super().__init__("visibility_provider_error", message)


class QueueOverflowError(RelayError):
    """Taxonomy entry only: overflow is counted, never raised at producers."""

    def __init__(self, dropped: int):
        super().__init__("queue_overflow", f"Outbound queue overflow, {dropped} event(s) dropped")
        self.dropped = dropped


class SessionClosingError(RelayError):
    def __init__(self, message: str = "Transport session is closing"):
        super().__init__("session_closing", message)


class MessagingError(RelayError):
    def __init__(self, message: str, code: str = "messaging_error"):
        super().__init__(code, message)


class ConfigError(RelayError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("config_error", message, details)
