"""
Custom exceptions for warren.

This module contains all custom exception classes used throughout the library.
"""

from typing import Optional


class WarrenError(Exception):
    """Base class for every error raised by warren."""


class ConfigurationError(WarrenError):
    """Raised when a required property is missing. Always raised before any network call."""


class ConnectionFailedError(WarrenError):
    """Raised when a connection cannot be established or is lost. Never retried internally."""


class ProtocolError(WarrenError):
    """Raised when the broker rejects a declare, bind or publish."""

    def __init__(self, message: str, reply_code: Optional[int] = None):
        self.reply_code = reply_code
        super().__init__(message)


class EnvelopeValidationError(WarrenError):
    """Raised when an RPC request envelope does not have the expected shape."""

    def __init__(self, errors: list[dict], message: Optional[str] = None):
        self.errors = errors
        if message is None:
            message = "; ".join(
                f"{'.'.join(str(part) for part in error.get('loc', ())) or 'envelope'}: {error.get('msg')}"
                for error in errors
            )
        super().__init__(message)


class CannotCorrelateError(WarrenError):
    """Raised when replying to an RPC request that carries no reply_to or correlation_id."""

    def __init__(
        self,
        reply_to: Optional[str],
        correlation_id: Optional[str],
        message: Optional[str] = None,
    ):
        self.reply_to = reply_to
        self.correlation_id = correlation_id
        if message is None:
            missing = [
                name
                for name, value in (
                    ("reply_to", reply_to),
                    ("correlation_id", correlation_id),
                )
                if not value
            ]
            message = f"Cannot correlate RPC reply, request is missing {', '.join(missing)}"
        super().__init__(message)


class ConfirmsNotEnabledError(WarrenError):
    """Raised when waiting for publisher confirms on a channel that is not in confirm mode."""


class GracefulStop(WarrenError):
    """
    Ends a consume loop without signalling an error.

    Caught at the boundary of `Consumer.consume` and converted into a normal
    successful return.
    """

