"""Custom exception hierarchy for pyfreshmon."""

from __future__ import annotations


class FreshmonError(Exception):
    """Base exception for all pyfreshmon errors."""


class FreshmonConfigError(FreshmonError):
    """Invalid or missing configuration."""


class FreshmonTransportError(FreshmonError):
    """Bus or serial-line failure (open failed, connection dropped).

    Never fatal: a dropped transport ends the monitoring session and the
    process keeps waiting for the transport to come back.
    """

    def __init__(self, message: str, *, transport: str = "") -> None:
        self.transport = transport
        super().__init__(message)


class FreshmonPersistenceError(FreshmonError):
    """A persistence sink could not store a classification record."""

    def __init__(self, message: str, *, category: str | None = None) -> None:
        self.category = category
        super().__init__(message)


class FreshmonDecodeError(FreshmonError):
    """Payload bytes could not be decoded as structured data."""
