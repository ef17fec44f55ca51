from __future__ import annotations

from enum import Enum


class FaturadorError(Exception):
    """Base class for errors raised by the emission core."""


class ValidationError(FaturadorError):
    """A required field is missing or malformed. Raised before any external call."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MissingFiscalCodeError(ValidationError):
    """No source produced the recipient's IBGE municipality code."""

    def __init__(self, message: str, attempted: list[str] | None = None) -> None:
        super().__init__(message, field="tomador.codigo_municipio")
        self.attempted = attempted or []


class TransientKind(str, Enum):
    RESET = "reset"
    CONNECTION_LOST = "connection_lost"
    TIMEOUT = "timeout"
    HOST_UNREACHABLE = "host_unreachable"
    REFUSED = "refused"


class TransientConnectionError(FaturadorError):
    """Persistence call failed with a connection-level error after all retries."""

    def __init__(self, message: str, kind: TransientKind) -> None:
        super().__init__(message)
        self.kind = kind


class InvoiceBusyError(FaturadorError):
    """Another action is already running for the same invoice."""
