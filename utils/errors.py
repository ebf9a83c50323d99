"""
Error taxonomy for the Pokedex service.

Every error carries a stable code so callers can tell user-retriable failures
(`E_TRANSIENT`, `E_CIRCUIT_OPEN`) from fatal ones. `str(error)` is always
``"<CODE>:<message>"``.
"""

from typing import Optional

from utils.constants import (
    E_CIRCUIT_OPEN,
    E_CONFLICT,
    E_EXTERNAL,
    E_NOT_FOUND,
    E_TRANSIENT,
    E_VALIDATION,
)


class PokedexError(Exception):
    """Base class for all service errors."""

    code = "E_INTERNAL"

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"{self.code}:{message}")


class FetchError(PokedexError):
    """Raised when an upstream request fails and will not be retried."""

    code = E_EXTERNAL

    def __init__(
        self, message: str, status: Optional[int] = None, url: Optional[str] = None
    ):
        self.status = status
        self.url = url
        super().__init__(message)


class TransientNetworkError(FetchError):
    """Timeouts, 5xx, 429 and transport faults. Retried before surfacing."""

    code = E_TRANSIENT


class CircuitBreakerError(TransientNetworkError):
    """Raised when circuit breaker is open and refusing requests."""

    code = E_CIRCUIT_OPEN


class ValidationError(PokedexError):
    """Malformed caller input. Never retried."""

    code = E_VALIDATION


class NotFoundError(PokedexError):
    """A mutation expected an entity that does not exist."""

    code = E_NOT_FOUND


class ConflictError(PokedexError):
    """A mutation would duplicate existing state."""

    code = E_CONFLICT
