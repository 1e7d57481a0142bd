"""Error types raised by the match registry and the rate limiter.

Each error carries the HTTP status the transport layer answers with.
"""

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class MatchServerError(Exception):
    """Base error for match server failures.

    Attributes:
        message: Human-readable error message sent to the caller.
        details: Optional structured context (field names, retry hints).
    """

    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    code = "match_server_error"
    status_code = 500

    def __post_init__(self) -> None:
        super().__init__(self.message)


class MatchValidationError(MatchServerError):
    """Raised when register input is missing or malformed."""

    code = "validation_error"
    status_code = 400


class MatchNotFoundError(MatchServerError):
    """Raised when a match id is not in the registry."""

    code = "match_not_found"
    status_code = 404


class RateLimitExceeded(MatchServerError):
    """Raised when a caller exceeds its request budget for a path."""

    code = "rate_limit_exceeded"
    status_code = 429
