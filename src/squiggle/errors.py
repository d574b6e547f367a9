from __future__ import annotations


class SquiggleError(Exception):
    """Base class for request-level failures."""


class InputValidationError(SquiggleError, ValueError):
    """The request text is missing or larger than the configured maximum."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class UpstreamError(SquiggleError, RuntimeError):
    """Every model chunk failed; no AI candidates could be produced."""

    def __init__(self, message: str, *, chunk_errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.chunk_errors = list(chunk_errors or [])


class RequestCancelledError(UpstreamError):
    """The request was superseded by a newer one for the same session."""
