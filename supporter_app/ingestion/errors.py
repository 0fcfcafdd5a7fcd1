"""
Error taxonomy shared by processors, jobs, the merge engine and the HTTP layer.
"""

from __future__ import annotations


class SupporterNotFound(LookupError):
    """Raised when a supporter referenced by id does not exist."""

    code = "SUPPORTER_NOT_FOUND"

    def __init__(self, supporter_id: str) -> None:
        super().__init__(f"Supporter {supporter_id} not found")
        self.supporter_id = supporter_id


class MergeConflict(ValueError):
    """Merge preconditions violated; never auto-resolved and never retried."""

    code = "MERGE_CONFLICT"


class InvalidMergeRequest(ValueError):
    """Merge request is missing required input (e.g. an empty reason)."""

    code = "INVALID_REQUEST"


class MalformedMessage(ValueError):
    """Inbound queue message cannot be parsed; dead-letter instead of retrying."""

    def __init__(self, source_system: str, detail: str) -> None:
        super().__init__(f"Malformed {source_system} message: {detail}")
        self.source_system = source_system
        self.detail = detail


class UnknownSourceSystem(ValueError):
    """Raised when a message or command names a source with no processor."""

    def __init__(self, source_system: str) -> None:
        super().__init__(f"No processor registered for source '{source_system}'")
        self.source_system = source_system


class SourceAPIError(RuntimeError):
    """Base error for third-party API failures."""

    def __init__(self, source_system: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{source_system} API error: {message}")
        self.source_system = source_system
        self.status_code = status_code


class TransientSourceError(SourceAPIError):
    """Timeout, connection failure, 429 or 5xx that survived the client's own retries."""


class PageLimitReached(SourceAPIError):
    """A paged listing still reported more records after the configured page cap."""
