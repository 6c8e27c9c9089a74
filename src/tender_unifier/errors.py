from __future__ import annotations

from typing import Any, Optional


class TenderUnifierError(Exception):
    pass


class ParseFailure(TenderUnifierError):
    """LLM output could not be recovered into any usable field."""


class CompletionServiceError(TenderUnifierError):
    """Network, timeout or HTTP failure from the completion endpoint.

    ``quota_exhausted`` marks quota/billing failures; once seen, the rest of the
    run should stop calling the endpoint.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        quota_exhausted: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.quota_exhausted = quota_exhausted


class FieldExtractionWarning(UserWarning):
    """A single field could not be parsed and was set to null."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        super().__init__(f"{field}: {reason} ({value!r})")
        self.field = field
        self.value = value
        self.reason = reason


class StoreError(TenderUnifierError):
    pass


class StoreConflict(StoreError):
    """Insert hit the (source_table, source_id) uniqueness constraint."""
