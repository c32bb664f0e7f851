"""Exception hierarchy for the discovery pipeline.

Only the classes raised across module boundaries live here. Soft failures
(one page that won't fetch, one extraction that comes back empty) never raise
past the component that hit them.
"""

from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for pipeline errors."""


class SearchError(DiscoveryError):
    """The search provider returned an error or could not be reached."""


class SearchRateLimitedError(SearchError):
    """The search provider is still throttling after the single retry."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ModelError(DiscoveryError):
    """A model completion failed or returned something unusable."""


class RunStoreError(DiscoveryError):
    """Reading or writing item runs failed."""


class PipelineError(DiscoveryError):
    """A batch-fatal error; remaining items were not processed.

    ``results`` holds the items that completed before the failure. They are
    already persisted and remain valid.
    """

    def __init__(self, message: str, results: list | None = None) -> None:
        super().__init__(message)
        self.results = results or []
