"""Exception hierarchy shared by the crawl pipeline."""
from __future__ import annotations


class HarvestError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(HarvestError):
    """Raised when settings or the target registry are invalid."""


class TransientFetchError(HarvestError):
    """Network, navigation or timeout failure while rendering a page."""


class NavigationError(TransientFetchError):
    """The browser could not load or render the requested URL."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class SessionFatalError(TransientFetchError):
    """The browser session is unusable and must be recreated."""


class ExtractionError(HarvestError):
    """A required field was absent or malformed on a detail page."""

    def __init__(self, link: str, errors: list[str]) -> None:
        super().__init__(f"{link}: {'; '.join(errors)}")
        self.link = link
        self.errors = errors


class StorageError(HarvestError):
    """The listing store or similarity index rejected an operation."""


class BrokerError(HarvestError):
    """The job queue could not persist its state."""
