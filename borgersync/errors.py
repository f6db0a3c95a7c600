"""
Exception hierarchy for borgersync.

Run-level errors abort a whole run. Item-level errors are caught by the
reconciler and turned into result log entries.
"""
from typing import Optional


class BorgerSyncError(Exception):
    """Base class for all borgersync errors."""


# Run-level

class CatalogBuildFailure(BorgerSyncError):
    """The remote catalog could not be built completely."""

    def __init__(self, domain: str, cause: Exception):
        super().__init__(f"Unable to build article catalog for {domain}: {cause}")
        self.domain = domain
        self.cause = cause


class CacheDirectoryMissing(BorgerSyncError):
    """The cache storage directory does not exist."""

    def __init__(self, directory: str):
        super().__init__("Storage directory does not exist.")
        self.directory = directory


class ValidationError(BorgerSyncError):
    """Invalid input to a run (identifiers, query parameters)."""

    def __init__(self, message: str, code: int = 400):
        super().__init__(message)
        self.code = code


class InvalidArticleUrl(ValidationError):
    pass


class UnknownDomain(ValidationError):
    pass


# Item-level

class MalformedKey(BorgerSyncError):
    """A cache storage name could not be parsed into an article key."""

    def __init__(self, name: str):
        super().__init__(f"Malformed cache entry name: {name}")
        self.name = name


class SelectionParseError(BorgerSyncError):
    """A persisted article selection could not be parsed."""


class FetchError(BorgerSyncError):
    """Fetching an article from the remote service failed."""


class FetchNotFound(FetchError):
    pass


class FetchFault(FetchError):
    pass


class FetchTimeout(FetchError):
    pass


class ServiceFault(BorgerSyncError):
    """
    A SOAP fault returned by the ArticleExport service.

    Args:
        message: The fault string
        code: The fault code, if the service sent one
    """
    NOT_FOUND_PREFIX = "No article found"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    @property
    def not_found(self) -> bool:
        if self.code and "notfound" in self.code.lower().replace("_", ""):
            return True
        # The service only reports missing articles in the fault text
        return self.message.startswith(self.NOT_FOUND_PREFIX)
