"""Error taxonomy for the sync pipeline and the retention sweeper."""


class IndexSyncError(Exception):
    """Base class for all index-sync errors."""


class MappingError(IndexSyncError):
    """A message payload cannot be turned into an index document.

    Permanent for the message: it is dead-lettered and its offset advances.
    """

    def __init__(self, message: str, reason: str = "invalid_payload") -> None:
        super().__init__(message)
        self.reason = reason


class ConnectivityError(IndexSyncError):
    """The broker or the search engine cannot be reached."""


class SearchEngineError(IndexSyncError):
    """The search engine answered with an unexpected HTTP status.

    Attributes:
        status_code: HTTP status returned by the engine.
        body: Raw response body, truncated for logging.
    """

    def __init__(self, message: str, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body[:2000]


class DeletionError(IndexSyncError):
    """Deleting (or snapshotting before deleting) an index failed."""

    def __init__(self, index: str, message: str) -> None:
        super().__init__(f"failed to delete index '{index}': {message}")
        self.index = index


class StartupError(IndexSyncError):
    """An external dependency was unreachable while starting up."""


class OffsetOrderError(IndexSyncError):
    """An offset was about to go backwards inside one partition.

    This is an internal invariant violation and is fatal.
    """


class CommitError(IndexSyncError):
    """The broker refused an offset commit, usually because the partition was revoked."""
