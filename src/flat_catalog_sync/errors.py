"""Exception types for flat-catalog-sync."""


class CatalogSyncError(Exception):
    """Base class for sync errors."""


class DuplicateKeyError(CatalogSyncError):
    """A write collided with a unique index."""

    def __init__(self, table: str, message: str):
        super().__init__(f"Duplicate key in {table}: {message}")
        self.table = table


class RemoteFetchError(CatalogSyncError):
    """A call to a file server failed (timeout, non-2xx, malformed body)."""

    def __init__(self, server_id: str, path: str, message: str, status_code: int | None = None):
        super().__init__(f"[{server_id}] {path}: {message}")
        self.server_id = server_id
        self.path = path
        self.status_code = status_code


class ServerConfigError(CatalogSyncError):
    """Server configuration is unusable for a sync pass."""
