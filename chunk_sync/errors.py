"""
Error types for the chunk / embed / store pipeline.

Per-file errors (ParseError, FileReadError) and per-batch errors
(EmbeddingError, StoreError) are recovered and summarized by the caller.
ConfigError is fatal and is raised before any network call.
"""
from typing import Optional


class ChunkSyncError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(ChunkSyncError):
    """Missing credentials or invalid configuration."""


class ParseError(ChunkSyncError):
    """A file could not be parsed with its grammar."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class FileReadError(ChunkSyncError):
    """A file could not be read or decoded."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class EmbeddingError(ChunkSyncError):
    """An embedding request failed for a whole batch."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StoreError(ChunkSyncError):
    """A vector store request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class NamespaceNotFound(StoreError):
    """The namespace does not exist yet (nothing has been written to it)."""
