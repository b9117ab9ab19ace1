"""
chunk_sync

Keeps a remote vector index of a source tree in sync with the tree:
1. Chunker: tree-sitter extracts function-level chunks with their doc comments
2. Diff: local chunks are reconciled against the store by identity and hash
3. Embed + apply: only changed chunks are embedded (Voyage) and written (turbopuffer)

Batches and in-flight requests are bounded on both remote services.
"""

__version__ = "0.1.0"

from .chunker import chunk_files, hash_chunk_files
from .config import Settings, get_settings
from .diff import diff
from .embeddings import EmbedIntent, VoyageEmbedder
from .errors import (
    ConfigError,
    EmbeddingError,
    FileReadError,
    NamespaceNotFound,
    ParseError,
    StoreError,
)
from .schemas import Chunk, ChunkOptions, DiffResult, SyncReport
from .store import TurbopufferClient
from .sync import SyncOrchestrator, sync

__all__ = [
    "chunk_files",
    "hash_chunk_files",
    "Settings",
    "get_settings",
    "diff",
    "EmbedIntent",
    "VoyageEmbedder",
    "ConfigError",
    "EmbeddingError",
    "FileReadError",
    "NamespaceNotFound",
    "ParseError",
    "StoreError",
    "Chunk",
    "ChunkOptions",
    "DiffResult",
    "SyncReport",
    "TurbopufferClient",
    "SyncOrchestrator",
    "sync",
]
