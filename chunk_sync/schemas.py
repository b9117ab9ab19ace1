"""
Pydantic schemas for the chunk / diff / sync pipeline.

A Chunk's identity is positional: (path, start_line, end_line). Its
content_hash changes whenever the captured text (attached comments included)
changes, which is what drives the diff.
"""
from typing import Dict, List, Optional, Tuple

import xxhash
from pydantic import BaseModel, Field

ChunkKey = Tuple[str, int, int]


def hash_bytes(data: bytes) -> int:
    """xxh3-64 content hash."""
    return xxhash.xxh3_64_intdigest(data)


class Chunk(BaseModel):
    """One function-like unit of source code."""

    path: str
    start_line: int
    end_line: int
    language: str
    function_name: Optional[str] = None
    content: Optional[str] = None
    content_hash: int

    # Set after embedding / on query results
    vector: Optional[List[float]] = None
    distance: Optional[float] = None

    @property
    def key(self) -> ChunkKey:
        return (self.path, self.start_line, self.end_line)

    @property
    def id(self) -> int:
        """Remote record id, derived from the identity key."""
        return hash_bytes(f"{self.path}:{self.start_line}:{self.end_line}".encode("utf-8"))

    @property
    def similarity(self) -> Optional[float]:
        """Cosine similarity for query results (1 - cosine distance)."""
        if self.distance is None:
            return None
        return 1.0 - self.distance

    def __str__(self) -> str:
        return f"{self.path}:{self.start_line}-{self.end_line}"


class ChunkOptions(BaseModel):
    """Options controlling file enumeration and chunking."""

    languages: Optional[List[str]] = Field(default=None, description="Language allow-list (None = all)")
    include_hidden: bool = True
    respect_ignore_files: bool = True
    exclude: List[str] = Field(default_factory=list, description="Extra gitignore-style exclude patterns")
    max_file_bytes: int = 1_000_000
    workers: Optional[int] = None
    hash_only: bool = False
    show_progress: bool = False


class ChunkFileResult(BaseModel):
    """Chunks of one file plus timing information."""

    path: str
    chunks: List[Chunk] = Field(default_factory=list)
    file_size: int = 0
    read_time_ms: float = 0.0
    parse_time_ms: float = 0.0


class ChunkReport(BaseModel):
    """Counters and per-file warnings for one chunking pass."""

    files_seen: int = 0
    files_chunked: int = 0
    chunks: int = 0
    read_time_ms: float = 0.0
    parse_time_ms: float = 0.0
    warnings: Dict[str, str] = Field(default_factory=dict)

    @property
    def files_skipped(self) -> int:
        return len(self.warnings)


class DiffResult(BaseModel):
    """Partition of local/remote chunks by identity."""

    to_upsert: List[Chunk] = Field(default_factory=list)
    to_delete: List[Chunk] = Field(default_factory=list)
    unchanged: List[Chunk] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_upsert and not self.to_delete


class EmbedOutcome(BaseModel):
    """Result of embedding one chunk: the chunk with its vector, or an error."""

    chunk: Chunk
    error: Optional[Exception] = None

    class Config:
        arbitrary_types_allowed = True

    @property
    def ok(self) -> bool:
        return self.error is None and self.chunk.vector is not None


class ChunkFailure(BaseModel):
    """A chunk that could not be embedded."""

    path: str
    start_line: int
    end_line: int
    error: str


class BatchFailure(BaseModel):
    """A store write batch that failed."""

    kind: str  # "upsert" or "delete"
    count: int
    paths: List[str] = Field(default_factory=list)
    error: str


class ApplySummary(BaseModel):
    """Outcome of applying a diff to the store."""

    upserted: int = 0
    deleted: int = 0
    failures: List[BatchFailure] = Field(default_factory=list)


class SyncReport(BaseModel):
    """Summary of one sync pass."""

    namespace: str
    root: str
    found: int = 0
    to_upsert: int = 0
    to_delete: int = 0
    unchanged: int = 0
    embedded: int = 0
    upserted: int = 0
    deleted: int = 0
    files_skipped: Dict[str, str] = Field(default_factory=dict)
    embed_failures: List[ChunkFailure] = Field(default_factory=list)
    store_failures: List[BatchFailure] = Field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def failed(self) -> int:
        return len(self.embed_failures) + sum(f.count for f in self.store_failures)

    @property
    def failed_paths(self) -> List[str]:
        paths = {f.path for f in self.embed_failures}
        for failure in self.store_failures:
            paths.update(failure.paths)
        return sorted(paths)

    @property
    def ok(self) -> bool:
        return not self.embed_failures and not self.store_failures
