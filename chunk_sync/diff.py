"""
Diff engine: reconcile local chunks against the remote store.

Chunks are matched by identity (path, start_line, end_line) and compared by
content_hash. The result tells the store exactly what to write and delete;
unchanged chunks are never re-embedded or re-uploaded.
"""
import logging
from typing import Dict, Iterable

from .schemas import Chunk, ChunkKey, DiffResult

logger = logging.getLogger(__name__)


def _by_key(chunks: Iterable[Chunk]) -> Dict[ChunkKey, Chunk]:
    # duplicate keys collapse to the last occurrence
    return {chunk.key: chunk for chunk in chunks}


def diff(local: Iterable[Chunk], remote: Iterable[Chunk]) -> DiffResult:
    """
    Partition local and remote chunks.

    - to_upsert: local chunks whose key is missing remotely or whose hash differs
    - to_delete: remote chunks whose key no longer exists locally
    - unchanged: local chunks whose key and hash match the remote record

    Runs in O(len(local) + len(remote)).
    """
    local_map = _by_key(local)
    remote_map = _by_key(remote)

    result = DiffResult()
    for key, chunk in local_map.items():
        existing = remote_map.get(key)
        if existing is None or existing.content_hash != chunk.content_hash:
            result.to_upsert.append(chunk)
        else:
            result.unchanged.append(chunk)

    for key, chunk in remote_map.items():
        if key not in local_map:
            result.to_delete.append(chunk)

    logger.debug(
        f"Diff: {len(result.to_upsert)} to upsert, {len(result.to_delete)} to delete, "
        f"{len(result.unchanged)} unchanged"
    )
    return result
