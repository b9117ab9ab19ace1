"""
Semantic search over a synced project.

Results are printed ripgrep-style (path:line:preview) so they can be piped
into tools that understand grep output.
"""
import logging
from pathlib import Path
from typing import List, Optional

from .config import Settings, get_settings
from .embeddings import VoyageEmbedder
from .errors import NamespaceNotFound
from .project import namespace_and_dir
from .schemas import Chunk
from .store import TurbopufferClient

logger = logging.getLogger(__name__)


def load_chunk_content(chunk: Chunk, root: Path) -> Chunk:
    """Re-read a chunk's lines from disk; content stays None if the file is gone."""
    path = root / chunk.path
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as e:
        logger.debug(f"Could not load {path}: {e}")
        return chunk
    selected = lines[chunk.start_line - 1:chunk.end_line]
    if not selected:
        return chunk
    return chunk.model_copy(update={"content": "\n".join(selected)})


def format_results(chunks: List[Chunk], show_scores: bool = False) -> str:
    """Format chunks as `path:line:preview` (or `path:line:distance:preview`)."""
    lines = []
    for chunk in chunks:
        preview = "[no content]"
        if chunk.content:
            preview = chunk.content.splitlines()[0].strip()
        if show_scores:
            score = f"{chunk.distance:.4f}" if chunk.distance is not None else "n/a"
            lines.append(f"{chunk.path}:{chunk.start_line}:{score}:{preview}")
        else:
            lines.append(f"{chunk.path}:{chunk.start_line}:{preview}")
    return "\n".join(lines)


async def semantic_search(
    query: str,
    directory,
    embedder: VoyageEmbedder,
    store: TurbopufferClient,
    top_k: int = 10,
    settings: Optional[Settings] = None,
) -> List[Chunk]:
    """
    Embed a query and return the nearest chunks with content loaded from disk.

    Returns an empty list when the project has not been synced yet.
    """
    if not query.strip():
        raise ValueError("Query must not be empty")
    settings = settings or get_settings()
    namespace, root = namespace_and_dir(directory, prefix=settings.NAMESPACE_PREFIX)

    vector = await embedder.embed_query(query)
    try:
        hits = await store.query(namespace, vector, top_k=top_k)
    except NamespaceNotFound:
        logger.warning(f"{root} has not been synced yet (namespace {namespace} not found)")
        return []
    return [load_chunk_content(chunk, root) for chunk in hits]
