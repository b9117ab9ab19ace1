"""
Sync orchestrator.

One pass: chunk the local tree while fetching the remote namespace, diff
the two, embed only what changed and stream the embedded chunks straight
into the store together with the deletes.

    Start -> (Chunking || RemoteFetch) -> Diffed -> Embedding -> Applying -> Done
"""
import asyncio
import logging
import time
from typing import AsyncIterator, List, Optional

from .chunker import chunk_files
from .config import Settings, get_settings
from .diff import diff
from .embeddings import EmbedIntent, VoyageEmbedder
from .project import namespace_and_dir
from .schemas import Chunk, ChunkFailure, ChunkOptions, ChunkReport, SyncReport
from .store import TurbopufferClient

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs sync passes against one embedder and one store."""

    def __init__(
        self,
        embedder: VoyageEmbedder,
        store: TurbopufferClient,
        settings: Optional[Settings] = None,
        options: Optional[ChunkOptions] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.settings = settings or get_settings()
        options = options or ChunkOptions(
            max_file_bytes=self.settings.MAX_FILE_BYTES,
            workers=self.settings.CHUNK_WORKERS,
        )
        # sync always needs content to embed
        self.options = options.model_copy(update={"hash_only": False})

    async def _embedded(self, chunks: List[Chunk], report: SyncReport) -> AsyncIterator[Chunk]:
        """Embed chunks, yielding successes and recording failures on the report."""
        async for outcome in self.embedder.embed_stream(chunks, EmbedIntent.DOCUMENT):
            if outcome.ok:
                report.embedded += 1
                yield outcome.chunk
            else:
                chunk = outcome.chunk
                report.embed_failures.append(ChunkFailure(
                    path=chunk.path,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    error=str(outcome.error),
                ))

    async def run(self, directory, reset: bool = False) -> SyncReport:
        """
        Run one sync pass for the project containing `directory`.

        Args:
            directory: Any path inside the project
            reset: Delete the namespace before syncing

        Returns:
            SyncReport with counts of successes and failures

        Raises:
            StoreError: The remote namespace could not be listed
        """
        started = time.perf_counter()
        namespace, root = namespace_and_dir(directory, prefix=self.settings.NAMESPACE_PREFIX)
        report = SyncReport(namespace=namespace, root=str(root))
        logger.info(f"Syncing {root} -> {namespace}")

        if reset:
            await asyncio.to_thread(self.store.delete_namespace, namespace)

        chunk_report = ChunkReport()
        local, remote = await asyncio.gather(
            asyncio.to_thread(chunk_files, root, self.options, chunk_report),
            self.store.all_server_chunks(namespace),
        )
        report.files_skipped = dict(chunk_report.warnings)

        result = diff(local, remote)
        report.found = len(local)
        report.to_upsert = len(result.to_upsert)
        report.to_delete = len(result.to_delete)
        report.unchanged = len(result.unchanged)
        logger.info(
            f"Found {report.found} chunks ({len(remote)} remote): "
            f"{report.to_upsert} to upsert, {report.to_delete} to delete"
        )

        if not result.is_empty:
            summary = await self.store.apply_diff(
                namespace,
                self._embedded(result.to_upsert, report),
                result.to_delete,
            )
            report.upserted = summary.upserted
            report.deleted = summary.deleted
            report.store_failures = summary.failures

        report.elapsed_ms = int((time.perf_counter() - started) * 1000)
        if report.ok:
            logger.info(f"✅ Sync complete in {report.elapsed_ms} ms")
        else:
            logger.warning(
                f"Sync incomplete: {len(report.embed_failures)} embedding failures, "
                f"{len(report.store_failures)} failed store batches"
            )
        return report


def build_clients(settings: Settings):
    """
    Create the embedder and store for `settings`.

    Raises:
        ConfigError: A required credential is missing (checked before any network call)
    """
    settings.require_credentials()
    embedder = VoyageEmbedder(settings)
    store = TurbopufferClient(settings)
    if not settings.TURBOPUFFER_REGION:
        store.region = store.find_closest_region()
        logger.info(f"Using closest turbopuffer region: {store.region}")
    return embedder, store


async def sync(directory, settings: Optional[Settings] = None, reset: bool = False, options: Optional[ChunkOptions] = None) -> SyncReport:
    """Run one sync pass with clients built from settings."""
    settings = settings or get_settings()
    embedder, store = build_clients(settings)
    try:
        return await SyncOrchestrator(embedder, store, settings, options).run(directory, reset=reset)
    finally:
        embedder.close()
        store.close()
