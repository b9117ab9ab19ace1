"""
turbopuffer vector store client.

Records are keyed by the chunk identity id and carry the identity fields,
language, function name and content hash as attributes. Content itself is
not stored; search results are re-read from disk.
"""
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterable, Dict, Iterable, List, Optional, Tuple, Union

import requests

from .config import Settings, get_settings
from .embeddings import encode_vector
from .errors import ConfigError, NamespaceNotFound, StoreError
from .schemas import ApplySummary, BatchFailure, Chunk
from .streams import batched, buffer_unordered

logger = logging.getLogger(__name__)

REGIONS = [
    "gcp-us-central1",
    "gcp-us-west1",
    "gcp-us-east4",
    "gcp-northamerica-northeast2",
    "gcp-europe-west3",
    "gcp-asia-southeast1",
    "aws-ap-southeast-2",
    "aws-eu-central-1",
    "aws-us-east-1",
    "aws-us-east-2",
    "aws-us-west-2",
]
DEFAULT_REGION = "gcp-us-east4"

ATTRIBUTES = ["path", "start_line", "end_line", "language", "function_name", "content_hash"]

PING_TIMEOUT = 5


class TurbopufferClient:
    """Client for one turbopuffer region."""

    def __init__(self, settings: Optional[Settings] = None, region: Optional[str] = None):
        """
        Initialize the client.

        Args:
            settings: Configuration settings (uses get_settings() if None)
            region: Region override (defaults to TURBOPUFFER_REGION, then gcp-us-east4)

        Raises:
            ConfigError: TURBOPUFFER_API_KEY is not set
        """
        self.settings = settings or get_settings()
        if not self.settings.TURBOPUFFER_API_KEY:
            raise ConfigError("TURBOPUFFER_API_KEY is not set")
        self.region = region or self.settings.TURBOPUFFER_REGION or DEFAULT_REGION

        # Request session for connection pooling
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.settings.TURBOPUFFER_API_KEY}",
            "Content-Type": "application/json",
        })

    @property
    def base_url(self) -> str:
        return f"https://{self.region}.turbopuffer.com"

    def _make_request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """
        Make HTTP request to turbopuffer.

        Raises:
            NamespaceNotFound: The namespace does not exist
            StoreError: Any other transport or API failure
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        # Set default timeout
        if "timeout" not in kwargs:
            kwargs["timeout"] = self.settings.REQUEST_TIMEOUT

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            logger.error(f"turbopuffer request failed: {method} {url} - {e}")
            raise StoreError(f"turbopuffer request failed: {e}") from e

        if response.status_code >= 400:
            text = response.text or ""
            lowered = text.lower()
            if "namespace" in lowered and "not found" in lowered:
                raise NamespaceNotFound(text, status_code=response.status_code)
            raise StoreError(
                f"turbopuffer API error {response.status_code}: {text[:500]}",
                status_code=response.status_code,
            )
        return response

    # --- rows -----------------------------------------------------------------

    @staticmethod
    def _to_row(chunk: Chunk) -> Dict[str, Any]:
        if chunk.vector is None:
            raise StoreError(f"{chunk} has no vector")
        return {
            "id": chunk.id,
            "vector": encode_vector(chunk.vector),
            "path": chunk.path,
            "start_line": chunk.start_line,
            "end_line": chunk.end_line,
            "language": chunk.language,
            "function_name": chunk.function_name,
            "content_hash": chunk.content_hash,
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Chunk:
        if not isinstance(row, dict):
            raise StoreError(f"Malformed row: {row!r}")
        try:
            return Chunk(
                path=row["path"],
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
                language=row.get("language") or "unknown",
                function_name=row.get("function_name"),
                content_hash=int(row["content_hash"]),
                distance=row.get("$dist"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed row {row.get('id')}: {e}") from e

    # --- writes ---------------------------------------------------------------

    def write_batch(self, namespace: str, upserts: List[Chunk], delete_ids: List[int]) -> int:
        """
        Write one batch of upserts and/or deletes (blocking).

        Returns:
            Number of records written
        """
        body: Dict[str, Any] = {}
        if upserts:
            body["upsert_rows"] = [self._to_row(chunk) for chunk in upserts]
            body["distance_metric"] = "cosine_distance"
            body["schema"] = {"content_hash": "uint"}
        if delete_ids:
            body["deletes"] = list(delete_ids)
        if not body:
            return 0
        self._make_request("POST", f"/v2/namespaces/{namespace}", json=body)
        return len(upserts) + len(delete_ids)

    async def _write_job(self, namespace: str, kind: str, batch: List[Chunk], executor: ThreadPoolExecutor) -> Tuple[str, List[Chunk], Optional[StoreError]]:
        loop = asyncio.get_running_loop()
        upserts = batch if kind == "upsert" else []
        delete_ids = [chunk.id for chunk in batch] if kind == "delete" else []
        try:
            await loop.run_in_executor(executor, self.write_batch, namespace, upserts, delete_ids)
        except StoreError as e:
            logger.error(f"turbopuffer {kind} batch of {len(batch)} failed: {e}")
            return kind, batch, e
        logger.debug(f"turbopuffer {kind} batch of {len(batch)} written")
        return kind, batch, None

    async def apply_diff(
        self,
        namespace: str,
        to_upsert: Union[Iterable[Chunk], AsyncIterable[Chunk]],
        to_delete: Iterable[Chunk],
    ) -> ApplySummary:
        """
        Apply a diff: upsert embedded chunks and delete stale ones.

        Upserts (which may be streamed in as they are embedded) and deletes
        are sent in batches of at most STORE_BATCH_SIZE with at most
        STORE_CONCURRENCY requests in flight. Each failed batch is reported
        in the summary.
        """
        size = self.settings.STORE_BATCH_SIZE
        concurrency = self.settings.STORE_CONCURRENCY
        summary = ApplySummary()
        executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="tpuf")

        async def jobs():
            async for batch in batched(to_delete, size):
                yield self._write_job(namespace, "delete", batch, executor)
            async for batch in batched(to_upsert, size):
                yield self._write_job(namespace, "upsert", batch, executor)

        try:
            async for kind, batch, error in buffer_unordered(jobs(), concurrency):
                if error is not None:
                    summary.failures.append(BatchFailure(
                        kind=kind,
                        count=len(batch),
                        paths=sorted({chunk.path for chunk in batch}),
                        error=str(error),
                    ))
                elif kind == "upsert":
                    summary.upserted += len(batch)
                else:
                    summary.deleted += len(batch)
        finally:
            executor.shutdown(wait=False)

        logger.info(
            f"Applied diff to {namespace}: {summary.upserted} upserted, {summary.deleted} deleted, "
            f"{len(summary.failures)} failed batches"
        )
        return summary

    def delete_namespace(self, namespace: str) -> None:
        """Delete a namespace and all of its records. A missing namespace is not an error."""
        try:
            self._make_request("DELETE", f"/v2/namespaces/{namespace}")
            logger.info(f"Deleted namespace {namespace}")
        except NamespaceNotFound:
            logger.debug(f"Namespace {namespace} does not exist, nothing to delete")

    # --- reads ----------------------------------------------------------------

    def _query_rows(self, namespace: str, rank_by: list, top_k: int, filters: Optional[list] = None) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {
            "rank_by": rank_by,
            "top_k": top_k,
            "include_attributes": ATTRIBUTES,
            "consistency": {"level": "eventual"},
        }
        if filters is not None:
            body["filters"] = filters
        response = self._make_request("POST", f"/v2/namespaces/{namespace}/query", json=body)
        try:
            data = response.json()
        except ValueError as e:
            raise StoreError(f"turbopuffer returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Unexpected turbopuffer response: {str(data)[:200]}")
        rows = data.get("rows") or []
        if not isinstance(rows, list):
            raise StoreError(f"Unexpected turbopuffer rows: {str(rows)[:200]}")
        return rows

    def list_chunks(self, namespace: str) -> List[Chunk]:
        """
        Fetch every record's identity and hash (blocking), paging by ascending id.

        Returns:
            All chunks in the namespace; empty if the namespace does not exist
        """
        page_size = self.settings.STORE_PAGE_SIZE
        chunks: List[Chunk] = []
        last_id = None
        try:
            while True:
                filters = ["id", "Gt", last_id] if last_id is not None else None
                rows = self._query_rows(namespace, ["id", "asc"], page_size, filters)
                chunks.extend(self._from_row(row) for row in rows)
                if len(rows) < page_size:
                    break
                last_id = rows[-1]["id"]
        except NamespaceNotFound:
            logger.info(f"Namespace {namespace} not found, treating as empty")
            return []
        logger.debug(f"Fetched {len(chunks)} chunks from {namespace}")
        return chunks

    async def all_server_chunks(self, namespace: str) -> List[Chunk]:
        """Async wrapper around list_chunks."""
        return await asyncio.to_thread(self.list_chunks, namespace)

    async def query(self, namespace: str, vector: List[float], top_k: int = 10, filters: Optional[list] = None) -> List[Chunk]:
        """
        Nearest-neighbour query.

        Returns:
            At most top_k chunks ordered by ascending cosine distance
            (descending similarity), each carrying its distance
        """
        rows = await asyncio.to_thread(
            self._query_rows, namespace, ["vector", "ANN", list(vector)], top_k, filters
        )
        chunks = [self._from_row(row) for row in rows]
        chunks.sort(key=lambda c: c.distance if c.distance is not None else float("inf"))
        return chunks[:top_k]

    # --- regions --------------------------------------------------------------

    def ping(self, region: Optional[str] = None) -> float:
        """Round-trip latency to a region in milliseconds."""
        url = f"https://{region or self.region}.turbopuffer.com/"
        start = time.perf_counter()
        try:
            self.session.request("GET", url, timeout=PING_TIMEOUT)
        except requests.RequestException as e:
            raise StoreError(f"ping {url} failed: {e}") from e
        latency = (time.perf_counter() - start) * 1000
        logger.debug(f"tpuf ping to {region or self.region} took {latency:.2f} ms")
        return latency

    def find_closest_region(self) -> str:
        """Ping every region concurrently and return the fastest (gcp-us-east4 if none answer)."""
        def probe(region):
            try:
                return region, self.ping(region)
            except StoreError as e:
                logger.debug(f"Region {region} unreachable: {e}")
                return region, None

        with ThreadPoolExecutor(max_workers=len(REGIONS)) as executor:
            results = list(executor.map(probe, REGIONS))

        reachable = [(latency, region) for region, latency in results if latency is not None]
        if not reachable:
            return DEFAULT_REGION
        return min(reachable)[1]

    def close(self) -> None:
        self.session.close()
