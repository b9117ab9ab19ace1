"""
Voyage AI embedding client.

Embeds chunk content in batches of at most EMBED_BATCH_SIZE (100) with at
most EMBED_CONCURRENCY (3) batches in flight. A failed batch fails only its
own chunks; results are streamed back as EmbedOutcome values in completion
order.
"""
import asyncio
import base64
import binascii
import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Iterable, List, Optional, Sequence, Union

import numpy as np
import requests

from .config import Settings, get_settings
from .errors import ConfigError, EmbeddingError
from .schemas import Chunk, EmbedOutcome
from .streams import batched, buffer_unordered

logger = logging.getLogger(__name__)

# Error text the service returns when a batch carries too many tokens
TOKEN_LIMIT_MARKER = "max allowed tokens per submitted batch"


class EmbedIntent(str, Enum):
    """What the embedded text will be used for."""

    DOCUMENT = "document"
    QUERY = "query"


def encode_vector(vector: Sequence[float]) -> str:
    """Pack a vector as base64 little-endian float32."""
    return base64.b64encode(np.asarray(vector, dtype="<f4").tobytes()).decode("ascii")


def decode_vector(value: Union[str, Sequence[float]]) -> List[float]:
    """Unpack a base64 float32 vector (plain float lists pass through)."""
    if isinstance(value, str):
        return np.frombuffer(base64.b64decode(value, validate=True), dtype="<f4").astype(float).tolist()
    return [float(x) for x in value]


class VoyageEmbedder:
    """Batching, concurrency-bounded client for the Voyage embeddings API."""

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize the embedder.

        Args:
            settings: Configuration settings (uses get_settings() if None)

        Raises:
            ConfigError: VOYAGE_API_KEY is not set
        """
        self.settings = settings or get_settings()
        if not self.settings.VOYAGE_API_KEY:
            raise ConfigError("VOYAGE_API_KEY is not set")
        self.url = self.settings.VOYAGE_URL
        self.model = self.settings.VOYAGE_MODEL

        # Request session for connection pooling
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.settings.VOYAGE_API_KEY}",
            "Content-Type": "application/json",
        })

    def _make_request(self, payload: dict) -> dict:
        """POST a payload to the embeddings endpoint, mapping failures to EmbeddingError."""
        try:
            response = self.session.request(
                "POST", self.url, json=payload, timeout=self.settings.REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            raise EmbeddingError(f"Voyage request failed: {e}") from e

        if response.status_code >= 400:
            raise EmbeddingError(
                f"Voyage API error {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise EmbeddingError(f"Voyage returned invalid JSON: {e}") from e

    def embed_texts(self, texts: List[str], intent: Union[EmbedIntent, str] = EmbedIntent.DOCUMENT) -> List[List[float]]:
        """
        Embed a list of texts in one request (blocking).

        A batch rejected for exceeding the service token limit is split in
        half and retried recursively.

        Raises:
            EmbeddingError: The request failed or the response was malformed
        """
        if not texts:
            return []
        intent = EmbedIntent(intent)
        payload = {
            "input": texts,
            "model": self.model,
            "input_type": intent.value,
            "output_dtype": "float",
            "encoding_format": "base64",
        }
        try:
            data = self._make_request(payload)
        except EmbeddingError as e:
            if TOKEN_LIMIT_MARKER in str(e) and len(texts) > 1:
                mid = len(texts) // 2
                logger.info(f"Batch of {len(texts)} exceeds token limit, splitting into {mid} + {len(texts) - mid}")
                return self.embed_texts(texts[:mid], intent) + self.embed_texts(texts[mid:], intent)
            raise
        return self._decode_response(data, len(texts))

    @staticmethod
    def _decode_response(data: dict, expected: int) -> List[List[float]]:
        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [decode_vector(item["embedding"]) for item in items]
        except (KeyError, TypeError, ValueError, AttributeError, binascii.Error) as e:
            raise EmbeddingError(f"Malformed embedding response: {e}") from e
        if len(vectors) != expected:
            raise EmbeddingError(f"Expected {expected} embeddings, got {len(vectors)}")
        usage = data.get("usage")
        tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        if tokens is not None:
            logger.debug(f"Embedded {expected} texts ({tokens} tokens)")
        return vectors

    async def _embed_batch(self, batch: List[Chunk], intent: EmbedIntent, executor: ThreadPoolExecutor) -> List[EmbedOutcome]:
        outcomes = [
            EmbedOutcome(chunk=chunk, error=EmbeddingError(f"{chunk} has no content to embed"))
            for chunk in batch
            if chunk.content is None
        ]
        ready = [chunk for chunk in batch if chunk.content is not None]
        if not ready:
            return outcomes

        loop = asyncio.get_running_loop()
        try:
            vectors = await loop.run_in_executor(
                executor, self.embed_texts, [chunk.content for chunk in ready], intent
            )
        except EmbeddingError as e:
            logger.error(f"Embedding batch of {len(ready)} chunks failed: {e}")
            outcomes.extend(EmbedOutcome(chunk=chunk, error=e) for chunk in ready)
            return outcomes

        outcomes.extend(
            EmbedOutcome(chunk=chunk.model_copy(update={"vector": vector}))
            for chunk, vector in zip(ready, vectors)
        )
        return outcomes

    async def embed_stream(
        self,
        chunks: Union[Iterable[Chunk], AsyncIterable[Chunk]],
        intent: Union[EmbedIntent, str] = EmbedIntent.DOCUMENT,
    ) -> AsyncIterator[EmbedOutcome]:
        """
        Embed chunks, yielding one EmbedOutcome per input chunk.

        Args:
            chunks: Chunks with content (sync or async iterable)
            intent: document for indexing, query for search

        Yields:
            EmbedOutcome per chunk, in completion order
        """
        intent = EmbedIntent(intent)
        concurrency = self.settings.EMBED_CONCURRENCY
        # limits are per invocation
        executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="voyage")
        try:
            jobs = (
                self._embed_batch(batch, intent, executor)
                async for batch in batched(chunks, self.settings.EMBED_BATCH_SIZE)
            )
            async for outcomes in buffer_unordered(jobs, concurrency):
                for outcome in outcomes:
                    yield outcome
        finally:
            executor.shutdown(wait=False)

    async def embed_query(self, text: str) -> List[float]:
        """Embed a search query."""
        vectors = await asyncio.to_thread(self.embed_texts, [text], EmbedIntent.QUERY)
        return vectors[0]

    def close(self) -> None:
        self.session.close()
