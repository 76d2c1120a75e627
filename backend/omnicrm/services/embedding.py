"""Embedding provider — text chunking and vector generation.

Vectors come from Ollama's ``/api/embed``; when an OpenAI-compatible fallback
is configured it is tried after Ollama fails. Fallback API keys rotate per
request through a ``KeyRotator`` owned by the provider instance.
"""

from __future__ import annotations

import hashlib
import logging
import threading

import httpx

logger = logging.getLogger(__name__)

CHUNK_MAX_WORDS = 512
CHUNK_OVERLAP_WORDS = 64

# Fallback statuses that mean "this key is unusable right now"
_KEY_REJECTED_STATUSES = {401, 403, 429}


class EmbeddingError(Exception):
    """Raised when embedding generation fails."""


class KeyRotator:
    """Round-robin over a fixed list of API keys."""

    __slots__ = ("_keys", "_index", "_lock")

    def __init__(self, keys: list[str]) -> None:
        self._keys = list(keys)
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def next_key(self) -> str:
        if not self._keys:
            raise EmbeddingError("No fallback API keys configured")
        with self._lock:
            key = self._keys[self._index % len(self._keys)]
            self._index = (self._index + 1) % len(self._keys)
            return key


def content_hash(text: str) -> str:
    """Fingerprint of a chunk's text, used to detect changed content."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_text(
    text: str,
    max_words: int = CHUNK_MAX_WORDS,
    overlap: int = CHUNK_OVERLAP_WORDS,
) -> list[str]:
    """Split text into overlapping chunks by word count."""
    words = text.split()
    if len(words) <= max_words:
        return [text]

    # Guard against infinite loop
    if overlap >= max_words:
        overlap = 0

    chunks: list[str] = []
    start = 0
    while start < len(words):
        end = start + max_words
        chunks.append(" ".join(words[start:end]))
        if end >= len(words):
            break
        start = end - overlap

    return chunks


class EmbeddingProvider:
    """Turn text into a fixed-length vector."""

    __slots__ = (
        "ollama_url", "model", "timeout",
        "_fallback_url", "_fallback_model", "_keys",
    )

    def __init__(
        self,
        ollama_url: str,
        model: str = "nomic-embed-text",
        fallback_url: str = "",
        fallback_api_keys: list[str] | None = None,
        fallback_embedding_model: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.ollama_url = ollama_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._fallback_url = fallback_url.rstrip("/") if fallback_url else ""
        self._fallback_model = fallback_embedding_model or model
        self._keys = KeyRotator(fallback_api_keys or [])

    @property
    def has_fallback(self) -> bool:
        return bool(self._fallback_url)

    async def embed(self, text: str) -> list[float]:
        """Get embedding vector, trying Ollama then fallback."""
        try:
            return await self._embed_ollama(text)
        except EmbeddingError:
            if not self._fallback_url:
                raise
            logger.info("Falling back to cloud API for embedding")
            return await self._embed_openai(text)

    async def _embed_ollama(self, text: str) -> list[float]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.ollama_url}/api/embed",
                    json={"model": self.model, "input": text},
                )
                response.raise_for_status()
                data = response.json()
                # Newer Ollama /api/embed returns {"embeddings": [[...]]}
                if "embeddings" in data:
                    return data["embeddings"][0]
                return data["embedding"]
        except httpx.ConnectError as exc:
            raise EmbeddingError(
                f"Cannot connect to Ollama at {self.ollama_url}: {exc}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise EmbeddingError(f"Ollama timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise EmbeddingError(
                f"Ollama returned HTTP {exc.response.status_code}: {exc}"
            ) from exc
        except (KeyError, IndexError) as exc:
            raise EmbeddingError(
                f"Unexpected response format from Ollama: {exc}"
            ) from exc

    async def _embed_openai(self, text: str) -> list[float]:
        """Call the OpenAI-compatible /embeddings endpoint, rotating keys on rejection."""
        attempts = max(len(self._keys), 1)
        last_error: EmbeddingError | None = None
        for _ in range(attempts):
            headers = {"Content-Type": "application/json"}
            if len(self._keys):
                headers["Authorization"] = f"Bearer {self._keys.next_key()}"
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        f"{self._fallback_url}/embeddings",
                        headers=headers,
                        json={"model": self._fallback_model, "input": text},
                    )
                    response.raise_for_status()
                    data = response.json()
                    return data["data"][0]["embedding"]
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                last_error = EmbeddingError(f"Fallback returned HTTP {status}: {exc}")
                if status in _KEY_REJECTED_STATUSES:
                    logger.warning("Fallback key rejected with HTTP %d, rotating", status)
                    continue
                raise last_error from exc
            except httpx.ConnectError as exc:
                raise EmbeddingError(
                    f"Cannot connect to fallback at {self._fallback_url}: {exc}"
                ) from exc
            except httpx.TimeoutException as exc:
                raise EmbeddingError(f"Fallback timed out: {exc}") from exc
            except (KeyError, IndexError) as exc:
                raise EmbeddingError(f"Unexpected response from fallback: {exc}") from exc
        raise last_error or EmbeddingError("Fallback rejected every API key")
