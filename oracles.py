#!/usr/bin/env python3
"""
Oracles - the external models the engine delegates understanding to.

- EmbeddingModel: lazy-loaded sentence-transformer (CPU), text → unit vector.
  Encoding runs in a thread pool so it never blocks the event loop.
- ChatOracle: OpenAI-compatible /v1/chat/completions in JSON mode, used for
  NLU extraction, categorisation, relevance checks and bridge synthesis.

Both raise OracleUnavailable / OracleMalformedResponse; callers decide how to
degrade. Transient failures (network errors, 5xx) are retried with
exponential backoff.
"""

import asyncio
import json
import threading
from typing import Any, Optional

import httpx
import numpy as np

from memory_errors import OracleMalformedResponse, OracleUnavailable


# ── Embedding model ───────────────────────────────────────────────────────────

class EmbeddingModel:
    """Lazy-loaded sentence-transformer for memory and theme embeddings (CPU only)."""

    def __init__(self, model_name: str = "nomic-ai/nomic-embed-text-v1.5", dim: Optional[int] = None):
        self.model_name = model_name
        self.dim = dim
        self._model = None
        self._lock = threading.Lock()

    def _load_model(self):
        if self._model is None:
            with self._lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer
                    print(f"[Embed] Loading {self.model_name}")
                    self._model = SentenceTransformer(
                        self.model_name,
                        trust_remote_code=True,
                        device="cpu",
                    )

    def _check(self, vectors: np.ndarray) -> list[list[float]]:
        if vectors.ndim != 2 or (self.dim and vectors.shape[1] != self.dim):
            raise OracleMalformedResponse(
                f"embedding shape {vectors.shape} does not match dimension {self.dim}"
            )
        return vectors.astype(np.float32).tolist()

    def encode(self, texts: list[str]) -> list[list[float]]:
        try:
            self._load_model()
        except Exception as e:
            raise OracleUnavailable(f"embedding model {self.model_name} unavailable: {e}") from e
        try:
            vectors = self._model.encode(
                texts, convert_to_numpy=True, normalize_embeddings=True, batch_size=8
            )
        except Exception as e:
            raise OracleUnavailable(f"embedding failed: {e}") from e
        return self._check(np.atleast_2d(vectors))

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.encode, list(texts))


# ── Chat completions oracle ───────────────────────────────────────────────────

class ChatOracle:
    """JSON-mode chat completions against an OpenAI-compatible server."""

    def __init__(
        self,
        llm_url: str = "http://localhost:8080",
        model: str = "qwen3-14b",
        timeout: float = 30.0,
        retries: int = 2,
        backoff: float = 0.5,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.llm_url = llm_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.api_key = api_key
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        last_error: Optional[Exception] = None

        for attempt in range(self.retries + 1):
            if attempt:
                await asyncio.sleep(self.backoff * (2 ** (attempt - 1)))
            try:
                response = await self._get_client().post(
                    f"{self.llm_url}/v1/chat/completions",
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
            except httpx.HTTPError as e:
                last_error = e
                continue

            if response.status_code in (401, 403):
                raise OracleUnavailable(f"oracle rejected credentials ({response.status_code})")
            if response.status_code >= 500 or response.status_code == 429:
                last_error = OracleUnavailable(f"oracle returned {response.status_code}")
                continue
            if response.status_code >= 400:
                raise OracleUnavailable(f"oracle returned {response.status_code}")

            try:
                return response.json()
            except ValueError as e:
                raise OracleMalformedResponse("oracle response is not JSON") from e

        raise OracleUnavailable(f"oracle unreachable after {self.retries + 1} attempts: {last_error}")

    async def complete_json(self, prompt: str, max_tokens: int = 300, temperature: float = 0.1) -> Any:
        """Send a prompt and return the parsed JSON content of the first choice."""
        result = await self._post({
            "model": self.model,
            "messages": [{"role": "user", "content": prompt + " /no_think"}],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        })
        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise OracleMalformedResponse(f"response missing 'choices': {str(result)[:200]}") from e
        if not isinstance(content, str):
            raise OracleMalformedResponse("message content is not text")
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise OracleMalformedResponse(f"content is not JSON: {content[:120]}") from e
