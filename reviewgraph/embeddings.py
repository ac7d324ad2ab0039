"""Embedding backends for code snippets.

========= ============================== ===== ==============================
Provider  Model                          Dim   Notes
========= ============================== ===== ==============================
voyage    voyage-code-3                  1024  Remote, needs ``VOYAGE_API_KEY``
hash      (none)                         256   Offline, keyword-level only
========= ============================== ===== ==============================

The remote client is guarded by the ``embedding`` circuit breaker and
backs off on HTTP 429 honouring ``retry-after``. Token-limit rejections
are surfaced as :class:`TokenLimitExceeded` so the pipeline can bisect
the batch.
"""

from __future__ import annotations

import logging
import math
import re
import time
from hashlib import blake2b
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import requests

from . import config
from .breakers import EMBEDDING, get_registry
from .errors import PermanentExternalError, TokenLimitExceeded, TransientExternalError
from .retry import with_retry

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

TOKEN_LIMIT_MARKER = "max allowed tokens"


# ===================================================================
# VoyageEmbeddingClient
# ===================================================================

class VoyageEmbeddingClient:
    """Voyage AI ``/v1/embeddings`` client.

    ``input_type`` is ``document`` when indexing and ``query`` when
    searching. Every HTTP round trip runs under the embedding breaker;
    only network failures and 5xx responses count against it. Those are
    also retried with backoff up to ``max_retries`` attempts.
    """

    def __init__(
        self,
        api_key: str,
        model: str = config.VOYAGE_MODEL,
        dim: int = config.VOYAGE_DIMENSION,
        endpoint: str = config.VOYAGE_ENDPOINT,
        max_retries: int = config.EMBED_MAX_RETRIES,
        timeout: float = 60.0,
        session: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("VoyageEmbeddingClient requires an API key")
        self.api_key = api_key
        self.model = model
        self.dim = dim
        self.endpoint = endpoint
        self.max_retries = max_retries
        self.timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep

    def _post(self, texts: List[str], input_type: str) -> Any:
        try:
            response = self._session.post(
                self.endpoint,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                json={
                    "input": texts,
                    "model": self.model,
                    "input_type": input_type,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientExternalError(f"Voyage AI request failed: {exc}") from exc
        if response.status_code >= 500:
            raise TransientExternalError(
                f"Voyage AI returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _retry_after(response: Any, attempt: int) -> float:
        header = response.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                logger.debug("Ignoring unparseable retry-after header %r", header)
        return float(attempt + 1)

    def embed(self, texts: List[str], input_type: str = "document") -> List[List[float]]:
        """Embed *texts*, returning vectors in input order.

        Raises:
            TokenLimitExceeded: HTTP 400 mentioning the token limit.
            TransientExternalError: still rate limited after the retries.
            PermanentExternalError: any other non-OK response.
        """
        if not texts:
            return []
        breaker = get_registry().get(EMBEDDING)
        attempt = 0
        while True:
            response = with_retry(
                lambda: breaker.execute(lambda: self._post(texts, input_type)),
                max_attempts=max(1, self.max_retries),
                retry_on=lambda exc: isinstance(exc, TransientExternalError),
                sleep=self._sleep,
            )
            if response.status_code == 429:
                if attempt >= self.max_retries:
                    raise TransientExternalError(
                        "Voyage AI rate limited after max retries", status_code=429,
                    )
                wait = self._retry_after(response, attempt)
                logger.warning(
                    "Voyage AI rate limited (attempt %d/%d), waiting %.1fs",
                    attempt + 1, self.max_retries, wait,
                )
                self._sleep(wait)
                attempt += 1
                continue
            if response.status_code != 200:
                body = response.text
                message = f"Voyage AI returned {response.status_code}: {body}"
                if response.status_code == 400 and TOKEN_LIMIT_MARKER in body.lower():
                    raise TokenLimitExceeded(message, status_code=400)
                raise PermanentExternalError(message, status_code=response.status_code)
            data = sorted(response.json().get("data", []), key=lambda item: item["index"])
            return [item["embedding"] for item in data]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return self.embed(texts, input_type="document")

    def embed_query(self, text: str) -> List[float]:
        return self.embed([text], input_type="query")[0]


# ===================================================================
# HashEmbeddingModel  (offline fallback)
# ===================================================================

class HashEmbeddingModel:
    """Deterministic token-hashing embedder with no remote dependency.

    Provides keyword-level similarity only. Used when no API key is
    configured or when ``provider = "hash"``.
    """

    def __init__(self, dim: int = config.HASH_DIMENSION) -> None:
        self.dim = dim
        self.model = "hash"

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return _l2_normalize(vec)

    def embed_many(self, texts: Iterable[str]) -> List[List[float]]:
        return [self.embed_text(text) for text in texts]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return self.embed_many(texts)

    def embed_query(self, text: str) -> List[float]:
        return self.embed_text(text)


Embedder = Union[VoyageEmbeddingClient, HashEmbeddingModel]


# ===================================================================
# Factory
# ===================================================================

def get_embedder(emb_cfg: Optional[Dict[str, Any]] = None) -> Embedder:
    """Return the configured embedder.

    Resolution order:

    1. ``provider = "hash"`` always selects the hash model.
    2. A Voyage API key (config or ``VOYAGE_API_KEY``) selects Voyage.
    3. Otherwise fall back to hash with a warning.
    """
    if emb_cfg is None:
        from .config_manager import load_section
        emb_cfg = load_section("embeddings")

    if emb_cfg.get("provider") == "hash":
        return HashEmbeddingModel()

    api_key = emb_cfg.get("api_key") or ""
    if not api_key:
        logger.warning("No Voyage API key configured - falling back to hash embeddings.")
        return HashEmbeddingModel()

    return VoyageEmbeddingClient(
        api_key=api_key,
        model=emb_cfg.get("model", config.VOYAGE_MODEL),
        dim=int(emb_cfg.get("dimension", config.VOYAGE_DIMENSION)),
        endpoint=emb_cfg.get("endpoint", config.VOYAGE_ENDPOINT),
        max_retries=int(emb_cfg.get("max_retries", config.EMBED_MAX_RETRIES)),
        timeout=float(emb_cfg.get("timeout", 60)),
    )


# ===================================================================
# Utility
# ===================================================================

def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    """Cosine similarity in ``[-1, 1]``; zero-length or mismatched vectors give 0.0."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a < 1e-12 or norm_b < 1e-12:
        return 0.0
    return dot / (norm_a * norm_b)


def _l2_normalize(vec: List[float]) -> List[float]:
    """L2-normalise *vec*. Returns zero vector unchanged."""
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return vec
    return [v / norm for v in vec]
