"""Tests for the embedding backends."""

from typing import List

import pytest
import requests

from reviewgraph.breakers import EMBEDDING, get_registry
from reviewgraph.embeddings import HashEmbeddingModel, VoyageEmbeddingClient, cosine_similarity, get_embedder
from reviewgraph.errors import PermanentExternalError, TokenLimitExceeded, TransientExternalError


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = "", headers=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._payload


class FakeSession:
    """Replays canned responses (or raises canned exceptions) in order."""

    def __init__(self, responses: List):
        self.responses = list(responses)
        self.calls: List[dict] = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "json": json})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _ok(vectors: List[List[float]]) -> FakeResponse:
    # Deliberately out of order; the client sorts by index.
    data = [{"index": i, "embedding": v} for i, v in enumerate(vectors)]
    return FakeResponse(200, {"data": list(reversed(data))})


def _client(session: FakeSession, sleeps: List[float], max_retries: int = 3) -> VoyageEmbeddingClient:
    return VoyageEmbeddingClient(
        api_key="test-key", dim=2, max_retries=max_retries, session=session, sleep=sleeps.append,
    )


class TestVoyageClient:
    """Tests for VoyageEmbeddingClient with a fake HTTP session."""

    def test_embed_documents_in_order(self):
        """Vectors come back in input order with the document input type."""
        session = FakeSession([_ok([[1.0, 0.0], [0.0, 1.0]])])
        client = _client(session, [])
        assert client.embed_documents(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]
        body = session.calls[0]["json"]
        assert body["input_type"] == "document"
        assert session.calls[0]["headers"]["Authorization"] == "Bearer test-key"

    def test_embed_query(self):
        """Queries use the query input type."""
        session = FakeSession([_ok([[0.5, 0.5]])])
        assert _client(session, []).embed_query("find users") == [0.5, 0.5]
        assert session.calls[0]["json"]["input_type"] == "query"

    def test_rate_limit_honours_retry_after(self):
        """A 429 waits for retry-after and then retries."""
        sleeps: List[float] = []
        session = FakeSession([
            FakeResponse(429, headers={"retry-after": "7"}),
            FakeResponse(429),
            _ok([[1.0, 0.0]]),
        ])
        assert _client(session, sleeps).embed_documents(["a"]) == [[1.0, 0.0]]
        assert sleeps == [7.0, 2.0]

    def test_rate_limit_exhausted(self):
        """Still limited after max retries raises a transient error."""
        sleeps: List[float] = []
        session = FakeSession([FakeResponse(429) for _ in range(3)])
        with pytest.raises(TransientExternalError) as exc_info:
            _client(session, sleeps, max_retries=2).embed_documents(["a"])
        assert exc_info.value.status_code == 429
        assert len(session.calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_token_limit(self):
        """A 400 naming the token limit is a TokenLimitExceeded."""
        session = FakeSession([FakeResponse(400, text="Request exceeds max allowed tokens per batch")])
        with pytest.raises(TokenLimitExceeded):
            _client(session, []).embed_documents(["a"])

    def test_other_client_error_is_permanent(self):
        """Other 4xx responses are permanent and not retried."""
        session = FakeSession([FakeResponse(401, text="bad key")])
        with pytest.raises(PermanentExternalError) as exc_info:
            _client(session, []).embed_documents(["a"])
        assert not isinstance(exc_info.value, TokenLimitExceeded)
        assert len(session.calls) == 1
        assert get_registry().get(EMBEDDING).failure_count == 0

    def test_server_errors_retry_and_count(self):
        """5xx responses are retried and each one counts against the breaker."""
        sleeps: List[float] = []
        session = FakeSession([FakeResponse(503, text="down"), _ok([[1.0, 0.0]])])
        assert _client(session, sleeps).embed_documents(["a"]) == [[1.0, 0.0]]
        assert len(sleeps) == 1
        # The success resets the closed breaker's count.
        assert get_registry().get(EMBEDDING).failure_count == 0

    def test_network_errors_exhaust(self):
        """Connection errors are transient and surface after the retries."""
        session = FakeSession([requests.ConnectionError("refused") for _ in range(3)])
        with pytest.raises(TransientExternalError):
            _client(session, []).embed_documents(["a"])
        assert get_registry().get(EMBEDDING).failure_count == 3

    def test_empty_input(self):
        """No texts means no request."""
        session = FakeSession([])
        assert _client(session, []).embed_documents([]) == []
        assert session.calls == []

    def test_requires_key(self):
        """A client without an API key cannot be built."""
        with pytest.raises(ValueError):
            VoyageEmbeddingClient(api_key="")


class TestHashEmbedding:
    """Tests for the offline hash embedder."""

    def test_deterministic_and_normalized(self):
        """The same text always yields the same unit vector."""
        model = HashEmbeddingModel(dim=64)
        a = model.embed_query("def load_user(user_id)")
        assert a == model.embed_query("def load_user(user_id)")
        assert len(a) == 64
        assert cosine_similarity(a, a) == pytest.approx(1.0)

    def test_shared_tokens_are_similar(self):
        """Texts sharing identifiers score higher than unrelated ones."""
        model = HashEmbeddingModel()
        query = model.embed_query("save user")
        close = model.embed_query("function saveUser save user record")
        far = model.embed_query("render template header footer")
        assert cosine_similarity(query, close) > cosine_similarity(query, far)

    def test_empty_text(self):
        """Text without tokens maps to the zero vector."""
        assert HashEmbeddingModel(dim=8).embed_query("!!!") == [0.0] * 8


class TestFactory:
    """Tests for get_embedder and cosine_similarity."""

    def test_hash_provider(self):
        assert isinstance(get_embedder({"provider": "hash", "api_key": "k"}), HashEmbeddingModel)

    def test_no_key_falls_back(self):
        """Without an API key the hash model is used."""
        assert isinstance(get_embedder({"provider": "voyage"}), HashEmbeddingModel)
        assert isinstance(get_embedder(), HashEmbeddingModel)

    def test_key_selects_voyage(self):
        embedder = get_embedder({"provider": "voyage", "api_key": "k", "dimension": 512})
        assert isinstance(embedder, VoyageEmbeddingClient)
        assert embedder.dim == 512

    def test_env_key_selects_voyage(self, monkeypatch):
        """VOYAGE_API_KEY is honoured when no config is passed."""
        monkeypatch.setenv("VOYAGE_API_KEY", "env-key")
        embedder = get_embedder()
        assert isinstance(embedder, VoyageEmbeddingClient)
        assert embedder.api_key == "env-key"

    def test_cosine_edge_cases(self):
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
