"""Tests for VectorStore class."""

from pathlib import Path

import pytest

from reviewgraph.vector_store import LANCE_AVAILABLE, VectorStore, build_where, collection_name


def _point(pid: str, vector, name: str, file: str = "src/a.ts"):
    return {
        "id": pid,
        "vector": vector,
        "payload": {
            "repo_id": "acme/app",
            "name": name,
            "file": file,
            "start_line": 1,
            "end_line": 3,
            "code_preview": f"function {name}() {{}}",
        },
    }


class TestHelpers:
    """Tests for naming and filter helpers."""

    def test_collection_name(self):
        """Non-alphanumerics become underscores."""
        assert collection_name("acme/shop-api.v2") == "repo_acme_shop_api_v2"

    def test_build_where(self):
        assert build_where(None) is None
        assert build_where({"file": "a.ts"}) == "file = 'a.ts'"
        assert build_where({"file": ["a.ts", "b'c.ts"]}) == "file IN ('a.ts', 'b''c.ts')"
        assert build_where({"name": "x", "start_line": 3}) == "name = 'x' AND start_line = 3"

    def test_build_where_rejects_unknown(self):
        with pytest.raises(ValueError):
            build_where({"vector": "x"})


@pytest.mark.skipif(not LANCE_AVAILABLE, reason="lancedb not installed")
class TestVectorStore:
    """Test VectorStore functionality."""

    def test_init(self, temp_dir: Path):
        """Test vector store initialization."""
        store = VectorStore(temp_dir / "vectors")
        assert (temp_dir / "vectors").exists()
        assert store.count("acme/app") == 0
        assert store.exists("acme/app") is False

    def test_upsert_replaces_same_ids(self, temp_dir: Path):
        """Writing the same point id twice keeps one row."""
        store = VectorStore(temp_dir / "vectors")
        points = [_point("p1", [1.0, 0.0, 0.0], "foo"), _point("p2", [0.0, 1.0, 0.0], "bar")]
        assert store.upsert("acme/app", points, 3) == 2
        store.upsert("acme/app", points[:1], 3)
        assert store.count("acme/app") == 2
        assert store.exists("acme/app")

    def test_search(self, temp_dir: Path):
        """Test similarity search."""
        store = VectorStore(temp_dir / "vectors")
        store.upsert("acme/app", [
            _point("p1", [1.0, 0.0, 0.0], "func1"),
            _point("p2", [0.9, 0.1, 0.0], "func2"),
            _point("p3", [0.0, 1.0, 0.0], "class1", file="src/b.ts"),
        ], 3)

        hits = store.search("acme/app", [1.0, 0.0, 0.0], limit=2)
        assert [h["name"] for h in hits] == ["func1", "func2"]
        assert hits[0]["score"] == pytest.approx(1.0, abs=1e-4)

        filtered = store.search("acme/app", [1.0, 0.0, 0.0], limit=5, filters={"file": "src/b.ts"})
        assert [h["name"] for h in filtered] == ["class1"]

        strong = store.search("acme/app", [1.0, 0.0, 0.0], limit=5, score_threshold=0.5)
        assert {h["name"] for h in strong} == {"func1", "func2"}

    def test_delete_by_files(self, temp_dir: Path):
        store = VectorStore(temp_dir / "vectors")
        store.upsert("acme/app", [
            _point("p1", [1.0, 0.0], "func1"),
            _point("p2", [0.0, 1.0], "class1", file="src/b.ts"),
        ], 2)
        assert store.delete_by_files("acme/app", ["src/a.ts"]) == 1
        assert store.count("acme/app") == 1
        assert store.delete_by_files("unknown/repo", ["src/a.ts"]) == 0

    def test_drop_and_peek(self, temp_dir: Path):
        store = VectorStore(temp_dir / "vectors")
        store.upsert("acme/app", [_point("p1", [1.0, 0.0], "func1")], 2)
        rows = store.peek("acme/app")
        assert rows[0]["name"] == "func1"
        assert "vector" not in rows[0]
        assert store.drop_collection("acme/app") is True
        assert store.drop_collection("acme/app") is False
        assert store.search("acme/app", [1.0, 0.0]) == []


class PagedTables:
    def __init__(self, tables, page_token=None):
        self.tables = tables
        self.page_token = page_token


class PagedConnection:
    """Lists tables two per page, the way newer lancedb connections do."""

    def __init__(self, names):
        self.names = names
        self.page_tokens = []

    def list_tables(self, page_token=None):
        self.page_tokens.append(page_token)
        start = int(page_token or 0)
        next_token = str(start + 2) if start + 2 < len(self.names) else None
        return PagedTables(self.names[start:start + 2], next_token)


class LegacyConnection:
    def __init__(self, names):
        self.names = names

    def table_names(self):
        return iter(self.names)


@pytest.mark.skipif(not LANCE_AVAILABLE, reason="lancedb not installed")
class TestListCollections:
    """Tests for listing tables across lancedb API versions."""

    def test_follows_pages(self, temp_dir: Path):
        store = VectorStore(temp_dir / "vectors")
        store._db = PagedConnection(["repo_a", "repo_b", "repo_c", "repo_d", "repo_e"])

        assert store.list_collections() == ["repo_a", "repo_b", "repo_c", "repo_d", "repo_e"]
        assert store._db.page_tokens == [None, "2", "4"]
        assert store.exists("e")

    def test_falls_back_to_table_names(self, temp_dir: Path):
        store = VectorStore(temp_dir / "vectors")
        store._db = LegacyConnection(["repo_x"])
        assert store.list_collections() == ["repo_x"]
        assert not store.exists("y")
