"""Pytest configuration and fixtures for reviewgraph tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator, List

import pytest

from reviewgraph.breakers import set_registry
from reviewgraph.embedding_pipeline import set_pipeline
from reviewgraph.models import CodeSnippet
from reviewgraph.status_store import StatusStore
from reviewgraph.storage import GraphStore


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Point every on-disk location at a per-test directory.

    Module-level singletons (breaker registry, embedding pipeline) are
    reset so no state leaks between tests.
    """
    home = tmp_path / "home"
    monkeypatch.setenv("REVIEWGRAPH_HOME", str(home))
    monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
    monkeypatch.setattr("reviewgraph.config.BASE_DIR", home)
    monkeypatch.setattr("reviewgraph.config.CONFIG_FILE", home / "config.toml")
    monkeypatch.setattr("reviewgraph.config.GRAPH_DB", home / "graph.db")
    monkeypatch.setattr("reviewgraph.config.STATUS_DB", home / "jobs.db")
    monkeypatch.setattr("reviewgraph.config.VECTOR_DIR", home / "vectors")
    monkeypatch.setattr("reviewgraph.config.CLONE_BASE_DIR", tmp_path / "clones")
    set_registry(None)
    set_pipeline(None)
    yield
    set_registry(None)
    set_pipeline(None)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def temp_graph_store(temp_dir: Path) -> Generator[GraphStore, None, None]:
    """Create a GraphStore with temporary storage."""
    store = GraphStore(temp_dir / "graph.db")
    yield store
    store.close()


@pytest.fixture
def status_store(temp_dir: Path) -> Generator[StatusStore, None, None]:
    """Create a StatusStore with temporary storage."""
    store = StatusStore(temp_dir / "jobs.db")
    yield store
    store.close()


@pytest.fixture
def sample_repo(temp_dir: Path) -> Path:
    """A small mixed TypeScript/Java checkout."""
    repo = temp_dir / "sample_repo"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "api.ts").write_text(
        """import { saveUser } from './db';

export async function handleCreate(req, res) {
  const name = req.body.name;
  await saveUser(name);
  res.send('ok');
}
""",
        encoding="utf-8",
    )
    (repo / "src" / "db.ts").write_text(
        """export async function saveUser(name: string) {
  return pool.query(`INSERT INTO users VALUES ('${name}')`);
}
""",
        encoding="utf-8",
    )
    (repo / "package.json").write_text('{"name": "sample", "dependencies": {}}', encoding="utf-8")
    (repo / "tsconfig.json").write_text("{}", encoding="utf-8")
    (repo / "node_modules" / "lib").mkdir(parents=True)
    (repo / "node_modules" / "lib" / "index.js").write_text("function ignored() {}\n", encoding="utf-8")
    return repo


class FakePipeline:
    """Stands in for EmbeddingPipeline and records what it was asked to do."""

    def __init__(self, fail_with: Exception = None):
        self.stored: List[CodeSnippet] = []
        self.dropped: List[str] = []
        self.deleted: List[List[str]] = []
        self.fail_with = fail_with
        self.on_store = None
        self.cancel_tokens = []

    def generate_and_store(self, repo_id, snippets, cancel_token=None):
        self.cancel_tokens.append(cancel_token)
        if self.on_store is not None:
            self.on_store()
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if self.fail_with is not None:
            raise self.fail_with
        self.stored.extend(snippets)
        return len(snippets)

    def drop_collection(self, repo_id):
        self.dropped.append(repo_id)
        return True

    def delete_files(self, repo_id, files):
        self.deleted.append(list(files))
        return 0


@pytest.fixture
def fake_pipeline() -> FakePipeline:
    return FakePipeline()
