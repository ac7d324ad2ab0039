"""Configuration paths and defaults for local reviewgraph state."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("REVIEWGRAPH_HOME", str(Path.home() / ".reviewgraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
GRAPH_DB = BASE_DIR / "graph.db"
STATUS_DB = BASE_DIR / "jobs.db"
VECTOR_DIR = BASE_DIR / "vectors"
CLONE_BASE_DIR = Path(os.environ.get("REVIEWGRAPH_CLONE_DIR", "/tmp/reviewgraph-clones"))

# Embeddings
VOYAGE_ENDPOINT = "https://api.voyageai.com/v1/embeddings"
VOYAGE_MODEL = "voyage-code-3"
VOYAGE_DIMENSION = 1024
HASH_DIMENSION = 256
EMBED_TOKEN_BUDGET = 60_000
EMBED_MAX_ITEMS = 200
EMBED_CONCURRENCY = 3
EMBED_MAX_RETRIES = 3

# Indexing
MAX_FILE_SIZE = 512 * 1024
GRAPH_BATCH_SIZE = 200
CLONE_TIMEOUT = 300


def ensure_base_dirs() -> None:
    """Create base directories for local storage if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    VECTOR_DIR.mkdir(parents=True, exist_ok=True)
