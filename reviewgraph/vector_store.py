"""Vector store backed by LanceDB - one table ("collection") per repository.

All data stays on disk under ``config.VECTOR_DIR``. Each repository gets a
table named ``repo_<repo_id with non-alphanumerics replaced by _>`` with a
fixed vector dimension; similarity is cosine.

Schema per row:

============ ============ =====================================
Column       Type         Description
============ ============ =====================================
id           utf8         Deterministic point id
vector       float32[dim] Embedding vector
repo_id      utf8         Owning repository
name         utf8         Function / snippet name
file         utf8         Relative file path
start_line   int32        First line of the snippet
end_line     int32        Last line of the snippet
code_preview utf8         First 2,000 chars of the snippet
============ ============ =====================================
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .errors import BatchWriteError

logger = logging.getLogger(__name__)

try:
    import lancedb  # type: ignore[import-untyped]
    import pyarrow as pa  # type: ignore[import-untyped]
    LANCE_AVAILABLE = True
except ImportError:
    LANCE_AVAILABLE = False

PAYLOAD_COLUMNS = ("repo_id", "name", "file", "start_line", "end_line", "code_preview")


def collection_name(repo_id: str) -> str:
    """``repo_`` + *repo_id* with every non-alphanumeric replaced by ``_``."""
    return "repo_" + re.sub(r"[^A-Za-z0-9]", "_", repo_id)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_where(filters: Optional[Dict[str, Any]]) -> Optional[str]:
    """Turn ``{"file": "a.ts", "name": "x"}`` into an SQL predicate."""
    if not filters:
        return None
    clauses = []
    for key, value in filters.items():
        if key not in PAYLOAD_COLUMNS:
            raise ValueError(f"Unknown filter field: {key}")
        if isinstance(value, (list, tuple, set)):
            inner = ", ".join(_quote(str(v)) for v in value)
            clauses.append(f"{key} IN ({inner})")
        elif isinstance(value, int):
            clauses.append(f"{key} = {value}")
        else:
            clauses.append(f"{key} = {_quote(str(value))}")
    return " AND ".join(clauses)


class VectorStore:
    """LanceDB-backed store of per-repository snippet embeddings."""

    def __init__(self, vector_dir: Optional[Path] = None) -> None:
        if not LANCE_AVAILABLE:
            raise ImportError(
                "lancedb is not installed. Install with: pip install lancedb pyarrow"
            )
        self.vector_dir = Path(vector_dir or config.VECTOR_DIR)
        self.vector_dir.mkdir(exist_ok=True, parents=True)
        self._db: Any = lancedb.connect(str(self.vector_dir))

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def _schema(self, dimension: int) -> Any:
        return pa.schema([
            pa.field("id", pa.utf8()),
            pa.field("vector", pa.list_(pa.float32(), dimension)),
            pa.field("repo_id", pa.utf8()),
            pa.field("name", pa.utf8()),
            pa.field("file", pa.utf8()),
            pa.field("start_line", pa.int32()),
            pa.field("end_line", pa.int32()),
            pa.field("code_preview", pa.utf8()),
        ])

    def list_collections(self) -> List[str]:
        # Older lancedb releases only have table_names().
        if not hasattr(self._db, "list_tables"):
            return list(self._db.table_names())
        names: List[str] = []
        page_token = None
        while True:
            response = self._db.list_tables(page_token=page_token)
            names.extend(getattr(response, "tables", response))
            page_token = getattr(response, "page_token", None)
            if not page_token:
                return names

    def exists(self, repo_id: str) -> bool:
        return collection_name(repo_id) in self.list_collections()

    def _open(self, repo_id: str) -> Optional[Any]:
        if not self.exists(repo_id):
            return None
        return self._db.open_table(collection_name(repo_id))

    def ensure_collection(self, repo_id: str, dimension: int) -> Any:
        """Open the repo's table, creating it with *dimension* if missing."""
        table = self._open(repo_id)
        if table is not None:
            return table
        name = collection_name(repo_id)
        logger.info("Creating vector collection %s (dim=%d, cosine)", name, dimension)
        return self._db.create_table(name, schema=self._schema(dimension), exist_ok=True)

    def drop_collection(self, repo_id: str) -> bool:
        """Drop the repo's table. Returns False when there was nothing to drop."""
        if not self.exists(repo_id):
            return False
        self._db.drop_table(collection_name(repo_id))
        logger.info("Dropped vector collection %s", collection_name(repo_id))
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, repo_id: str, points: List[Dict[str, Any]], dimension: int) -> int:
        """Insert *points*, replacing any rows that share their ids.

        Each point is ``{"id", "vector", "payload": {...}}``.
        """
        if not points:
            return 0
        table = self.ensure_collection(repo_id, dimension)
        rows = []
        for point in points:
            payload = point.get("payload", {})
            rows.append({
                "id": point["id"],
                "vector": [float(v) for v in point["vector"]],
                "repo_id": payload.get("repo_id", repo_id),
                "name": payload.get("name", ""),
                "file": payload.get("file", ""),
                "start_line": int(payload.get("start_line", 0)),
                "end_line": int(payload.get("end_line", 0)),
                "code_preview": payload.get("code_preview", ""),
            })
        try:
            table.delete(f"id IN ({', '.join(_quote(r['id']) for r in rows)})")
            table.add(rows)
        except Exception as exc:
            raise BatchWriteError(
                f"Vector upsert into {collection_name(repo_id)} failed: {exc}"
            ) from exc
        return len(rows)

    def delete_by_files(self, repo_id: str, files: Iterable[str]) -> int:
        """Delete every point whose ``file`` is in *files*."""
        file_list = sorted(set(files))
        table = self._open(repo_id)
        if table is None or not file_list:
            return 0
        try:
            before = table.count_rows()
            table.delete(build_where({"file": file_list}))
            after = table.count_rows()
        except Exception as exc:
            raise BatchWriteError(
                f"Vector delete in {collection_name(repo_id)} failed: {exc}"
            ) from exc
        return max(0, before - after)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def count(self, repo_id: str) -> int:
        table = self._open(repo_id)
        if table is None:
            return 0
        return table.count_rows()

    def search(
        self,
        repo_id: str,
        query_vector: List[float],
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
        score_threshold: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Cosine nearest-neighbour search returning payload rows plus ``score``.

        With the cosine metric ``_distance`` is ``1 - cos_sim``; ``score`` is
        the similarity.
        """
        table = self._open(repo_id)
        if table is None:
            return []
        query = table.search(query_vector).metric("cosine").limit(limit)
        where = build_where(filters)
        if where:
            query = query.where(where)
        out: List[Dict[str, Any]] = []
        for row in query.to_list():
            score = round(1.0 - float(row.get("_distance", 0.0)), 5)
            if score_threshold is not None and score < score_threshold:
                continue
            hit = {key: row.get(key) for key in PAYLOAD_COLUMNS}
            hit["score"] = score
            out.append(hit)
        return out

    def peek(self, repo_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Return a sample of rows (without vectors) for debugging."""
        table = self._open(repo_id)
        if table is None:
            return []
        df = table.to_pandas()
        return df.drop(columns=["vector"]).head(limit).to_dict(orient="records")
