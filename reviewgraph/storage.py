"""SQLite persistence for the repository code graph.

Every node carries a composite identity ``(label, name, file, repo_id)``
enforced by a UNIQUE constraint, and every edge is unique per
``(edge_type, src, dst)``. All writes are ``INSERT ... ON CONFLICT DO
UPDATE`` upserts, so re-running an index over unchanged sources leaves the
graph byte-for-byte identical.

Writes are batched: a failing batch is rolled back, logged and counted,
and the remaining batches still run.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from . import config
from .errors import BatchWriteError

logger = logging.getLogger(__name__)

# Node columns with first-class storage; anything else lands in ``props``.
_NODE_COLUMNS = ("name", "file", "start_line", "end_line", "code")

NodeRow = Dict[str, Any]


@dataclass(frozen=True)
class NodeRef:
    """Reference to a node for edge endpoints.

    ``file=None`` matches every node with that label and name in the repo,
    which is how artifact references that carry no location are resolved.
    """

    label: str
    name: str
    file: Optional[str] = None


EdgeRow = Tuple[NodeRef, NodeRef, Dict[str, Any]]


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class GraphStore:
    """Repo-scoped property graph on SQLite."""

    def __init__(self, db_path: Optional[Path] = None, batch_size: int = config.GRAPH_BATCH_SIZE) -> None:
        self.db_path = Path(db_path) if db_path is not None else config.GRAPH_DB
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.batch_size = batch_size
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.ensure_schema()

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Idempotent table and index setup."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("""
                CREATE TABLE IF NOT EXISTS nodes (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    label      TEXT NOT NULL,
                    name       TEXT NOT NULL,
                    file       TEXT NOT NULL DEFAULT '',
                    repo_id    TEXT NOT NULL,
                    start_line INTEGER,
                    end_line   INTEGER,
                    code       TEXT,
                    props      TEXT NOT NULL DEFAULT '{}',
                    UNIQUE (label, name, file, repo_id)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS edges (
                    edge_type TEXT NOT NULL,
                    src       INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                    dst       INTEGER NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
                    repo_id   TEXT NOT NULL,
                    props     TEXT NOT NULL DEFAULT '{}',
                    UNIQUE (edge_type, src, dst)
                )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_repo_label ON nodes(repo_id, label)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_repo_name ON nodes(repo_id, name)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_repo_file ON nodes(repo_id, file)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_src ON edges(src, edge_type)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_dst ON edges(dst, edge_type)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_repo ON edges(repo_id)")
            self.conn.commit()

    # ------------------------------------------------------------------
    # Batched upserts
    # ------------------------------------------------------------------

    def _run_batches(self, sql: str, params: List[Tuple[Any, ...]], what: str) -> int:
        """Execute *sql* over *params* in chunks; return the failed batch count."""
        failed = 0
        with self._lock:
            for batch in _chunks(params, self.batch_size):
                try:
                    with self.conn:
                        self.conn.executemany(sql, batch)
                except sqlite3.Error as exc:
                    failed += 1
                    logger.warning("%s batch of %d failed: %s", what, len(batch), exc)
        return failed

    def upsert_nodes(self, repo_id: str, label: str, rows: Sequence[NodeRow]) -> int:
        """Upsert nodes of one *label*. Returns the number of failed batches."""
        params = []
        for row in rows:
            extra = {k: v for k, v in row.items() if k not in _NODE_COLUMNS}
            params.append((
                label,
                row["name"],
                row.get("file") or "",
                repo_id,
                row.get("start_line"),
                row.get("end_line"),
                row.get("code"),
                json.dumps(extra, sort_keys=True),
            ))
        return self._run_batches(
            """
            INSERT INTO nodes (label, name, file, repo_id, start_line, end_line, code, props)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (label, name, file, repo_id) DO UPDATE SET
                start_line = excluded.start_line,
                end_line   = excluded.end_line,
                code       = excluded.code,
                props      = excluded.props
            """,
            params,
            f"{label} node",
        )

    def upsert_edges(self, repo_id: str, edge_type: str, rows: Sequence[EdgeRow]) -> int:
        """Upsert edges between existing nodes. Unresolvable endpoints are skipped."""
        params = [
            (
                edge_type, repo_id, json.dumps(props or {}, sort_keys=True),
                repo_id, src.label, src.name, src.file, src.file,
                dst.label, dst.name, dst.file, dst.file,
            )
            for src, dst, props in rows
        ]
        return self._run_batches(
            """
            INSERT INTO edges (edge_type, src, dst, repo_id, props)
            SELECT ?, s.id, d.id, ?, ?
              FROM nodes s JOIN nodes d ON d.repo_id = s.repo_id
             WHERE s.repo_id = ?
               AND s.label = ? AND s.name = ? AND (? IS NULL OR s.file = ?)
               AND d.label = ? AND d.name = ? AND (? IS NULL OR d.file = ?)
               AND s.id != d.id
            ON CONFLICT (edge_type, src, dst) DO UPDATE SET props = excluded.props
            """,
            params,
            f"{edge_type} edge",
        )

    def set_flag(self, repo_id: str, label: str, refs: Sequence[Tuple[str, str]], flag: str) -> int:
        """Set boolean property *flag* on the ``(name, file)`` nodes of *label*."""
        params = [(f"$.{flag}", repo_id, label, name, file) for name, file in refs]
        return self._run_batches(
            """
            UPDATE nodes SET props = json_set(props, ?, json('true'))
             WHERE repo_id = ? AND label = ? AND name = ? AND file = ?
            """,
            params,
            f"{flag} tag",
        )

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def delete_repo(self, repo_id: str) -> int:
        """Remove every node and edge of *repo_id*. Returns deleted node count."""
        try:
            with self._lock, self.conn:
                self.conn.execute("DELETE FROM edges WHERE repo_id = ?", (repo_id,))
                cur = self.conn.execute("DELETE FROM nodes WHERE repo_id = ?", (repo_id,))
                return cur.rowcount
        except sqlite3.Error as exc:
            raise BatchWriteError(f"Failed to delete graph for {repo_id}: {exc}") from exc

    def delete_files(self, repo_id: str, files: Sequence[str]) -> int:
        """Remove nodes scoped to *files* (and their edges)."""
        if not files:
            return 0
        deleted = 0
        try:
            with self._lock, self.conn:
                for batch in _chunks(list(files), self.batch_size):
                    marks = ",".join("?" * len(batch))
                    ids_sql = f"SELECT id FROM nodes WHERE repo_id = ? AND file IN ({marks})"
                    args = [repo_id, *batch]
                    self.conn.execute(
                        f"DELETE FROM edges WHERE src IN ({ids_sql}) OR dst IN ({ids_sql})",
                        args + args,
                    )
                    cur = self.conn.execute(
                        f"DELETE FROM nodes WHERE repo_id = ? AND file IN ({marks})", args,
                    )
                    deleted += cur.rowcount
        except sqlite3.Error as exc:
            raise BatchWriteError(f"Failed to delete files for {repo_id}: {exc}") from exc
        return deleted

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    @staticmethod
    def _row(row: sqlite3.Row) -> Dict[str, Any]:
        payload = dict(row)
        props = json.loads(payload.pop("props", None) or "{}")
        payload.update(props)
        return payload

    def list_repos(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT repo_id,
                       SUM(label = 'File')     AS files,
                       SUM(label = 'Function') AS functions,
                       SUM(label = 'Class')    AS classes
                  FROM nodes GROUP BY repo_id ORDER BY repo_id
                """
            ).fetchall()
        return [dict(r) for r in rows]

    def count_nodes(self, repo_id: str, label: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM nodes WHERE repo_id = ?"
        args: List[Any] = [repo_id]
        if label:
            sql += " AND label = ?"
            args.append(label)
        with self._lock:
            return int(self.conn.execute(sql, args).fetchone()[0])

    def count_edges(self, repo_id: str, edge_type: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM edges WHERE repo_id = ?"
        args: List[Any] = [repo_id]
        if edge_type:
            sql += " AND edge_type = ?"
            args.append(edge_type)
        with self._lock:
            return int(self.conn.execute(sql, args).fetchone()[0])

    def get_nodes(self, repo_id: str, label: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM nodes WHERE repo_id = ? AND label = ? ORDER BY file, name",
                (repo_id, label),
            ).fetchall()
        return [self._row(r) for r in rows]

    def get_edges(self, repo_id: str, edge_type: str) -> List[Dict[str, Any]]:
        """Edges of one type as ``{src, dst, src_file, dst_file, ...props}``."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT s.name AS src, s.file AS src_file, d.name AS dst, d.file AS dst_file, e.props
                  FROM edges e JOIN nodes s ON s.id = e.src JOIN nodes d ON d.id = e.dst
                 WHERE e.repo_id = ? AND e.edge_type = ?
                 ORDER BY s.file, s.name, d.file, d.name
                """,
                (repo_id, edge_type),
            ).fetchall()
        return [self._row(r) for r in rows]

    def get_function(self, repo_id: str, name: str, file: Optional[str] = None) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM nodes WHERE repo_id = ? AND label = 'Function' AND name = ?"
        args: List[Any] = [repo_id, name]
        if file:
            sql += " AND file = ?"
            args.append(file)
        with self._lock:
            row = self.conn.execute(sql + " ORDER BY file LIMIT 1", args).fetchone()
        return self._row(row) if row else None

    def find_functions(self, repo_id: str, pattern: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Functions whose name contains *pattern* (case-insensitive)."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM nodes
                 WHERE repo_id = ? AND label = 'Function' AND name LIKE ?
                 ORDER BY name, file LIMIT ?
                """,
                (repo_id, f"%{pattern}%", limit),
            ).fetchall()
        return [self._row(r) for r in rows]

    def _function_ids(self, repo_id: str, name: str, file: Optional[str]) -> List[int]:
        sql = "SELECT id FROM nodes WHERE repo_id = ? AND label = 'Function' AND name = ?"
        args: List[Any] = [repo_id, name]
        if file:
            sql += " AND file = ?"
            args.append(file)
        return [r[0] for r in self.conn.execute(sql, args).fetchall()]

    def _callers_of(self, node_id: int) -> List[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT n.*, e.props AS edge_props
              FROM edges e JOIN nodes n ON n.id = e.src
             WHERE e.dst = ? AND e.edge_type = 'CALLS'
             ORDER BY n.file, n.name
            """,
            (node_id,),
        ).fetchall()

    def _node_by_id(self, node_id: int) -> Dict[str, Any]:
        return self._row(self.conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone())

    def get_callers(self, repo_id: str, name: str, file: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Direct CALLS predecessors, each with the ``call_line`` of the call site."""
        out: List[Dict[str, Any]] = []
        with self._lock:
            for target in self._function_ids(repo_id, name, file):
                for row in self._callers_of(target):
                    payload = dict(row)
                    edge_props = json.loads(payload.pop("edge_props") or "{}")
                    caller = self._row(payload)
                    caller["call_line"] = edge_props.get("line")
                    out.append(caller)
        return out[:limit]

    def get_callees(self, repo_id: str, name: str, file: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            rows: List[sqlite3.Row] = []
            for source in self._function_ids(repo_id, name, file):
                rows.extend(self.conn.execute(
                    """
                    SELECT n.* FROM edges e JOIN nodes n ON n.id = e.dst
                     WHERE e.src = ? AND e.edge_type = 'CALLS' ORDER BY n.file, n.name
                    """,
                    (source,),
                ).fetchall())
        return [self._row(r) for r in rows]

    def _backward_paths(
        self, repo_id: str, target: str, file: Optional[str], max_hops: int, cap: int = 5000,
    ) -> List[List[int]]:
        """Every simple backward CALLS path of 1..max_hops, shortest first.

        Paths are node-id lists ordered target-first.
        """
        paths: List[List[int]] = []
        queue: Deque[List[int]] = deque([[tid] for tid in self._function_ids(repo_id, target, file)])
        while queue and len(paths) < cap:
            path = queue.popleft()
            if len(path) > max_hops:
                continue
            for row in self._callers_of(path[-1]):
                if row["id"] in path:
                    continue
                extended = path + [row["id"]]
                paths.append(extended)
                queue.append(extended)
        return paths

    def get_caller_chains(
        self,
        repo_id: str,
        target: str,
        file: Optional[str] = None,
        max_hops: int = 3,
        limit: int = 50,
    ) -> List[List[Dict[str, Any]]]:
        """Caller chains ending at *target*, ordered entry-first."""
        chains: List[List[Dict[str, Any]]] = []
        with self._lock:
            cache: Dict[int, Dict[str, Any]] = {}
            for path in self._backward_paths(repo_id, target, file, max_hops, cap=limit)[:limit]:
                chain = []
                for node_id in reversed(path):
                    if node_id not in cache:
                        cache[node_id] = self._node_by_id(node_id)
                    chain.append(cache[node_id])
                chains.append(chain)
        return chains

    def find_entry_points(
        self,
        repo_id: str,
        target: str,
        file: Optional[str] = None,
        max_hops: int = 5,
        limit: int = 30,
    ) -> List[Dict[str, Any]]:
        """Zero-caller functions that reach *target*, with ``hops`` to it."""
        found: Dict[int, int] = {}
        with self._lock:
            for path in self._backward_paths(repo_id, target, file, max_hops):
                entry = path[-1]
                if entry in found or self._callers_of(entry):
                    continue
                found[entry] = len(path) - 1
                if len(found) >= limit:
                    break
            out = []
            for node_id, hops in found.items():
                node = self._node_by_id(node_id)
                node["hops"] = hops
                out.append(node)
        return out

    def file_paths(self, repo_id: str) -> Set[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT name FROM nodes WHERE repo_id = ? AND label = 'File'", (repo_id,),
            ).fetchall()
        return {r[0] for r in rows}
