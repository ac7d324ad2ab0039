"""Tests for cross-file taint verdicts over the code graph."""

from typing import Dict, List, Tuple

import pytest

from reviewgraph.graph_flow import (
    classify_source_type,
    find_entry_points,
    has_validation_pattern,
    trace_cross_file,
)
from reviewgraph.models import DataSourceType, Recommendation
from reviewgraph.storage import GraphStore, NodeRef

REPO = "acme/api"

SINK_CODE = "function runSql(q) {\n  return db.query(`SELECT * FROM t WHERE a = ${q}`);\n}"


def _graph(store: GraphStore, functions: Dict[str, str], calls: List[Tuple[str, str]]) -> GraphStore:
    rows = [
        {"name": name, "file": f"src/{name}.ts", "start_line": 1, "end_line": 3, "code": code}
        for name, code in functions.items()
    ]
    store.upsert_nodes(REPO, "Function", rows)
    store.upsert_edges(REPO, "CALLS", [
        (NodeRef("Function", src, f"src/{src}.ts"), NodeRef("Function", dst), {"line": 2})
        for src, dst in calls
    ])
    return store


class TestTraceCrossFile:
    """Tests for trace_cross_file recommendations."""

    def test_no_callers(self, temp_graph_store: GraphStore):
        _graph(temp_graph_store, {"runSql": SINK_CODE}, [])
        verdict = trace_cross_file(temp_graph_store, REPO, "runSql")
        assert verdict.recommendation is Recommendation.NEEDS_MANUAL_REVIEW
        assert verdict.confidence == 0.3
        assert verdict.summary["total_chains"] == 0

    def test_unvalidated_user_input(self, temp_graph_store: GraphStore):
        """Every user-input chain reaching the sink raw means VERIFY."""
        _graph(temp_graph_store, {
            "runSql": SINK_CODE,
            "handler": "function handler(req) {\n  runSql(req.body.name);\n}",
        }, [("handler", "runSql")])
        verdict = trace_cross_file(temp_graph_store, REPO, "runSql")
        assert verdict.recommendation is Recommendation.VERIFY
        assert verdict.confidence == 0.9
        assert verdict.all_paths_exploitable is True
        chain = verdict.call_chains[0]
        assert [s.function for s in chain.path] == ["handler", "runSql"]
        assert chain.entry_point.source_type is DataSourceType.USER_INPUT

    def test_validated_user_input(self, temp_graph_store: GraphStore):
        _graph(temp_graph_store, {
            "runSql": SINK_CODE,
            "handler": "function handler(req) {\n  runSql(sanitize(req.body.name));\n}",
        }, [("handler", "runSql")])
        verdict = trace_cross_file(temp_graph_store, REPO, "runSql")
        assert verdict.recommendation is Recommendation.DISPROVE
        assert verdict.confidence == 0.9
        assert verdict.call_chains[0].validation_location == "src/handler.ts:1 (handler)"

    def test_no_user_input(self, temp_graph_store: GraphStore):
        _graph(temp_graph_store, {
            "runSql": SINK_CODE,
            "nightly": "function nightly() {\n  runSql(42);\n}",
        }, [("nightly", "runSql")])
        verdict = trace_cross_file(temp_graph_store, REPO, "runSql")
        assert verdict.recommendation is Recommendation.DISPROVE
        assert verdict.confidence == 0.85
        assert verdict.all_paths_exploitable is False

    def test_mixed_chains(self, temp_graph_store: GraphStore):
        """Some raw and some validated user-input chains give a weaker VERIFY."""
        _graph(temp_graph_store, {
            "runSql": SINK_CODE,
            "create": "function create(req) {\n  runSql(req.body.name);\n}",
            "update": "function update(req) {\n  runSql(escape(req.body.name));\n}",
        }, [("create", "runSql"), ("update", "runSql")])
        verdict = trace_cross_file(temp_graph_store, REPO, "runSql")
        assert verdict.recommendation is Recommendation.VERIFY
        assert verdict.confidence == 0.7
        assert verdict.summary == {
            "total_chains": 2, "user_input_chains": 2, "validated_chains": 1, "exploitable_chains": 1,
        }

    def test_multi_hop_chain(self, temp_graph_store: GraphStore):
        """User input two hops away is still found; chains are not duplicated."""
        _graph(temp_graph_store, {
            "runSql": SINK_CODE,
            "repo": "function repo(id) {\n  return runSql(id);\n}",
            "route": "function route(req) {\n  return repo(req.query.id);\n}",
        }, [("repo", "runSql"), ("route", "repo")])
        verdict = trace_cross_file(temp_graph_store, REPO, "runSql", max_hops=3)
        paths = [[s.function for s in c.path] for c in verdict.call_chains]
        assert paths == [["repo", "runSql"], ["route", "repo", "runSql"]]
        assert verdict.recommendation is Recommendation.VERIFY
        assert verdict.summary["user_input_chains"] == 1


class TestEntryPoints:
    """Tests for find_entry_points."""

    def test_entry_points(self, temp_graph_store: GraphStore):
        _graph(temp_graph_store, {
            "runSql": SINK_CODE,
            "repo": "function repo(id) {\n  return runSql(id);\n}",
            "route": "function route(req) {\n  return repo(req.query.id);\n}",
        }, [("repo", "runSql"), ("route", "repo")])
        entries = find_entry_points(temp_graph_store, REPO, "runSql")
        assert entries == [{
            "function": "route",
            "file": "src/route.ts",
            "line": 1,
            "hops_to_target": 2,
            "likely_user_input": True,
        }]


class TestClassification:
    """Tests for the code classifiers."""

    @pytest.mark.parametrize("code, expected", [
        ("const id = req.params.id;", DataSourceType.USER_INPUT),
        ("String v = request.getParameter(\"v\");", DataSourceType.USER_INPUT),
        ("const rows = await prisma.user.findMany();", DataSourceType.DATABASE),
        ("const url = process.env.API_URL;", DataSourceType.CONFIG),
        ('context.put("rows", rows);', DataSourceType.SERVER_GENERATED),
        ("return 42;", DataSourceType.UNKNOWN),
    ])
    def test_classify_source_type(self, code, expected):
        assert classify_source_type(code) is expected

    def test_validation_patterns(self):
        assert has_validation_pattern("if (!/^\\d+$/.test(id)) return;")
        assert has_validation_pattern("const n = parseInt(raw, 10);")
        assert not has_validation_pattern("return db.query(sql);")
