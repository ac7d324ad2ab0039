"""Tests for artifact-aware indexing of OFBiz-style repositories."""

from pathlib import Path

import pytest

from reviewgraph.artifact_graph import (
    ARTIFACT_STRATEGY,
    DEFAULT_STRATEGY,
    build_artifact_graph,
    classify_xml_file,
    collect_artifact_files,
    extract_artifact_snippets,
    get_indexing_strategy,
    parse_artifacts,
    resolve_component_path,
    tag_java_nodes,
)
from reviewgraph.graph_builder import build_graph
from reviewgraph.models import ClassInfo, FunctionInfo, ParsedFile
from reviewgraph.storage import GraphStore

REPO = "acme/erp"

COMPONENT_XML = """<?xml version="1.0" encoding="UTF-8"?>
<ofbiz-component name="order">
    <entity-resource type="model" reader-name="main" loader="main" location="component://order/entitydef/entitymodel.xml"/>
    <service-resource type="model" loader="main" location="component://order/servicedef/services.xml"/>
    <webapp name="ordermgr" title="Order" server="default-server" location="component://order/webapp/ordermgr" mount-point="/ordermgr"/>
</ofbiz-component>
"""

CONTROLLER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<site-conf>
    <request-map uri="createOrder">
        <security https="true" auth="true"/>
        <event type="service" invoke="createOrder"/>
        <response name="success" type="view" value="OrderView"/>
    </request-map>
    <view-map name="OrderView" type="screen" page="component://order/widget/OrderScreens.xml#OrderScreen"/>
</site-conf>
"""

SCREENS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<screens>
    <screen name="OrderScreen">
        <section>
            <widgets>
                <include-form name="OrderForm" location="component://order/widget/OrderForms.xml"/>
                <include-template location="component://order/template/order.ftl"/>
            </widgets>
        </section>
    </screen>
</screens>
"""

FORMS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<forms>
    <form name="OrderForm" type="single" target="createOrder">
        <service service-name="createOrder"/>
    </form>
</forms>
"""

SERVICES_XML = """<?xml version="1.0" encoding="UTF-8"?>
<services>
    <service name="createOrder" engine="java" location="org.example.OrderServices" invoke="createOrder" default-entity-name="OrderHeader">
        <attribute name="orderId" type="String" mode="OUT"/>
    </service>
</services>
"""

ENTITY_XML = """<?xml version="1.0" encoding="UTF-8"?>
<entitymodel>
    <entity entity-name="OrderHeader" package-name="org.example.order">
        <field name="orderId" type="id"/>
    </entity>
</entitymodel>
"""

ORDER_FTL = """<#include "header.ftl">
<h1>${orderId}</h1>
"""


def _write(root: Path, rel: str, content: str) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture
def ofbiz_repo(temp_dir: Path) -> Path:
    root = temp_dir / "erp"
    base = "applications/order"
    _write(root, f"{base}/ofbiz-component.xml", COMPONENT_XML)
    _write(root, f"{base}/webapp/ordermgr/WEB-INF/controller.xml", CONTROLLER_XML)
    _write(root, f"{base}/widget/OrderScreens.xml", SCREENS_XML)
    _write(root, f"{base}/widget/OrderForms.xml", FORMS_XML)
    _write(root, f"{base}/servicedef/services.xml", SERVICES_XML)
    _write(root, f"{base}/entitydef/entitymodel.xml", ENTITY_XML)
    _write(root, f"{base}/template/order.ftl", ORDER_FTL)
    _write(root, f"{base}/template/header.ftl", "<header/>\n")
    _write(root, f"{base}/webapp/ordermgr/WEB-INF/actions/order.bsh", 'context.put("orderId", parameters.get("orderId"));\n')
    _write(root, "node_modules/pkg/services.xml", SERVICES_XML)
    return root


def _java_file() -> ParsedFile:
    parsed = ParsedFile("applications/order/src/org/example/OrderServices.java", "java")
    parsed.classes.append(ClassInfo(
        name="OrderServices",
        methods=[FunctionInfo(name="createOrder", body="{ return null; }", start_line=5, end_line=7)],
    ))
    return parsed


@pytest.fixture
def artifact_store(ofbiz_repo: Path, temp_graph_store: GraphStore) -> GraphStore:
    build_graph(temp_graph_store, REPO, [_java_file()])
    data = parse_artifacts(ofbiz_repo, collect_artifact_files(ofbiz_repo))
    assert build_artifact_graph(temp_graph_store, REPO, data) == 0
    return temp_graph_store


class TestStrategy:
    """Tests for indexing strategy selection."""

    def test_descriptor_selects_artifact(self, ofbiz_repo: Path):
        """A component descriptor near the root switches strategy."""
        assert get_indexing_strategy(REPO, ofbiz_repo, strategies={}) == ARTIFACT_STRATEGY

    def test_plain_repo_is_default(self, sample_repo: Path):
        """Repos without descriptors use the default strategy."""
        assert get_indexing_strategy("acme/app", sample_repo) == DEFAULT_STRATEGY

    def test_configured_strategy_wins(self, ofbiz_repo: Path):
        """The configured map is matched case-insensitively and takes precedence."""
        strategies = {"ACME/ERP": DEFAULT_STRATEGY}
        assert get_indexing_strategy(REPO, ofbiz_repo, strategies=strategies) == DEFAULT_STRATEGY
        assert get_indexing_strategy("x/y", None, strategies={"x/y": ARTIFACT_STRATEGY}) == ARTIFACT_STRATEGY


class TestCollection:
    """Tests for artifact file classification and collection."""

    @pytest.mark.parametrize("name, kind", [
        ("ofbiz-component.xml", "component"),
        ("controller.xml", "controller"),
        ("OrderScreens.xml", "screen"),
        ("OrderForms.xml", "form"),
        ("services_order.xml", "service"),
        ("entitymodel_view.xml", "entity"),
        ("pom.xml", None),
    ])
    def test_classify(self, name, kind):
        """XML descriptors are classified by file name."""
        assert classify_xml_file(f"some/dir/{name}") == kind

    def test_collect_skips_excluded(self, ofbiz_repo: Path):
        """Excluded directories are pruned and each kind lands in its bucket."""
        file_set = collect_artifact_files(ofbiz_repo)
        assert len(file_set.service_files) == 1
        assert len(file_set.component_files) == 1
        assert len(file_set.controller_files) == 1
        assert len(file_set.ftl_files) == 2
        assert len(file_set.bsh_files) == 1

    def test_collect_changed_only(self, ofbiz_repo: Path):
        """With changed files only those existing files are classified."""
        file_set = collect_artifact_files(
            ofbiz_repo,
            changed_files=["applications/order/widget/OrderForms.xml", "missing.xml"],
        )
        assert [p.name for p in file_set.form_files] == ["OrderForms.xml"]
        assert file_set.service_files == []

    def test_resolve_component_path(self, ofbiz_repo: Path):
        """component:// locations resolve under the known component roots."""
        assert resolve_component_path(ofbiz_repo, "component://order/widget/OrderForms.xml") == (
            "applications/order/widget/OrderForms.xml"
        )
        assert resolve_component_path(ofbiz_repo, "component://missing/a.xml") == "missing/a.xml"
        assert resolve_component_path(ofbiz_repo, "/applications/order/x.ftl") == "applications/order/x.ftl"


class TestParsing:
    """Tests for artifact extraction."""

    def test_parse_artifacts(self, ofbiz_repo: Path):
        """Every artifact kind is extracted with its references."""
        data = parse_artifacts(ofbiz_repo, collect_artifact_files(ofbiz_repo))

        component = data.components[0]
        assert component.name == "order"
        assert component.webapps[0].location == "applications/order/webapp/ordermgr"
        assert component.service_resources == ["applications/order/servicedef/services.xml"]

        controller = data.controllers[0]
        assert controller.request_maps[0].name == "createOrder"
        assert controller.request_maps[0].view_names == ["OrderView"]
        view = controller.view_maps[0]
        assert view.screen_name == "OrderScreen"
        assert view.resolved_page == "applications/order/widget/OrderScreens.xml"

        screen = data.screens[0]
        assert [f.name for f in screen.include_forms] == ["OrderForm"]
        assert screen.include_templates == ["applications/order/template/order.ftl"]

        assert data.forms[0].services == ["createOrder"]
        service = data.services[0]
        assert (service.engine, service.invoke, service.default_entity) == ("java", "createOrder", "OrderHeader")
        assert [e.name for e in data.entities] == ["OrderHeader"]

        includes = {t.path: t.includes for t in data.templates}
        assert includes["applications/order/template/order.ftl"] == ["applications/order/template/header.ftl"]

    def test_snippets(self, ofbiz_repo: Path):
        """Artifacts become embeddable snippets."""
        data = parse_artifacts(ofbiz_repo, collect_artifact_files(ofbiz_repo))
        names = {s.name for s in extract_artifact_snippets(ofbiz_repo, data)}
        assert {"service:createOrder", "screen:OrderScreen", "form:OrderForm", "template:order.ftl", "bsh:order.bsh"} <= names


class TestArtifactGraph:
    """Tests for the artifact wiring in the graph."""

    def _pairs(self, store: GraphStore, edge_type: str):
        return {(e["src"], e["dst"]) for e in store.get_edges(REPO, edge_type)}

    def test_request_to_screen(self, artifact_store: GraphStore):
        """A request routes to a view that renders a screen."""
        assert self._pairs(artifact_store, "ROUTES_TO") == {("createOrder", "OrderView")}
        assert self._pairs(artifact_store, "RENDERS") == {("OrderView", "OrderScreen")}

    def test_screen_to_service(self, artifact_store: GraphStore):
        """Screens include forms and forms call services."""
        assert self._pairs(artifact_store, "INCLUDES_FORM") == {("OrderScreen", "OrderForm")}
        assert self._pairs(artifact_store, "CALLS_SERVICE") == {("OrderForm", "createOrder")}
        assert self._pairs(artifact_store, "INCLUDES_TEMPLATE") == {
            ("OrderScreen", "applications/order/template/order.ftl"),
        }

    def test_service_implemented_by_java(self, artifact_store: GraphStore):
        """Java services link to the method named by class and invoke."""
        assert self._pairs(artifact_store, "IMPLEMENTED_BY") == {("createOrder", "OrderServices.createOrder")}
        assert self._pairs(artifact_store, "USES_ENTITY") == {("createOrder", "OrderHeader")}

    def test_component_declarations(self, artifact_store: GraphStore):
        """Components declare webapps, services and entities."""
        assert self._pairs(artifact_store, "DECLARES") == {
            ("order", "ordermgr"),
            ("order", "createOrder"),
            ("order", "OrderHeader"),
        }
        assert artifact_store.count_edges(REPO, "HAS") == 2
        assert artifact_store.count_edges(REPO, "INCLUDES") == 1

    def test_rebuild_is_idempotent(self, artifact_store: GraphStore, ofbiz_repo: Path):
        """Rebuilding the artifact graph adds nothing."""
        before = artifact_store.count_edges(REPO)
        data = parse_artifacts(ofbiz_repo, collect_artifact_files(ofbiz_repo))
        build_artifact_graph(artifact_store, REPO, data)
        assert artifact_store.count_edges(REPO) == before

    def test_tag_java_nodes(self, artifact_store: GraphStore):
        """Java methods and classes are flagged."""
        tag_java_nodes(artifact_store, REPO, [_java_file()])
        method = artifact_store.get_function(REPO, "OrderServices.createOrder")
        assert method["java_method"] is True
