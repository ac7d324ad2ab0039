"""Framework-aware indexing for multi-artifact (OFBiz-style) repositories.

Such stacks spread one feature over XML descriptors, FreeMarker templates,
BeanShell scripts and Java services. This module recovers the wiring
between them with targeted attribute extraction (not full XML parsing)
and stores it in the same repo-scoped graph as the code nodes::

    Component -DECLARES-> Webapp -HAS-> Controller -HAS-> RequestMap
    RequestMap -ROUTES_TO-> ViewMap -RENDERS-> Screen | Template
    Screen -INCLUDES_FORM-> Form -CALLS_SERVICE-> Service
    Service -IMPLEMENTED_BY-> Function (java) | Script (bsh)

The strategy is selected per repository by :func:`get_indexing_strategy`.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence

from . import config
from .config_manager import load_section
from .models import CodeSnippet, ParsedFile
from .source_collector import ALWAYS_EXCLUDE, PARSEABLE_EXTENSIONS
from .storage import EdgeRow, GraphStore, NodeRef

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = "default"
ARTIFACT_STRATEGY = "artifact"

COMPONENT_DESCRIPTOR = "ofbiz-component.xml"
COMPONENT_PREFIXES = ("applications", "hot-deploy", "framework", "specialpurpose")

TEMPLATE_SNIPPET_CHARS = 4000
SCRIPT_SNIPPET_CHARS = 8000

ATTR_RE = re.compile(r"""([A-Za-z_][\w.-]*)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
REQUEST_BLOCK_RE = re.compile(r"<request-map\b[^>]*>[\s\S]*?</request-map>", re.IGNORECASE)
REQUEST_SELF_RE = re.compile(r"<request-map\b[^>]*/>", re.IGNORECASE)
RESPONSE_RE = re.compile(r"<response\b[^>]*>", re.IGNORECASE)
FTL_INCLUDE_RE = re.compile(r"""<#(?:include|import)\s+["']([^"']+)["']""")


# ===================================================================
# Extracted artifacts
# ===================================================================

@dataclass
class ArtifactFileSet:
    code_files: List[Path] = field(default_factory=list)
    ftl_files: List[Path] = field(default_factory=list)
    js_files: List[Path] = field(default_factory=list)
    bsh_files: List[Path] = field(default_factory=list)
    component_files: List[Path] = field(default_factory=list)
    controller_files: List[Path] = field(default_factory=list)
    screen_files: List[Path] = field(default_factory=list)
    form_files: List[Path] = field(default_factory=list)
    service_files: List[Path] = field(default_factory=list)
    entity_files: List[Path] = field(default_factory=list)


@dataclass
class Webapp:
    name: str
    file: str
    location: Optional[str] = None
    context_root: Optional[str] = None
    mount_point: Optional[str] = None


@dataclass
class Component:
    name: str
    file: str
    webapps: List[Webapp] = field(default_factory=list)
    service_resources: List[str] = field(default_factory=list)
    entity_resources: List[str] = field(default_factory=list)


@dataclass
class RequestMap:
    name: str
    file: str
    view_names: List[str] = field(default_factory=list)


@dataclass
class ViewMap:
    name: str
    file: str
    page: Optional[str] = None
    type: Optional[str] = None
    resolved_page: Optional[str] = None
    screen_name: Optional[str] = None


@dataclass
class Controller:
    name: str
    file: str
    request_maps: List[RequestMap] = field(default_factory=list)
    view_maps: List[ViewMap] = field(default_factory=list)


@dataclass
class FormRef:
    name: str
    file: Optional[str] = None


@dataclass
class Screen:
    name: str
    file: str
    line: int
    include_forms: List[FormRef] = field(default_factory=list)
    include_templates: List[str] = field(default_factory=list)


@dataclass
class Form:
    name: str
    file: str
    line: int
    services: List[str] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)


@dataclass
class Service:
    name: str
    file: str
    line: int
    engine: Optional[str] = None
    location: Optional[str] = None
    resolved_location: Optional[str] = None
    invoke: Optional[str] = None
    default_entity: Optional[str] = None


@dataclass
class Entity:
    name: str
    file: str
    line: int


@dataclass
class Template:
    path: str
    includes: List[str] = field(default_factory=list)


@dataclass
class ArtifactData:
    components: List[Component] = field(default_factory=list)
    controllers: List[Controller] = field(default_factory=list)
    screens: List[Screen] = field(default_factory=list)
    forms: List[Form] = field(default_factory=list)
    services: List[Service] = field(default_factory=list)
    entities: List[Entity] = field(default_factory=list)
    templates: List[Template] = field(default_factory=list)
    bsh_scripts: List[str] = field(default_factory=list)
    js_files: List[str] = field(default_factory=list)


# ===================================================================
# Strategy selection
# ===================================================================

def _has_component_descriptor(repo_path: Path, max_depth: int = 3) -> bool:
    root_depth = len(repo_path.parts)
    for current, dirnames, filenames in os.walk(repo_path):
        depth = len(Path(current).parts) - root_depth
        if COMPONENT_DESCRIPTOR in filenames:
            return True
        if depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = [d for d in dirnames if d not in ALWAYS_EXCLUDE]
    return False


def get_indexing_strategy(
    repo_id: str,
    repo_path: Optional[Path] = None,
    strategies: Optional[Dict[str, str]] = None,
) -> str:
    """``"artifact"`` for configured or self-describing repos, else ``"default"``."""
    if strategies is None:
        strategies = load_section("index").get("strategies") or {}
    normalized = {str(k).strip().lower(): str(v) for k, v in strategies.items()}
    configured = normalized.get(repo_id.strip().lower())
    if configured:
        return configured
    if repo_path is not None and _has_component_descriptor(Path(repo_path)):
        return ARTIFACT_STRATEGY
    return DEFAULT_STRATEGY


# ===================================================================
# File collection
# ===================================================================

def classify_xml_file(file_path: str) -> Optional[str]:
    base = os.path.basename(file_path).lower()
    if base == COMPONENT_DESCRIPTOR:
        return "component"
    if base == "controller.xml":
        return "controller"
    if base.endswith("screens.xml"):
        return "screen"
    if base.endswith("forms.xml"):
        return "form"
    if base.startswith("services") and base.endswith(".xml"):
        return "service"
    if "entitymodel" in base and base.endswith(".xml"):
        return "entity"
    return None


_XML_BUCKETS = {
    "component": "component_files",
    "controller": "controller_files",
    "screen": "screen_files",
    "form": "form_files",
    "service": "service_files",
    "entity": "entity_files",
}


def _add_file(file_set: ArtifactFileSet, path: Path) -> None:
    ext = path.suffix.lower()
    if ext == ".xml":
        kind = classify_xml_file(path.name)
        if kind:
            getattr(file_set, _XML_BUCKETS[kind]).append(path)
        return
    if ext == ".bsh":
        file_set.bsh_files.append(path)
        return
    if ext == ".ftl":
        file_set.ftl_files.append(path)
    if ext == ".js":
        file_set.js_files.append(path)
    if ext in PARSEABLE_EXTENSIONS:
        file_set.code_files.append(path)


def collect_artifact_files(
    repo_path: Path,
    exclude_patterns: Iterable[str] = (),
    changed_files: Optional[Sequence[str]] = None,
) -> ArtifactFileSet:
    """Classify descriptor, template, script and code files under *repo_path*.

    With *changed_files* only those (existing) files are considered.
    """
    repo_path = Path(repo_path)
    file_set = ArtifactFileSet()
    if changed_files:
        for rel in changed_files:
            rel = rel.strip()
            if rel and (repo_path / rel).is_file():
                _add_file(file_set, repo_path / rel)
        return file_set

    excluded = set(exclude_patterns) | ALWAYS_EXCLUDE
    for current, dirnames, filenames in os.walk(repo_path):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        for filename in sorted(filenames):
            path = Path(current) / filename
            ext = path.suffix.lower()
            if ext not in (".xml", ".bsh") and ext not in PARSEABLE_EXTENSIONS:
                continue
            try:
                if path.stat().st_size > config.MAX_FILE_SIZE:
                    continue
            except OSError:
                continue
            _add_file(file_set, path)
    return file_set


# ===================================================================
# Attribute extraction helpers
# ===================================================================

def parse_attributes(tag: str) -> Dict[str, str]:
    attrs: Dict[str, str] = {}
    for match in ATTR_RE.finditer(tag):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs[match.group(1)] = value or ""
    return attrs


def find_tag_attributes(content: str, tag_name: str) -> List[Dict[str, str]]:
    pattern = re.compile(rf"<{re.escape(tag_name)}\b[^>]*>", re.IGNORECASE)
    return [parse_attributes(m.group(0)) for m in pattern.finditer(content)]


def _rel(repo_path: Path, path: Path) -> str:
    return Path(os.path.relpath(path, repo_path)).as_posix()


def resolve_component_path(repo_path: Path, location: str) -> str:
    """Map ``component://``, ``file:`` and absolute locations to repo-relative paths."""
    trimmed = location.strip()
    if not trimmed:
        return trimmed
    if trimmed.startswith("component://"):
        parts = [p for p in trimmed[len("component://"):].split("/") if p]
        if parts:
            component, rest = parts[0], "/".join(parts[1:])
            for prefix in COMPONENT_PREFIXES:
                candidate = repo_path / prefix / component / rest
                if candidate.exists():
                    return _rel(repo_path, candidate)
            return PurePosixPath(component, rest).as_posix()
    if trimmed.startswith("file:"):
        stripped = re.sub(r"^file:/*", "", trimmed)
        candidate = Path(stripped) if os.path.isabs(stripped) else repo_path / stripped
        return _rel(repo_path, candidate)
    if trimmed.startswith("/"):
        return _rel(repo_path, repo_path / trimmed.lstrip("/"))
    return trimmed.replace(os.sep, "/")


def resolve_relative_path(repo_path: Path, base_file: str, relative: str) -> str:
    trimmed = relative.strip()
    if not trimmed:
        return ""
    if trimmed.startswith(("component://", "file:", "/")):
        return resolve_component_path(repo_path, trimmed)
    base_dir = (repo_path / base_file).parent
    return _rel(repo_path, base_dir / trimmed)


def _first(attrs: Dict[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        if attrs.get(key):
            return attrs[key]
    return None


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("Could not read %s: %s", path, exc)
        return ""


# ===================================================================
# Parsing
# ===================================================================

def _parse_component(repo_path: Path, path: Path, content: str) -> Component:
    rel = _rel(repo_path, path)
    root = (find_tag_attributes(content, "ofbiz-component") or [{}])[0]
    component = Component(name=root.get("name") or path.parent.name, file=rel)
    for attrs in find_tag_attributes(content, "webapp"):
        component.webapps.append(Webapp(
            name=_first(attrs, "name", "webapp-name") or "webapp",
            file=rel,
            location=resolve_component_path(repo_path, attrs["location"]) if attrs.get("location") else None,
            context_root=attrs.get("context-root"),
            mount_point=attrs.get("mount-point"),
        ))
    for attrs in find_tag_attributes(content, "service-resource"):
        if attrs.get("location"):
            component.service_resources.append(resolve_component_path(repo_path, attrs["location"]))
    for attrs in find_tag_attributes(content, "entity-resource"):
        if attrs.get("location"):
            component.entity_resources.append(resolve_component_path(repo_path, attrs["location"]))
    return component


def _parse_controller(repo_path: Path, path: Path, content: str) -> Controller:
    rel = _rel(repo_path, path)
    controller = Controller(name=rel, file=rel)

    for block_match in REQUEST_BLOCK_RE.finditer(content):
        block = block_match.group(0)
        open_tag = re.match(r"<request-map\b[^>]*>", block, re.IGNORECASE)
        attrs = parse_attributes(open_tag.group(0) if open_tag else "")
        request = RequestMap(name=_first(attrs, "uri", "name") or "request", file=rel)
        direct = _first(attrs, "view-map", "view-map-name")
        if direct:
            request.view_names.append(direct)
        for response in RESPONSE_RE.finditer(block):
            response_attrs = parse_attributes(response.group(0))
            if response_attrs.get("type") and response_attrs["type"] != "view":
                continue
            value = _first(response_attrs, "value", "name")
            if value:
                request.view_names.append(value)
        controller.request_maps.append(request)

    for self_match in REQUEST_SELF_RE.finditer(content):
        attrs = parse_attributes(self_match.group(0))
        name = _first(attrs, "uri", "name")
        if name:
            view = _first(attrs, "view-map", "view-map-name")
            controller.request_maps.append(RequestMap(name=name, file=rel, view_names=[view] if view else []))

    for attrs in find_tag_attributes(content, "view-map"):
        page = attrs.get("page")
        view = ViewMap(name=attrs.get("name") or "view", file=rel, page=page, type=attrs.get("type"))
        if page:
            if "#" in page:
                raw_path, screen = page.split("#", 1)
                view.resolved_page = resolve_component_path(repo_path, raw_path)
                view.screen_name = screen
            elif page.endswith((".ftl", ".xml")):
                view.resolved_page = resolve_component_path(repo_path, page)
        controller.view_maps.append(view)
    return controller


def _parse_screens(repo_path: Path, path: Path, content: str) -> List[Screen]:
    rel = _rel(repo_path, path)
    screens: List[Screen] = []
    stack: List[Screen] = []
    for i, line in enumerate(content.splitlines()):
        if "<screen " in line:
            name = parse_attributes(line).get("name")
            if name:
                screen = Screen(name=name, file=rel, line=i + 1)
                screens.append(screen)
                stack.append(screen)
        if "</screen" in line and stack:
            stack.pop()
        if not stack:
            continue
        current = stack[-1]
        if "include-form" in line:
            attrs = parse_attributes(line)
            form_name = _first(attrs, "name", "form-name")
            if form_name:
                location = resolve_component_path(repo_path, attrs["location"]) if attrs.get("location") else None
                current.include_forms.append(FormRef(name=form_name, file=location))
        if "include-template" in line:
            attrs = parse_attributes(line)
            template = _first(attrs, "location", "name")
            if template:
                current.include_templates.append(resolve_relative_path(repo_path, rel, template))
    return screens


def _parse_forms(repo_path: Path, path: Path, content: str) -> List[Form]:
    rel = _rel(repo_path, path)
    forms: List[Form] = []
    stack: List[Form] = []
    for i, line in enumerate(content.splitlines()):
        if "<form " in line:
            name = parse_attributes(line).get("name")
            if name:
                form = Form(name=name, file=rel, line=i + 1)
                forms.append(form)
                stack.append(form)
        if "</form" in line and stack:
            stack.pop()
        if not stack:
            continue
        current = stack[-1]
        if "<service" in line:
            service = _first(parse_attributes(line), "service-name", "name")
            if service:
                current.services.append(service)
        if "entity-name" in line:
            entity = parse_attributes(line).get("entity-name")
            if entity:
                current.entities.append(entity)
    return forms


def _parse_services(repo_path: Path, path: Path, content: str) -> List[Service]:
    rel = _rel(repo_path, path)
    services: List[Service] = []
    for i, line in enumerate(content.splitlines()):
        if "<service" not in line:
            continue
        attrs = parse_attributes(line)
        name = _first(attrs, "name", "service-name")
        if not name:
            continue
        location = attrs.get("location")
        services.append(Service(
            name=name,
            file=rel,
            line=i + 1,
            engine=attrs.get("engine"),
            location=location,
            resolved_location=resolve_component_path(repo_path, location) if location else None,
            invoke=attrs.get("invoke"),
            default_entity=_first(attrs, "default-entity-name", "entity-name"),
        ))
    return services


def _parse_entities(repo_path: Path, path: Path, content: str) -> List[Entity]:
    rel = _rel(repo_path, path)
    entities: List[Entity] = []
    for i, line in enumerate(content.splitlines()):
        if "<entity" not in line:
            continue
        name = _first(parse_attributes(line), "entity-name", "name")
        if name:
            entities.append(Entity(name=name, file=rel, line=i + 1))
    return entities


def parse_artifacts(repo_path: Path, file_set: ArtifactFileSet) -> ArtifactData:
    """Extract every artifact and reference from *file_set*."""
    repo_path = Path(repo_path)
    data = ArtifactData()
    data.bsh_scripts = [_rel(repo_path, p) for p in file_set.bsh_files]
    data.js_files = [_rel(repo_path, p) for p in file_set.js_files]

    for path in file_set.component_files:
        content = _read(path)
        if content:
            data.components.append(_parse_component(repo_path, path, content))
    for path in file_set.controller_files:
        content = _read(path)
        if content:
            data.controllers.append(_parse_controller(repo_path, path, content))
    for path in file_set.screen_files:
        data.screens.extend(_parse_screens(repo_path, path, _read(path)))
    for path in file_set.form_files:
        data.forms.extend(_parse_forms(repo_path, path, _read(path)))
    for path in file_set.service_files:
        data.services.extend(_parse_services(repo_path, path, _read(path)))
    for path in file_set.entity_files:
        data.entities.extend(_parse_entities(repo_path, path, _read(path)))

    templates: Dict[str, Template] = {}
    for path in file_set.ftl_files:
        content = _read(path)
        if not content:
            continue
        rel = _rel(repo_path, path)
        includes = [
            resolve_relative_path(repo_path, rel, m.group(1))
            for m in FTL_INCLUDE_RE.finditer(content)
            if m.group(1)
        ]
        templates[rel] = Template(path=rel, includes=includes)
        for inc in includes:
            templates.setdefault(inc, Template(path=inc))
    data.templates = list(templates.values())

    logger.info(
        "Artifacts: %d components, %d controllers, %d screens, %d forms, %d services, %d entities, %d templates",
        len(data.components), len(data.controllers), len(data.screens), len(data.forms),
        len(data.services), len(data.entities), len(data.templates),
    )
    return data


# ===================================================================
# Graph
# ===================================================================

def build_artifact_graph(store: GraphStore, repo_id: str, data: ArtifactData) -> int:
    """Upsert artifact nodes and wiring. Returns the failed batch count."""
    failed = 0
    nodes: Dict[str, List[Dict[str, object]]] = {
        "Component": [{"name": c.name, "file": c.file} for c in data.components],
        "Webapp": [
            {
                "name": w.name, "file": w.file, "location": w.location,
                "context_root": w.context_root, "mount_point": w.mount_point,
            }
            for c in data.components for w in c.webapps
        ],
        "Controller": [{"name": c.name, "file": c.file} for c in data.controllers],
        "RequestMap": [{"name": r.name, "file": r.file} for c in data.controllers for r in c.request_maps],
        "ViewMap": [
            {"name": v.name, "file": v.file, "page": v.page, "type": v.type}
            for c in data.controllers for v in c.view_maps
        ],
        "Screen": [{"name": s.name, "file": s.file, "start_line": s.line} for s in data.screens],
        "Form": [{"name": f.name, "file": f.file, "start_line": f.line} for f in data.forms],
        "Service": [
            {
                "name": s.name, "file": s.file, "start_line": s.line, "engine": s.engine,
                "location": s.location, "invoke": s.invoke,
            }
            for s in data.services
        ],
        "Entity": [{"name": e.name, "file": e.file, "start_line": e.line} for e in data.entities],
        "Template": [{"name": t.path, "file": t.path} for t in data.templates],
        "Script": (
            [{"name": p, "file": p, "kind": "bsh"} for p in data.bsh_scripts]
            + [{"name": p, "file": p, "kind": "js"} for p in data.js_files]
        ),
    }
    for label, rows in nodes.items():
        if rows:
            failed += store.upsert_nodes(repo_id, label, rows)

    edges: Dict[str, List[EdgeRow]] = {}

    def link(edge_type: str, src: NodeRef, dst: NodeRef) -> None:
        edges.setdefault(edge_type, []).append((src, dst, {}))

    services_by_file: Dict[str, List[str]] = {}
    for service in data.services:
        services_by_file.setdefault(service.file, []).append(service.name)
    entities_by_file: Dict[str, List[str]] = {}
    for entity in data.entities:
        entities_by_file.setdefault(entity.file, []).append(entity.name)

    for component in data.components:
        comp = NodeRef("Component", component.name, component.file)
        for webapp in component.webapps:
            web = NodeRef("Webapp", webapp.name, webapp.file)
            link("DECLARES", comp, web)
            if webapp.location:
                for controller in data.controllers:
                    if controller.file.startswith(webapp.location):
                        link("HAS", web, NodeRef("Controller", controller.name, controller.file))
        for resource in component.service_resources:
            for name in services_by_file.get(resource, []):
                link("DECLARES", comp, NodeRef("Service", name, resource))
        for resource in component.entity_resources:
            for name in entities_by_file.get(resource, []):
                link("DECLARES", comp, NodeRef("Entity", name, resource))

    for controller in data.controllers:
        ctrl = NodeRef("Controller", controller.name, controller.file)
        for request in controller.request_maps:
            req = NodeRef("RequestMap", request.name, request.file)
            link("HAS", ctrl, req)
            for view_name in request.view_names:
                link("ROUTES_TO", req, NodeRef("ViewMap", view_name, controller.file))
        for view in controller.view_maps:
            vref = NodeRef("ViewMap", view.name, view.file)
            if view.screen_name and view.resolved_page is not None:
                link("RENDERS", vref, NodeRef("Screen", view.screen_name, view.resolved_page or None))
            elif view.resolved_page and view.resolved_page.endswith(".ftl"):
                link("RENDERS", vref, NodeRef("Template", view.resolved_page, view.resolved_page))

    for screen in data.screens:
        sref = NodeRef("Screen", screen.name, screen.file)
        for form in screen.include_forms:
            link("INCLUDES_FORM", sref, NodeRef("Form", form.name, form.file))
        for template in screen.include_templates:
            link("INCLUDES_TEMPLATE", sref, NodeRef("Template", template, template))

    for form in data.forms:
        fref = NodeRef("Form", form.name, form.file)
        for service_name in form.services:
            link("CALLS_SERVICE", fref, NodeRef("Service", service_name))
        for entity_name in form.entities:
            link("USES_ENTITY", fref, NodeRef("Entity", entity_name))

    for service in data.services:
        sref = NodeRef("Service", service.name, service.file)
        if service.default_entity:
            link("USES_ENTITY", sref, NodeRef("Entity", service.default_entity))
        engine = (service.engine or "").lower()
        location = service.resolved_location or ""
        if engine == "java" and service.invoke and location:
            # Either a source path or a fully qualified class name.
            class_name = re.sub(r"\.java$", "", os.path.basename(location), flags=re.IGNORECASE).rsplit(".", 1)[-1]
            if class_name:
                link("IMPLEMENTED_BY", sref, NodeRef("Function", f"{class_name}.{service.invoke}"))
        if (engine == "bsh" or (service.location or "").endswith(".bsh")) and location:
            link("IMPLEMENTED_BY", sref, NodeRef("Script", location, location))

    for template in data.templates:
        tref = NodeRef("Template", template.path, template.path)
        for inc in template.includes:
            link("INCLUDES", tref, NodeRef("Template", inc, inc))

    for edge_type, rows in edges.items():
        failed += store.upsert_edges(repo_id, edge_type, rows)

    logger.info("Artifact graph built for %s (%d edge kinds)", repo_id, len(edges))
    return failed


def tag_java_nodes(store: GraphStore, repo_id: str, parsed_files: Sequence[ParsedFile]) -> int:
    """Flag Java classes and methods so artifact queries can tell them apart."""
    classes = []
    methods = []
    for parsed in parsed_files:
        if parsed.language != "java":
            continue
        for cls in parsed.classes:
            classes.append((cls.name, parsed.file_path))
            methods.extend((f"{cls.name}.{m.name}", parsed.file_path) for m in cls.methods)
    failed = store.set_flag(repo_id, "Class", classes, "java_class")
    failed += store.set_flag(repo_id, "Function", methods, "java_method")
    return failed


# ===================================================================
# Snippets
# ===================================================================

def _line_count(content: str) -> int:
    return max(1, len(content.splitlines()))


def extract_artifact_snippets(repo_path: Path, data: ArtifactData) -> List[CodeSnippet]:
    repo_path = Path(repo_path)
    snippets: List[CodeSnippet] = []

    for service in data.services:
        lines = [
            f"service {service.name}",
            f"engine: {service.engine}" if service.engine else "",
            f"location: {service.location}" if service.location else "",
            f"invoke: {service.invoke}" if service.invoke else "",
            f"entity: {service.default_entity}" if service.default_entity else "",
        ]
        snippets.append(CodeSnippet(
            name=f"service:{service.name}",
            code="\n".join(l for l in lines if l),
            file=service.file,
            start_line=service.line,
            end_line=service.line,
        ))

    for screen in data.screens:
        forms = ", ".join(f.name for f in screen.include_forms)
        templates = ", ".join(screen.include_templates)
        lines = [
            f"screen {screen.name}",
            f"forms: {forms}" if forms else "",
            f"templates: {templates}" if templates else "",
        ]
        snippets.append(CodeSnippet(
            name=f"screen:{screen.name}",
            code="\n".join(l for l in lines if l),
            file=screen.file,
            start_line=screen.line,
            end_line=screen.line,
        ))

    for form in data.forms:
        services = ", ".join(form.services)
        entities = ", ".join(form.entities)
        lines = [
            f"form {form.name}",
            f"services: {services}" if services else "",
            f"entities: {entities}" if entities else "",
        ]
        snippets.append(CodeSnippet(
            name=f"form:{form.name}",
            code="\n".join(l for l in lines if l),
            file=form.file,
            start_line=form.line,
            end_line=form.line,
        ))

    for template in data.templates:
        content = _read(repo_path / template.path)
        base = os.path.basename(template.path)
        parts = [
            f"template {base}",
            f"includes: {', '.join(template.includes)}" if template.includes else "",
            content[:TEMPLATE_SNIPPET_CHARS],
        ]
        snippets.append(CodeSnippet(
            name=f"template:{base}",
            code="\n".join(p for p in parts if p),
            file=template.path,
            start_line=1,
            end_line=_line_count(content),
        ))

    for script in data.bsh_scripts:
        content = _read(repo_path / script)
        snippets.append(CodeSnippet(
            name=f"bsh:{os.path.basename(script)}",
            code=content[:SCRIPT_SNIPPET_CHARS],
            file=script,
            start_line=1,
            end_line=_line_count(content),
        ))

    return snippets

