"""Tests for framework detection."""

from pathlib import Path

import pytest

from reviewgraph.framework_detector import (
    detect_frameworks,
    detect_primary_framework,
    get_exclude_patterns,
)


def _write(root: Path, rel: str, content: str = "") -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture
def repo(temp_dir: Path) -> Path:
    root = temp_dir / "repo"
    root.mkdir()
    return root


class TestDetectFrameworks:
    """Tests for detect_frameworks."""

    def test_react_demotes_typescript(self, repo: Path):
        """A confident React match pushes plain TypeScript down by 0.3."""
        _write(repo, "package.json", '{"dependencies": {"react": "18", "react-dom": "18"}}')
        _write(repo, "tsconfig.json", "{}")
        _write(repo, "src/App.tsx", "export const App = () => null;\n")

        scores = {d.framework: d.confidence for d in detect_frameworks(repo)}
        assert scores == {"react": 0.8, "typescript": 0.3}
        assert detect_primary_framework(repo) == "react"

    def test_spring_boot(self, repo: Path):
        _write(repo, "pom.xml", "<artifactId>spring-boot-starter-web</artifactId>")
        _write(repo, "src/main/java/App.java", "class App {}\n")

        detections = detect_frameworks(repo)
        assert [d.framework for d in detections] == ["spring-boot", "java"]
        assert detections[0].confidence == 0.5
        assert detections[1].confidence == 0.3

    def test_ofbiz_component(self, repo: Path):
        _write(repo, "build.gradle", "// Apache OFBiz build\n")
        _write(repo, "applications/order/ofbiz-component.xml", "<ofbiz-component/>")

        detections = detect_frameworks(repo)
        assert detections[0].framework == "ofbiz"
        assert detections[0].confidence == 0.9
        assert "ofbiz-component.xml" in detections[0].file_patterns

    def test_vendored_sources_ignored(self, repo: Path):
        """Files under node_modules do not count as evidence."""
        _write(repo, "node_modules/pkg/index.ts", "export {};\n")
        assert detect_frameworks(repo) == []

    def test_unknown_below_threshold(self, repo: Path):
        _write(repo, "README.md", "# nothing here\n")
        assert detect_primary_framework(repo) == "unknown"


def test_exclude_patterns_union():
    assert get_exclude_patterns(["typescript"]) == {"node_modules", "build", "dist"}
    assert "target" in get_exclude_patterns(["typescript", "java"])
    assert get_exclude_patterns([]) == set()
