"""Tests for declaration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from cloud_mock import edge_declaration, find, write_declaration
from cloud_mock.declarations import ALB_ID, DNS_RECORD_ID

from edge_operator.spec_loader import (
    MAX_SPEC_FILE_SIZE_BYTES,
    SpecLoadError,
    load_graph,
    load_spec,
    load_spec_file,
    spec_files,
)


class TestLoadSpecFile:
    """Tests for loading a single declaration file."""

    def test_flat_format(self, tmp_path: Path) -> None:
        """A top-level resources list is accepted."""
        path = write_declaration(tmp_path / "edge.yaml", edge_declaration())
        spec = load_spec_file(path)
        assert len(spec.resources) == 6

    def test_kubernetes_wrapper(self, tmp_path: Path) -> None:
        """apiVersion/kind/metadata/spec wrappers are unwrapped."""
        document = {
            "apiVersion": "edge-operator/v1",
            "kind": "EdgeSpec",
            "metadata": {"name": "edge"},
            "spec": edge_declaration(),
        }
        path = tmp_path / "edge.yaml"
        path.write_text(yaml.safe_dump(document))

        assert len(load_spec_file(path).resources) == 6

    def test_empty_file(self, tmp_path: Path) -> None:
        """An empty file declares nothing."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_spec_file(path).resources == []

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML raises SpecLoadError."""
        path = tmp_path / "bad.yaml"
        path.write_text("resources: [unclosed")
        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_spec_file(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """The document must be a mapping."""
        path = tmp_path / "list.yaml"
        path.write_text("- kind: ALB\n")
        with pytest.raises(SpecLoadError, match="YAML mapping"):
            load_spec_file(path)

    def test_too_large(self, tmp_path: Path) -> None:
        """Oversized files are refused before parsing."""
        path = tmp_path / "huge.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))
        with pytest.raises(SpecLoadError, match="maximum size"):
            load_spec_file(path)

    def test_attribute_errors_collected(self, tmp_path: Path) -> None:
        """Attribute errors of every resource are reported together."""
        declaration = edge_declaration()
        find(declaration, "Listener", "web")["attributes"]["port"] = 0
        find(declaration, "ALB", "k8s-alb")["attributes"]["subnets"] = ["subnet-a"]
        path = write_declaration(tmp_path / "edge.yaml", declaration)

        with pytest.raises(SpecLoadError) as exc_info:
            load_spec_file(path)

        message = str(exc_info.value)
        assert "resources.0.attributes.subnets" in message
        assert "resources.2.attributes.port" in message

    def test_structural_error(self, tmp_path: Path) -> None:
        """Unknown kinds are reported with their location."""
        path = write_declaration(
            tmp_path / "edge.yaml", {"resources": [{"kind": "NLB", "name": "x"}]}
        )
        with pytest.raises(SpecLoadError, match="resources.0.kind"):
            load_spec_file(path)


class TestLoadSpec:
    """Tests for loading a declaration file or directory."""

    def test_missing_path(self, tmp_path: Path) -> None:
        """Test that a missing path raises SpecLoadError."""
        with pytest.raises(SpecLoadError, match="not found"):
            spec_files(tmp_path / "missing")

    def test_directory(self, tmp_path: Path) -> None:
        """YAML files of a directory are merged in name order."""
        declaration = edge_declaration()
        write_declaration(tmp_path / "10-alb.yaml", {"resources": declaration["resources"][:3]})
        write_declaration(tmp_path / "20-waf.yml", {"resources": declaration["resources"][3:]})
        (tmp_path / "README.md").write_text("not a declaration")

        assert [p.name for p in spec_files(tmp_path)] == ["10-alb.yaml", "20-waf.yml"]
        assert len(load_spec(tmp_path).resources) == 6

    def test_duplicates_across_files(self, tmp_path: Path) -> None:
        """The same resource declared in two files is a conflict."""
        declaration = edge_declaration()
        write_declaration(tmp_path / "a.yaml", declaration)
        write_declaration(tmp_path / "b.yaml", {"resources": [declaration["resources"][0]]})

        with pytest.raises(SpecLoadError, match="Conflicting declarations"):
            load_spec(tmp_path)

    def test_load_graph(self, tmp_path: Path) -> None:
        """load_graph() returns the validated desired graph."""
        path = write_declaration(tmp_path / "edge.yaml", edge_declaration())
        graph = load_graph(path)

        assert graph[DNS_RECORD_ID].dependencies == frozenset({ALB_ID})
        assert graph[DNS_RECORD_ID].attributes["zone_id"] == "Z123"
