"""Tests for the tool registry."""

from __future__ import annotations

import json

import pytest

from toolexec.errors import MalformedDescriptor
from toolexec.models.artifact import Dialect
from toolexec.models.tool import ParameterType
from toolexec.services.tool_registry import ToolRegistry, normalize_descriptor, validate


class TestValidate:
    """Test pure descriptor validation."""

    def test_valid_descriptor_has_no_errors(self, raw_tools) -> None:
        issues = validate(raw_tools["echo"])
        assert [i for i in issues if i.severity == "error"] == []

    def test_missing_name_is_error(self) -> None:
        issues = validate({"description": "nameless"})
        assert any(i.severity == "error" and "no name" in i.message for i in issues)

    def test_name_with_whitespace_is_error(self) -> None:
        issues = validate({"name": "two words", "description": "x"})
        assert any("whitespace" in i.message for i in issues)

    def test_duplicate_parameter_is_error(self) -> None:
        raw = {
            "name": "dup",
            "description": "x",
            "parameters": [{"name": "a", "type": "string"}, {"name": "a", "type": "number"}],
        }
        issues = validate(raw)
        assert any("Duplicate parameter name: a" == i.message for i in issues)

    def test_missing_description_is_warning(self) -> None:
        issues = validate({"name": "quiet"})
        assert [i.severity for i in issues] == ["warning"]

    def test_validate_is_pure(self, raw_tools) -> None:
        raw = raw_tools["http_get"]
        snapshot = json.loads(json.dumps(raw))
        assert validate(raw) == validate(raw)
        assert raw == snapshot


class TestNormalizeDescriptor:
    """Test normalization of the accepted descriptor layouts."""

    def test_list_parameters(self, raw_tools) -> None:
        descriptor = normalize_descriptor(raw_tools["echo"])
        assert descriptor.name == "echo"
        assert descriptor.parameters[0].name == "text"
        assert descriptor.parameters[0].type is ParameterType.STRING
        assert descriptor.parameters[0].required is True
        assert descriptor.returns is not None
        assert descriptor.returns.type is ParameterType.STRING
        assert descriptor.implementation[Dialect.PYTHON] == "return text"

    def test_mapping_parameters_and_optional(self, raw_tools) -> None:
        descriptor = normalize_descriptor(raw_tools["http_get"])
        params = {p.name: p for p in descriptor.parameters}
        assert params["url"].required is True
        assert params["headers"].required is False
        assert params["headers"].type is ParameterType.OBJECT
        assert descriptor.returns.description == "Response body"

    def test_json_schema_parameters(self) -> None:
        raw = {
            "name": "search",
            "description": "Search documents",
            "inputSchema": {
                "type": "object",
                "properties": {"query": {"type": "string"}, "limit": {"type": "integer"}},
                "required": ["query"],
            },
        }
        descriptor = normalize_descriptor(raw)
        params = {p.name: p for p in descriptor.parameters}
        assert params["query"].required is True
        assert params["limit"].required is False
        assert params["limit"].type is ParameterType.NUMBER

    def test_unknown_type_becomes_any(self) -> None:
        raw = {"name": "odd", "parameters": {"x": {"type": "matrix"}}}
        descriptor = normalize_descriptor(raw)
        assert descriptor.parameters[0].type is ParameterType.ANY

    def test_side_effects_lowercased(self) -> None:
        raw = {"name": "writer", "description": "w", "sideEffects": ["Filesystem"]}
        assert normalize_descriptor(raw).side_effects == ("filesystem",)

    def test_malformed_raises(self) -> None:
        with pytest.raises(MalformedDescriptor):
            normalize_descriptor({"description": "no name"}, source="bad.json")

    def test_non_mapping_raises(self) -> None:
        with pytest.raises(MalformedDescriptor):
            normalize_descriptor(["not", "a", "mapping"])  # type: ignore[arg-type]

    def test_example_input_must_be_object(self, raw_tools) -> None:
        raw = {**raw_tools["echo"], "examples": [{"input": "hello"}]}
        with pytest.raises(MalformedDescriptor, match="Example input"):
            normalize_descriptor(raw)

    def test_model_errors_become_malformed(self, raw_tools) -> None:
        raw = {**raw_tools["echo"], "description": ["not", "text"]}
        with pytest.raises(MalformedDescriptor) as excinfo:
            normalize_descriptor(raw, source="echo.json")
        assert excinfo.value.source == "echo.json"


class TestToolRegistry:
    """Test registry indexing and lookups."""

    def test_index_from_directory(self, tools_dir, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        write_tool([raw_tools["http_get"], raw_tools["http_post"]], filename="http.json")
        nested = tools_dir / "fs"
        nested.mkdir()
        (nested / "read.json").write_text(json.dumps(raw_tools["file_read"]), encoding="utf-8")

        registry = ToolRegistry()
        report = registry.index_from(tools_dir)

        assert report.files_scanned == 3
        assert report.descriptors_loaded == 4
        assert report.failures == []
        assert [d.name for d in registry.all()] == ["echo", "file_read", "http_get", "http_post"]
        for descriptor in registry.all():
            assert registry.get(descriptor.name) is descriptor

    def test_malformed_descriptor_skipped(self, tools_dir, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        write_tool({"description": "missing name"}, filename="broken.json")
        (tools_dir / "garbage.json").write_text("{not json", encoding="utf-8")

        registry = ToolRegistry()
        report = registry.index_from(tools_dir)

        assert len(registry) == 1
        assert "echo" in registry
        assert len(report.failures) == 2
        assert report.total_failure is False

    @pytest.mark.parametrize(
        ("filename", "patch"),
        [
            ("bad_example.json", {"examples": [{"input": "hello", "output": "hello"}]}),
            ("bad_description.json", {"description": 42}),
            ("bad_implementation.json", {"implementation": "return text"}),
            ("bad_side_effects.json", {"side_effects": {"network": True}}),
            ("bad_parameter.json", {"parameters": {"text": {"type": "string", "description": 7}}}),
            ("bad_parameter_name.json", {"parameters": [{"name": ["text"], "type": "string"}]}),
            ("bad_schema.json", {"parameters": None, "inputSchema": {"properties": ["text"]}}),
        ],
    )
    def test_wrong_field_shape_skips_only_that_file(self, tools_dir, write_tool, raw_tools, filename, patch) -> None:
        write_tool(raw_tools["echo"])
        write_tool({**raw_tools["echo"], "name": "broken_echo", **patch}, filename=filename)

        registry = ToolRegistry()
        report = registry.index_from(tools_dir)

        assert report.descriptors_loaded == 1
        assert "echo" in registry
        assert "broken_echo" not in registry
        assert [source for source, _ in report.failures] == [str(tools_dir / filename)]

    def test_total_failure_reported(self, tools_dir) -> None:
        (tools_dir / "garbage.json").write_text("[", encoding="utf-8")
        report = ToolRegistry().index_from(tools_dir)
        assert report.total_failure is True

    def test_missing_directory_gives_empty_registry(self, tmp_path) -> None:
        registry = ToolRegistry()
        report = registry.index_from(tmp_path / "absent")
        assert len(registry) == 0
        assert report.files_scanned == 0

    def test_last_file_wins_for_duplicates(self, tools_dir, write_tool, raw_tools) -> None:
        write_tool({**raw_tools["echo"], "description": "first"}, filename="a.json")
        write_tool({**raw_tools["echo"], "description": "second"}, filename="b.json")

        registry = ToolRegistry()
        registry.index_from(tools_dir)

        assert registry.get("echo").description == "second"

    def test_index_twice_is_idempotent(self, tools_dir, write_tool, raw_tools) -> None:
        write_tool(raw_tools["echo"])
        write_tool(raw_tools["http_get"])
        registry = ToolRegistry()

        registry.index_from(tools_dir)
        first = [d.model_dump() for d in registry.all()]
        registry.index_from(tools_dir)
        second = [d.model_dump() for d in registry.all()]

        assert first == second

    def test_reindex_replaces_contents(self, tools_dir, write_tool, raw_tools) -> None:
        path = write_tool(raw_tools["echo"])
        registry = ToolRegistry()
        registry.index_from(tools_dir)
        path.unlink()
        write_tool(raw_tools["file_read"])

        registry.index_from(tools_dir)

        assert "echo" not in registry
        assert "file_read" in registry

    def test_register_and_categories(self, raw_tools) -> None:
        registry = ToolRegistry()
        registry.register(normalize_descriptor(raw_tools["http_get"]))
        registry.register(normalize_descriptor(raw_tools["http_post"]))
        registry.register(normalize_descriptor(raw_tools["file_read"]))

        assert [d.name for d in registry.by_category("network")] == ["http_get", "http_post"]
        stats = registry.get_stats()
        assert stats["total_tools"] == 3
        assert stats["categories"] == {"filesystem": 1, "network": 2}
