"""
Unit tests for the Avro schema helpers.
"""

import json

import pytest

from fake_backends import JSON_SCHEMA, SIMPLE_SCHEMA
from xjoin import avro
from xjoin.exceptions import ValidationError

NESTED_SCHEMA = {
    "type": "record",
    "name": "Value",
    "fields": [
        {"name": "id", "type": "string"},
        {
            "name": "system",
            "type": {
                "type": "record",
                "name": "System",
                "fields": [
                    {"name": "profile", "type": ["null", "string"], "xjoin.type": "json"},
                    {"name": "cores", "type": "int"},
                ],
            },
        },
    ],
}


class TestParseSchema:
    def test_accepts_text_and_dict(self):
        assert avro.parse_schema(json.dumps(SIMPLE_SCHEMA)) == SIMPLE_SCHEMA
        assert avro.parse_schema(SIMPLE_SCHEMA) is SIMPLE_SCHEMA

    def test_rejects_invalid_json(self):
        with pytest.raises(ValidationError):
            avro.parse_schema("{not json")

    def test_rejects_non_record(self):
        with pytest.raises(ValidationError):
            avro.parse_schema({"type": "string"})


class TestJsonFields:
    """Detection of semi-structured fields drives the ingest pipeline."""

    def test_no_json_fields(self):
        assert avro.json_field_paths(SIMPLE_SCHEMA) == []
        assert not avro.has_json_fields(SIMPLE_SCHEMA)

    def test_top_level_json_field(self):
        assert avro.json_field_paths(JSON_SCHEMA) == ["facts"]

    def test_nested_json_field(self):
        assert avro.json_field_paths(NESTED_SCHEMA) == ["system.profile"]

    def test_processors_are_null_guarded(self):
        assert avro.ingest_pipeline_processors(NESTED_SCHEMA) == [
            {"json": {"field": "system.profile", "if": "ctx.system?.profile != null"}}
        ]


class TestElasticsearchMapping:
    def test_mapping_types(self):
        mapping = avro.elasticsearch_mapping(NESTED_SCHEMA)
        assert mapping["dynamic"] == "false"
        assert mapping["properties"] == {
            "id": {"type": "keyword"},
            "system": {"properties": {"profile": {"type": "object"}, "cores": {"type": "integer"}}},
        }


class TestResolveReferences:
    """Reference fields are replaced by the data source's value schema."""

    def test_inlines_reference(self):
        schema = {
            "type": "record",
            "name": "Value",
            "fields": [{"name": "host", "type": "hosts", "xjoin.type": "reference"}],
        }
        hosts = {"type": "record", "name": "Host", "fields": [{"name": "id", "type": "string"}]}

        resolved = avro.resolve_references(schema, lambda name: hosts)

        field = resolved["fields"][0]
        assert field["type"] == hosts
        assert field["xjoin.type"] == "record"
        # the input is left untouched
        assert schema["fields"][0]["xjoin.type"] == "reference"

    def test_reference_must_name_datasource(self):
        schema = {
            "type": "record",
            "name": "Value",
            "fields": [{"name": "host", "type": {"type": "map", "values": "string"}, "xjoin.type": "reference"}],
        }
        with pytest.raises(ValidationError):
            avro.resolve_references(schema, lambda name: {})


class TestGraphqlSdl:
    def test_renders_nested_types(self):
        sdl = avro.graphql_sdl(NESTED_SCHEMA, "p1")
        assert "type P1System {" in sdl
        assert "  system: P1System" in sdl
        assert "  profile: JSON" in sdl
        assert "type Query {\n  p1: [P1]\n}" in sdl
