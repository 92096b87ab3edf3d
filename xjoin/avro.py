# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Helpers over the pipeline's Avro value schema.

Fields may carry an ``xjoin.type`` attribute. ``reference`` fields point at a
data source whose latest value schema is inlined during resolution, and
``json`` fields hold semi-structured data that Elasticsearch needs an ingest
pipeline to expand.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from xjoin.exceptions import ValidationError

logger = logging.getLogger(__name__)

XJOIN_TYPE = "xjoin.type"

# xjoin.type -> elasticsearch mapping type
_ES_TYPES = {
    "string": "keyword",
    "boolean": "boolean",
    "date_nanos": "date_nanos",
    "date": "date",
    "int": "integer",
    "integer": "integer",
    "long": "long",
    "float": "float",
    "double": "double",
    "json": "object",
}

# avro primitive -> elasticsearch mapping type, used when xjoin.type is absent
_AVRO_ES_TYPES = {
    "string": "keyword",
    "boolean": "boolean",
    "int": "integer",
    "long": "long",
    "float": "float",
    "double": "double",
}

_GRAPHQL_TYPES = {
    "keyword": "String",
    "boolean": "Boolean",
    "date_nanos": "String",
    "date": "String",
    "integer": "Int",
    "long": "Float",
    "float": "Float",
    "double": "Float",
    "object": "JSON",
}


def parse_schema(schema: Union[str, dict]) -> dict:
    """Parse a schema given as JSON text or dict, rejecting anything but a record"""
    if isinstance(schema, str):
        try:
            schema = json.loads(schema)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Avro schema is not valid JSON: {e}")
    if not isinstance(schema, dict) or schema.get("type") != "record":
        raise ValidationError("Avro schema must be a record")
    return schema


def serialize(schema: dict) -> str:
    """Compact, stable serialization used for env vars and comparisons"""
    return json.dumps(schema, separators=(",", ":"))


def _field_type(avro_field: dict) -> Any:
    field_type = avro_field.get("type")
    # nullable union ["null", X]
    if isinstance(field_type, list):
        non_null = [t for t in field_type if t != "null"]
        field_type = non_null[0] if non_null else "null"
    return field_type


def _record_of(field_type: Any) -> Optional[dict]:
    if isinstance(field_type, dict) and field_type.get("type") == "record":
        return field_type
    return None


def resolve_references(schema: dict, fetch_reference: Callable[[str], dict]) -> dict:
    """
    Inline every reference field

    Args:
        schema: parsed pipeline schema
        fetch_reference: returns the parsed value schema of a data source by name

    Returns:
        dict: a copy of the schema with reference fields replaced by records
    """
    resolved = dict(schema)
    fields = []
    for avro_field in schema.get("fields", []):
        avro_field = dict(avro_field)
        if avro_field.get(XJOIN_TYPE) == "reference":
            datasource_name = _field_type(avro_field)
            if not isinstance(datasource_name, str):
                raise ValidationError(f"Reference field {avro_field.get('name')} must name a data source")
            reference = fetch_reference(datasource_name)
            avro_field["type"] = resolve_references(parse_schema(reference), fetch_reference)
            avro_field[XJOIN_TYPE] = "record"
        else:
            record = _record_of(_field_type(avro_field))
            if record is not None:
                avro_field["type"] = resolve_references(record, fetch_reference)
        fields.append(avro_field)
    if "fields" in schema:
        resolved["fields"] = fields
    return resolved


def json_field_paths(schema: dict, parent: str = "") -> List[str]:
    """Dotted paths of every field typed as json, recursively"""
    paths = []
    for avro_field in schema.get("fields", []):
        path = f"{parent}.{avro_field['name']}" if parent else avro_field["name"]
        if avro_field.get(XJOIN_TYPE) == "json":
            paths.append(path)
            continue
        record = _record_of(_field_type(avro_field))
        if record is not None:
            paths.extend(json_field_paths(record, path))
    return paths


def has_json_fields(schema: dict) -> bool:
    return len(json_field_paths(schema)) > 0


def _es_type(avro_field: dict) -> str:
    xjoin_type = avro_field.get(XJOIN_TYPE)
    if xjoin_type in _ES_TYPES:
        return _ES_TYPES[xjoin_type]
    field_type = _field_type(avro_field)
    if isinstance(field_type, str) and field_type in _AVRO_ES_TYPES:
        return _AVRO_ES_TYPES[field_type]
    return "keyword"


def elasticsearch_properties(schema: dict) -> Dict[str, Any]:
    properties = {}
    for avro_field in schema.get("fields", []):
        record = _record_of(_field_type(avro_field))
        if record is not None and avro_field.get(XJOIN_TYPE) != "json":
            properties[avro_field["name"]] = {"properties": elasticsearch_properties(record)}
        else:
            properties[avro_field["name"]] = {"type": _es_type(avro_field)}
    return properties


def elasticsearch_mapping(schema: dict) -> Dict[str, Any]:
    return {"dynamic": "false", "properties": elasticsearch_properties(schema)}


def ingest_pipeline_processors(schema: dict) -> List[dict]:
    """One json processor per semi-structured field, guarded against nulls"""
    processors = []
    for path in json_field_paths(schema):
        guard = "ctx." + "?.".join(path.split("."))
        processors.append({"json": {"field": path, "if": f"{guard} != null"}})
    return processors


def _graphql_type_name(name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in name.replace("-", "_").split("_") if part)


def graphql_sdl(schema: dict, root_name: str) -> str:
    """Render a GraphQL SDL document describing the schema's records"""
    definitions: List[str] = []

    def render(record: dict, type_name: str):
        lines = []
        for avro_field in record.get("fields", []):
            nested = _record_of(_field_type(avro_field))
            if nested is not None and avro_field.get(XJOIN_TYPE) != "json":
                nested_name = type_name + _graphql_type_name(avro_field["name"])
                render(nested, nested_name)
                lines.append(f"  {avro_field['name']}: {nested_name}")
            else:
                lines.append(f"  {avro_field['name']}: {_GRAPHQL_TYPES.get(_es_type(avro_field), 'String')}")
        body = "\n".join(lines) if lines else "  _empty: String"
        definitions.append(f"type {type_name} {{\n{body}\n}}")

    type_name = _graphql_type_name(root_name) or "Value"
    render(schema, type_name)
    definitions.append("scalar JSON")
    definitions.append(f"type Query {{\n  {root_name.replace('-', '_')}: [{type_name}]\n}}")
    return "\n\n".join(definitions) + "\n"
