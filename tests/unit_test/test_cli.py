"""Unit tests for the pipeline manager CLI"""

import json
from unittest.mock import patch

import yaml

from fake_backends import SIMPLE_SCHEMA
from xjoin.cli import pipeline_manager


class TestLoadDefinition:
    def test_bare_definition(self, tmp_path):
        path = tmp_path / "p1.yaml"
        path.write_text(yaml.safe_dump({"name": "p1", "avro_schema": json.dumps(SIMPLE_SCHEMA), "pause": True}))

        definition = pipeline_manager.load_definition(str(path))

        assert definition.name == "p1"
        assert definition.pause is True

    def test_manifest(self, tmp_path):
        path = tmp_path / "p1.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "kind": "XJoinIndexPipeline",
                    "metadata": {"name": "p1"},
                    "spec": {"avro_schema": SIMPLE_SCHEMA, "custom_subgraph_images": [{"name": "x1", "image": "img"}]},
                }
            )
        )

        definition = pipeline_manager.load_definition(str(path))

        assert definition.name == "p1"
        assert definition.kind == "XJoinIndexPipeline"
        assert definition.custom_subgraph_images[0].name == "x1"


class TestCommands:
    def test_apply_then_delete(self, tmp_path, store, capsys):
        path = tmp_path / "p1.json"
        path.write_text(json.dumps({"name": "p1", "avro_schema": SIMPLE_SCHEMA}))

        with patch.object(pipeline_manager, "get_store", return_value=store):
            with patch("sys.argv", ["pipeline_manager", "apply", "-f", str(path)]):
                assert pipeline_manager.main() == 0
            assert store.get("p1") is not None

            with patch("sys.argv", ["pipeline_manager", "delete", "p1"]):
                assert pipeline_manager.main() == 0

        assert store.get("p1") is None
        assert "deleted" in capsys.readouterr().out

    def test_status_of_missing_pipeline_fails(self, store):
        with patch.object(pipeline_manager, "get_store", return_value=store):
            with patch("sys.argv", ["pipeline_manager", "status", "missing"]):
                assert pipeline_manager.main() == 1

    def test_no_command_prints_help(self):
        with patch("sys.argv", ["pipeline_manager"]):
            assert pipeline_manager.main() == 1
