"""Tests for config, prompt documents, knowledge documents and atomic JSON I/O."""

import json

import pytest

from questline import storage
from questline.storage.core import read_json, write_json


class TestConfig:
    def test_defaults(self):
        config = storage.get_config()
        assert config == storage.CONFIG_DEFAULTS
        assert config is not storage.CONFIG_DEFAULTS

    def test_update_merges_known_fields(self):
        result = storage.update_config({"knowledgeMaxDocs": 5, "bogus": True})
        assert result["knowledgeMaxDocs"] == 5
        assert "bogus" not in result
        assert storage.get_config()["voiceModel"] == "claude-3-5-sonnet"

    def test_stored_null_keeps_default(self):
        (storage.data_dir() / "config.json").write_text(json.dumps({"brainModel": None}))
        assert storage.get_config()["brainModel"] == "gpt-4o-mini"


class TestPromptDocuments:
    def test_missing(self):
        assert storage.get_prompt_document("classic") is None

    def test_save_merges(self):
        storage.save_prompt_document("classic", {"worldId": "classic", "brainPrompt": "A"})
        doc = storage.save_prompt_document("classic", {"voicePrompt": None})
        assert doc == {"worldId": "classic", "brainPrompt": "A", "voicePrompt": None}
        assert storage.get_prompt_document("classic") == doc


class TestKnowledgeDocuments:
    def test_add_assigns_ids_and_enabled(self):
        first = storage.add_knowledge_document({"name": "A", "worldModule": "global", "content": "x"})
        second = storage.add_knowledge_document({"name": "B", "worldModule": "global", "content": "y", "enabled": False})
        assert (first["id"], second["id"]) == (1, 2)
        assert first["enabled"] is True
        assert second["enabled"] is False
        assert [d["name"] for d in storage.get_knowledge_documents()] == ["A", "B"]


class TestJsonIO:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "doc.json"
        write_json(path, {"a": [1, 2]})
        assert read_json(path) == {"a": [1, 2]}
        # no temp files left behind
        assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]

    def test_missing_returns_default(self, tmp_path):
        assert read_json(tmp_path / "none.json", []) == []

    def test_corrupt_raises_storage_error(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{oops")
        with pytest.raises(storage.StorageError):
            read_json(path)


def test_slugify():
    assert storage.slugify("The Cursed Tavern") == "the-cursed-tavern"
    assert storage.slugify("Ayla's Run!") == "aylas-run"
    assert storage.slugify("???") == "untitled"
