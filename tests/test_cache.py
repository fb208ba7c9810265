"""Tests for the persistent cache (mintctl.cache)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mintctl.cache import CacheDocument, CacheStore
from mintctl.exceptions import CacheCorruptError, CacheNotFoundError, ConfigurationError


# ======================================================================
# CacheDocument
# ======================================================================


class TestCacheDocument:
    """Item bookkeeping and write-once program fields."""

    def test_record_upload_resets_on_chain(self):
        doc = CacheDocument()
        doc.record_upload(0, "https://a/0", "#0")
        doc.mark_on_chain(0)

        doc.record_upload(0, "https://a/0b", "#0")

        assert doc.get(0).link == "https://a/0b"
        assert not doc.get(0).on_chain

    def test_mark_on_chain_requires_link(self):
        doc = CacheDocument()
        with pytest.raises(ValueError, match="no link"):
            doc.mark_on_chain(3)

    def test_indexes_sorted_numerically(self):
        doc = CacheDocument()
        for i in (10, 2, 1):
            doc.record_upload(i, f"https://a/{i}", None)
        assert doc.indexes() == [1, 2, 10]

    def test_empty_document_not_fully_on_chain(self):
        assert not CacheDocument().is_fully_on_chain

    def test_set_program_is_write_once(self):
        doc = CacheDocument()
        doc.set_program("AbC123", "Config1")
        doc.set_program("AbC123", "Config1")

        with pytest.raises(ConfigurationError, match="refusing to overwrite"):
            doc.set_program("XyZ789", "Config2")

    def test_set_candy_machine_is_write_once(self):
        doc = CacheDocument()
        doc.set_candy_machine("Machine1")
        doc.set_candy_machine("Machine1")

        with pytest.raises(ConfigurationError):
            doc.set_candy_machine("Machine2")

    def test_json_uses_camel_case(self):
        doc = CacheDocument()
        doc.set_program("AbC123", "Config1")
        doc.record_upload(0, "https://a/0", "#0")
        doc.mark_on_chain(0)

        data = json.loads(doc.to_json())

        assert data["program"] == {"uuid": "AbC123", "config": "Config1", "candyMachine": None}
        assert data["items"]["0"] == {"link": "https://a/0", "name": "#0", "onChain": True}

    def test_legacy_candy_machine_key_migrated(self):
        doc = CacheDocument.model_validate(
            {"program": {"uuid": "AbC123", "config": "Config1"}, "candyMachineAddress": "CM1"}
        )
        assert doc.program.candy_machine == "CM1"


# ======================================================================
# CacheStore
# ======================================================================


class TestCacheStore:
    """Loading and atomic saving."""

    def test_path_is_env_dash_name(self, tmp_path: Path):
        store = CacheStore(tmp_path)
        assert store.path_for("temp", "devnet") == tmp_path / "devnet-temp"

    def test_save_then_load(self, store: CacheStore):
        doc = CacheDocument()
        doc.record_upload(4, "https://a/4", "#4")

        store.save("temp", "devnet", doc)

        assert store.exists("temp", "devnet")
        assert store.load("temp", "devnet").get(4).link == "https://a/4"

    def test_save_leaves_no_tmp_file(self, store: CacheStore):
        store.save("temp", "devnet", CacheDocument())
        assert [p.name for p in store.cache_dir.iterdir()] == ["devnet-temp"]

    def test_load_missing_raises(self, store: CacheStore):
        with pytest.raises(CacheNotFoundError, match="mintctl upload"):
            store.load("temp", "devnet")

    def test_load_or_create_returns_empty(self, store: CacheStore):
        doc = store.load_or_create("temp", "devnet")
        assert doc.items == {}
        assert not store.exists("temp", "devnet")

    def test_corrupt_file_raises(self, store: CacheStore):
        store.cache_dir.mkdir(parents=True)
        store.path_for("temp", "devnet").write_text("{not json")

        with pytest.raises(CacheCorruptError):
            store.load("temp", "devnet")

    def test_invalid_shape_raises(self, store: CacheStore):
        store.cache_dir.mkdir(parents=True)
        store.path_for("temp", "devnet").write_text(json.dumps({"items": {"0": "oops"}}))

        with pytest.raises(CacheCorruptError):
            store.load("temp", "devnet")

    def test_envs_are_separate(self, store: CacheStore):
        doc = CacheDocument()
        doc.record_upload(0, "https://a/0", "#0")
        store.save("temp", "devnet", doc)

        assert store.load_or_create("temp", "mainnet-beta").items == {}
