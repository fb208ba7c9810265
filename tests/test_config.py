"""Tests for configuration loading (mintctl.config)."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from keyring.errors import KeyringError
from solders.keypair import Keypair

from mintctl.config import (
    get_ipfs_credentials,
    load_keypair,
    load_upload_config,
    resolve_rpc_url,
)
from mintctl.exceptions import ConfigurationError
from mintctl.models import StorageKind


# ======================================================================
# Upload tunables
# ======================================================================


class TestLoadUploadConfig:
    """JSON file plus CLI overrides."""

    def test_defaults_when_file_missing(self, tmp_path: Path):
        config = load_upload_config(tmp_path / "missing.json")

        assert config.storage == StorageKind.ARWEAVE
        assert config.chunk_size == 50
        assert config.max_concurrency == 50
        assert config.verify_on_chain is True

    def test_file_values_and_unknown_keys(self, tmp_path: Path):
        path = tmp_path / "upload.json"
        path.write_text(json.dumps({"chunk_size": 8, "storage": "aws", "colour": "blue"}))

        config = load_upload_config(path)

        assert config.chunk_size == 8
        assert config.max_concurrency == 8
        assert config.storage == StorageKind.AWS

    def test_overrides_win_unless_none(self, tmp_path: Path):
        path = tmp_path / "upload.json"
        path.write_text(json.dumps({"chunk_size": 8, "upload_attempts": 7}))

        config = load_upload_config(path, chunk_size=3, upload_attempts=None)

        assert config.chunk_size == 3
        assert config.upload_attempts == 7

    def test_invalid_storage(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="'arweave', 'ipfs', or 'aws'"):
            load_upload_config(tmp_path / "missing.json", storage="filecoin")

    def test_invalid_lines_per_transaction(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="lines_per_transaction"):
            load_upload_config(tmp_path / "missing.json", lines_per_transaction=11)

    def test_malformed_json(self, tmp_path: Path):
        path = tmp_path / "upload.json"
        path.write_text('{"chunk_size": 8,')

        with pytest.raises(ConfigurationError, match="not valid JSON"):
            load_upload_config(path)

    def test_top_level_must_be_object(self, tmp_path: Path):
        path = tmp_path / "upload.json"
        path.write_text("[8]")

        with pytest.raises(ConfigurationError, match="JSON object"):
            load_upload_config(path)

    def test_wrong_value_type(self, tmp_path: Path):
        path = tmp_path / "upload.json"
        path.write_text(json.dumps({"chunk_size": "ten"}))

        with pytest.raises(ConfigurationError, match="wrong type"):
            load_upload_config(path)

    def test_shipped_config_is_valid(self):
        path = Path(__file__).parent.parent / "config" / "upload_config.json"
        assert load_upload_config(path).chunk_size >= 1


# ======================================================================
# Cluster, keypair, credentials
# ======================================================================


class TestResolveRpcUrl:
    def test_known_env(self):
        assert resolve_rpc_url("devnet") == "https://api.devnet.solana.com"

    def test_custom_url_wins(self):
        assert resolve_rpc_url("devnet", "http://localhost:8899") == "http://localhost:8899"

    def test_unknown_env(self):
        with pytest.raises(ConfigurationError, match="Unknown env"):
            resolve_rpc_url("localnet")


class TestLoadKeypair:
    def test_reads_solana_cli_format(self, tmp_path: Path):
        keypair = Keypair()
        path = tmp_path / "id.json"
        path.write_text(json.dumps(list(bytes(keypair))))

        assert load_keypair(path).pubkey() == keypair.pubkey()

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_keypair(tmp_path / "id.json")

    def test_malformed_file(self, tmp_path: Path):
        path = tmp_path / "id.json"
        path.write_text(json.dumps([1, 2, 3]))

        with pytest.raises(ConfigurationError, match="not a valid keypair"):
            load_keypair(path)


class TestIpfsCredentials:
    """Argument, then keyring, then environment."""

    def test_arguments_win(self):
        with patch("mintctl.config.keyring.get_password", return_value="stored"):
            assert get_ipfs_credentials("pid", "sec") == ("pid", "sec")

    def test_keyring_used(self):
        with patch("mintctl.config.keyring.get_password", side_effect=["pid", "sec"]):
            assert get_ipfs_credentials() == ("pid", "sec")

    def test_env_fallback(self, monkeypatch):
        monkeypatch.setenv("MINTCTL_IPFS_PROJECT_ID", "env-pid")
        monkeypatch.setenv("MINTCTL_IPFS_SECRET", "env-sec")
        with patch("mintctl.config.keyring.get_password", return_value=None):
            assert get_ipfs_credentials() == ("env-pid", "env-sec")

    def test_keyring_failure_falls_back(self, monkeypatch):
        monkeypatch.setenv("MINTCTL_IPFS_PROJECT_ID", "env-pid")
        monkeypatch.delenv("MINTCTL_IPFS_SECRET", raising=False)
        with patch("mintctl.config.keyring.get_password", side_effect=KeyringError("locked")):
            assert get_ipfs_credentials() == ("env-pid", None)
