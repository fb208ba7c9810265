"""Configuration loading: upload tunables, secrets, cluster endpoints, keypairs."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from solders.keypair import Keypair

from mintctl.constants import CLUSTER_URLS
from mintctl.exceptions import ConfigurationError
from mintctl.models import UploadConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "mintctl"
IPFS_PROJECT_ID_KEY = "ipfs_project_id"
IPFS_SECRET_KEY = "ipfs_secret"

IPFS_PROJECT_ID_ENV = "MINTCTL_IPFS_PROJECT_ID"
IPFS_SECRET_ENV = "MINTCTL_IPFS_SECRET"

DEFAULT_UPLOAD_CONFIG = Path("config/upload_config.json")


def get_ipfs_credentials(
    project_id: str | None = None, secret: str | None = None
) -> tuple[str | None, str | None]:
    """Resolve Infura IPFS credentials.

    Precedence per value: explicit argument, system keyring
    (service ``mintctl``), then the ``MINTCTL_IPFS_*`` environment variables.
    Missing values come back as ``None``; the storage factory decides whether
    that is an error for the selected backend.
    """
    if not project_id:
        project_id = _keyring_value(IPFS_PROJECT_ID_KEY) or os.environ.get(IPFS_PROJECT_ID_ENV)
    if not secret:
        secret = _keyring_value(IPFS_SECRET_KEY) or os.environ.get(IPFS_SECRET_ENV)
    return project_id, secret


def _keyring_value(key: str) -> str | None:
    try:
        return keyring.get_password(SERVICE_NAME, key)
    except KeyringError as exc:
        logger.debug("Keyring unavailable for %s: %s", key, exc)
        return None


def set_ipfs_credentials(project_id: str, secret: str) -> None:
    keyring.set_password(SERVICE_NAME, IPFS_PROJECT_ID_KEY, project_id)
    keyring.set_password(SERVICE_NAME, IPFS_SECRET_KEY, secret)


def remove_ipfs_credentials() -> None:
    for key in (IPFS_PROJECT_ID_KEY, IPFS_SECRET_KEY):
        try:
            keyring.delete_password(SERVICE_NAME, key)
        except PasswordDeleteError:
            pass


def resolve_rpc_url(env: str, rpc_url: str | None = None) -> str:
    """Return *rpc_url* if given, else the public endpoint for *env*.

    Raises:
        ConfigurationError: If *env* is unknown and no custom URL is given.
    """
    if rpc_url:
        return rpc_url
    try:
        return CLUSTER_URLS[env]
    except KeyError:
        raise ConfigurationError(
            f"Unknown env {env!r}. Choose from: {', '.join(CLUSTER_URLS)} "
            "or pass --rpc-url"
        ) from None


def load_keypair(path: Path | str) -> Keypair:
    """Load a Solana CLI keypair file (JSON array of 64 byte values).

    Raises:
        ConfigurationError: If the file is missing or malformed.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigurationError(f"Keypair file not found: {path} (pass --keypair)")
    try:
        raw = json.loads(path.read_text())
        return Keypair.from_bytes(bytes(raw))
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"Keypair file {path} is not a valid keypair: {exc}") from exc


def load_upload_config(config_path: Path | None = None, **overrides: object) -> UploadConfig:
    """Load upload tunables from JSON, falling back to defaults.

    Reads ``config/upload_config.json`` when *config_path* is ``None`` and
    the file exists.  Unknown keys are ignored.  Keyword *overrides* whose
    value is not ``None`` win over the file (CLI flags).

    Raises:
        ConfigurationError: If the file is not a JSON object or a value is
            out of range or of the wrong type.
    """
    if config_path is None:
        config_path = DEFAULT_UPLOAD_CONFIG

    data: dict = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Upload config {config_path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Upload config {config_path} must be a JSON object")

    field_names = {f.name for f in UploadConfig.__dataclass_fields__.values()}
    kwargs = {k: v for k, v in data.items() if k in field_names}
    kwargs.update({k: v for k, v in overrides.items() if k in field_names and v is not None})

    try:
        return UploadConfig(**kwargs)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    except TypeError as exc:
        raise ConfigurationError(f"Upload config {config_path} has a value of the wrong type: {exc}") from exc
