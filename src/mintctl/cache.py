"""Persistent cache of per-item upload and registration status.

One JSON file per ``(cache name, env)`` pair is the only local mutable
ledger and the single source of resumability.  Writes are atomic (write to
``.tmp``, fsync, then ``os.replace``) so an interrupted save never leaves a
partial file behind.

File layout::

    {
      "program": {"uuid": "AbC123", "config": "<pubkey>", "candyMachine": "<pubkey>"},
      "items": {"0": {"link": "https://...", "name": "#0", "onChain": true}}
    }

Concurrent invocations against the same cache file are unsupported; nothing
here locks the file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from mintctl.constants import CACHE_PATH
from mintctl.exceptions import CacheCorruptError, CacheNotFoundError, ConfigurationError

logger = logging.getLogger(__name__)


class CacheItem(BaseModel):
    """Status of one item.  ``on_chain`` implies ``link`` is set."""

    model_config = ConfigDict(populate_by_name=True)

    link: str | None = None
    name: str | None = None
    on_chain: bool = Field(default=False, alias="onChain")


class ProgramInfo(BaseModel):
    """Addresses of the on-chain objects; each is written exactly once."""

    model_config = ConfigDict(populate_by_name=True)

    uuid: str | None = None
    config: str | None = None
    candy_machine: str | None = Field(default=None, alias="candyMachine")


class CacheDocument(BaseModel):
    """In-memory form of a cache file."""

    model_config = ConfigDict(populate_by_name=True)

    program: ProgramInfo = Field(default_factory=ProgramInfo)
    items: dict[str, CacheItem] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_keys(cls, data: Any) -> Any:
        # Older cache files kept the candy machine address at the top level.
        if isinstance(data, dict) and "candyMachineAddress" in data:
            data = dict(data)
            legacy = data.pop("candyMachineAddress")
            program = dict(data.get("program") or {})
            program.setdefault("candyMachine", legacy)
            data["program"] = program
        return data

    # ------------------------------------------------------------------
    # Item access
    # ------------------------------------------------------------------

    def get(self, index: int) -> CacheItem | None:
        return self.items.get(str(index))

    def entry(self, index: int) -> CacheItem:
        """Return the entry for *index*, creating an empty one if needed."""
        key = str(index)
        if key not in self.items:
            self.items[key] = CacheItem()
        return self.items[key]

    def indexes(self) -> list[int]:
        return sorted(int(k) for k in self.items)

    def record_upload(self, index: int, link: str, name: str | None) -> None:
        entry = self.entry(index)
        entry.link = link
        entry.name = name
        entry.on_chain = False

    def mark_on_chain(self, index: int) -> None:
        entry = self.entry(index)
        if not entry.link:
            raise ValueError(f"item {index} has no link and cannot be on chain")
        entry.on_chain = True

    @property
    def is_fully_on_chain(self) -> bool:
        return bool(self.items) and all(e.on_chain for e in self.items.values())

    # ------------------------------------------------------------------
    # Write-once program fields
    # ------------------------------------------------------------------

    def set_program(self, uuid: str, config: str) -> None:
        """Record the config account created for this cache.

        Raises:
            ConfigurationError: If a different config is already recorded.
        """
        current = self.program
        if current.config is not None and (current.config, current.uuid) != (config, uuid):
            raise ConfigurationError(
                f"Cache already points at config {current.config} (uuid {current.uuid}); "
                f"refusing to overwrite with {config}"
            )
        current.uuid = uuid
        current.config = config

    def set_candy_machine(self, address: str) -> None:
        current = self.program.candy_machine
        if current is not None and current != address:
            raise ConfigurationError(
                f"Cache already points at candy machine {current}; "
                f"refusing to overwrite with {address}"
            )
        self.program.candy_machine = address

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), indent=2)


class CacheStore:
    """Loads and atomically saves cache documents under *cache_dir*.

    Usage::

        store = CacheStore(Path(".cache"))
        doc = store.load_or_create("temp", "devnet")
        doc.record_upload(0, "https://arweave.net/abc", "#0")
        store.save("temp", "devnet", doc)
    """

    def __init__(self, cache_dir: Path | str = CACHE_PATH) -> None:
        self.cache_dir = Path(cache_dir)

    def path_for(self, name: str, env: str) -> Path:
        return self.cache_dir / f"{env}-{name}"

    def exists(self, name: str, env: str) -> bool:
        return self.path_for(name, env).exists()

    def load(self, name: str, env: str) -> CacheDocument:
        """Load the cache for ``(name, env)``.

        Raises:
            CacheNotFoundError: If no cache file exists yet.
            CacheCorruptError: If the file is not a valid cache document.
        """
        path = self.path_for(name, env)
        if not path.exists():
            raise CacheNotFoundError(
                f"No cache found at {path}. Run 'mintctl upload' with "
                f"--cache-name {name} --env {env} first."
            )
        try:
            return CacheDocument.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise CacheCorruptError(f"Cache file {path} is invalid: {exc}") from exc

    def load_or_create(self, name: str, env: str) -> CacheDocument:
        """Load the cache, or return an empty seed document on first run."""
        try:
            return self.load(name, env)
        except CacheNotFoundError:
            logger.info("No cache for %s/%s yet, starting fresh", env, name)
            return CacheDocument()

    def save(self, name: str, env: str, document: CacheDocument) -> None:
        """Atomically replace the cache file with *document*."""
        path = self.path_for(name, env)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(document.to_json())
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
        logger.debug("Saved cache %s (%d items)", path, len(document.items))
