"""Data models and enums for the upload-and-register pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from mintctl.constants import MAX_LINES_PER_TRANSACTION


class StorageKind(str, Enum):
    """Storage backends an operator can select with ``--storage``."""

    ARWEAVE = "arweave"
    IPFS = "ipfs"
    AWS = "aws"


@dataclass(frozen=True, slots=True)
class Item:
    """One image + metadata pair, identified by its zero-based index."""

    index: int
    image_path: Path
    manifest_path: Path

    def read_image(self) -> bytes:
        return self.image_path.read_bytes()

    def read_manifest(self) -> bytes:
        return self.manifest_path.read_bytes()


@dataclass(slots=True)
class ItemResult:
    """Outcome of uploading a single item.

    Exactly one of ``link`` and ``error`` is set.
    """

    index: int
    link: str | None = None
    name: str | None = None
    error: str | None = None
    attempts: int = 0
    fatal: bool = False

    @property
    def ok(self) -> bool:
        return self.link is not None


@dataclass
class UploadConfig:
    """Tunables for the upload pipeline.

    ``chunk_size`` bounds how many uploads are planned together and
    ``max_concurrency`` how many are in flight at once (defaults to
    ``chunk_size``).  Neither affects correctness.
    """

    storage: StorageKind = StorageKind.ARWEAVE
    chunk_size: int = 50
    max_concurrency: int | None = None
    chunks_per_pass: int | None = None
    upload_attempts: int = 3
    upload_timeout_seconds: float = 60.0
    upload_backoff_seconds: float = 1.0
    ledger_attempts: int = 5
    confirm_timeout_seconds: float = 60.0
    ledger_backoff_seconds: float = 2.0
    pass_backoff_seconds: float = 5.0
    lines_per_transaction: int = MAX_LINES_PER_TRANSACTION
    verify_on_chain: bool = True
    is_mutable: bool = True
    retain_authority: bool = True
    max_number_of_lines: int | None = None

    def __post_init__(self) -> None:
        if isinstance(self.storage, str):
            try:
                self.storage = StorageKind(self.storage)
            except ValueError:
                raise ValueError(
                    "Storage option must either be 'arweave', 'ipfs', or 'aws'."
                ) from None
        if self.max_concurrency is None:
            self.max_concurrency = self.chunk_size
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if not 1 <= self.lines_per_transaction <= MAX_LINES_PER_TRANSACTION:
            raise ValueError(
                f"lines_per_transaction must be between 1 and {MAX_LINES_PER_TRANSACTION}"
            )


@dataclass
class PassReport:
    """What one reconciliation pass achieved."""

    total: int
    uploaded: int = 0
    registered: int = 0
    remaining: int = 0
    state: str = "scanning"
    failed: dict[int, str] = field(default_factory=dict)
    fatal: set[int] = field(default_factory=set)
    corrected: int = 0

    @property
    def complete(self) -> bool:
        return self.state == "done"

    @property
    def only_fatal_failures(self) -> bool:
        """True when items failed and none of the failures can clear on retry."""
        return bool(self.failed) and self.fatal >= set(self.failed)
