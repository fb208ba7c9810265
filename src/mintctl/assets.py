"""Asset directory discovery.

An asset directory holds ``0.png``/``0.json`` through ``N-1.png``/``N-1.json``.
Discovery pairs the files by index and checks the set is complete before any
upload begins, since the item set size is fixed from that point on.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mintctl.constants import EXTENSION_JSON, EXTENSION_PNG
from mintctl.exceptions import ConfigurationError
from mintctl.models import Item

logger = logging.getLogger(__name__)


@dataclass
class AssetSet:
    """Ordered items plus the config capacity to reserve for them."""

    items: list[Item]
    capacity: int

    def __len__(self) -> int:
        return len(self.items)


def _indexed_files(directory: Path, extension: str) -> dict[int, Path]:
    found: dict[int, Path] = {}
    for path in directory.iterdir():
        if path.name.startswith(".") or not path.is_file():
            continue
        if path.suffix.lower() != extension:
            continue
        try:
            index = int(path.stem)
        except ValueError:
            logger.warning("Skipping %s: file name is not an item index", path.name)
            continue
        found[index] = path
    return found


def discover_items(directory: Path, number: int | None = None) -> AssetSet:
    """Pair images with metadata files in *directory*.

    Args:
        directory: Folder containing ``<index>.png`` and ``<index>.json``.
        number: Optional config capacity.  May exceed the number of pairs
            found, never undercut it.

    Returns:
        :class:`AssetSet` with items sorted by index.

    Raises:
        ConfigurationError: On a missing directory, mismatched counts, gaps
            in the index sequence or a *number* below the pair count.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Asset directory not found: {directory}")

    images = _indexed_files(directory, EXTENSION_PNG)
    manifests = _indexed_files(directory, EXTENSION_JSON)

    if len(images) != len(manifests):
        raise ConfigurationError(
            f"number of png files ({len(images)}) is different than the "
            f"number of json files ({len(manifests)})"
        )
    if not images:
        raise ConfigurationError(f"No <index>.png / <index>.json pairs found in {directory}")

    expected = set(range(len(images)))
    if set(images) != expected or set(manifests) != expected:
        problems = sorted((expected ^ set(images)) | (expected ^ set(manifests)))
        raise ConfigurationError(
            f"Asset indexes must run 0..{len(images) - 1} with one png and one json each; "
            f"problem indexes: {problems[:10]}"
        )

    capacity = number if number else len(images)
    if capacity < len(images):
        raise ConfigurationError(
            f"max number ({capacity}) cannot be smaller than the number of "
            f"elements in the source folder ({len(images)})"
        )

    items = [Item(i, images[i], manifests[i]) for i in sorted(images)]
    logger.info("Discovered %d (png+json) pairs in %s", len(items), directory)
    return AssetSet(items=items, capacity=capacity)


def load_manifest(item: Item) -> dict[str, Any]:
    """Parse an item's metadata file.

    Raises:
        ConfigurationError: If the file is not a JSON object.
    """
    try:
        data = json.loads(item.read_manifest())
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read metadata {item.manifest_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Metadata {item.manifest_path} must be a JSON object")
    return data
