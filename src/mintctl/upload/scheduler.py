"""Chunked, bounded-concurrency upload scheduling.

Items lacking a link are sorted by index and split into fixed-size chunks.
Within a chunk uploads run concurrently, limited by ``asyncio.Semaphore``;
every call carries its own timeout.  Transient failures are retried with
exponential backoff up to the attempt bound, fatal ones are recorded
immediately.  One failed item never aborts its chunk.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mintctl.constants import MAX_URI_LENGTH
from mintctl.exceptions import NetworkError, PayloadRejectedError, UploadError, UploadTransientError
from mintctl.models import Item, ItemResult, UploadConfig
from mintctl.upload.storage import StorageBackend, parse_manifest

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Plans chunks and drives concurrent uploads for one chunk at a time.

    Usage::

        scheduler = BatchScheduler(storage, config)
        for chunk in scheduler.plan(missing_items):
            results = await scheduler.upload_chunk(chunk)

    Args:
        storage: Backend selected at startup.
        config: Upload tunables (chunk size, concurrency, attempts, timeout).
        progress: Optional Rich progress tracker (omit for headless mode).
    """

    def __init__(
        self,
        storage: StorageBackend,
        config: UploadConfig,
        progress: Any | None = None,
    ) -> None:
        self._storage = storage
        self._config = config
        self._progress = progress
        self._semaphore = asyncio.Semaphore(config.max_concurrency or config.chunk_size)

    def plan(self, items: Iterable[Item]) -> list[list[Item]]:
        """Sort *items* by index and split them into chunks."""
        ordered = sorted(items, key=lambda item: item.index)
        size = self._config.chunk_size
        return [ordered[i : i + size] for i in range(0, len(ordered), size)]

    async def upload_chunk(self, chunk: list[Item]) -> list[ItemResult]:
        """Upload every item of *chunk* and return results in index order."""
        results = await asyncio.gather(*(self._upload_item(item) for item in chunk))
        return sorted(results, key=lambda r: r.index)

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    async def _upload_item(self, item: Item) -> ItemResult:
        result = ItemResult(index=item.index)
        try:
            image = item.read_image()
            manifest = item.read_manifest()
            result.name = parse_manifest(manifest, item.index)["name"]

            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._config.upload_attempts),
                wait=wait_exponential(multiplier=self._config.upload_backoff_seconds, max=30),
                retry=retry_if_exception_type(UploadTransientError),
                before_sleep=self._log_retry(item.index),
                reraise=True,
            ):
                with attempt:
                    result.attempts = attempt.retry_state.attempt_number
                    link = await self._call_backend(image, manifest, item.index)

            if len(link.encode("utf-8")) > MAX_URI_LENGTH:
                raise PayloadRejectedError(
                    f"item {item.index}: link longer than {MAX_URI_LENGTH} bytes: {link}"
                )
            result.link = link
            if self._progress is not None:
                self._progress.item_uploaded(item.index)
        except (UploadError, OSError) as exc:
            result.error = str(exc)
            result.fatal = not isinstance(exc, UploadTransientError)
            logger.error("Upload of item %d failed after %d attempt(s): %s",
                         item.index, result.attempts, exc)
            if self._progress is not None:
                self._progress.item_failed(item.index, str(exc))
        except Exception as exc:
            result.error = f"unexpected {type(exc).__name__}: {exc}"
            result.fatal = True
            logger.exception("Upload of item %d failed unexpectedly", item.index)
            if self._progress is not None:
                self._progress.item_failed(item.index, result.error)
        return result

    async def _call_backend(self, image: bytes, manifest: bytes, index: int) -> str:
        timeout = self._config.upload_timeout_seconds
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self._storage.upload(image, manifest, index=index), timeout=timeout
                )
            except asyncio.TimeoutError:
                raise NetworkError(f"item {index}: upload exceeded {timeout:.0f}s") from None

    def _log_retry(self, index: int):
        def _before_sleep(retry_state: Any) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Item %d: attempt %d failed (%s), retrying",
                index,
                retry_state.attempt_number,
                exc,
            )
            if self._progress is not None and isinstance(exc, UploadTransientError):
                self._progress.item_retrying(index)

        return _before_sleep
