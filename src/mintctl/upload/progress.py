"""Rich progress display for a reconciliation pass.

Three rows:

* **Uploads** -- items uploaded (or failed) out of those missing a link
* **Chunk** -- progress within the current chunk
* **Registered** -- config lines confirmed on chain
"""

from __future__ import annotations

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)


class UploadProgressTracker:
    """Rich progress tracker driven by the scheduler and reconciliation loop.

    Usage::

        tracker = UploadProgressTracker(to_upload=120, to_register=150)
        with tracker:
            tracker.start_chunk(1, 50)
            tracker.item_uploaded(0)
            tracker.lines_registered(10)
    """

    def __init__(self, to_upload: int = 0, to_register: int = 0) -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeRemainingColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
        )
        self._upload_task: TaskID = self._progress.add_task(
            "[green]Uploads", total=to_upload, status=""
        )
        self._register_task: TaskID = self._progress.add_task(
            "[magenta]Registered", total=to_register, status=""
        )
        self._chunk_task: TaskID | None = None

        self._stats: dict[str, int] = {
            "uploaded": 0,
            "failed": 0,
            "retried": 0,
            "registered": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()

    def stop(self) -> None:
        self._progress.stop()

    def set_totals(self, to_upload: int, to_register: int) -> None:
        """Reset the Uploads and Registered rows for a new pass."""
        self._progress.update(self._upload_task, total=to_upload, completed=0, status="")
        self._progress.update(self._register_task, total=to_register, completed=0, status="")

    def __enter__(self) -> UploadProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Chunk tracking
    # ------------------------------------------------------------------

    def start_chunk(self, chunk_number: int, chunk_size: int) -> None:
        """Replace the chunk row with a fresh one for *chunk_number*."""
        if self._chunk_task is not None:
            self._progress.update(self._chunk_task, visible=False)
        self._chunk_task = self._progress.add_task(
            f"[blue]Chunk {chunk_number}", total=chunk_size, status="uploading"
        )

    def complete_chunk(self, chunk_number: int) -> None:
        if self._chunk_task is not None:
            self._progress.update(self._chunk_task, status=f"chunk {chunk_number} saved")

    # ------------------------------------------------------------------
    # Item events
    # ------------------------------------------------------------------

    def item_uploaded(self, index: int) -> None:
        self._stats["uploaded"] += 1
        self._advance(f"#{index}")

    def item_failed(self, index: int, error: str) -> None:
        self._stats["failed"] += 1
        self._advance(f"[red]FAIL[/red] #{index}")

    def item_retrying(self, index: int) -> None:
        self._stats["retried"] += 1
        self._progress.update(self._upload_task, status=f"[yellow]retrying #{index}[/yellow]")

    def lines_registered(self, count: int) -> None:
        self._stats["registered"] += count
        self._progress.advance(self._register_task, count)

    def _advance(self, status: str) -> None:
        for task in (self._upload_task, self._chunk_task):
            if task is not None:
                self._progress.advance(task, 1)
                self._progress.update(task, status=status)

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the current statistics."""
        return dict(self._stats)
