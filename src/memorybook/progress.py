"""Rich progress display for an export session.

Two rows: item optimization (how many items have a representation under
the current compression level) and chunk uploads, plus a status column
with the bundle currently being synced.
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from memorybook.models import Chunk, ChunkPlan, OptimizationProgress


class SessionProgressTracker:
    """Rich progress tracker fed by the session loops.

    Usage::

        with SessionProgressTracker() as tracker:
            tracker.update_optimization(progress)
            tracker.set_plan(plan)
            tracker.upload_started(chunk)
            tracker.upload_succeeded(chunk)
    """

    def __init__(self, console: Console | None = None) -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
            console=console,
        )
        self._optimize_task: TaskID | None = None
        self._upload_task: TaskID | None = None
        self._synced_parts: set[int] = set()

        self._stats: dict[str, int] = {
            "uploaded": 0,
            "failed": 0,
            "rate_limited": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._optimize_task = self._progress.add_task(
            "[green]Optimizing", total=None, status="starting..."
        )
        self._upload_task = self._progress.add_task(
            "[blue]Uploading", total=None, status="waiting for plan"
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> SessionProgressTracker:
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
    # Events
    # ------------------------------------------------------------------

    def update_optimization(self, progress: OptimizationProgress) -> None:
        if self._optimize_task is None:
            return
        status = "done" if progress.complete else f"{progress.fraction:.0%}"
        self._progress.update(
            self._optimize_task,
            total=progress.total,
            completed=progress.current,
            status=status,
        )

    def set_plan(self, plan: ChunkPlan) -> None:
        self._synced_parts &= {c.part_number for c in plan.chunks}
        if self._upload_task is not None:
            self._progress.update(
                self._upload_task,
                total=len(plan.chunks),
                completed=len(self._synced_parts),
                status=f"{len(plan.chunks)} part(s) planned",
            )

    def upload_started(self, chunk: Chunk) -> None:
        self._synced_parts.discard(chunk.part_number)
        if self._upload_task is not None:
            self._progress.update(
                self._upload_task,
                completed=len(self._synced_parts),
                status=_truncate(chunk.title),
            )

    def upload_succeeded(self, chunk: Chunk) -> None:
        self._stats["uploaded"] += 1
        self._synced_parts.add(chunk.part_number)
        if self._upload_task is not None:
            self._progress.update(
                self._upload_task,
                completed=len(self._synced_parts),
                status=f"synced {_truncate(chunk.title)}",
            )

    def upload_failed(self, chunk: Chunk, error: str, rate_limited: bool = False) -> None:
        self._stats["rate_limited" if rate_limited else "failed"] += 1
        if self._upload_task is not None:
            label = "[yellow]Rate limited[/yellow]" if rate_limited else "[red]FAIL[/red]"
            self._progress.update(
                self._upload_task,
                status=f"{label} {_truncate(chunk.title)}",
            )

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)


def _truncate(text: str, max_len: int = 40) -> str:
    if len(text) <= max_len:
        return text
    return "..." + text[-(max_len - 3) :]
