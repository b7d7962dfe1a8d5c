"""Export session: runs the optimizer, planner and sync engine together.

The three loops share one :class:`~memorybook.store.BookStore` and one
stop event. Each loop keeps a single unit of work in flight; the store
is the only thing they communicate through.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from memorybook._loop import wait_for_any
from memorybook.cache import ItemCache
from memorybook.encoding.gateway import EncodingGateway
from memorybook.exceptions import OversizedItemError
from memorybook.models import BookState, OptimizationProgress, SyncConfig
from memorybook.optimizer import BackgroundOptimizer
from memorybook.planner import ChunkPlanner
from memorybook.progress import SessionProgressTracker
from memorybook.remote.base import RemoteStore
from memorybook.remote.circuit_breaker import RollingWindowCircuitBreaker
from memorybook.store import BookStore
from memorybook.sync.engine import SyncEngine
from memorybook.sync.records import SyncRecordStore

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 5.0


class ExportSession:
    """Lifecycle owner of the three background loops.

    Usage::

        async with ExportSession(store, gateway, remote, config) as session:
            settled = await session.wait_until_settled(timeout=300)
            print(session.chunk_plan(), session.sync_status())

    Args:
        store: Shared book state.
        gateway: Encoding gateway for all three loops.
        remote: Upload destination for the sync engine.
        config: Tick intervals and sync policies.
        records: Optional persistent sync record store.
        progress: Optional Rich progress tracker.
        on_violation: Called when a committed plan holds oversized items.
        circuit_breaker: Breaker shared with the remote adapter.
    """

    def __init__(
        self,
        store: BookStore,
        gateway: EncodingGateway,
        remote: RemoteStore,
        config: SyncConfig | None = None,
        records: SyncRecordStore | None = None,
        progress: SessionProgressTracker | None = None,
        on_violation: Callable[[OversizedItemError], None] | None = None,
        circuit_breaker: RollingWindowCircuitBreaker | None = None,
    ) -> None:
        self._store = store
        self._config = config or SyncConfig()
        self._progress = progress

        self.optimizer = BackgroundOptimizer(
            store, gateway, interval=self._config.optimizer_interval
        )
        self.planner = ChunkPlanner(
            store,
            gateway,
            interval=self._config.planner_interval,
            settle_seconds=self._config.planner_settle_seconds,
            on_violation=on_violation,
        )
        self.engine = SyncEngine(
            store,
            gateway,
            remote,
            self._config,
            records=records,
            progress=progress,
            circuit_breaker=circuit_breaker,
        )

        self._stop_event: asyncio.Event | None = None
        self._changed: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []
        self._subscriptions: list[Any] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted records and launch the three loops."""
        if self._tasks:
            raise RuntimeError("Session already started")

        await self.engine.restore()
        self._stop_event = asyncio.Event()
        self._changed = asyncio.Event()
        self._subscriptions.append(self._store.subscribe(self._on_change))

        self._tasks = [
            asyncio.create_task(self.optimizer.run(self._stop_event), name="optimizer"),
            asyncio.create_task(self.planner.run(self._stop_event), name="planner"),
            asyncio.create_task(self.engine.run(self._stop_event), name="sync"),
        ]
        logger.info(
            "Session started for %s (%d item(s))",
            self._store.book.title,
            len(self._store.book.items),
        )

    async def close(self) -> None:
        """Stop the loops, waiting briefly for in-flight work, then cancel."""
        if self._stop_event is not None:
            self._stop_event.set()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=SHUTDOWN_TIMEOUT_SECONDS)
            for task in pending:
                logger.warning("Cancelling %s loop after shutdown timeout", task.get_name())
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "%s loop failed: %s",
                        task.get_name(),
                        task.exception(),
                    )
            self._tasks = []

        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()
        logger.info(
            "Session closed: %d refreshed, %d uploaded, %d upload failure(s)",
            self.optimizer.refreshed,
            self.engine.uploads,
            self.engine.failures,
        )

    async def __aenter__(self) -> ExportSession:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _on_change(self, state: BookState) -> None:
        if self._changed is not None:
            self._changed.set()
        if self._progress is not None:
            self._progress.update_optimization(ItemCache.progress(state))
            if state.plan is not None:
                self._progress.set_plan(state.plan)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def chunk_plan(self) -> list[dict[str, Any]] | None:
        """Current plan view, or None while not yet planned."""
        plan = self._store.state.plan
        return plan.view() if plan is not None else None

    def sync_status(self) -> list[dict[str, Any]]:
        return self.engine.status_view()

    def optimization_progress(self) -> OptimizationProgress:
        return ItemCache.progress(self._store.state)

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------

    def is_settled(self) -> bool:
        """Nothing to optimize, the plan is current and every eligible chunk is synced."""
        state = self._store.state
        if not self.optimizer.is_idle or not self.planner.is_current(state):
            return False
        if self.engine.folder_id(state) is None:
            return True
        return self.engine.is_settled(state)

    def _raise_if_failed(self) -> None:
        for task in self._tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]

    async def wait_until_settled(self, timeout: float | None = None) -> bool:
        """Wait until :meth:`is_settled` holds.

        Returns:
            True once settled, False if *timeout* elapsed first.

        Raises:
            RuntimeError: If the session was not started.
            Exception: Whatever error ended one of the loops.
        """
        if self._changed is None or self._stop_event is None:
            raise RuntimeError("Session not started")

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.is_settled():
            self._raise_if_failed()
            if self._stop_event.is_set():
                return False
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            self._changed.clear()
            # Time-based conditions (planner settle) change without a store write.
            wait = 0.25 if remaining is None else min(0.25, remaining)
            await wait_for_any(self._changed, self._stop_event, timeout=wait)
        return True
