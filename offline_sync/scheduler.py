"""
Sync Scheduler

Drains the operation queue in bounded batches whenever the engine is online
and idle. A pass is triggered by the periodic timer, an offline->online
transition, a manual sync or a new enqueue while online. Only one pass runs
at a time; every delivery failure is converted into a queue status change
here and never propagates further.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .auth import TokenGuardedPipeline
from .connectivity import ConnectivityMonitor
from .errors import (
    CredentialRefreshError,
    DeliveryError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
)
from .models import Operation, OperationAction, ResourceKind, SyncResult
from .queue import OperationQueue

logger = logging.getLogger(__name__)


# =============================================================================
# Circuit Breaker
# =============================================================================

class CircuitBreaker:
    """Fixed-cooldown suspension of deliveries after a permission error."""

    def __init__(self, cooldown: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._opened_at: Optional[float] = None
        self.last_reason: Optional[str] = None

    def trip(self, reason: str) -> None:
        self._opened_at = self._clock()
        self.last_reason = reason
        logger.error(f"Permission error detected, suspending delivery for {self.cooldown:.0f}s: {reason}")

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        if self._clock() - self._opened_at >= self.cooldown:
            self._opened_at = None
            logger.info("Permission cooldown elapsed, resuming delivery")
            return False
        return True

    @property
    def remaining(self) -> float:
        """Seconds left in the current cooldown (0 when closed)."""
        if not self.is_open:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self._opened_at))

    def reset(self) -> None:
        self._opened_at = None


# =============================================================================
# Scheduler
# =============================================================================

class SyncScheduler:
    """Single-worker delivery loop over the operation queue."""

    def __init__(
        self,
        queue: OperationQueue,
        pipeline: TokenGuardedPipeline,
        connectivity: ConnectivityMonitor,
        batch_size: int = 10,
        sync_interval: float = 60.0,
        continuation_delay: float = 1.0,
        delivery_timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        on_state_change: Optional[Callable[[], None]] = None,
        on_synced: Optional[Callable[[Operation], None]] = None,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.connectivity = connectivity
        self.batch_size = batch_size
        self.sync_interval = sync_interval
        self.continuation_delay = continuation_delay
        self.delivery_timeout = delivery_timeout
        self.breaker = breaker or CircuitBreaker()
        self._on_state_change = on_state_change
        self._on_synced = on_synced

        self.pending_count = 0
        self.last_sync_time: Optional[datetime] = None

        self._guard = asyncio.Lock()
        self._syncing = False
        self._wake_requested = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False
        self._closed = False
        self._timer_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def is_running(self) -> bool:
        return self._running

    def _notify(self) -> None:
        if self._on_state_change:
            self._on_state_change()

    def refresh_pending_count(self) -> int:
        """Re-read the pending count, notifying if it changed."""
        count = self.queue.count_pending()
        if count != self.pending_count:
            self.pending_count = count
            self._notify()
        return count

    # === Lifecycle ===

    def start(self) -> None:
        """Start the periodic timer."""
        if self._running:
            logger.warning("Sync scheduler already running")
            return
        self._running = True
        self._closed = False
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Sync scheduler started (interval={self.sync_interval:.0f}s)")

    async def stop(self) -> None:
        """Stop the timer and any scheduled continuation passes."""
        self._running = False
        self._closed = True

        tasks = [t for t in (self._timer_task, *self._tasks) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timer_task = None
        self._tasks.clear()
        self._finish(notify=False)
        logger.info("Sync scheduler stopped")

    # === Triggers ===

    def trigger(self) -> Optional[asyncio.Task]:
        """Schedule a pass in the background without waiting for it."""
        if self._closed or not self.connectivity.is_online:
            return None
        if self._syncing:
            # Picked up by a follow-up pass once the current one ends
            self._wake_requested = True
            return None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return None
        return self._spawn(self.sync_pending())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def sync_pending(self) -> SyncResult:
        """Run a pass now unless offline, busy, suspended or idle-empty."""
        async with self._guard:
            if not self._can_start():
                return SyncResult.skipped()
            self._syncing = True
            self._idle.clear()
        self._notify()
        return await self._run_pass()

    def _can_start(self) -> bool:
        if self._closed or self._syncing or not self.connectivity.is_online:
            return False
        if self.breaker.is_open:
            logger.debug(f"Delivery suspended for another {self.breaker.remaining:.0f}s")
            return False
        return self.refresh_pending_count() > 0

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for the current pass and any continuation passes to finish."""

        async def _drain() -> None:
            while True:
                pending = [t for t in self._tasks if not t.done()]
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                    continue
                if self._syncing:
                    await self._idle.wait()
                    continue
                break

        await asyncio.wait_for(_drain(), timeout)

    # === Passes ===

    async def _run_pass(self) -> SyncResult:
        start_time = time.time()
        result = SyncResult(success=True)
        more = False

        self._wake_requested = False
        try:
            batch = self.queue.pending_batch(self.batch_size)
            if batch:
                logger.info(f"Syncing {len(batch)} pending operations")

            # Entities with an unsynced earlier operation in this pass
            held: set[tuple[str, str]] = set()
            for op in batch:
                if self.breaker.is_open:
                    logger.warning("Delivery suspended, leaving remaining operations pending")
                    break
                key = (op.resource, op.entity_id)
                if op.entity_id and key in held:
                    logger.info(f"Holding {op.id} until earlier operations for {op.entity_id} sync")
                    continue
                if await self._deliver_one(op):
                    result.items_processed += 1
                else:
                    result.items_failed += 1
                    result.errors.append(op.id)
                    if op.entity_id:
                        held.add(key)

            self.pending_count = self.queue.count_pending()
            self.last_sync_time = datetime.now(timezone.utc)
            more = (
                (len(batch) == self.batch_size or self._wake_requested)
                and self.pending_count > 0
                and not self._closed
            )
        except StorageError as e:
            logger.error(f"Error during sync process: {e}")
            result.errors.append(str(e))
            result.success = False
        finally:
            if more:
                self._spawn(self._continue_after(self.continuation_delay))
                self._notify()
            else:
                self._finish()

        result.success = result.success and result.items_failed == 0
        result.duration_seconds = time.time() - start_time
        logger.info(
            f"Sync pass completed in {result.duration_seconds:.2f}s: "
            f"{result.items_processed} synced, {result.items_failed} failed, "
            f"{self.pending_count} pending"
        )
        return result

    async def _continue_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._finish()
            raise
        if not self.connectivity.is_online or self.breaker.is_open:
            self._finish()
            return
        await self._run_pass()

    def _finish(self, notify: bool = True) -> None:
        was_syncing = self._syncing
        self._syncing = False
        self._idle.set()
        if notify and was_syncing:
            self._notify()

    # === Delivery ===

    def _is_deliverable(self, op: Operation) -> bool:
        try:
            ResourceKind(op.resource)
        except ValueError:
            return False
        return self.pipeline.client.supports(op.resource)

    async def _deliver_one(self, op: Operation) -> bool:
        """Deliver one operation and record the outcome; True on success."""
        if not self._is_deliverable(op):
            self._record_failure(op, f"Unknown resource kind: {op.resource!r}", terminal=True)
            return False

        try:
            ack = await asyncio.wait_for(self.pipeline.send(op), timeout=self.delivery_timeout)
        except PermissionDeniedError as e:
            self._record_failure(op, f"{e.kind.value}: {e}", terminal=True)
            self.breaker.trip(str(e))
            self._notify()
            return False
        except NotFoundError as e:
            if op.action == OperationAction.DELETE:
                logger.info(f"Entity for {op.id} already gone remotely, treating delete as synced")
                self._record_success(op)
                return True
            self._record_failure(op, f"{e.kind.value}: {e}", terminal=True)
            return False
        except DeliveryError as e:
            self._record_failure(op, f"{e.kind.value}: {e}", terminal=not e.retryable)
            return False
        except CredentialRefreshError as e:
            self._record_failure(op, f"credential_refresh: {e}")
            return False
        except asyncio.TimeoutError:
            self._record_failure(op, f"Delivery timed out after {self.delivery_timeout:.0f}s")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error delivering {op.id}")
            self._record_failure(op, f"unexpected: {e}")
            return False

        if ack.duplicate:
            logger.debug(f"Remote acknowledged {op.id} as a replay")
        self._record_success(op)
        return True

    def _record_success(self, op: Operation) -> None:
        if not self.queue.mark_synced(op.id):
            logger.warning(f"Operation {op.id} was no longer pending when marked synced")
            return
        logger.debug(f"Synced {op.action.value} {op.resource} {op.entity_id}")
        if self._on_synced:
            try:
                self._on_synced(op)
            except StorageError as e:
                logger.error(f"Failed to update local mirror after syncing {op.id}: {e}")

    def _record_failure(self, op: Operation, error: str, terminal: bool = False) -> None:
        logger.error(f"Failed to sync operation {op.id}: {error}")
        self.queue.mark_failed(op.id, error, terminal=terminal)

    # === Timer ===

    async def _timer_loop(self) -> None:
        """Periodic re-evaluation of the pending count."""
        while self._running:
            try:
                await asyncio.sleep(self.sync_interval)
                pending = self.refresh_pending_count()
                if self.connectivity.is_online and pending > 0 and not self._syncing:
                    logger.info(f"Sync interval triggered with {pending} pending operations")
                    await self.sync_pending()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in background sync: {e}")
