"""Batched validation logging.

Validation attempts are appended to an in-memory buffer and written to the
database in bulk, either when the buffer reaches `batch_size` entries or
every `flush_interval` seconds, whichever comes first. Request handlers
never wait on the write.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from coupons.app.core.config import settings
from coupons.app.core.logging import get_logger
from coupons.app.exceptions import AuditBatcherStoppedError
from coupons.app.services.grant_store import get_grant_store
from coupons.app.services.models import ValidationLogData

logger = get_logger(__name__)

LogWriter = Callable[[List[ValidationLogData]], Awaitable[int]]


class BatcherState(str, Enum):
    IDLE = "idle"
    FLUSHING = "flushing"
    STOPPED = "stopped"


def _store_writer(entries: List[ValidationLogData]) -> Awaitable[int]:
    return get_grant_store().write_validation_logs(entries)


class AuditBatcher:
    """Buffers ValidationLogData entries and writes them in batches.

    Features:
    - Size trigger: a full buffer schedules a flush without awaiting it
    - Timer trigger: a non-empty buffer is flushed every `flush_interval`
    - Buffer swap: a flush takes the whole buffer at once, so entries
      enqueued meanwhile go into a fresh list and are never written twice
    - Failed batches are put back at the front of the buffer; until a write
      succeeds again only the timer retries
    - Graceful shutdown: pending writes and a final drain under one
      bounded budget, then terminal `stopped`

    Example:
        batcher = AuditBatcher()
        batcher.start()
        batcher.enqueue(ValidationLogData(...))

        # On application shutdown:
        await batcher.shutdown()
    """

    def __init__(
        self,
        writer: Optional[LogWriter] = None,
        batch_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
        shutdown_timeout: Optional[float] = None,
        failure_alert_threshold: Optional[int] = None,
    ):
        """Initialize the batcher.

        Args:
            writer: Coroutine function persisting one batch; defaults to the
                    coupon store
            batch_size: Buffer length that triggers an immediate flush
            flush_interval: Maximum time in seconds between flushes
            shutdown_timeout: Upper bound in seconds for the final drain
            failure_alert_threshold: Consecutive failed flushes before the
                    failure is logged as CRITICAL
        """
        self._writer = writer or _store_writer
        self.batch_size = batch_size or settings.audit_batch_size
        self.flush_interval = flush_interval or settings.audit_flush_interval_seconds
        self.shutdown_timeout = shutdown_timeout or settings.audit_shutdown_timeout_seconds
        self.failure_alert_threshold = (
            failure_alert_threshold or settings.audit_failure_alert_threshold
        )

        self._buffer: List[ValidationLogData] = []
        self._flushing = False
        self._stopped = False
        self._consecutive_failures = 0

        self._flush_task: Optional[asyncio.Task] = None
        self._triggered_flushes: Set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()

    @property
    def state(self) -> BatcherState:
        if self._stopped:
            return BatcherState.STOPPED
        if self._flushing:
            return BatcherState.FLUSHING
        return BatcherState.IDLE

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def size(self) -> int:
        """Current number of buffered entries."""
        return len(self._buffer)

    def start(self) -> None:
        """Start the background flush timer.

        This should be called during application startup.
        """
        if self._stopped:
            raise AuditBatcherStoppedError()
        if self._flush_task is None:
            self._shutdown_event.clear()
            self._flush_task = asyncio.create_task(self._flush_loop())
            logger.debug("AuditBatcher started")

    def enqueue(self, entry: ValidationLogData) -> None:
        """Append an entry to the buffer and return immediately.

        Raises:
            AuditBatcherStoppedError: If the batcher was shut down
        """
        if self._stopped:
            raise AuditBatcherStoppedError()

        self._buffer.append(entry)
        # While writes are failing only the timer retries
        if (
            len(self._buffer) >= self.batch_size
            and not self._flushing
            and self._consecutive_failures == 0
        ):
            task = asyncio.create_task(self.flush())
            self._triggered_flushes.add(task)
            task.add_done_callback(self._triggered_flushes.discard)

    async def flush(self) -> None:
        """Write the current buffer as one batch.

        A no-op while another flush is in progress; that flush's next cycle
        picks up whatever was queued meanwhile.
        """
        await self._flush_batch()

    async def _flush_batch(self) -> bool:
        if self._flushing or not self._buffer:
            return True

        self._flushing = True
        batch, self._buffer = self._buffer, []
        try:
            written = await self._writer(batch)
        except asyncio.CancelledError:
            self._buffer[:0] = batch
            raise
        except Exception as e:
            self._buffer[:0] = batch
            self._consecutive_failures += 1
            level = (
                logging.CRITICAL
                if self._consecutive_failures >= self.failure_alert_threshold
                else logging.ERROR
            )
            logger.log(
                level,
                f"Failed to write {len(batch)} validation logs "
                f"({self._consecutive_failures} consecutive failures): {e}",
                extra={"batch_size": len(batch), "buffer_size": len(self._buffer)},
            )
            return False
        finally:
            self._flushing = False

        self._consecutive_failures = 0
        logger.debug(f"Flushed {written} validation logs")
        return True

    async def _flush_loop(self) -> None:
        """Background task that periodically flushes the buffer."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.flush_interval,
                )
            except asyncio.TimeoutError:
                pass

            # Shutdown does its own final flush
            if not self._shutdown_event.is_set():
                await self.flush()

    async def _drain(self) -> None:
        while self._buffer:
            if self._flushing:
                # Someone else's flush is mid-write; let it finish first
                await asyncio.sleep(0.01)
                continue
            if not await self._flush_batch():
                return

    async def _finish_pending(self) -> None:
        if self._flush_task is not None:
            await self._flush_task
        if self._triggered_flushes:
            await asyncio.gather(*self._triggered_flushes, return_exceptions=True)
        await self._drain()

    async def shutdown(self) -> None:
        """Stop the timer and drain the buffer.

        The timer loop is allowed to finish a write it already started, and
        size-triggered flushes are awaited. Those writes and the final drain
        share one `shutdown_timeout` budget; entries that could not be
        written in time are logged as lost and dropped so the process can
        exit.
        """
        if self._stopped:
            return

        logger.debug("AuditBatcher shutting down...")
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._finish_pending(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.critical(
                f"Final validation log drain timed out after {self.shutdown_timeout}s"
            )
        self._flush_task = None

        if self._buffer:
            logger.critical(
                f"{len(self._buffer)} validation logs could not be written on shutdown "
                f"and are lost",
                extra={"buffer_size": len(self._buffer)},
            )
            self._buffer.clear()

        self._stopped = True
        logger.debug("AuditBatcher shutdown complete")


# Global instance, created on first use
_audit_batcher: Optional[AuditBatcher] = None


def get_audit_batcher() -> AuditBatcher:
    """Get the global audit batcher instance."""
    global _audit_batcher
    if _audit_batcher is None:
        _audit_batcher = AuditBatcher()
    return _audit_batcher


def reset_audit_batcher() -> None:
    """Forget the global batcher so the next lifespan starts a fresh one."""
    global _audit_batcher
    _audit_batcher = None
