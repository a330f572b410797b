# refinery/worker.py
"""
Refinement worker - the resumable, self-throttling main loop.

Each tick, in order:
    1. Advance active pipelines, rescan parked ones, start pending ones
    2. Process one item of the external work queue
    3. Run one promotion batch
    4. Process pending documents that no pipeline drives

Timing:
    - A tick that did work resets the interval to the baseline
      (``loop_interval_ms``, never below ``min_loop_interval_ms``) and
      writes a checkpoint naming the last item touched.
    - An idle tick grows the interval to
      ``baseline * 1.5 ** min(idle_ticks, 5)``, capped at
      ``max_loop_interval_ms``, and writes a heartbeat checkpoint when the
      last checkpoint is at least ``heartbeat_interval_seconds`` old.
    - A tick that raises is logged, stored as an error checkpoint, and the
      loop carries on after the usual sleep.

Shutdown:
    SIGINT/SIGTERM set ``shutting_down``. The current tick finishes, the
    worker waits ``shutdown_drain_seconds``, then closes the database pool.
    The whole shutdown is bounded by ``shutdown_timeout_seconds``, counted
    from the signal: a tick still running at the deadline is cancelled and
    ``run`` raises ``asyncio.TimeoutError``.

Usage:
    from refinery.worker import build_worker

    worker = build_worker()
    await worker.run()
"""

import asyncio
import logging
import signal
import time
from datetime import datetime
from typing import Optional
from uuid import UUID

from .config import settings
from .services.checkpoint_service import CheckpointService, checkpoint_service
from .services.collaborators import load_content_transformer, load_semantic_mapper
from .services.database_service import DatabaseService, database_service
from .services.document_processor import DocumentProcessor
from .services.mapping_service import MappingService
from .services.pipeline_orchestrator import PipelineOrchestrator, StepResult, pipeline_orchestrator
from .services.pipeline_service import PipelineService, pipeline_service
from .services.promotion_service import PromotionService, promotion_service
from .services.quality_gates import load_quality_gates
from .services.transformation_service import TransformationService
from .services.work_queue_service import WorkQueueService, work_queue_service

logger = logging.getLogger("refinery.worker")

# Granularity of interruptible sleeps
SLEEP_STEP_SECONDS = 0.25


def compute_idle_interval(baseline_ms: int, idle_ticks: int) -> int:
    """Backoff interval after ``idle_ticks`` consecutive idle ticks."""
    exponent = min(idle_ticks, settings.idle_backoff_max_exponent)
    interval = baseline_ms * settings.idle_backoff_multiplier ** exponent
    return int(min(interval, settings.max_loop_interval_ms))


def build_worker(db: Optional[DatabaseService] = None) -> "RefinementWorker":
    """
    Build a worker wired with the collaborators named in settings.

    Raises:
        CollaboratorLoadError: If a configured import path cannot be loaded
    """
    db = db or database_service
    promotion = PromotionService(gates=load_quality_gates())
    orchestrator = PipelineOrchestrator(
        documents=DocumentProcessor(db=db),
        mapping=MappingService(mapper=load_semantic_mapper()),
        transformation=TransformationService(transformer=load_content_transformer()),
        promotion=promotion,
    )
    return RefinementWorker(db=db, orchestrator=orchestrator, promotion=promotion)


class RefinementWorker:
    """
    Drives the refinement engine one tick at a time.

    Attributes:
        shutting_down: Set by ``request_shutdown``; the loop exits after the current tick
        current_interval_ms: Sleep before the next tick
        consecutive_idle_ticks: Ticks in a row that found no work
        last_checkpoint_at: Monotonic time of the last checkpoint write
        last_processed_id: Last item recorded in a checkpoint
        last_processed_type: Kind of that item
    """

    def __init__(
        self,
        db: Optional[DatabaseService] = None,
        orchestrator: Optional[PipelineOrchestrator] = None,
        promotion: Optional[PromotionService] = None,
        work_queue: Optional[WorkQueueService] = None,
        checkpoints: Optional[CheckpointService] = None,
        pipelines: Optional[PipelineService] = None,
    ):
        self.db = db or database_service
        self.orchestrator = orchestrator or pipeline_orchestrator
        self.promotion = promotion or promotion_service
        self.work_queue = work_queue or work_queue_service
        self.checkpoints = checkpoints or checkpoint_service
        self.pipelines = pipelines or pipeline_service

        self.shutting_down = False
        self.current_interval_ms = self.baseline_interval_ms
        self.consecutive_idle_ticks = 0
        self.last_checkpoint_at = time.monotonic()
        self.last_processed_id: Optional[UUID] = None
        self.last_processed_type: Optional[str] = None

        self._run_task: Optional[asyncio.Task] = None
        self._shutdown_timer: Optional[asyncio.TimerHandle] = None
        self._shutdown_deadline = 0.0
        self._forced_exit = False

    @property
    def baseline_interval_ms(self) -> int:
        return max(settings.loop_interval_ms, settings.min_loop_interval_ms)

    # =========================================================================
    # TICK
    # =========================================================================

    async def tick(self) -> bool:
        """
        Run one iteration of the loop and update the timing state.

        Returns:
            True if any useful work was done
        """
        result = StepResult()

        async with self.db.get_session() as session:
            result.merge(await self.orchestrator.process_active_pipelines(session))

            item = await self.work_queue.process_next(session)
            if item is not None:
                result.record(item.id, item.work_type)

            batch = await self.promotion.run_batch(session, settings.promotion_batch_size)
            if batch.advanced:
                result.record(batch.last_item_id, batch.last_item_type, batch.advanced)

        documents = await self.orchestrator.documents.process_pending_documents(
            settings.pending_document_batch_size
        )
        if documents:
            result.record(None, "document", documents)

        if result.processed:
            await self._on_work(result)
            return True

        await self._on_idle()
        return False

    async def _on_work(self, result: StepResult) -> None:
        self.consecutive_idle_ticks = 0
        self.current_interval_ms = self.baseline_interval_ms
        self.last_processed_id = result.last_item_id
        self.last_processed_type = result.last_item_type

        async with self.db.get_session() as session:
            await self.checkpoints.save_checkpoint(
                session,
                result.last_item_id,
                result.last_item_type,
                {"processed": result.processed},
            )
        self.last_checkpoint_at = time.monotonic()
        logger.debug(f"Tick processed {result.processed} item(s); checkpoint saved")

    async def _on_idle(self) -> None:
        self.consecutive_idle_ticks += 1
        self.current_interval_ms = compute_idle_interval(
            self.baseline_interval_ms, self.consecutive_idle_ticks
        )

        if time.monotonic() - self.last_checkpoint_at >= settings.heartbeat_interval_seconds:
            async with self.db.get_session() as session:
                await self.checkpoints.save_checkpoint(
                    session,
                    self.last_processed_id,
                    self.last_processed_type,
                    {
                        "heartbeat": True,
                        "status": "idle",
                        "consecutive_idle_ticks": self.consecutive_idle_ticks,
                    },
                )
            self.last_checkpoint_at = time.monotonic()
            logger.debug("Heartbeat checkpoint saved")

        logger.debug(f"No work available; next tick in {self.current_interval_ms}ms")

    # =========================================================================
    # LOOP
    # =========================================================================

    async def startup(self) -> None:
        """Recover interrupted work and report the previous checkpoint."""
        async with self.db.get_session() as session:
            await self.pipelines.recover_interrupted_tasks(session)
            await self.work_queue.release_stale(session)
            previous = await self.checkpoints.get_checkpoint(session)

        if previous:
            logger.info(
                f"Resuming after checkpoint at {previous.timestamp} "
                f"({previous.last_processed_type} {previous.last_processed_id})"
            )
            self.last_processed_type = previous.last_processed_type
            if previous.last_processed_id:
                self.last_processed_id = previous.last_processed_id
        else:
            logger.info("No previous checkpoint; starting fresh")

    async def run_once(self) -> bool:
        """Run a single tick with the loop's error handling."""
        try:
            return await self.tick()
        except Exception as e:
            logger.exception(f"Error in worker tick: {e}")
            await self._save_error(e)
            return False

    async def run(self) -> None:
        """
        Run until shutdown is requested, then shut down.

        Raises:
            asyncio.TimeoutError: If shutdown does not finish within
                ``shutdown_timeout_seconds`` of the request
        """
        logger.info(f"{settings.service_name} starting main loop")
        self._run_task = asyncio.current_task()
        self.install_signal_handlers()

        try:
            await self.startup()

            while not self.shutting_down:
                await self.run_once()
                if self.shutting_down:
                    break
                await self._sleep(self.current_interval_ms / 1000)

            logger.info("Main loop exited")
            await self.shutdown()
        except asyncio.CancelledError:
            if not self._forced_exit:
                raise
            raise asyncio.TimeoutError(
                f"Shutdown timed out after {settings.shutdown_timeout_seconds}s"
            ) from None
        finally:
            if self._shutdown_timer is not None:
                self._shutdown_timer.cancel()
                self._shutdown_timer = None
            self._run_task = None

    async def _save_error(self, error: Exception) -> None:
        try:
            async with self.db.get_session() as session:
                await self.checkpoints.save_error(
                    session,
                    error,
                    {"phase": "main_loop", "at": datetime.utcnow().isoformat()},
                )
        except Exception as e:
            logger.error(f"Failed to store error checkpoint: {e}")

    async def _sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.shutting_down:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(min(SLEEP_STEP_SECONDS, remaining))

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def request_shutdown(self, reason: str = "requested") -> None:
        """
        Stop the loop after the current tick.

        The first request starts the hard timeout: if the main loop has not
        finished by then, its task is cancelled, even mid-tick.
        """
        if self.shutting_down:
            return
        logger.info(f"Shutdown requested ({reason})")
        self.shutting_down = True
        self._shutdown_deadline = time.monotonic() + settings.shutdown_timeout_seconds

        if self._run_task is not None and not self._run_task.done():
            self._shutdown_timer = self._run_task.get_loop().call_later(
                settings.shutdown_timeout_seconds, self._force_exit
            )

    def _force_exit(self) -> None:
        self._shutdown_timer = None
        if self._run_task is None or self._run_task.done():
            return
        logger.error(
            f"Shutdown timed out after {settings.shutdown_timeout_seconds}s; cancelling main loop"
        )
        self._forced_exit = True
        self._run_task.cancel()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except NotImplementedError:
                logger.warning(f"Signal handlers not supported here; {sig.name} not wired")

    async def shutdown(self) -> None:
        """
        Drain and close the database pool before the shutdown deadline.

        Raises:
            asyncio.TimeoutError: If the deadline passes first
        """
        if not self.shutting_down:
            self.request_shutdown("shutdown")
        remaining = max(self._shutdown_deadline - time.monotonic(), 0)

        async def drain_and_close() -> None:
            await asyncio.sleep(settings.shutdown_drain_seconds)
            await self.db.close()

        try:
            await asyncio.wait_for(drain_and_close(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.error(f"Shutdown timed out after {settings.shutdown_timeout_seconds}s")
            raise
        logger.info("Graceful shutdown complete")
