"""Bounded background execution for loan pipelines.

Requests are acknowledged once a :class:`PipelineRun` row is journaled and
its id is queued; a fixed pool of worker tasks drains the queue and records
the outcome on the row so operators can inspect and re-drive failures.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import context
from app.core.errors import LoanServiceError, PipelineBusy, RecordNotFound, RunNotRetryable
from app.db.session import AsyncSessionLocal
from app.models.pipeline_run import PipelineRun
from app.schemas.loan import PipelineStage, PipelineStatus
from app.services.loan_lifecycle import LifecycleOrchestrator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineSupervisor:
    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        *,
        queue_size: int = 100,
        workers: int = 4,
    ) -> None:
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.worker_count = max(workers, 1)
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max(queue_size, 1))
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._workers:
            return
        await self._recover()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"pipeline-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("Pipeline supervisor started with %d workers", self.worker_count)

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if workers:
            logger.info("Pipeline supervisor stopped, %d runs left queued", self._queue.qsize())

    async def drain(self) -> None:
        """Wait until every queued run has been processed."""
        await self._queue.join()

    async def enqueue(
        self,
        stage: PipelineStage,
        payload: dict[str, Any],
        reference: str | None = None,
    ) -> str:
        if self._queue.full():
            raise PipelineBusy("Pipeline queue is full, try again later", stage=stage.value)
        async with self.session_factory() as session:
            run = PipelineRun(
                stage=stage.value,
                status=PipelineStatus.PENDING.value,
                reference=reference,
                attempts=0,
                payload=dict(payload),
            )
            session.add(run)
            await session.commit()
            run_id = run.id
        try:
            self._put(run_id, stage.value)
        except PipelineBusy:
            # Another enqueue filled the queue while this run was being journaled
            await self._reject(run_id, "Rejected: pipeline queue full")
            raise
        logger.info("Queued %s pipeline run %s", stage.value, run_id)
        return run_id

    async def retry(self, run_id: str) -> PipelineRun:
        async with self.session_factory() as session:
            run = await session.get(PipelineRun, run_id)
            if run is None:
                raise RecordNotFound(f"Pipeline run {run_id} not found", run_id=run_id)
            if run.status != PipelineStatus.FAILED.value:
                raise RunNotRetryable(
                    f"Pipeline run {run_id} is {run.status}, only failed runs can be retried",
                    run_id=run_id,
                    status=run.status,
                )
            if self._queue.full():
                raise PipelineBusy("Pipeline queue is full, try again later", run_id=run_id)
            run.status = PipelineStatus.PENDING.value
            run.finished_at = None
            await session.commit()
            await session.refresh(run)
        try:
            self._put(run_id, run.stage)
        except PipelineBusy:
            await self._reject(run_id, "Retry rejected: pipeline queue full")
            raise
        logger.info("Re-queued pipeline run %s", run_id)
        return run

    async def _reject(self, run_id: str, reason: str) -> None:
        async with self.session_factory() as session:
            run = await session.get(PipelineRun, run_id)
            if run is None:
                return
            run.status = PipelineStatus.FAILED.value
            run.last_error = reason
            run.finished_at = _utcnow()
            await session.commit()
        logger.warning("Pipeline run %s not queued: %s", run_id, reason)

    def _put(self, run_id: str, stage: str) -> None:
        try:
            self._queue.put_nowait(run_id)
        except asyncio.QueueFull as exc:
            raise PipelineBusy("Pipeline queue is full, try again later", stage=stage) from exc

    async def _recover(self) -> None:
        """Fail runs interrupted mid-flight and requeue ones that never started."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PipelineRun)
                .where(PipelineRun.status.in_([PipelineStatus.PENDING.value, PipelineStatus.RUNNING.value]))
                .order_by(PipelineRun.created_at)
            )
            runs = list(result.scalars().all())
            requeue: list[str] = []
            for run in runs:
                if run.status == PipelineStatus.RUNNING.value or self._queue.full():
                    run.status = PipelineStatus.FAILED.value
                    run.last_error = "Interrupted before completion"
                    run.finished_at = _utcnow()
                else:
                    requeue.append(run.id)
                    self._queue.put_nowait(run.id)
            await session.commit()
        if runs:
            logger.info(
                "Recovered %d pipeline runs, %d requeued", len(runs), len(requeue)
            )

    async def _worker(self, index: int) -> None:
        while True:
            run_id = await self._queue.get()
            try:
                await self.process(run_id)
            except Exception:
                logger.exception("Worker %d could not journal run %s", index, run_id)
            finally:
                self._queue.task_done()

    async def process(self, run_id: str) -> None:
        context.set_pipeline_run_id(run_id)
        try:
            async with self.session_factory() as session:
                run = await session.get(PipelineRun, run_id)
                if run is None:
                    logger.warning("Pipeline run %s vanished before processing", run_id)
                    return
                run.status = PipelineStatus.RUNNING.value
                run.attempts = (run.attempts or 0) + 1
                run.last_error = None
                await session.commit()
                stage = run.stage
                payload = dict(run.payload or {})

            error: str | None = None
            reference: str | None = None
            try:
                reference = await self.orchestrator.run(stage, payload)
            except LoanServiceError as exc:
                error = f"{exc.kind}: {exc.message}"
                logger.error("Pipeline %s run failed: %s", stage, error)
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                logger.exception("Pipeline %s run crashed", stage)

            async with self.session_factory() as session:
                run = await session.get(PipelineRun, run_id)
                if run is None:
                    return
                run.payload = payload
                run.finished_at = _utcnow()
                if error is None:
                    run.status = PipelineStatus.DONE.value
                    run.reference = reference or run.reference
                    logger.info("Pipeline %s run finished: %s", stage, run.reference)
                else:
                    run.status = PipelineStatus.FAILED.value
                    run.last_error = error
                await session.commit()
        finally:
            context.set_pipeline_run_id("-")


async def get_run(session: AsyncSession, run_id: str) -> PipelineRun:
    run = await session.get(PipelineRun, run_id)
    if run is None:
        raise RecordNotFound(f"Pipeline run {run_id} not found", run_id=run_id)
    return run


async def list_runs(
    session: AsyncSession,
    *,
    status: PipelineStatus | None = None,
    stage: PipelineStage | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PipelineRun], int]:
    conditions = []
    if status is not None:
        conditions.append(PipelineRun.status == PipelineStatus(status).value)
    if stage is not None:
        conditions.append(PipelineRun.stage == PipelineStage(stage).value)

    count_stmt = select(func.count()).select_from(PipelineRun).where(*conditions)
    total = int((await session.execute(count_stmt)).scalar_one() or 0)

    stmt = (
        select(PipelineRun)
        .where(*conditions)
        .order_by(PipelineRun.created_at.desc(), PipelineRun.id)
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), total
