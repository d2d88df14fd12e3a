"""
StageQueue: stage 2~4 실행을 요청 수명주기와 분리하는 asyncio 작업 큐.

complete() 가 다음 stage 를 enqueue 하면 즉시 반환하고, 워커 태스크가 큐에서
꺼내 실행합니다. enqueue 시점에 stage_scheduled 로그를 남기므로, 프로세스가
실행 전에 죽어도 recover() 가 pending + can_start 인 stage 를 다시 적재합니다.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional
import asyncio
import logging
import uuid

from flipforge.models import utcnow
from flipforge.services.store import PipelineStore

logger = logging.getLogger(__name__)

StageRunner = Callable[[uuid.UUID, int], Awaitable[None]]


@dataclass(frozen=True)
class StageJob:
    product_id: uuid.UUID
    stage: int
    enqueued_at: datetime = field(default_factory=utcnow, compare=False)

    @property
    def key(self) -> tuple[uuid.UUID, int]:
        return (self.product_id, self.stage)

    def to_dict(self) -> dict:
        return {
            "productId": str(self.product_id),
            "stage": self.stage,
            "enqueuedAt": self.enqueued_at.isoformat(),
        }


class StageQueue:
    def __init__(self, store: PipelineStore, worker_count: int = 2):
        self.store = store
        self.worker_count = worker_count
        self._runner: Optional[StageRunner] = None
        self._queue: asyncio.Queue[StageJob] = asyncio.Queue()
        self._pending: dict[tuple[uuid.UUID, int], StageJob] = {}
        self._in_flight: dict[tuple[uuid.UUID, int], StageJob] = {}
        self._workers: list[asyncio.Task] = []

    def bind(self, runner: StageRunner):
        self._runner = runner

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    def enqueue(self, product_id: uuid.UUID, stage: int) -> bool:
        """같은 (상품, stage) 가 이미 대기/실행 중이면 무시. 적재 여부 반환."""
        job = StageJob(product_id=product_id, stage=stage)
        if job.key in self._pending or job.key in self._in_flight:
            logger.debug(f"[QUEUE] Stage {stage} for product={product_id} already queued")
            return False

        self._pending[job.key] = job
        self._queue.put_nowait(job)
        self.store.append_log(
            product_id,
            stage,
            f"Stage {stage} scheduled",
            action="stage_scheduled",
            details={"queue_size": self._queue.qsize()},
        )
        logger.info(f"[QUEUE] Scheduled stage {stage} for product={product_id} (size={self._queue.qsize()})")
        return True

    def snapshot(self) -> dict:
        return {
            "workers": len([w for w in self._workers if not w.done()]),
            "queued": [job.to_dict() for job in self._pending.values()],
            "inFlight": [job.to_dict() for job in self._in_flight.values()],
        }

    def recover(self) -> int:
        """pending + can_start 인 stage 를 다시 적재 (재시작 후 멈춘 파이프라인 복구)."""
        count = 0
        for product_id, stage in self.store.eligible_pending_stages():
            if self.enqueue(product_id, stage):
                count += 1
        if count:
            logger.info(f"[QUEUE] Recovered {count} pending stage(s)")
        return count

    async def _worker(self, index: int):
        while True:
            job = await self._queue.get()
            self._pending.pop(job.key, None)
            self._in_flight[job.key] = job
            try:
                if self._runner is None:
                    logger.error("[QUEUE] No stage runner bound; dropping job")
                    continue
                await self._runner(job.product_id, job.stage)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # run_stage 는 stage 경계에서 예외를 삼키므로 여기까지 오면 버그
                logger.exception(f"[QUEUE] Worker {index} crashed on stage {job.stage} product={job.product_id}: {e}")
            finally:
                self._in_flight.pop(job.key, None)
                self._queue.task_done()

    def start(self):
        if self.running or self.worker_count <= 0:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"stage-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"[QUEUE] Started {self.worker_count} stage worker(s)")

    async def drain(self):
        """큐가 빌 때까지 대기 (워커가 없으면 즉시 반환)."""
        if not self.running:
            return
        await self._queue.join()

    async def stop(self):
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
