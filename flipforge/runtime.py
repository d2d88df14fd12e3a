"""
PipelineRuntime: 프로세스 시작 시 한 번 조립되는 서비스 묶음.

rate limiter, stage queue, event bus 같은 상태를 가진 객체는 모두 여기서 만들어
참조로 전달합니다 (모듈 전역 상태 없음).
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional
import logging

from sqlalchemy.orm import Session

from flipforge.models import utcnow
from flipforge.services.aggregator import DataReconciliationAggregator
from flipforge.services.ai.service import EnrichmentService
from flipforge.services.events import EventBus
from flipforge.services.ingestion import IngestionService
from flipforge.services.orchestrator import PipelineOrchestrator
from flipforge.services.phase_machine import PhaseStateMachine
from flipforge.services.publisher import WooCommercePublisher
from flipforge.services.rate_limit import UploadRateLimiter
from flipforge.services.stage_queue import StageQueue
from flipforge.services.storage import build_storage
from flipforge.services.store import PipelineStore
from flipforge.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    config: Settings
    events: EventBus
    store: PipelineStore
    machine: PhaseStateMachine
    queue: StageQueue
    enrichment: EnrichmentService
    orchestrator: PipelineOrchestrator
    ingestion: IngestionService
    aggregator: DataReconciliationAggregator
    publisher: WooCommercePublisher
    rate_limiter: UploadRateLimiter

    async def start(self):
        self.queue.start()
        if self.config.pipeline_recover_on_startup:
            self.queue.recover()

    async def stop(self):
        await self.queue.stop()
        await self.orchestrator.wait_background()

    def sweep_logs(self, days: Optional[int] = None) -> int:
        retention = days or self.config.log_retention_days
        return self.store.sweep_logs(utcnow() - timedelta(days=retention))


def build_runtime(
    session_factory: Callable[[], Session],
    config: Optional[Settings] = None,
    *,
    enrichment: Optional[EnrichmentService] = None,
    storage: Any = None,
    publisher: Optional[WooCommercePublisher] = None,
    rate_limiter: Optional[UploadRateLimiter] = None,
    events: Optional[EventBus] = None,
) -> PipelineRuntime:
    config = config or default_settings
    events = events or EventBus()
    store = PipelineStore(session_factory, events)
    queue = StageQueue(store, worker_count=config.pipeline_worker_count)
    machine = PhaseStateMachine(store, scheduler=queue.enqueue)
    enrichment = enrichment or EnrichmentService(config=config)
    publisher = publisher or WooCommercePublisher(config)
    orchestrator = PipelineOrchestrator(store, machine, enrichment, publisher=publisher, config=config)

    machine.on_pipeline_completed = orchestrator.schedule_post_completion
    queue.bind(orchestrator.run_stage)

    ingestion = IngestionService(
        store,
        machine,
        enrichment,
        storage if storage is not None else build_storage(config),
        config=config,
    )
    logger.info(
        f"[RUNTIME] Pipeline runtime ready (workers={config.pipeline_worker_count}, "
        f"threshold={config.ingestion_confidence_threshold}, provider={enrichment.default_provider_name})"
    )
    return PipelineRuntime(
        config=config,
        events=events,
        store=store,
        machine=machine,
        queue=queue,
        enrichment=enrichment,
        orchestrator=orchestrator,
        ingestion=ingestion,
        aggregator=DataReconciliationAggregator(store),
        publisher=publisher,
        rate_limiter=rate_limiter or UploadRateLimiter(config.upload_rate_limit),
    )
