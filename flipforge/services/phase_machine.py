"""
PhaseStateMachine: 상품별/stage 별 상태와 전이 규칙.

    pending -> running -> completed | failed | stopped

- completed 는 최종 상태 (변경 불가).
- failed / stopped 는 retry 로 pending 으로 되돌릴 수 있음.
- 다음 stage 로의 진행은 complete 에서만 발생합니다.
- 모든 전이는 PipelineStore.transition_phase 의 조건부 UPDATE 로 수행합니다.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Optional
import logging
import uuid

from flipforge.models import FINAL_STAGE, PipelinePhase, utcnow
from flipforge.services.exceptions import InvalidTransitionError, ValidationError
from flipforge.services.store import PipelineStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Pipeline cancelled by user"

Scheduler = Callable[[uuid.UUID, int], Any]
CompletionHook = Callable[[uuid.UUID], Any]


def _as_utc(value: datetime) -> datetime:
    # SQLite 는 tz 정보 없이 돌려줌
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PhaseStateMachine:
    def __init__(
        self,
        store: PipelineStore,
        scheduler: Optional[Scheduler] = None,
        on_pipeline_completed: Optional[CompletionHook] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.on_pipeline_completed = on_pipeline_completed

    def _validate_stage(self, stage: int):
        if stage not in (1, 2, 3, 4):
            raise ValidationError(f"Invalid stage number: {stage}", field="stage", actual_value=stage)

    def _rejected(self, product_id: uuid.UUID, stage: Optional[int], operation: str, reason: str) -> InvalidTransitionError:
        current = None
        if stage is not None:
            phase = self.store.get_phase(product_id, stage)
            current = phase.status if phase else None
        message = f"Cannot {operation} stage {stage}: {reason}" if stage else f"Cannot {operation} pipeline: {reason}"
        logger.info(f"[PIPELINE] Rejected {operation} for product={product_id} stage={stage} (status={current})")
        return InvalidTransitionError(
            message,
            product_id=product_id,
            stage=stage,
            operation=operation,
            current_status=current,
        )

    # ------------------------------------------------------------------
    # stage 단위 전이
    # ------------------------------------------------------------------
    def start(self, product_id: uuid.UUID, stage: int) -> None:
        self._validate_stage(stage)
        self.store.require_product(product_id)

        started = self.store.transition_phase(
            product_id,
            stage,
            ("pending",),
            {
                "status": "running",
                "started_at": utcnow(),
                "completed_at": None,
                "stopped_at": None,
                "progress_percentage": 0,
                "error_message": None,
            },
            require_can_start=stage > 1,
            require_previous_completed=stage > 1,
            require_no_running=True,
        )
        if not started:
            raise self._rejected(
                product_id,
                stage,
                "start",
                "requires pending status, an eligible stage, a completed previous stage and no other running stage",
            )

        self.store.update_product(
            product_id,
            {
                "status": "processing",
                "current_stage": stage,
                "is_pipeline_running": True,
                "error_message": None,
            },
        )
        self.store.append_log(product_id, stage, f"Stage {stage} started", action="stage_started")
        logger.info(f"[PIPELINE] Stage {stage} started for product={product_id}")

    def complete(self, product_id: uuid.UUID, stage: int, output: Optional[dict[str, Any]] = None) -> None:
        self._validate_stage(stage)
        phase = self.store.get_phase(product_id, stage)
        if phase is None or phase.status != "running":
            raise self._rejected(product_id, stage, "complete", "stage is not running")

        completed_at = utcnow()
        duration = None
        if phase.started_at is not None:
            duration = round((completed_at - _as_utc(phase.started_at)).total_seconds(), 3)

        completed = self.store.transition_phase(
            product_id,
            stage,
            ("running",),
            {
                "status": "completed",
                "completed_at": completed_at,
                "progress_percentage": 100,
                "processing_time_seconds": duration,
                "error_message": None,
            },
        )
        if not completed:
            # pause/cancel 이 중간에 끼어든 경우
            raise self._rejected(product_id, stage, "complete", "stage is not running")

        self.store.append_log(
            product_id,
            stage,
            f"Stage {stage} completed",
            action="stage_completed",
            details={"processing_time_seconds": duration, "output": output or {}},
        )
        logger.info(f"[PIPELINE] Stage {stage} completed for product={product_id} in {duration}s")

        if stage < FINAL_STAGE:
            next_stage = stage + 1
            self.store.update_product(product_id, {"current_stage": next_stage})
            self.store.transition_phase(product_id, next_stage, ("pending",), {"can_start": True})
            if self.scheduler is not None:
                self.scheduler(product_id, next_stage)
            return

        self.store.update_product(
            product_id,
            {"status": "completed", "is_pipeline_running": False, "error_message": None},
        )
        self.store.append_log(product_id, 0, "Pipeline completed", action="pipeline_completed")
        if self.on_pipeline_completed is not None:
            try:
                self.on_pipeline_completed(product_id)
            except Exception as e:
                logger.warning(f"[PIPELINE] Post-completion hook failed for product={product_id}: {e}")

    def fail(self, product_id: uuid.UUID, stage: int, message: str) -> None:
        self._validate_stage(stage)
        failed = self.store.transition_phase(
            product_id,
            stage,
            ("running",),
            {"status": "failed", "error_message": message, "completed_at": utcnow()},
        )
        if not failed:
            raise self._rejected(product_id, stage, "fail", "stage is not running")

        self.store.update_product(
            product_id,
            {"status": "error", "is_pipeline_running": False, "error_message": message},
        )
        self.store.append_log(product_id, stage, message, level="error", action="stage_failed")
        logger.error(f"[PIPELINE] Stage {stage} failed for product={product_id}: {message}")

    def retry(self, product_id: uuid.UUID, stage: Optional[int] = None) -> int:
        """failed/stopped stage 를 pending 으로 되돌리고 can_start 를 다시 켭니다. 대상 stage 번호 반환."""
        product = self.store.require_product(product_id)
        if stage is None:
            phase = self.store.find_phase(product_id, ("failed", "stopped"))
            if phase is None:
                raise self._rejected(product_id, None, "retry", "no failed or stopped stage")
            stage = phase.stage_number
        self._validate_stage(stage)

        retried = self.store.transition_phase(
            product_id,
            stage,
            ("failed", "stopped"),
            {
                "status": "pending",
                "can_start": True,
                "error_message": None,
                "started_at": None,
                "completed_at": None,
                "stopped_at": None,
                "progress_percentage": 0,
                "processing_time_seconds": None,
                "retry_count": PipelinePhase.retry_count + 1,
            },
        )
        if not retried:
            raise self._rejected(product_id, stage, "retry", "only failed or stopped stages can be retried")

        self.store.update_product(
            product_id,
            {"status": "processing", "current_stage": stage, "error_message": None, "is_pipeline_running": False},
        )
        self.store.append_log(
            product_id,
            stage,
            f"Stage {stage} reset for retry",
            action="stage_retry",
            details={"previous_product_status": product.status},
        )
        logger.info(f"[PIPELINE] Stage {stage} reset for retry, product={product_id}")
        return stage

    # ------------------------------------------------------------------
    # 상품 단위 제어
    # ------------------------------------------------------------------
    def pause(self, product_id: uuid.UUID, reason: Optional[str] = None) -> int:
        """running stage 를 stopped 로 (resume 가능). 대상 stage 번호 반환."""
        self.store.require_product(product_id)
        phase = self.store.find_phase(product_id, ("running",))
        if phase is None:
            raise self._rejected(product_id, None, "pause", "no running stage")

        stage = phase.stage_number
        stopped = self.store.transition_phase(
            product_id,
            stage,
            ("running",),
            {"status": "stopped", "stopped_at": utcnow()},
        )
        if not stopped:
            raise self._rejected(product_id, stage, "pause", "stage is not running")

        self.store.update_product(product_id, {"status": "paused", "is_pipeline_running": False})
        self.store.append_log(
            product_id,
            0,
            reason or f"Pipeline paused at stage {stage}",
            action="pipeline_paused",
            details={"stage": stage},
        )
        logger.info(f"[PIPELINE] Paused product={product_id} at stage {stage}")
        return stage

    def resume(self, product_id: uuid.UUID) -> int:
        """pause 된 파이프라인만 재개. 취소된 파이프라인은 거부합니다."""
        product = self.store.require_product(product_id)
        if product.status != "paused":
            raise self._rejected(product_id, None, "resume", f"product status is '{product.status}', not 'paused'")

        stage = product.current_stage
        resumed = self.store.transition_phase(
            product_id,
            stage,
            ("stopped",),
            {"status": "pending", "can_start": True, "stopped_at": None},
        )
        if not resumed:
            raise self._rejected(product_id, stage, "resume", "stage is not stopped")

        self.store.update_product(
            product_id,
            {"status": "processing", "error_message": None},
            expected_statuses=("paused",),
        )
        self.store.append_log(product_id, 0, f"Pipeline resumed at stage {stage}", action="pipeline_resumed", details={"stage": stage})
        logger.info(f"[PIPELINE] Resumed product={product_id} at stage {stage}")
        return stage

    def cancel(self, product_id: uuid.UUID) -> int:
        """running (또는 pause 된) stage 를 stopped 로, 상품은 error. resume 불가."""
        product = self.store.require_product(product_id)
        phase = self.store.find_phase(product_id, ("running",))
        from_status = "running"
        if phase is None and product.status == "paused":
            phase = self.store.get_phase(product_id, product.current_stage)
            from_status = "stopped"
        if phase is None or phase.status != from_status:
            raise self._rejected(product_id, None, "cancel", "no running or paused stage")

        stage = phase.stage_number
        cancelled = self.store.transition_phase(
            product_id,
            stage,
            (from_status,),
            {"status": "stopped", "stopped_at": utcnow(), "error_message": CANCELLED_MESSAGE},
        )
        if not cancelled:
            raise self._rejected(product_id, stage, "cancel", f"stage is not {from_status}")

        self.store.update_product(
            product_id,
            {"status": "error", "is_pipeline_running": False, "error_message": CANCELLED_MESSAGE},
        )
        self.store.append_log(product_id, 0, CANCELLED_MESSAGE, level="warning", action="pipeline_cancelled", details={"stage": stage})
        logger.info(f"[PIPELINE] Cancelled product={product_id} at stage {stage}")
        return stage
