"""
IngestionService: 이미지 업로드 + stage 1 (상품 식별).

이벤트 스트림 (NDJSON 한 줄에 하나):
    status {message}
    progress {value}
    analysis {result}
    complete {success, productId, imageUrls, message}   -- 성공 종료
    error {message}                                     -- 실패 종료

신뢰도가 기준 미만이면 complete 대신 manual_input 이벤트로 끝나며,
엔드포인트는 이를 requiresManualInput JSON 응답으로 변환합니다.
사람이 보정한 값으로 다시 제출하면 (override) 신뢰도와 무관하게 완료합니다.
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio
import logging
import uuid

from flipforge.models import ProductAnalysisData
from flipforge.schemas.enrichment import IdentificationGuess
from flipforge.services.ai.service import EnrichmentService
from flipforge.services.exceptions import (
    InvalidTransitionError,
    PipelineError,
    ValidationError,
)
from flipforge.services.phase_machine import PhaseStateMachine
from flipforge.services.store import PipelineStore
from flipforge.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

MANUAL_INPUT_MESSAGE = "AI confidence is below the threshold. Please confirm the product name, model, brand and category."
STAGE_STOPPED_MESSAGE = "Product analysis was stopped before it finished; the AI result was discarded"


@dataclass
class UploadedImage:
    content: bytes
    file_name: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass
class ProductHints:
    name: Optional[str] = None
    model: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None

    def __post_init__(self):
        for key in ("name", "model", "brand", "category"):
            value = getattr(self, key)
            setattr(self, key, value.strip() or None if isinstance(value, str) else None)


@dataclass
class IngestionContext:
    product_id: Optional[uuid.UUID] = None
    image_urls: List[str] = field(default_factory=list)
    stage_started: bool = False


def status_event(message: str) -> Dict[str, Any]:
    return {"type": "status", "message": message}


def progress_event(value: int) -> Dict[str, Any]:
    return {"type": "progress", "value": max(0, min(100, int(value)))}


def error_event(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


class IngestionService:
    def __init__(
        self,
        store: PipelineStore,
        machine: PhaseStateMachine,
        enrichment: EnrichmentService,
        storage: Any,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.machine = machine
        self.enrichment = enrichment
        self.storage = storage
        self.config = config or default_settings

    @property
    def threshold(self) -> int:
        return self.config.ingestion_confidence_threshold

    def validate_uploads(self, images: List[UploadedImage], required: bool = True):
        if required and not images:
            raise ValidationError("No images provided", field="images")
        if len(images) > self.config.upload_max_files:
            raise ValidationError(
                f"Too many images: {len(images)} (max {self.config.upload_max_files})",
                field="images",
                actual_value=len(images),
            )
        for image in images:
            if not image.content:
                raise ValidationError(f"Empty file: {image.file_name}", field="images", actual_value=image.file_name)
            if image.mime_type and not image.mime_type.startswith(self.config.upload_allowed_mime_prefix):
                raise ValidationError(
                    f"Unsupported file type: {image.mime_type}",
                    field="images",
                    actual_value=image.file_name,
                )

    async def _store_images(
        self, product_id: uuid.UUID, images: List[UploadedImage], first_is_primary: bool = True
    ) -> AsyncIterator[Dict[str, Any]]:
        """이미지를 저장소에 올리고 레코드를 만듭니다. first_is_primary 면 첫 이미지가 primary."""
        total = len(images)
        for index, image in enumerate(images):
            stored = await asyncio.to_thread(
                self.storage.upload, product_id, image.content, image.file_name, image.mime_type
            )
            self.store.add_image(
                product_id,
                stored.public_url,
                stored.storage_path,
                file_name=image.file_name,
                file_size=len(image.content),
                mime_type=image.mime_type,
                is_primary=(first_is_primary and index == 0),
            )
            yield {"imageUrl": stored.public_url, "progress": 30 + int((index + 1) / total * 40)}

    async def add_images(self, product_id: uuid.UUID, images: List[UploadedImage]) -> List[str]:
        """기존 상품에 이미지를 추가합니다. 파이프라인 상태는 바꾸지 않습니다."""
        self.store.require_product(product_id)
        self.validate_uploads(images)
        has_primary = any(img.is_primary for img in self.store.list_images(product_id))

        image_urls: List[str] = []
        async for uploaded in self._store_images(product_id, images, first_is_primary=not has_primary):
            image_urls.append(uploaded["imageUrl"])

        self.store.append_log(
            product_id,
            1,
            f"Added {len(image_urls)} image(s)",
            action="images_added",
            details={"image_count": len(image_urls)},
        )
        logger.info(f"[INGEST] Added {len(image_urls)} image(s) to product={product_id}")
        return image_urls

    def _persist_guess(self, product_id: uuid.UUID, guess: IdentificationGuess, hints: ProductHints, source: str, confidence: Optional[int]):
        name = hints.name or guess.display_name()
        self.store.upsert_stage_output(
            ProductAnalysisData,
            product_id,
            {
                "product_name": name,
                "model": hints.model or guess.model,
                "brand": hints.brand or guess.brand,
                "category": hints.category or guess.category,
                "confidence": confidence,
                "item_condition": guess.condition,
                "defects": guess.defects,
                "key_features": guess.key_features,
                "source": source,
            },
        )
        product_values: Dict[str, Any] = {
            "name": name,
            "model": hints.model or guess.model,
            "brand": hints.brand or guess.brand,
            "category": hints.category or guess.category,
            "ai_confidence": confidence,
        }
        if guess.key_features:
            product_values["key_features"] = guess.key_features
        self.store.update_product(product_id, product_values)

    async def ingest(self, images: List[UploadedImage], hints: ProductHints) -> AsyncIterator[Dict[str, Any]]:
        """AI 경로. 이벤트를 순서대로 yield 합니다."""
        ctx = IngestionContext()
        try:
            yield status_event("Creating product record...")
            yield progress_event(10)
            product = self.store.create_product(
                name=hints.name or "Processing...",
                model=hints.model,
                brand=hints.brand,
                category=hints.category,
            )
            ctx.product_id = product.id

            yield status_event(f"Uploading {len(images)} image(s)...")
            yield progress_event(30)
            async for uploaded in self._store_images(product.id, images):
                ctx.image_urls.append(uploaded["imageUrl"])
                yield progress_event(uploaded["progress"])

            yield status_event("Starting AI analysis...")
            self.machine.start(product.id, 1)
            ctx.stage_started = True
            self.store.append_log(
                product.id,
                1,
                f"Product uploaded with {len(images)} image(s)",
                action="product_upload",
                details={"image_count": len(images), "hints": hints.__dict__},
            )
            yield progress_event(75)

            guess = await self.enrichment.identify([image.content for image in images])

            phase = self.store.get_phase(product.id, 1)
            if phase is None or phase.status != "running":
                # identify 도중 pause/cancel 된 경우: 결과 폐기
                status = phase.status if phase else "missing"
                logger.warning(f"[INGEST] Discarding stage 1 result for product={product.id}: status is {status}")
                self.store.append_log(
                    product.id, 1, "Stage 1 result discarded",
                    level="warning", action="stage_result_discarded",
                    details={"confidence": guess.confidence},
                )
                yield error_event(f"{STAGE_STOPPED_MESSAGE} (status: {status})")
                return

            self.store.set_progress(product.id, 1, 85)
            yield progress_event(85)

            if guess.confidence < self.threshold:
                self._persist_guess(product.id, guess, hints, source="ai", confidence=guess.confidence)
                self.machine.pause(
                    product.id,
                    reason=f"Awaiting manual input: confidence {guess.confidence} below {self.threshold}",
                )
                logger.info(f"[INGEST] Low confidence ({guess.confidence}) for product={product.id}; manual input required")
                yield {
                    "type": "manual_input",
                    "requiresManualInput": True,
                    "productId": str(product.id),
                    "result": guess.model_dump(),
                    "imageUrls": ctx.image_urls,
                    "message": MANUAL_INPUT_MESSAGE,
                }
                return

            self._persist_guess(product.id, guess, hints, source="ai", confidence=guess.confidence)
            yield {"type": "analysis", "result": guess.model_dump()}

            yield status_event("Finalizing product analysis...")
            self.machine.complete(product.id, 1, {"confidence": guess.confidence, "source": "ai"})
            yield progress_event(100)
            yield {
                "type": "complete",
                "success": True,
                "productId": str(product.id),
                "imageUrls": ctx.image_urls,
                "message": "Product analysis complete. Market research has been scheduled.",
            }
            logger.info(f"[INGEST] Product {product.id} identified (confidence={guess.confidence})")
        except PipelineError as e:
            logger.error(f"[INGEST] Ingestion failed for product={ctx.product_id}: {e.message}")
            self._fail_stage(ctx, e.message)
            yield error_event(e.message)
        except Exception as e:
            logger.exception(f"[INGEST] Unexpected ingestion error for product={ctx.product_id}")
            message = str(e) or e.__class__.__name__
            self._fail_stage(ctx, message)
            yield error_event(message)

    def _fail_stage(self, ctx: IngestionContext, message: str):
        if ctx.product_id is None or not ctx.stage_started:
            return
        try:
            self.machine.fail(ctx.product_id, 1, message)
        except PipelineError as e:
            logger.warning(f"[INGEST] Could not mark stage 1 failed for product={ctx.product_id}: {e.message}")

    async def override(
        self,
        images: List[UploadedImage],
        hints: ProductHints,
        product_id: Optional[uuid.UUID] = None,
        confidence: Optional[int] = None,
    ) -> Dict[str, Any]:
        """사람이 확인한 값으로 stage 1 을 완료합니다 (신뢰도 무관)."""
        if not hints.name:
            raise ValidationError("Product name is required for manual input", field="name")
        if confidence is not None and not 0 <= confidence <= 100:
            raise ValidationError("confidence must be between 0 and 100", field="confidence", actual_value=confidence)
        self.validate_uploads(images, required=product_id is None)

        if product_id is not None:
            product = self.store.require_product(product_id)
            phase = self.store.get_phase(product_id, 1)
            if product.status == "paused":
                self.machine.resume(product_id)
            elif phase is not None and phase.status in ("failed", "stopped"):
                self.machine.retry(product_id, 1)
            elif phase is None or phase.status != "pending":
                raise InvalidTransitionError(
                    f"Product {product_id} is not awaiting manual input (stage 1 is {phase.status if phase else 'missing'})",
                    product_id=product_id,
                    stage=1,
                    operation="override",
                    current_status=phase.status if phase else None,
                )
        else:
            product = self.store.create_product(
                name=hints.name, model=hints.model, brand=hints.brand, category=hints.category
            )
            product_id = product.id

        image_urls = [img.image_url for img in self.store.list_images(product_id)]
        if not image_urls:
            async for uploaded in self._store_images(product_id, images):
                image_urls.append(uploaded["imageUrl"])
        elif images:
            logger.info(f"[INGEST] Product {product_id} already has images; re-submitted files ignored")

        previous = self.store.get_stage_output(ProductAnalysisData, product_id)
        if confidence is None and previous is not None:
            confidence = previous.confidence
        guess = IdentificationGuess(
            condition=previous.item_condition if previous else None,
            defects=previous.defects if previous else [],
            key_features=previous.key_features if previous else [],
        )

        self.machine.start(product_id, 1)
        self._persist_guess(product_id, guess, hints, source="manual", confidence=confidence)
        self.store.append_log(
            product_id,
            1,
            "Product details confirmed manually",
            action="manual_override",
            details={"hints": hints.__dict__, "confidence": confidence},
        )
        self.machine.complete(product_id, 1, {"confidence": confidence, "source": "manual"})
        logger.info(f"[INGEST] Manual override accepted for product={product_id}")

        return {"success": True, "productId": str(product_id), "imageUrls": image_urls}
