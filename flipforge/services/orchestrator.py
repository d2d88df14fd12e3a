"""
PipelineOrchestrator: stage 2~4 실행.

각 stage 는 다음 순서로 진행합니다.
    start (CAS) -> upstream 행 조회 -> provider 호출 -> stage 스키마로 매핑
    -> 상태 재확인 (running 이 아니면 결과 폐기) -> upsert -> complete

provider / store / upstream 오류는 stage 경계에서 잡아 fail() 로 기록하고
호출자에게 전파하지 않습니다.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import logging
import uuid

from flipforge.models import (
    MarketResearchData,
    ProductAnalysisData,
    ProductListingData,
    SeoAnalysisData,
    utcnow,
)
from flipforge.schemas.publish import ListingPayload
from flipforge.services.aggregator import filter_key_features, first_price, first_text
from flipforge.services.ai.service import EnrichmentService
from flipforge.services.exceptions import (
    InvalidTransitionError,
    MissingUpstreamDataError,
    PipelineError,
    ProductNotFoundError,
    StoreError,
)
from flipforge.services.phase_machine import PhaseStateMachine
from flipforge.services.publisher import WooCommercePublisher
from flipforge.services.store import PipelineStore
from flipforge.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class StageOutput:
    model_cls: type
    values: Dict[str, Any]
    product_fill: Dict[str, Any] = field(default_factory=dict)
    summary: Dict[str, Any] = field(default_factory=dict)


def model_query(product, analysis: Optional[ProductAnalysisData]) -> str:
    """enrich() 에 넘길 모델 문자열 (브랜드 + 모델)."""
    model = first_text(analysis.model if analysis else None, product.model, product.name)
    brand = first_text(product.brand, analysis.brand if analysis else None)
    if brand and model and brand.lower() not in model.lower():
        return f"{brand} {model}"
    return model or ""


class PipelineOrchestrator:
    def __init__(
        self,
        store: PipelineStore,
        machine: PhaseStateMachine,
        enrichment: EnrichmentService,
        publisher: Optional[WooCommercePublisher] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.machine = machine
        self.enrichment = enrichment
        self.publisher = publisher
        self.config = config or default_settings
        self._runners: Dict[int, Callable[[uuid.UUID], Awaitable[StageOutput]]] = {
            2: self._run_market_research,
            3: self._run_seo_analysis,
            4: self._run_listing,
        }
        self._background_tasks: set[asyncio.Task] = set()

    async def run_stage(self, product_id: uuid.UUID, stage: int) -> None:
        runner = self._runners.get(stage)
        if runner is None:
            logger.error(f"[PIPELINE] No runner for stage {stage} (product={product_id})")
            return

        try:
            self.machine.start(product_id, stage)
        except (InvalidTransitionError, ProductNotFoundError) as e:
            logger.warning(f"[PIPELINE] Skipping stage {stage} for product={product_id}: {e.message}")
            return
        except StoreError as e:
            logger.error(f"[PIPELINE] Could not start stage {stage} for product={product_id}: {e.message}")
            return

        try:
            output = await runner(product_id)
            self.store.set_progress(product_id, stage, 60)

            phase = self.store.get_phase(product_id, stage)
            if phase is None or phase.status != "running":
                logger.warning(
                    f"[PIPELINE] Discarding stage {stage} result for product={product_id}: "
                    f"status is {phase.status if phase else 'missing'}"
                )
                self.store.append_log(
                    product_id, stage, f"Stage {stage} result discarded",
                    level="warning", action="stage_result_discarded",
                )
                return

            self.store.upsert_stage_output(output.model_cls, product_id, output.values)
            if output.product_fill:
                self.store.fill_empty_product_fields(product_id, output.product_fill)
            self.store.set_progress(product_id, stage, 90)
        except PipelineError as e:
            self._fail(product_id, stage, e.message)
            return
        except Exception as e:
            logger.exception(f"[PIPELINE] Unexpected error in stage {stage} for product={product_id}")
            self._fail(product_id, stage, str(e) or e.__class__.__name__)
            return

        try:
            self.machine.complete(product_id, stage, output.summary)
        except InvalidTransitionError as e:
            # pause/cancel 이 upsert 와 complete 사이에 들어온 경우
            logger.warning(f"[PIPELINE] Stage {stage} not completed for product={product_id}: {e.message}")
        except StoreError as e:
            logger.error(f"[PIPELINE] Store failure completing stage {stage} for product={product_id}: {e.message}")

    def _fail(self, product_id: uuid.UUID, stage: int, message: str):
        try:
            self.machine.fail(product_id, stage, message)
        except InvalidTransitionError:
            logger.warning(f"[PIPELINE] Stage {stage} for product={product_id} no longer running; error dropped: {message}")
        except StoreError as e:
            logger.error(f"[PIPELINE] Could not record failure of stage {stage} for product={product_id}: {e.message} (original: {message})")

    def _require(self, model_cls: type, product_id: uuid.UUID, stage: int):
        row = self.store.get_stage_output(model_cls, product_id)
        if row is None:
            raise MissingUpstreamDataError(
                f"Stage {stage} requires {model_cls.__tablename__} for product {product_id}",
                product_id=product_id,
                stage=stage,
                table_name=model_cls.__tablename__,
            )
        return row

    # ------------------------------------------------------------------
    # stage runners
    # ------------------------------------------------------------------
    async def _run_market_research(self, product_id: uuid.UUID) -> StageOutput:
        product = self.store.require_product(product_id)
        analysis = self._require(ProductAnalysisData, product_id, 2)

        query = model_query(product, analysis)
        facts = await self.enrichment.enrich(query)

        values = facts.model_dump()
        values["refreshed_at"] = utcnow()
        return StageOutput(
            model_cls=MarketResearchData,
            values=values,
            product_fill={
                "brand": facts.brand,
                "category": facts.category,
                "year_released": facts.year,
            },
            summary={"query": query, "amazon_price": facts.amazon_price, "msrp": facts.msrp},
        )

    async def _run_seo_analysis(self, product_id: uuid.UUID) -> StageOutput:
        product = self.store.require_product(product_id)
        analysis = self._require(ProductAnalysisData, product_id, 3)
        market = self._require(MarketResearchData, product_id, 3)

        facts = {
            "name": product.name,
            "brand": first_text(product.brand, analysis.brand, market.brand),
            "model": first_text(analysis.model, product.model),
            "category": first_text(product.category, analysis.category, market.category),
            "condition": analysis.item_condition,
            "defects": analysis.defects or [],
            "key_features": filter_key_features(product.key_features or analysis.key_features),
            "key_selling_points": market.key_selling_points or [],
            "year": first_text(product.year_released, market.year),
            "msrp": first_price(product.msrp, market.msrp),
            "competitive_price": first_price(product.competitive_price, market.competitive_price),
            "specifications": {
                "weight": market.weight,
                "dimensions": market.dimensions,
                "color": market.color,
                "material": market.material,
            },
        }
        copy = await self.enrichment.write_seo(facts)
        return StageOutput(
            model_cls=SeoAnalysisData,
            values=copy.model_dump(),
            summary={"seo_title": copy.seo_title, "seo_score": copy.seo_score},
        )

    async def _run_listing(self, product_id: uuid.UUID) -> StageOutput:
        product = self.store.require_product(product_id)
        seo = self._require(SeoAnalysisData, product_id, 4)
        market = self._require(MarketResearchData, product_id, 4)
        analysis = self.store.get_stage_output(ProductAnalysisData, product_id)

        price = first_price(
            product.competitive_price, market.competitive_price,
            product.msrp, market.msrp,
            product.amazon_price, market.amazon_price,
            product.ebay_price, market.ebay_price,
        )
        features = filter_key_features(product.key_features or (analysis.key_features if analysis else None))
        condition = (analysis.item_condition if analysis else None) or "used"
        brand = first_text(product.brand, market.brand)
        category = first_text(product.category, market.category)

        description_parts = [seo.meta_description or product.description or product.name]
        if features:
            description_parts.append("Key features:\n" + "\n".join(f"- {f}" for f in features))
        description_parts.append(f"Condition: {condition}")

        values: Dict[str, Any] = {
            "product_title": seo.seo_title or product.name,
            "price": price or None,
            "publishing_status": "draft",
            "brand": brand,
            "category": category,
            "item_condition": condition,
            "product_description": "\n\n".join(description_parts),
            "key_features": features,
            "channels": list(self.config.listing_channels),
            "platform": None,
            "external_id": None,
            "external_url": None,
        }

        if self.config.listing_auto_publish and self.publisher is not None:
            platform = self.config.listing_auto_publish_platform
            images = self.store.list_images(product_id)
            payload = ListingPayload(
                title=values["product_title"],
                description=values["product_description"],
                price=price or 0,
                condition=condition,
                brand=brand or "",
                categories=[category] if category else [],
                tags=seo.tags or [],
                imageUrls=[img.image_url for img in images],
                specifications={k: v for k, v in {
                    "weight": market.weight,
                    "dimensions": market.dimensions,
                    "model_number": market.model_number,
                }.items() if v},
            )
            result = await self.publisher.publish(platform, payload)
            if result.success:
                values.update(
                    publishing_status="published",
                    platform=platform,
                    external_id=result.productId,
                    external_url=result.productUrl,
                )
            else:
                logger.warning(f"[PIPELINE] Auto-publish skipped for product={product_id}: {result.error}")

        return StageOutput(
            model_cls=ProductListingData,
            values=values,
            summary={"price": values["price"], "publishing_status": values["publishing_status"]},
        )

    # ------------------------------------------------------------------
    # post-completion
    # ------------------------------------------------------------------
    def schedule_post_completion(self, product_id: uuid.UUID) -> Optional[asyncio.Task]:
        """파이프라인 완료 후 시장 데이터 갱신 (대기하지 않음, 실패는 로그만)."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"[PIPELINE] No running loop; post-completion refresh skipped for product={product_id}")
            return None
        task = loop.create_task(self.refresh_market_data(product_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def refresh_market_data(self, product_id: uuid.UUID) -> bool:
        try:
            product = self.store.require_product(product_id)
            analysis = self.store.get_stage_output(ProductAnalysisData, product_id)
            query = model_query(product, analysis)
            facts = await self.enrichment.enrich(query)
            values = facts.model_dump()
            values["refreshed_at"] = utcnow()
            self.store.upsert_stage_output(MarketResearchData, product_id, values)
            self.store.append_log(
                product_id, 0, "Market data refreshed after pipeline completion",
                action="auto_market_research", details={"query": query},
            )
            logger.info(f"[PIPELINE] Post-completion market refresh done for product={product_id}")
            return True
        except Exception as e:
            logger.warning(f"[PIPELINE] Post-completion market refresh failed for product={product_id}: {e}")
            return False

    async def wait_background(self):
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
