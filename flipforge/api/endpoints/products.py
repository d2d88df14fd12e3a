from fastapi import APIRouter, Depends, File, Form, Path, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from typing import Any, AsyncIterator, Dict, List, Optional
import json
import logging
import uuid

from flipforge.api.deps import get_runtime
from flipforge.models import (
    FINAL_STAGE,
    MarketResearchData,
    ProductAnalysisData,
    ProductListingData,
    SeoAnalysisData,
)
from flipforge.runtime import PipelineRuntime
from flipforge.schemas.pipeline import (
    BulkDeleteIn,
    LogResponse,
    Phase1UpdateIn,
    Phase2UpdateIn,
    Phase3UpdateIn,
    Phase4UpdateIn,
    PhaseResponse,
    ProductResponse,
    RetryIn,
)
from flipforge.services.exceptions import ValidationError
from flipforge.services.ingestion import ProductHints, UploadedImage
from flipforge.services.rate_limit import client_identity
from flipforge.services.results import NotFound, Partial, ReadResult

router = APIRouter()

logger = logging.getLogger(__name__)

# 이 이벤트가 나오기 전까지는 응답 종류(스트림 / JSON)를 정할 수 없음
DECISIVE_EVENTS = ("analysis", "manual_input", "complete", "error")
PROCESSING_STATUSES = ("uploaded", "processing")


def _product_response(runtime: PipelineRuntime, product) -> ProductResponse:
    phases = [PhaseResponse.model_validate(p) for p in runtime.store.list_phases(product.id)]
    return ProductResponse.model_validate(product).model_copy(update={"phases": phases})


def _read_response(result: ReadResult) -> Any:
    if isinstance(result, NotFound):
        return JSONResponse(status_code=404, content={"error": result.message})
    body: Dict[str, Any] = {"success": True, "data": result.data}
    if isinstance(result, Partial):
        body["missing"] = sorted(result.missing)
    return body


async def _ndjson(buffered: List[Dict[str, Any]], events: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[str]:
    for event in buffered:
        yield json.dumps(event) + "\n"
    async for event in events:
        yield json.dumps(event) + "\n"


@router.get("", response_model=List[ProductResponse])
def list_products(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    products = runtime.store.list_products(status=status, limit=limit, offset=offset)
    return [_product_response(runtime, p) for p in products]


@router.get("/stats")
def get_dashboard_stats(runtime: PipelineRuntime = Depends(get_runtime)):
    """대시보드용 상태별 상품 수."""
    counts = runtime.store.count_products_by_status()
    return {
        "totalProducts": sum(counts.values()),
        "totalProcessing": sum(counts.get(status, 0) for status in PROCESSING_STATUSES),
        "totalPaused": counts.get("paused", 0),
        "totalError": counts.get("error", 0),
        "totalCompleted": counts.get("completed", 0),
        "totalPublished": runtime.store.count_published_listings(),
        "byStatus": counts,
    }


@router.delete("/bulk-delete")
def bulk_delete_products(payload: BulkDeleteIn, runtime: PipelineRuntime = Depends(get_runtime)):
    if not payload.productIds:
        raise ValidationError("Product IDs are required", field="productIds")
    deleted = runtime.store.delete_products(payload.productIds)
    logger.info(f"[API] Bulk deleted {len(deleted)} product(s)")
    return {
        "success": True,
        "message": f"Successfully deleted {len(deleted)} product(s)",
        "deletedProducts": deleted,
    }


@router.post("/upload")
async def upload_product(
    request: Request,
    images: Optional[List[UploadFile]] = File(default=None),
    name: Optional[str] = Form(default=None),
    model: Optional[str] = Form(default=None),
    brand: Optional[str] = Form(default=None),
    category: Optional[str] = Form(default=None),
    manual_override: bool = Form(default=False, alias="manualOverride"),
    product_id: Optional[uuid.UUID] = Form(default=None, alias="productId"),
    confidence: Optional[int] = Form(default=None),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    """
    상품 이미지 업로드 + stage 1.

    - AI 경로: NDJSON 이벤트 스트림 (status / progress / analysis / complete / error)
    - 신뢰도 미달: requiresManualInput JSON 응답 (스트림 아님)
    - manualOverride=true: 사람이 확인한 값으로 stage 1 완료, JSON 응답
    """
    identity = client_identity(request)
    if not runtime.rate_limiter.hit(identity):
        logger.warning(f"[INGEST] Upload rate limit exceeded for {identity}")
        return JSONResponse(status_code=429, content={"error": "Too many uploads. Please try again later."})

    uploads = [
        UploadedImage(content=await f.read(), file_name=f.filename, mime_type=f.content_type)
        for f in (images or [])
    ]
    hints = ProductHints(name=name, model=model, brand=brand, category=category)

    if manual_override:
        return await runtime.ingestion.override(uploads, hints, product_id=product_id, confidence=confidence)

    runtime.ingestion.validate_uploads(uploads)
    events = runtime.ingestion.ingest(uploads, hints)

    buffered: List[Dict[str, Any]] = []
    async for event in events:
        if event["type"] == "manual_input":
            return JSONResponse(content={k: v for k, v in event.items() if k != "type"})
        buffered.append(event)
        if event["type"] in DECISIVE_EVENTS:
            break

    return StreamingResponse(_ndjson(buffered, events), media_type="application/x-ndjson")


@router.get("/{product_id}", response_model=ProductResponse)
def get_product(product_id: uuid.UUID, runtime: PipelineRuntime = Depends(get_runtime)):
    product = runtime.store.require_product(product_id)
    return _product_response(runtime, product)


@router.post("/{product_id}/images")
async def add_product_images(
    product_id: uuid.UUID,
    request: Request,
    images: Optional[List[UploadFile]] = File(default=None),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    """기존 상품에 이미지 추가 (파이프라인은 다시 실행하지 않음)."""
    identity = client_identity(request)
    if not runtime.rate_limiter.hit(identity):
        logger.warning(f"[INGEST] Upload rate limit exceeded for {identity}")
        return JSONResponse(status_code=429, content={"error": "Too many uploads. Please try again later."})

    uploads = [
        UploadedImage(content=await f.read(), file_name=f.filename, mime_type=f.content_type)
        for f in (images or [])
    ]
    image_urls = await runtime.ingestion.add_images(product_id, uploads)
    return {"success": True, "images": image_urls}


@router.get("/{product_id}/phases", response_model=List[PhaseResponse])
def get_phases(product_id: uuid.UUID, runtime: PipelineRuntime = Depends(get_runtime)):
    runtime.store.require_product(product_id)
    return runtime.store.list_phases(product_id)


@router.get("/{product_id}/logs", response_model=List[LogResponse])
def get_logs(
    product_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    runtime.store.require_product(product_id)
    return runtime.store.list_logs(product_id, limit=limit)


@router.get("/{product_id}/merged-data")
async def get_merged_data(product_id: uuid.UUID, runtime: PipelineRuntime = Depends(get_runtime)):
    result = await runtime.aggregator.build(product_id)
    body = _read_response(result)
    if isinstance(body, dict):
        completed = len(body["data"]["summary"]["completedStages"])
        body["message"] = f"Product data merged successfully - {completed}/{FINAL_STAGE} stages completed"
    return body


@router.get("/{product_id}/phase{stage}")
async def get_stage_data(
    product_id: uuid.UUID,
    stage: int = Path(ge=1, le=FINAL_STAGE),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    return _read_response(await runtime.aggregator.read_stage(product_id, stage))


# ----------------------------------------------------------------------
# 사람의 수정 (stage 결과 보정)
# ----------------------------------------------------------------------
@router.put("/{product_id}/phase1")
async def update_phase1(product_id: uuid.UUID, payload: Phase1UpdateIn, runtime: PipelineRuntime = Depends(get_runtime)):
    runtime.store.require_product(product_id)
    data = payload.model_dump(exclude_unset=True)

    product_values = {k: data[k] for k in ("name", "model", "brand", "category", "description") if k in data}
    if "keyFeatures" in data:
        product_values["key_features"] = data["keyFeatures"]
    if product_values:
        runtime.store.update_product(product_id, product_values)

    analysis_values: Dict[str, Any] = {"source": "manual"}
    for src, dst in (("name", "product_name"), ("model", "model"), ("brand", "brand"), ("category", "category"),
                     ("condition", "item_condition"), ("keyFeatures", "key_features")):
        if src in data:
            analysis_values[dst] = data[src]
    runtime.store.upsert_stage_output(ProductAnalysisData, product_id, analysis_values)
    runtime.store.append_log(product_id, 1, "Product analysis edited", action="manual_edit", details={"fields": sorted(data)})
    return _read_response(await runtime.aggregator.read_stage(product_id, 1))


@router.put("/{product_id}/phase2")
async def update_phase2(product_id: uuid.UUID, payload: Phase2UpdateIn, runtime: PipelineRuntime = Depends(get_runtime)):
    runtime.store.require_product(product_id)
    data = payload.model_dump(exclude_unset=True)

    # 가격/링크는 상품 테이블에 저장 (merged view 에서 market 데이터보다 우선)
    product_values: Dict[str, Any] = {}
    for src, dst in (("amazonPrice", "amazon_price"), ("amazonLink", "amazon_link"), ("ebayPrice", "ebay_price"),
                     ("ebayLink", "ebay_link"), ("msrp", "msrp"), ("competitivePrice", "competitive_price"),
                     ("yearReleased", "year_released")):
        if src in data:
            product_values[dst] = data[src]
    if product_values:
        runtime.store.update_product(product_id, product_values)

    market_values = {k: data[k] for k in ("weight", "dimensions", "color", "material") if k in data}
    if market_values:
        runtime.store.upsert_stage_output(MarketResearchData, product_id, market_values)
    runtime.store.append_log(product_id, 2, "Market research edited", action="manual_edit", details={"fields": sorted(data)})
    return _read_response(await runtime.aggregator.read_stage(product_id, 2))


@router.put("/{product_id}/phase3")
async def update_phase3(product_id: uuid.UUID, payload: Phase3UpdateIn, runtime: PipelineRuntime = Depends(get_runtime)):
    runtime.store.require_product(product_id)
    data = payload.model_dump(exclude_unset=True)
    values = {}
    for src, dst in (("seoTitle", "seo_title"), ("metaDescription", "meta_description"), ("urlSlug", "url_slug"),
                     ("keywords", "keywords"), ("tags", "tags")):
        if src in data:
            values[dst] = data[src]
    runtime.store.upsert_stage_output(SeoAnalysisData, product_id, values)
    runtime.store.append_log(product_id, 3, "SEO analysis edited", action="manual_edit", details={"fields": sorted(data)})
    return _read_response(await runtime.aggregator.read_stage(product_id, 3))


@router.put("/{product_id}/phase4")
async def update_phase4(product_id: uuid.UUID, payload: Phase4UpdateIn, runtime: PipelineRuntime = Depends(get_runtime)):
    runtime.store.require_product(product_id)
    data = payload.model_dump(exclude_unset=True)
    values = {}
    for src, dst in (("productTitle", "product_title"), ("price", "price"), ("productDescription", "product_description"),
                     ("keyFeatures", "key_features"), ("channels", "channels")):
        if src in data:
            values[dst] = data[src]
    runtime.store.upsert_stage_output(ProductListingData, product_id, values)
    runtime.store.append_log(product_id, 4, "Listing edited", action="manual_edit", details={"fields": sorted(data)})
    return _read_response(await runtime.aggregator.read_stage(product_id, 4))


# ----------------------------------------------------------------------
# 파이프라인 제어
# ----------------------------------------------------------------------
@router.post("/{product_id}/pause")
def pause_pipeline(product_id: uuid.UUID, runtime: PipelineRuntime = Depends(get_runtime)):
    stage = runtime.machine.pause(product_id)
    return {"success": True, "productId": str(product_id), "stage": stage, "status": "paused"}


@router.post("/{product_id}/resume")
async def resume_pipeline(product_id: uuid.UUID, runtime: PipelineRuntime = Depends(get_runtime)):
    stage = runtime.machine.resume(product_id)
    # stage 1 은 업로드(override)로만 다시 실행
    scheduled = runtime.queue.enqueue(product_id, stage) if stage > 1 else False
    return {"success": True, "productId": str(product_id), "stage": stage, "scheduled": scheduled}


@router.post("/{product_id}/cancel")
def cancel_pipeline(product_id: uuid.UUID, runtime: PipelineRuntime = Depends(get_runtime)):
    stage = runtime.machine.cancel(product_id)
    return {"success": True, "productId": str(product_id), "stage": stage, "status": "error"}


@router.post("/{product_id}/retry")
async def retry_stage(
    product_id: uuid.UUID,
    payload: Optional[RetryIn] = None,
    runtime: PipelineRuntime = Depends(get_runtime),
):
    stage = runtime.machine.retry(product_id, payload.stage if payload else None)
    scheduled = runtime.queue.enqueue(product_id, stage) if stage > 1 else False
    return {"success": True, "productId": str(product_id), "stage": stage, "scheduled": scheduled}
