"""
DataReconciliationAggregator: 상품 + stage 결과 + 이미지를 하나의 뷰로 병합.

- 모든 행을 동시에 조회합니다 (행마다 별도 세션, asyncio.to_thread + gather).
- 상품 행이 없을 때만 NotFound. 나머지 행이 없으면 "아직 생성되지 않음" 으로 취급합니다.
- 필드별 우선순위는 왼쪽부터, 처음으로 비어 있지 않은 값이 이깁니다.
- 요청마다 새로 계산하며 캐시하지 않습니다.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import asyncio
import logging
import re
import uuid

from flipforge.models import (
    MarketResearchData,
    Product,
    ProductAnalysisData,
    ProductImage,
    ProductListingData,
    SeoAnalysisData,
)
from flipforge.services.results import NotFound, ReadResult, ok_or_partial
from flipforge.services.store import PipelineStore

logger = logging.getLogger(__name__)

TOTAL_STAGES = 4

PLACEHOLDER_PHRASES = (
    "product features not detected by ai",
    "feature detection pending",
    "features will be detected during processing",
    "tune ai prompt",
    "ai extraction needs improvement",
    "standard features",
)
GUIDANCE_FEATURE = "Product needs more specific identification - tune AI prompt for better feature extraction"

_UNIT_TOKEN = re.compile(
    r"\d+(?:\.\d+)?\s?(?:mp|gb|tb|mb|ghz|mhz|hz|inch|inches|in|mm|cm|mah|wh|w|v|fps|k|\"|”)(?![a-z])",
    re.IGNORECASE,
)
_SPEC_WORD = re.compile(
    r"\b(?:usb(?:-c)?|wi-?fi|bluetooth|chip|processor|camera|display|battery|storage|ram|cores?|"
    r"pixels?|zoom|charging|wireless|connector|hdmi|oled|lcd|hdr|nfc|gps|sensor|lens)\b",
    re.IGNORECASE,
)
_UNKNOWN_BRANDS = {"", "unknown", "generic"}
_UNKNOWN_MODELS = {"", "unknown", "unknown model", "product"}


# ----------------------------------------------------------------------
# precedence helpers
# ----------------------------------------------------------------------
def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def first_text(*values: Any, default: Optional[str] = None) -> Optional[str]:
    for value in values:
        if isinstance(value, str):
            value = value.strip()
        if not _is_empty(value):
            return value
    return default


def first_price(*values: Any, default: float = 0) -> float:
    """가격은 0 이하도 빈 값으로 취급."""
    for value in values:
        if value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if number > 0:
            return number
    return default


def is_technical_feature(feature: str) -> bool:
    return bool(_UNIT_TOKEN.search(feature) or _SPEC_WORD.search(feature))


def filter_key_features(features: Optional[Iterable[Any]]) -> List[str]:
    """placeholder 문구를 걸러내고 구체적인 항목만 남깁니다."""
    kept: List[str] = []
    for feature in features or []:
        if not isinstance(feature, str) or not feature.strip():
            continue
        text = feature.strip()
        lowered = text.lower()
        if any(phrase in lowered for phrase in PLACEHOLDER_PHRASES):
            continue
        if is_technical_feature(text) or (len(text) > 15 and len(text.split()) >= 3):
            kept.append(text)
    return kept


def fallback_key_features(name: Optional[str], brand: Optional[str], model: Optional[str], category: Optional[str]) -> List[str]:
    brand = (brand or "").strip()
    model = (model or "").strip()
    name = (name or "").strip()
    category = (category or "").strip() or "Electronics"

    has_specific_info = (
        name not in ("", "Product")
        and brand.lower() not in _UNKNOWN_BRANDS
        and model.lower() not in _UNKNOWN_MODELS
    )
    if not has_specific_info:
        return [GUIDANCE_FEATURE]
    return [
        f"{brand} {model} core functionality",
        f"{name} device features",
        f"{category} with {brand} quality",
        f"Standard {model} operational controls",
        f"Built-in {category.lower()} capabilities",
    ]


def resolve_key_features(product: Product) -> List[str]:
    features = filter_key_features(product.key_features)
    if features:
        return features
    return fallback_key_features(product.name, product.brand, product.model, product.category)


def derive_seo(brand: str, model: Optional[str], category: str, name: str) -> Dict[str, Any]:
    """SEO 행이 없을 때 브랜드 + 모델로 만든 기본값."""
    subject = " ".join(p for p in (brand if brand != "Unknown" else "", model or "") if p) or name
    slug = re.sub(r"[^a-z0-9]+", "-", subject.lower()).strip("-")
    keywords = [k for k in (subject, f"used {subject}", brand if brand != "Unknown" else None, category) if k]
    return {
        "seoTitle": f"{subject} - Pre-owned"[:60],
        "metaDescription": f"Shop the {subject} in great pre-owned condition. Tested, photographed and ready to ship."[:160],
        "urlSlug": slug,
        "keywords": keywords,
        "tags": [t for t in (brand if brand != "Unknown" else None, category, "used") if t],
        "seoScore": None,
        "contentSuggestions": [],
        "isDerived": True,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dimensions_text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        parts = [f"{k}: {v}" for k, v in value.items() if not _is_empty(v)]
        return ", ".join(parts) or None
    return value


# ----------------------------------------------------------------------
# serializers
# ----------------------------------------------------------------------
def image_view(img: ProductImage) -> Dict[str, Any]:
    return {
        "id": str(img.id),
        "imageUrl": img.image_url,
        "storagePath": img.storage_path,
        "fileName": img.file_name,
        "fileSize": img.file_size,
        "mimeType": img.mime_type,
        "isPrimary": img.is_primary,
        "createdAt": _iso(img.created_at),
    }


def analysis_view(row: ProductAnalysisData) -> Dict[str, Any]:
    return {
        "productName": row.product_name,
        "model": row.model,
        "brand": row.brand,
        "category": row.category,
        "confidence": row.confidence,
        "condition": row.item_condition,
        "defects": row.defects or [],
        "keyFeatures": row.key_features or [],
        "source": row.source,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


def market_view(product: Product, market: Optional[MarketResearchData]) -> Optional[Dict[str, Any]]:
    has_product_pricing = any(
        first_price(v) for v in (product.amazon_price, product.ebay_price, product.msrp, product.competitive_price)
    )
    if market is None and not has_product_pricing:
        return None

    m = market
    return {
        "amazonPrice": first_price(product.amazon_price, m and m.amazon_price),
        "amazonLink": first_text(product.amazon_link, m and m.amazon_url, default=""),
        "ebayPrice": first_price(product.ebay_price, m and m.ebay_price),
        "ebayLink": first_text(product.ebay_link, m and m.ebay_url, default=""),
        "msrp": first_price(product.msrp, m and m.msrp),
        "competitivePrice": first_price(product.competitive_price, m and m.competitive_price),
        "brand": first_text(product.brand, m and m.brand, default="Unknown"),
        "category": first_text(product.category, m and m.category, default="General"),
        "year": first_text(product.year_released, m and m.year, default="Unknown"),
        "dimensions": first_text(_dimensions_text(product.dimensions), m and m.dimensions, default="Unknown"),
        "weight": first_text(m and m.weight, default="Unknown"),
        "manufacturer": first_text(m and m.manufacturer, product.brand, default="Unknown"),
        "modelNumber": first_text(m and m.model_number, product.model, default="Unknown"),
        "color": first_text(m and m.color),
        "material": first_text(m and m.material),
        "keySellingPoints": (m.key_selling_points if m else None) or [],
        "refreshedAt": _iso(m.refreshed_at) if m else None,
        "createdAt": _iso(m.created_at if m else product.created_at),
        "updatedAt": _iso(m.updated_at if m else product.updated_at),
    }


def seo_view(row: SeoAnalysisData) -> Dict[str, Any]:
    return {
        "seoTitle": row.seo_title,
        "metaDescription": row.meta_description,
        "urlSlug": row.url_slug,
        "keywords": row.keywords or [],
        "tags": row.tags or [],
        "seoScore": row.seo_score,
        "contentSuggestions": row.content_suggestions or [],
        "isDerived": False,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


def listing_view(row: ProductListingData) -> Dict[str, Any]:
    return {
        "id": str(row.id),
        "productId": str(row.product_id),
        "productTitle": row.product_title,
        "price": row.price,
        "publishingStatus": row.publishing_status,
        "brand": row.brand,
        "category": row.category,
        "itemCondition": row.item_condition,
        "productDescription": row.product_description,
        "keyFeatures": row.key_features or [],
        "channels": row.channels or [],
        "platform": row.platform,
        "externalId": row.external_id,
        "externalUrl": row.external_url,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


def completion_summary(product: Product, market: Any, seo: Any, images: List[ProductImage]) -> Dict[str, Any]:
    """
    관측 가능한 증거 기반 완료 요약 (PipelinePhase 를 직접 읽지 않음).
        1: status != uploaded / 2: market 행 존재 / 3: current_stage >= 3 / 4: SEO 행 존재
    """
    evidence = {
        1: product.status != "uploaded",
        2: market is not None,
        3: (product.current_stage or 0) >= 3,
        4: seo is not None,
    }
    completed = [stage for stage, done in evidence.items() if done]
    primary = next((img for img in images if img.is_primary), images[0] if images else None)
    return {
        "completedStages": completed,
        "totalStages": TOTAL_STAGES,
        "completionPercentage": round(len(completed) / TOTAL_STAGES * 100),
        "hasMarketData": market is not None,
        "hasSeoData": seo is not None,
        "hasImages": len(images) > 0,
        "imageCount": len(images),
        "primaryImage": primary.image_url if primary else None,
        "dataCompleteness": {
            "product": True,
            "marketResearch": market is not None,
            "seoAnalysis": seo is not None,
            "images": len(images) > 0,
        },
    }


class DataReconciliationAggregator:
    def __init__(self, store: PipelineStore):
        self.store = store

    async def _fetch_optional(self, name: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            # 선택 행 조회 실패는 "아직 없음" 으로 취급
            logger.warning(f"[MERGE] Optional fetch '{name}' failed: {e}")
            return None

    async def _fetch_all(self, product_id: uuid.UUID):
        product, images, analysis, market, seo, listing = await asyncio.gather(
            asyncio.to_thread(self.store.get_product, product_id),
            self._fetch_optional("images", self.store.list_images, product_id),
            self._fetch_optional("analysis", self.store.get_stage_output, ProductAnalysisData, product_id),
            self._fetch_optional("market_research", self.store.get_stage_output, MarketResearchData, product_id),
            self._fetch_optional("seo_analysis", self.store.get_stage_output, SeoAnalysisData, product_id),
            self._fetch_optional("listing", self.store.get_stage_output, ProductListingData, product_id),
        )
        return product, images or [], analysis, market, seo, listing

    async def build(self, product_id: uuid.UUID) -> ReadResult[Dict[str, Any]]:
        product, images, analysis, market, seo, listing = await self._fetch_all(product_id)
        if product is None:
            return NotFound(product_id)

        brand = first_text(product.brand, market.brand if market else None, default="Unknown")
        category = first_text(product.category, market.category if market else None, default="General")

        view = {
            "productInfo": {
                "id": str(product.id),
                "name": product.name,
                "model": product.model,
                "brand": brand,
                "category": category,
                "description": product.description,
                "year": first_text(product.year_released, market.year if market else None, default="Unknown"),
                "dimensions": first_text(
                    _dimensions_text(product.dimensions), market.dimensions if market else None, default="Unknown"
                ),
                "status": product.status,
                "currentStage": product.current_stage,
                "aiConfidence": product.ai_confidence,
                "isPipelineRunning": product.is_pipeline_running,
                "errorMessage": product.error_message,
                "keyFeatures": resolve_key_features(product),
                "technicalSpecs": product.technical_specs or {},
                "createdAt": _iso(product.created_at),
                "updatedAt": _iso(product.updated_at),
            },
            "images": [image_view(img) for img in images],
            "analysis": analysis_view(analysis) if analysis else None,
            "marketResearch": market_view(product, market),
            "seoAnalysis": seo_view(seo) if seo else derive_seo(brand, product.model, category, product.name),
            "productListing": listing_view(listing) if listing else None,
            "summary": completion_summary(product, market, seo, images),
        }

        missing = {
            name
            for name, value in (
                ("analysis", analysis),
                ("market_research", market),
                ("seo_analysis", seo),
                ("listing", listing),
                ("images", images or None),
            )
            if value is None
        }
        return ok_or_partial(view, missing)

    async def read_stage(self, product_id: uuid.UUID, stage: int) -> ReadResult[Dict[str, Any]]:
        """stage 별 조회 엔드포인트용."""
        product, images, analysis, market, seo, listing = await self._fetch_all(product_id)
        if product is None:
            return NotFound(product_id)

        if stage == 1:
            data = {
                "productId": str(product.id),
                "name": product.name,
                "model": product.model,
                "brand": product.brand,
                "category": product.category,
                "aiConfidence": product.ai_confidence,
                "keyFeatures": resolve_key_features(product),
                "images": [image_view(img) for img in images],
                "analysis": analysis_view(analysis) if analysis else None,
            }
            return ok_or_partial(data, {"analysis"} if analysis is None else set())

        if stage == 2:
            data = {"productId": str(product.id), "marketResearch": market_view(product, market)}
            return ok_or_partial(data, {"market_research"} if market is None else set())

        if stage == 3:
            brand = first_text(product.brand, market.brand if market else None, default="Unknown")
            category = first_text(product.category, market.category if market else None, default="General")
            data = {
                "productId": str(product.id),
                "seoAnalysis": seo_view(seo) if seo else derive_seo(brand, product.model, category, product.name),
            }
            return ok_or_partial(data, {"seo_analysis"} if seo is None else set())

        data = {"productId": str(product.id), "productListing": listing_view(listing) if listing else None}
        return ok_or_partial(data, {"listing"} if listing is None else set())
