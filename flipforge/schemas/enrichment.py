import re
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_PRICE_RE = re.compile(r"-?\d+(?:\.\d+)?")


def _parse_price(v: Any) -> Optional[float]:
    """'$1,299.99', 1299, None -> float | None"""
    if v is None or v == "":
        return None
    if isinstance(v, (int, float)):
        return float(v) if v > 0 else None
    match = _PRICE_RE.search(str(v).replace(",", ""))
    if not match:
        return None
    value = float(match.group(0))
    return value if value > 0 else None


def _as_str_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return [str(item).strip() for item in v if item is not None and str(item).strip()]


def _as_optional_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, (dict, list)):
        return None
    text = str(v).strip()
    return text or None


class IdentificationGuess(BaseModel):
    """identify(images) 결과"""
    name: Optional[str] = None
    model: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    confidence: int = Field(default=0, ge=0, le=100)
    condition: Optional[str] = None
    defects: List[str] = []
    key_features: List[str] = []

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> int:
        if v is None or v == "":
            return 0
        try:
            value = float(str(v).rstrip("%"))
        except ValueError:
            return 0
        # 0~1 사이 소수만 비율로 취급 (1 은 1%)
        if 0 < value < 1:
            value *= 100
        return int(round(max(0.0, min(100.0, value))))

    @field_validator("defects", "key_features", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> List[str]:
        return _as_str_list(v)

    @field_validator("name", "model", "brand", "category", "condition", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> Optional[str]:
        return _as_optional_str(v)

    def display_name(self) -> str:
        if self.name:
            return self.name
        parts = [p for p in (self.brand, self.model) if p]
        return " ".join(parts) if parts else "Unidentified product"


class MarketFacts(BaseModel):
    """enrich(model) 결과"""
    amazon_price: Optional[float] = None
    amazon_url: Optional[str] = None
    ebay_price: Optional[float] = None
    ebay_url: Optional[str] = None
    msrp: Optional[float] = None
    competitive_price: Optional[float] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    year: Optional[str] = None
    weight: Optional[str] = None
    dimensions: Optional[str] = None
    manufacturer: Optional[str] = None
    model_number: Optional[str] = None
    color: Optional[str] = None
    material: Optional[str] = None
    key_selling_points: List[str] = []

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    @field_validator("amazon_price", "ebay_price", "msrp", "competitive_price", mode="before")
    @classmethod
    def parse_price(cls, v: Any) -> Optional[float]:
        return _parse_price(v)

    @field_validator(
        "amazon_url", "ebay_url", "brand", "category", "year", "weight",
        "dimensions", "manufacturer", "model_number", "color", "material",
        mode="before",
    )
    @classmethod
    def coerce_str(cls, v: Any) -> Optional[str]:
        return _as_optional_str(v)

    @field_validator("key_selling_points", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> List[str]:
        return _as_str_list(v)


class SEOCopy(BaseModel):
    """write_seo(facts) 결과"""
    seo_title: Optional[str] = None
    meta_description: Optional[str] = None
    url_slug: Optional[str] = None
    keywords: List[str] = []
    tags: List[str] = []
    seo_score: Optional[int] = Field(default=None, ge=0, le=100)
    content_suggestions: List[str] = []

    model_config = ConfigDict(extra="ignore")

    @field_validator("keywords", "tags", "content_suggestions", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> List[str]:
        return _as_str_list(v)

    @field_validator("seo_score", mode="before")
    @classmethod
    def clamp_score(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        try:
            return int(max(0, min(100, round(float(v)))))
        except (TypeError, ValueError):
            return None
