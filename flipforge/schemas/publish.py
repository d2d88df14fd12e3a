from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ListingPayload(BaseModel):
    """퍼블리싱 대상 플랫폼에 넘기는 정규화된 리스팅 데이터"""
    title: str = Field(min_length=1)
    description: str = ""
    price: float = Field(ge=0)
    condition: str = "used"
    brand: str = ""
    sku: str = "FF"
    status: Literal["draft", "pending", "private", "publish"] = "draft"
    stockQuantity: int = Field(default=1, ge=0)
    categories: List[str] = []
    tags: List[str] = []
    images: List[str] = []  # base64 인코딩된 이미지
    imageUrls: List[str] = []  # 이미 공개된 이미지 URL (WooCommerce 가 직접 가져감)
    specifications: Dict[str, Any] = {}


class PublishIn(BaseModel):
    platform: str
    data: ListingPayload


class PublishResult(BaseModel):
    success: bool
    productId: Optional[str] = None
    productUrl: Optional[str] = None
    platform: str
    error: Optional[str] = None
