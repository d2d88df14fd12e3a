from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional
from datetime import datetime
import uuid


class PhaseResponse(BaseModel):
    stage_number: int
    stage_name: str
    status: str
    can_start: bool
    progress_percentage: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int
    processing_time_seconds: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class ProductResponse(BaseModel):
    id: uuid.UUID
    name: str
    model: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    status: str
    current_stage: int
    ai_confidence: Optional[int] = None
    is_pipeline_running: bool
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    phases: List[PhaseResponse] = []

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())


class LogResponse(BaseModel):
    id: int
    stage_number: int
    level: str
    message: str
    action: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RetryIn(BaseModel):
    stage: Optional[int] = Field(default=None, ge=1, le=4)


class BulkDeleteIn(BaseModel):
    productIds: List[uuid.UUID] = Field(default_factory=list)


class Phase1UpdateIn(BaseModel):
    name: Optional[str] = None
    model: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[str] = None
    keyFeatures: Optional[List[str]] = None

    model_config = ConfigDict(protected_namespaces=())


class Phase2UpdateIn(BaseModel):
    amazonPrice: Optional[float] = Field(default=None, ge=0)
    amazonLink: Optional[str] = None
    ebayPrice: Optional[float] = Field(default=None, ge=0)
    ebayLink: Optional[str] = None
    msrp: Optional[float] = Field(default=None, ge=0)
    competitivePrice: Optional[float] = Field(default=None, ge=0)
    yearReleased: Optional[str] = None
    weight: Optional[str] = None
    dimensions: Optional[str] = None
    color: Optional[str] = None
    material: Optional[str] = None


class Phase3UpdateIn(BaseModel):
    seoTitle: Optional[str] = None
    metaDescription: Optional[str] = None
    urlSlug: Optional[str] = None
    keywords: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class Phase4UpdateIn(BaseModel):
    productTitle: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    productDescription: Optional[str] = None
    keyFeatures: Optional[List[str]] = None
    channels: Optional[List[str]] = None
