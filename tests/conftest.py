"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import JSON
from sqlalchemy.orm import sessionmaker

from flipforge.db import build_engine
from flipforge.models import Base
from flipforge.runtime import build_runtime
from flipforge.services.ai.base import AIProvider
from flipforge.services.ai.service import EnrichmentService
from flipforge.services.events import EventBus
from flipforge.services.phase_machine import PhaseStateMachine
from flipforge.services.publisher import WooCommercePublisher
from flipforge.services.rate_limit import UploadRateLimiter
from flipforge.services.storage import LocalImageStorage
from flipforge.services.store import PipelineStore
from flipforge.settings import Settings


def _patch_jsonb_to_json(base):
    """
    SQLite에서 JSONB를 JSON으로 변경하여 컴파일 오류 방지.
    테스트용으로만 사용.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()


IDENTIFY_RESULT = {
    "name": "Sony Alpha a6400 Mirrorless Camera",
    "model": "ILCE-6400",
    "brand": "Sony",
    "category": "Cameras",
    "confidence": 92,
    "condition": "Good",
    "defects": ["light scratches on the grip"],
    "key_features": ["24.2MP APS-C sensor", "4K video recording", "Product features not detected by AI"],
}

ENRICH_RESULT = {
    "amazon_price": "$898.00",
    "amazon_url": "https://www.amazon.com/dp/B07MTWVN3M",
    "ebay_price": 650,
    "ebay_url": "https://www.ebay.com/itm/123",
    "msrp": "$899.99",
    "competitive_price": 720,
    "brand": "Sony",
    "category": "Mirrorless Cameras",
    "year": "2019",
    "weight": "403 g",
    "dimensions": "120 x 66.9 x 49.9 mm",
    "manufacturer": "Sony Corporation",
    "model_number": "ILCE-6400",
    "color": "Black",
    "material": "Magnesium alloy",
    "key_selling_points": ["Real-time Eye AF", "180-degree tilting screen"],
}

SEO_RESULT = {
    "seo_title": "Sony a6400 Mirrorless Camera Body - Used, Tested",
    "meta_description": "Pre-owned Sony a6400 with 24.2MP sensor and 4K video. Tested and ready to shoot.",
    "url_slug": "sony-a6400-mirrorless-camera-used",
    "keywords": ["sony a6400", "used mirrorless camera"],
    "tags": ["sony", "camera"],
    "seo_score": 88,
    "content_suggestions": ["Mention included accessories"],
}


class FakeProvider(AIProvider):
    """프롬프트 종류(identify / enrich / seo)별로 준비된 응답을 돌려주는 provider."""
    name = "fake"

    def __init__(self):
        self.responses: Dict[str, Any] = {
            "identify": dict(IDENTIFY_RESULT),
            "enrich": dict(ENRICH_RESULT),
            "seo": dict(SEO_RESULT),
        }
        self.errors: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []

    @staticmethod
    def capability(prompt: str, images: Optional[List[bytes]]) -> str:
        if images:
            return "identify"
        if "product research specialist" in prompt:
            return "enrich"
        return "seo"

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return ""

    async def generate_json(self, prompt: str, model: Optional[str] = None, images: Optional[List[bytes]] = None) -> Dict[str, Any]:
        capability = self.capability(prompt, images)
        self.calls.append(capability)
        gate = self.gates.get(capability)
        if gate is not None:
            await gate.wait()
        if capability in self.errors:
            raise self.errors[capability]
        return dict(self.responses[capability])


@pytest.fixture(scope="function")
def test_config(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'flipforge.db'}",
        pipeline_worker_count=0,
        pipeline_recover_on_startup=False,
        upload_rate_limit="100/minute",
        local_storage_dir=str(tmp_path / "uploads"),
        default_ai_provider="openai",
    )


@pytest.fixture(scope="function")
def session_factory(test_config):
    """
    테스트마다 새로운 SQLite 파일 DB.
    aggregator 가 스레드에서 조회하므로 메모리 DB 대신 파일을 사용합니다.
    """
    _patch_jsonb_to_json(Base)
    engine = build_engine(test_config.database_url)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def store(session_factory, events) -> PipelineStore:
    return PipelineStore(session_factory, events)


@pytest.fixture
def machine(store) -> PhaseStateMachine:
    return PhaseStateMachine(store)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def enrichment(fake_provider, test_config) -> EnrichmentService:
    return EnrichmentService(providers={"fake": fake_provider}, default_provider="fake", config=test_config)


@pytest.fixture
def runtime(session_factory, test_config, enrichment, events, tmp_path):
    """큐 워커 없이 (worker_count=0) 조립된 PipelineRuntime."""
    return build_runtime(
        session_factory,
        test_config,
        enrichment=enrichment,
        storage=LocalImageStorage(str(tmp_path / "uploads")),
        publisher=WooCommercePublisher(test_config),
        rate_limiter=UploadRateLimiter(test_config.upload_rate_limit),
        events=events,
    )


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (SQLite 파일 DB 사용)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
