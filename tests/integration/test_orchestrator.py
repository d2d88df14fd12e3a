"""
PipelineOrchestrator 통합 테스트: stage 2~4 체인, 실패 처리, 취소 시 결과 폐기.
"""
import asyncio

import pytest

from flipforge.models import MarketResearchData, ProductAnalysisData, ProductListingData, SeoAnalysisData
from flipforge.services.exceptions import ProviderError
from flipforge.services.stage_queue import StageQueue


def _identified_product(runtime, **fields):
    """stage 1 이 끝난 상품 (stage 2 가 큐에 적재됨)."""
    store, machine = runtime.store, runtime.machine
    product = store.create_product(name="Sony Alpha a6400", model="ILCE-6400", **fields)
    machine.start(product.id, 1)
    store.upsert_stage_output(
        ProductAnalysisData,
        product.id,
        {
            "product_name": "Sony Alpha a6400",
            "model": "ILCE-6400",
            "brand": "Sony",
            "confidence": 92,
            "item_condition": "Good",
            "key_features": ["24.2MP APS-C sensor"],
            "source": "ai",
        },
    )
    machine.complete(product.id, 1)
    return product


async def _run_queue(runtime):
    runtime.queue.worker_count = 1
    runtime.queue.start()
    try:
        await runtime.queue.drain()
        await runtime.orchestrator.wait_background()
    finally:
        await runtime.queue.stop()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_chain_runs_to_completion(runtime, fake_provider):
    product = _identified_product(runtime, brand="Sony")
    assert runtime.queue.snapshot()["queued"][0]["stage"] == 2

    await _run_queue(runtime)

    store = runtime.store
    refreshed = store.get_product(product.id)
    assert refreshed.status == "completed"
    assert refreshed.is_pipeline_running is False
    assert {p.status for p in store.list_phases(product.id)} == {"completed"}

    market = store.get_stage_output(MarketResearchData, product.id)
    seo = store.get_stage_output(SeoAnalysisData, product.id)
    listing = store.get_stage_output(ProductListingData, product.id)
    assert market.amazon_price == 898.0
    assert seo.seo_title.startswith("Sony a6400")
    # competitive price 가 msrp / amazon 보다 우선
    assert listing.price == 720.0
    assert listing.publishing_status == "draft"
    assert listing.channels == ["woocommerce"]
    assert "Condition: Good" in listing.product_description

    # 빈 컬럼만 채움: 사람이 입력한 brand 는 유지, category/year 는 채워짐
    assert refreshed.brand == "Sony"
    assert refreshed.category == "Mirrorless Cameras"
    assert refreshed.year_released == "2019"

    # stage 2, 3, 4 + 완료 후 시장 데이터 갱신
    assert fake_provider.calls == ["enrich", "seo", "enrich"]
    assert store.get_stage_output(MarketResearchData, product.id).refreshed_at is not None
    actions = [log.action for log in store.list_logs(product.id, limit=200)]
    assert "pipeline_completed" in actions
    assert "auto_market_research" in actions


@pytest.mark.integration
@pytest.mark.asyncio
async def test_provider_error_fails_stage_with_vendor_message(runtime, fake_provider):
    fake_provider.errors["enrich"] = ProviderError("You exceeded your current quota", provider="openai")
    product = _identified_product(runtime)

    await runtime.orchestrator.run_stage(product.id, 2)

    phase = runtime.store.get_phase(product.id, 2)
    refreshed = runtime.store.get_product(product.id)
    assert phase.status == "failed"
    assert phase.error_message == "You exceeded your current quota"
    assert refreshed.status == "error"
    assert runtime.store.get_stage_output(MarketResearchData, product.id) is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unexpected_exception_is_contained(runtime, fake_provider):
    fake_provider.errors["enrich"] = RuntimeError("socket closed")
    product = _identified_product(runtime)

    await runtime.orchestrator.run_stage(product.id, 2)

    assert runtime.store.get_phase(product.id, 2).error_message == "socket closed"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_missing_upstream_row_fails_stage(runtime):
    store, machine = runtime.store, runtime.machine
    product = store.create_product(name="Sony Alpha a6400")
    machine.start(product.id, 1)
    machine.complete(product.id, 1)

    await runtime.orchestrator.run_stage(product.id, 2)

    phase = store.get_phase(product.id, 2)
    assert phase.status == "failed"
    assert "product_analysis_data" in phase.error_message


@pytest.mark.integration
@pytest.mark.asyncio
async def test_out_of_order_stage_is_skipped(runtime, fake_provider):
    product = runtime.store.create_product(name="Sony Alpha a6400")

    await runtime.orchestrator.run_stage(product.id, 3)

    assert runtime.store.get_phase(product.id, 3).status == "pending"
    assert fake_provider.calls == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_cancel_during_provider_call_discards_result(runtime, fake_provider):
    gate = asyncio.Event()
    fake_provider.gates["enrich"] = gate
    product = _identified_product(runtime)

    task = asyncio.create_task(runtime.orchestrator.run_stage(product.id, 2))
    while runtime.store.get_phase(product.id, 2).status != "running":
        await asyncio.sleep(0)

    runtime.machine.cancel(product.id)
    gate.set()
    await task

    phase = runtime.store.get_phase(product.id, 2)
    assert phase.status == "stopped"
    assert runtime.store.get_product(product.id).status == "error"
    assert runtime.store.get_stage_output(MarketResearchData, product.id) is None
    actions = [log.action for log in runtime.store.list_logs(product.id)]
    assert "stage_result_discarded" in actions


@pytest.mark.integration
@pytest.mark.asyncio
async def test_post_completion_refresh_failure_is_only_logged(runtime, fake_provider):
    product = _identified_product(runtime)
    fake_provider.errors["enrich"] = ProviderError("rate limited")

    assert await runtime.orchestrator.refresh_market_data(product.id) is False
    assert runtime.store.get_product(product.id).status == "processing"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_recover_requeues_pending_stages(runtime):
    product = _identified_product(runtime)

    # 재시작 상황: 새 프로세스의 빈 큐
    fresh = StageQueue(runtime.store, worker_count=0)
    assert fresh.recover() == 1
    assert fresh.snapshot()["queued"][0]["productId"] == str(product.id)
    assert fresh.snapshot()["queued"][0]["stage"] == 2
    # 중복 적재 없음
    assert fresh.recover() == 0
