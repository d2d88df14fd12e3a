"""
HTTP API 통합 테스트 (FastAPI TestClient + SQLite + FakeProvider).
"""
import json
import uuid

import pytest
from fastapi.testclient import TestClient

from flipforge.main import create_app, serves_local_uploads
from flipforge.models import MarketResearchData, ProductAnalysisData, ProductListingData
from flipforge.services.phase_machine import PhaseStateMachine
from flipforge.services.publisher import NOT_IMPLEMENTED_MESSAGE
from flipforge.services.rate_limit import UploadRateLimiter
from flipforge.settings import Settings


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as c:
        yield c


def _files(count=3):
    return [("images", (f"photo{i}.jpg", b"jpeg-bytes-%d" % i, "image/jpeg")) for i in range(count)]


def _ndjson(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


def _running_product(runtime, stage=1):
    product = runtime.store.create_product(name="Sony a6400", brand="Sony", model="ILCE-6400")
    runtime.machine.start(product.id, stage)
    return product


@pytest.mark.integration
class TestUpload:
    def test_upload_streams_ndjson_events(self, client, runtime):
        response = client.post("/api/products/upload", files=_files(3))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = _ndjson(response)
        assert [e["value"] for e in events if e["type"] == "progress"] == [10, 30, 43, 56, 70, 75, 85, 100]
        assert events[-1]["type"] == "complete"
        assert events[-1]["success"] is True

        product_id = events[-1]["productId"]
        phases = client.get(f"/api/products/{product_id}/phases").json()
        assert [p["status"] for p in phases] == ["completed", "pending", "pending", "pending"]
        assert [p["can_start"] for p in phases] == [True, True, False, False]

    def test_low_confidence_returns_json_then_override(self, client, fake_provider):
        fake_provider.responses["identify"]["confidence"] = 55

        response = client.post("/api/products/upload", files=_files(2))

        assert response.status_code == 200
        body = response.json()
        assert body["requiresManualInput"] is True
        assert "type" not in body
        product_id = body["productId"]
        assert client.get(f"/api/products/{product_id}").json()["status"] == "paused"

        response = client.post(
            "/api/products/upload",
            data={"manualOverride": "true", "productId": product_id, "name": "Sony a6400", "brand": "Sony"},
        )
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert len(response.json()["imageUrls"]) == 2

        queued = client.get("/api/pipeline/queue").json()["queued"]
        assert [(job["productId"], job["stage"]) for job in queued] == [(product_id, 2)]

    def test_uploaded_images_are_served_from_local_storage(self, client):
        events = _ndjson(client.post("/api/products/upload", files=_files(2)))
        image_urls = events[-1]["imageUrls"]
        assert len(image_urls) == 2
        assert all(url.startswith("/uploads/products/") for url in image_urls)

        responses = [client.get(url) for url in image_urls]
        assert [r.status_code for r in responses] == [200, 200]
        assert sorted(r.content for r in responses) == [b"jpeg-bytes-0", b"jpeg-bytes-1"]

        assert client.get("/uploads/products/missing.jpg").status_code == 404

    def test_upload_without_images_is_rejected(self, client):
        response = client.post("/api/products/upload", data={"name": "Sony a6400"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_upload_rejects_non_image_files(self, client):
        response = client.post("/api/products/upload", files=[("images", ("manual.pdf", b"%PDF", "application/pdf"))])
        assert response.status_code == 400

    def test_upload_rate_limit(self, client, runtime):
        runtime.rate_limiter = UploadRateLimiter("2/minute")
        codes = [client.post("/api/products/upload", data={"name": "x"}).status_code for _ in range(3)]
        assert codes == [400, 400, 429]

        response = client.post("/api/products/upload", data={"name": "x"})
        assert response.json() == {"error": "Too many uploads. Please try again later."}

        # 다른 호출자는 별도 한도
        other = client.post("/api/products/upload", data={"name": "x"}, headers={"X-Client-ID": "another"})
        assert other.status_code == 400


@pytest.mark.integration
class TestReads:
    def test_list_and_get_product(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400")

        listed = client.get("/api/products").json()
        assert [p["id"] for p in listed] == [str(product.id)]
        assert len(listed[0]["phases"]) == 4

        detail = client.get(f"/api/products/{product.id}").json()
        assert detail["name"] == "Sony a6400"
        assert detail["status"] == "uploaded"

    def test_unknown_product_is_404(self, client):
        missing = uuid.uuid4()
        response = client.get(f"/api/products/{missing}")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

        response = client.get(f"/api/products/{missing}/merged-data")
        assert response.status_code == 404
        assert "error" in response.json()

    def test_stage_read_reports_missing(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400")

        body = client.get(f"/api/products/{product.id}/phase2").json()
        assert body["success"] is True
        assert body["missing"] == ["market_research"]
        assert body["data"]["marketResearch"] is None

        assert client.get(f"/api/products/{product.id}/phase9").status_code == 422

    def test_merged_data_message(self, client, runtime):
        product = _running_product(runtime)
        runtime.machine.complete(product.id, 1)

        body = client.get(f"/api/products/{product.id}/merged-data").json()
        assert body["success"] is True
        assert body["message"] == "Product data merged successfully - 1/4 stages completed"
        assert "market_research" in body["missing"]

    def test_logs_newest_first(self, client, runtime):
        product = _running_product(runtime)
        client.post(f"/api/products/{product.id}/pause")

        logs = client.get(f"/api/products/{product.id}/logs", params={"limit": 2}).json()
        assert [log["action"] for log in logs] == ["pipeline_paused", "stage_started"]


@pytest.mark.integration
class TestEdits:
    def test_manual_pricing_wins_over_market_data(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400", brand="Sony")
        runtime.store.upsert_stage_output(MarketResearchData, product.id, {"amazon_price": 898.0, "color": "Black"})

        response = client.put(f"/api/products/{product.id}/phase2", json={"amazonPrice": 799.0, "color": "Silver"})
        assert response.status_code == 200
        market = response.json()["data"]["marketResearch"]
        assert market["amazonPrice"] == 799.0
        assert market["color"] == "Silver"

        merged = client.get(f"/api/products/{product.id}/merged-data").json()["data"]
        assert merged["marketResearch"]["amazonPrice"] == 799.0

        actions = [log["action"] for log in client.get(f"/api/products/{product.id}/logs").json()]
        assert "manual_edit" in actions

    def test_phase1_edit_marks_analysis_manual(self, client, runtime):
        product = runtime.store.create_product(name="Processing...")

        body = client.put(f"/api/products/{product.id}/phase1", json={"name": "Canon EOS R6", "brand": "Canon"}).json()

        assert body["data"]["name"] == "Canon EOS R6"
        assert body["data"]["analysis"]["source"] == "manual"
        assert body["data"]["analysis"]["brand"] == "Canon"

    def test_phase3_edit(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400")

        body = client.put(f"/api/products/{product.id}/phase3", json={"seoTitle": "Sony a6400 Body", "tags": ["sony"]}).json()

        seo = body["data"]["seoAnalysis"]
        assert seo["seoTitle"] == "Sony a6400 Body"
        assert seo["tags"] == ["sony"]
        assert seo["isDerived"] is False


@pytest.mark.integration
class TestControls:
    def test_pause_then_resume(self, client, runtime):
        product = _running_product(runtime)

        paused = client.post(f"/api/products/{product.id}/pause").json()
        assert paused == {"success": True, "productId": str(product.id), "stage": 1, "status": "paused"}

        resumed = client.post(f"/api/products/{product.id}/resume").json()
        assert resumed["stage"] == 1
        # stage 1 은 업로드 경로로만 다시 실행
        assert resumed["scheduled"] is False

    def test_cancelled_pipeline_cannot_resume(self, client, runtime):
        product = _running_product(runtime)

        assert client.post(f"/api/products/{product.id}/cancel").status_code == 200
        response = client.post(f"/api/products/{product.id}/resume")
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    def test_retry_schedules_failed_stage(self, client, runtime):
        # 스케줄러 없이 stage 2 실패 상태까지 진행
        machine = PhaseStateMachine(runtime.store)
        product = runtime.store.create_product(name="Sony a6400")
        machine.start(product.id, 1)
        machine.complete(product.id, 1)
        machine.start(product.id, 2)
        machine.fail(product.id, 2, "rate limited")

        body = client.post(f"/api/products/{product.id}/retry", json={"stage": 2}).json()
        assert body["stage"] == 2
        assert body["scheduled"] is True

        phase = runtime.store.get_phase(product.id, 2)
        assert phase.status == "pending"
        assert phase.retry_count == 1

    def test_retry_without_failed_stage_is_409(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400")
        assert client.post(f"/api/products/{product.id}/retry").status_code == 409


@pytest.mark.integration
class TestPublishAndHealth:
    def test_unsupported_platform_is_not_an_error(self, client):
        payload = {"platform": "ebay", "data": {"title": "Sony a6400", "price": 720}}
        response = client.post("/api/publish", json=payload)

        assert response.status_code == 200
        assert response.json()["data"] == {"success": False, "platform": "ebay", "error": NOT_IMPLEMENTED_MESSAGE}

    def test_woocommerce_without_credentials(self, client):
        payload = {"platform": "woocommerce", "data": {"title": "Sony a6400", "price": 720}}
        response = client.post("/api/publish", json=payload)

        assert response.status_code == 502
        assert response.json()["code"] == "PUBLISH_ERROR"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "database": "ok", "workers": 0}


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, True),
        ({"local_storage_base_url": "/media/"}, True),
        ({"local_storage_base_url": "https://cdn.example.com/uploads"}, False),
        ({"local_storage_base_url": "/"}, False),
        ({"storage_backend": "supabase"}, False),
    ],
)
def test_serves_local_uploads(overrides, expected):
    assert serves_local_uploads(Settings(_env_file=None, **overrides)) is expected


@pytest.mark.integration
class TestDashboardAndBulkOperations:
    def test_stats_counts_products_by_status(self, client, runtime):
        uploaded = runtime.store.create_product(name="Sony a6400")
        _running_product(runtime)
        paused = _running_product(runtime)
        runtime.machine.pause(paused.id)
        cancelled = _running_product(runtime)
        runtime.machine.cancel(cancelled.id)
        done = runtime.store.create_product(name="Canon R50")
        runtime.store.update_product(done.id, {"status": "completed"})
        runtime.store.upsert_stage_output(ProductListingData, done.id, {"publishing_status": "published"})
        runtime.store.upsert_stage_output(ProductListingData, uploaded.id, {"publishing_status": "draft"})

        stats = client.get("/api/products/stats").json()

        assert stats["totalProducts"] == 5
        assert stats["totalProcessing"] == 2
        assert stats["totalPaused"] == 1
        assert stats["totalError"] == 1
        assert stats["totalCompleted"] == 1
        assert stats["totalPublished"] == 1
        assert stats["byStatus"] == {"uploaded": 1, "processing": 1, "paused": 1, "error": 1, "completed": 1}

    def test_stats_on_empty_catalog(self, client):
        stats = client.get("/api/products/stats").json()
        assert stats["totalProducts"] == 0
        assert stats["totalPublished"] == 0
        assert stats["byStatus"] == {}

    def test_bulk_delete_removes_products_and_rows(self, client, runtime):
        events = _ndjson(client.post("/api/products/upload", files=_files(2)))
        uploaded_id = events[-1]["productId"]
        other = runtime.store.create_product(name="Canon R50")
        kept = runtime.store.create_product(name="Nikon Z50")

        response = client.request("DELETE", "/api/products/bulk-delete", json={"productIds": [uploaded_id, str(other.id)]})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Successfully deleted 2 product(s)"
        assert sorted(p["name"] for p in body["deletedProducts"]) == ["Canon R50", "Sony Alpha a6400 Mirrorless Camera"]

        deleted_id = uuid.UUID(uploaded_id)
        assert client.get(f"/api/products/{uploaded_id}").status_code == 404
        assert runtime.store.list_phases(deleted_id) == []
        assert runtime.store.list_images(deleted_id) == []
        assert runtime.store.list_logs(deleted_id) == []
        assert runtime.store.get_stage_output(ProductAnalysisData, deleted_id) is None
        assert [p["id"] for p in client.get("/api/products").json()] == [str(kept.id)]

    def test_bulk_delete_with_unknown_id_deletes_nothing(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400")
        missing = uuid.uuid4()

        response = client.request("DELETE", "/api/products/bulk-delete", json={"productIds": [str(product.id), str(missing)]})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
        assert response.json()["context"]["product_id"] == str(missing)
        assert client.get(f"/api/products/{product.id}").status_code == 200
        assert len(runtime.store.list_phases(product.id)) == 4

    def test_bulk_delete_requires_ids(self, client):
        response = client.request("DELETE", "/api/products/bulk-delete", json={"productIds": []})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_add_images_to_existing_product(self, client, runtime):
        events = _ndjson(client.post("/api/products/upload", files=_files(1)))
        product_id = events[-1]["productId"]

        response = client.post(
            f"/api/products/{product_id}/images",
            files=[("images", ("back.png", b"png-bytes", "image/png")), ("images", ("side.png", b"png-side", "image/png"))],
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert len(body["images"]) == 2
        assert client.get(body["images"][0]).content == b"png-bytes"

        images = runtime.store.list_images(uuid.UUID(product_id))
        assert len(images) == 3
        assert [img.is_primary for img in images].count(True) == 1
        assert images[0].file_name == "photo0.jpg"
        # 파이프라인 상태는 그대로
        phases = client.get(f"/api/products/{product_id}/phases").json()
        assert [p["status"] for p in phases] == ["completed", "pending", "pending", "pending"]
        assert "images_added" in [log["action"] for log in client.get(f"/api/products/{product_id}/logs").json()]

    def test_first_added_image_becomes_primary_when_none_exist(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400")

        response = client.post(f"/api/products/{product.id}/images", files=_files(2))

        assert response.status_code == 200
        images = runtime.store.list_images(product.id)
        assert [img.is_primary for img in images] == [True, False]

    def test_add_images_validation(self, client, runtime):
        product = runtime.store.create_product(name="Sony a6400")

        assert client.post(f"/api/products/{product.id}/images").status_code == 400
        response = client.post(
            f"/api/products/{product.id}/images", files=[("images", ("manual.pdf", b"%PDF", "application/pdf"))]
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

        response = client.post(f"/api/products/{uuid.uuid4()}/images", files=_files(1))
        assert response.status_code == 404
