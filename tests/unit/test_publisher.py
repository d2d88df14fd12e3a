"""
WooCommercePublisher 테스트 (httpx.MockTransport 로 외부 호출 대체).
"""
import base64
import json

import httpx
import pytest
from tenacity import wait_none

from flipforge.schemas.publish import ListingPayload
from flipforge.services.exceptions import PublishError
from flipforge.services.publisher import NOT_IMPLEMENTED_MESSAGE, WooCommercePublisher, slugify
from flipforge.settings import Settings


@pytest.fixture
def wc_config() -> Settings:
    return Settings(
        _env_file=None,
        wp_domain="https://shop.example.com",
        wc_consumer_key="ck_test",
        wc_consumer_secret="cs_test",
        wp_username="editor",
        wp_app_password="app-pass",
    )


@pytest.fixture
def listing() -> ListingPayload:
    return ListingPayload(
        title="Sony a6400 Mirrorless Camera",
        description="Pre-owned Sony a6400.",
        price=720,
        brand="Sony",
        categories=["Cameras"],
        tags=["sony"],
        images=[base64.b64encode(b"fake-jpeg").decode()],
        imageUrls=["https://cdn.example.com/a6400.jpg"],
        specifications={"model number": "ILCE-6400"},
    )


def test_slugify():
    assert slugify("Sony a6400 - Mirrorless!") == "sony-a6400-mirrorless"


@pytest.mark.asyncio
async def test_unsupported_platform_is_not_an_error(wc_config, listing):
    publisher = WooCommercePublisher(wc_config)
    result = await publisher.publish("ebay", listing)
    assert result.success is False
    assert result.error == NOT_IMPLEMENTED_MESSAGE
    assert result.platform == "ebay"


@pytest.mark.asyncio
async def test_publish_uploads_media_then_creates_product(wc_config, listing):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.params.get("rest_route") == "/wp/v2/media":
            return httpx.Response(201, json={"id": 55})
        if request.url.path == "/wp-json/wc/v3/products":
            return httpx.Response(201, json={"id": 901, "permalink": "https://shop.example.com/p/901"})
        return httpx.Response(404)

    publisher = WooCommercePublisher(wc_config, transport=httpx.MockTransport(handler))
    result = await publisher.publish("woocommerce", listing)

    assert result.success is True
    assert result.productId == "901"
    assert result.productUrl == "https://shop.example.com/p/901"
    assert len(requests) == 2

    body = json.loads(requests[1].content)
    assert body["name"] == "Sony a6400 Mirrorless Camera"
    assert body["regular_price"] == "720.00"
    assert body["status"] == "draft"
    assert body["images"] == [{"id": 55}, {"src": "https://cdn.example.com/a6400.jpg"}]
    assert {"key": "_brand", "value": "Sony"} in body["meta_data"]
    assert {"key": "_spec_model_number", "value": "ILCE-6400"} in body["meta_data"]


@pytest.mark.asyncio
async def test_failed_media_upload_does_not_block_product(wc_config, listing):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("rest_route") == "/wp/v2/media":
            return httpx.Response(500, text="media error")
        return httpx.Response(201, json={"id": 902, "permalink": "https://shop.example.com/p/902"})

    publisher = WooCommercePublisher(wc_config, transport=httpx.MockTransport(handler))
    result = await publisher.publish("wordpress", listing)
    assert result.success is True
    assert result.productId == "902"


@pytest.mark.asyncio
async def test_api_error_raises_publish_error(wc_config, listing):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("rest_route") == "/wp/v2/media":
            return httpx.Response(201, json={"id": 55})
        return httpx.Response(401, json={"code": "woocommerce_rest_cannot_create"})

    publisher = WooCommercePublisher(wc_config, transport=httpx.MockTransport(handler))
    with pytest.raises(PublishError) as excinfo:
        await publisher.publish("woocommerce", listing)
    assert excinfo.value.status_code == 502
    assert excinfo.value.status_code_upstream == 401


@pytest.mark.asyncio
async def test_missing_credentials_raise_publish_error(listing):
    publisher = WooCommercePublisher(Settings(_env_file=None))
    with pytest.raises(PublishError) as excinfo:
        await publisher.publish("woocommerce", listing)
    assert "credentials not configured" in excinfo.value.message


@pytest.mark.asyncio
@pytest.mark.parametrize("retry_count", [1, 2, 4])
async def test_transport_retries_follow_instance_config(wc_config, listing, retry_count):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    config = wc_config.model_copy(update={"publish_retry_count": retry_count})
    publisher = WooCommercePublisher(config, transport=httpx.MockTransport(handler))
    publisher.retry_wait = wait_none()

    with pytest.raises(PublishError) as excinfo:
        await publisher.publish("woocommerce", listing.model_copy(update={"images": []}))
    assert len(calls) == retry_count
    assert "connection refused" in excinfo.value.message
