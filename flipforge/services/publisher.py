"""
WooCommerce / WordPress 퍼블리셔.

1단계: 이미지(base64)를 WordPress 미디어 라이브러리에 업로드 (Application Password 인증)
2단계: WooCommerce REST API 로 상품 생성 (consumer key/secret 인증)
3단계: 생성된 상품 id / permalink 를 호출자에게 매핑
"""
import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from flipforge.schemas.publish import ListingPayload, PublishResult
from flipforge.services.exceptions import PublishError
from flipforge.settings import Settings, settings

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ("woocommerce", "wordpress")
NOT_IMPLEMENTED_MESSAGE = "Work in progress - not implemented yet"


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


class WooCommercePublisher:
    retry_wait = wait_exponential(multiplier=1, min=1, max=10)

    def __init__(self, config: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or settings
        self._transport = transport

    def supports(self, platform: str) -> bool:
        return platform.lower() in SUPPORTED_PLATFORMS

    def _check_credentials(self, platform: str):
        if not self.config.has_woocommerce_credentials():
            raise PublishError(
                "WordPress/WooCommerce credentials not configured. Please check your environment variables.",
                platform=platform,
            )
        if not self.config.wp_username or not self.config.wp_app_password:
            raise PublishError(
                "WordPress Application Password credentials not configured. Please set WP_USERNAME and WP_APP_PASSWORD.",
                platform=platform,
            )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=60.0, transport=self._transport)

    def _retrying(self) -> AsyncRetrying:
        """연결 오류만 재시도. 횟수는 인스턴스 설정(publish_retry_count)을 따름."""
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.publish_retry_count)),
            wait=self.retry_wait,
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"[PUBLISH] Retrying ({retry_state.attempt_number}): {retry_state.outcome.exception()}"
            ),
        )

    async def _post(self, client: httpx.AsyncClient, url: str, **kwargs) -> httpx.Response:
        async for attempt in self._retrying():
            with attempt:
                return await client.post(url, **kwargs)

    async def _upload_media(self, client: httpx.AsyncClient, image_b64: str, title: str) -> Optional[int]:
        """이미지 1장 업로드. 실패 시 None (상품 생성은 계속 진행)."""
        try:
            image_bytes = base64.b64decode(image_b64)
        except ValueError as e:
            logger.warning(f"[PUBLISH] Skipping undecodable image '{title}': {e}")
            return None

        response = await self._post(
            client,
            self.config.wp_domain,
            params={"rest_route": "/wp/v2/media"},
            files={"file": (f"{slugify(title)}.jpg", image_bytes, "image/jpeg")},
            auth=(self.config.wp_username, self.config.wp_app_password),
        )
        if response.status_code != 201:
            logger.warning(f"[PUBLISH] Media upload error ({response.status_code}): {response.text}")
            return None
        media_id = response.json().get("id")
        logger.info(f"[PUBLISH] Uploaded image with ID: {media_id}")
        return media_id

    def build_product(self, data: ListingPayload, media_ids: List[int]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        description = data.description
        short_description = description[:200] + "..." if len(description) > 200 else description
        meta_data: List[Dict[str, Any]] = [
            {"key": "_condition", "value": data.condition},
            {"key": "_brand", "value": data.brand},
            {"key": "_flip_forge_processed", "value": "true"},
            {"key": "_processing_date", "value": now.isoformat()},
        ]
        meta_data.extend(
            {"key": f"_spec_{slugify(str(key)).replace('-', '_')}", "value": value}
            for key, value in data.specifications.items()
        )
        return {
            "name": data.title,
            "slug": slugify(data.title),
            "type": "simple",
            "status": data.status,
            "featured": False,
            "catalog_visibility": "visible",
            "description": description,
            "short_description": short_description,
            # 중복 방지용 타임스탬프 SKU
            "sku": f"{data.sku}-{int(now.timestamp() * 1000)}",
            "regular_price": f"{data.price:.2f}",
            "manage_stock": True,
            "stock_quantity": data.stockQuantity,
            "stock_status": "instock",
            "categories": [{"name": c} for c in data.categories],
            "tags": [{"name": t} for t in data.tags],
            "images": [{"id": media_id} for media_id in media_ids] + [{"src": url} for url in data.imageUrls],
            "meta_data": meta_data,
        }

    async def publish(self, platform: str, data: ListingPayload) -> PublishResult:
        if not self.supports(platform):
            return PublishResult(success=False, error=NOT_IMPLEMENTED_MESSAGE, platform=platform)

        self._check_credentials(platform)
        logger.info(f"[PUBLISH] Publishing '{data.title}' to {platform} ({len(data.images)} images)")

        try:
            async with self._client() as client:
                media_ids: List[int] = []
                for i, image_b64 in enumerate(data.images):
                    media_id = await self._upload_media(client, image_b64, f"{data.title} - Image {i + 1}")
                    if media_id:
                        media_ids.append(media_id)
                logger.info(f"[PUBLISH] Uploaded {len(media_ids)} out of {len(data.images)} images")

                response = await self._post(
                    client,
                    f"{self.config.wp_domain}/wp-json/wc/v3/products",
                    json=self.build_product(data, media_ids),
                    auth=(self.config.wc_consumer_key, self.config.wc_consumer_secret),
                )
        except httpx.HTTPError as e:
            logger.error(f"[PUBLISH] {platform} request failed: {e}")
            raise PublishError(str(e) or e.__class__.__name__, platform=platform) from e

        if response.is_error:
            logger.error(f"[PUBLISH] WooCommerce API Error: {response.text}")
            raise PublishError(
                f"Failed to publish to WordPress: {response.reason_phrase}",
                platform=platform,
                status_code_upstream=response.status_code,
                response_body=response.text,
            )

        result = response.json()
        logger.info(f"[PUBLISH] Product created: id={result.get('id')} permalink={result.get('permalink')}")
        return PublishResult(
            success=True,
            productId=str(result.get("id")),
            productUrl=result.get("permalink"),
            platform=platform,
        )
