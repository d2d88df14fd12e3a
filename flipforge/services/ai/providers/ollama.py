import base64
import httpx
import logging
from typing import Dict, Any, List, Optional

from flipforge.services.ai.base import AIProvider
from flipforge.services.exceptions import ProviderError

logger = logging.getLogger(__name__)


class OllamaProvider(AIProvider):
    name = "ollama"

    def __init__(
        self,
        base_url: str,
        model_name: str,
        vision_model_name: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.vision_model_name = vision_model_name or model_name
        self.timeout = timeout
        self._transport = transport
        logger.info(f"[AI] Ollama provider ready: main={model_name}, vision={self.vision_model_name}")

    async def _chat(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        format: Optional[str] = None,
        images: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Internal method to call /api/chat endpoint.
        """
        url = f"{self.base_url}/api/chat"

        # chat API 에서는 이미지가 메시지에 포함됨 (마지막 메시지에 첨부)
        if images and messages:
            messages[-1]["images"] = images

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": False
        }
        if format:
            payload["format"] = format

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"[AI] Ollama chat failed (model={model}, format={format}): {e}")
            raise ProviderError(
                e.response.text or str(e),
                provider=self.name,
                model=model,
                status_code_upstream=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"[AI] Ollama chat failed (model={model}, format={format}): {e}")
            raise ProviderError(str(e) or e.__class__.__name__, provider=self.name, model=model) from e

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        target_model = model or self.model_name
        response = await self._chat([{"role": "user", "content": prompt}], target_model)
        return response.get("message", {}).get("content", "")

    async def generate_json(self, prompt: str, model: Optional[str] = None, images: Optional[List[bytes]] = None) -> Dict[str, Any]:
        target_model = model or (self.vision_model_name if images else self.model_name)

        encoded = None
        if images:
            encoded = [base64.b64encode(image_data).decode("utf-8") for image_data in images]

        if "JSON" not in prompt:
            prompt += "\nReturn ONLY valid JSON."
        response = await self._chat([{"role": "user", "content": prompt}], target_model, format="json", images=encoded)
        content = response.get("message", {}).get("content", "")

        return self.parse_json_object(content, target_model)
