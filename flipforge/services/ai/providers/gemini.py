import google.generativeai as genai
import logging
from typing import Dict, Any, List, Optional
from google.api_core.exceptions import GoogleAPIError, ResourceExhausted, ServiceUnavailable

from flipforge.services.ai.base import AIProvider, image_mime_type
from flipforge.services.exceptions import ProviderError

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    name = "gemini"

    def __init__(self, api_keys: List[str], model_name: str = "gemini-1.5-flash"):
        self.api_keys = [k for k in api_keys if k]
        self.model_name = model_name
        self.key_index = 0
        self.model: Optional[genai.GenerativeModel] = None
        self._use_key(0)

    def _use_key(self, index: int):
        if not self.api_keys:
            logger.warning("[AI] Gemini provider has no API keys")
            self.model = None
            return
        self.key_index = index % len(self.api_keys)
        # genai.configure 는 프로세스 전역 설정
        genai.configure(api_key=self.api_keys[self.key_index])
        self.model = genai.GenerativeModel(self.model_name)
        logger.info(f"[AI] Gemini using key #{self.key_index}")

    async def _generate(self, contents: Any, model: Optional[str] = None, **kwargs) -> str:
        model_name = model or self.model_name
        if not self.model:
            raise ProviderError("Gemini API key is not configured", provider=self.name, model=model_name)

        last_error: Optional[Exception] = None
        for attempt in range(len(self.api_keys)):
            target = self.model if model_name == self.model_name else genai.GenerativeModel(model_name)
            try:
                response = await target.generate_content_async(contents, **kwargs)
                return response.text
            except (ResourceExhausted, ServiceUnavailable) as e:
                last_error = e
                logger.warning(f"[AI] Gemini key #{self.key_index} exhausted or unavailable: {e}")
                if attempt + 1 < len(self.api_keys):
                    self._use_key(self.key_index + 1)
            except (GoogleAPIError, ValueError) as e:
                # ValueError: 안전 필터 등으로 response.text 가 비어 있는 경우
                logger.error(f"[AI] Gemini request failed: {e}")
                raise ProviderError(
                    str(e), provider=self.name, model=model_name, status_code_upstream=getattr(e, "code", None)
                ) from e

        logger.error("[AI] All Gemini keys failed")
        raise ProviderError(
            str(last_error), provider=self.name, model=model_name, status_code_upstream=getattr(last_error, "code", None)
        ) from last_error

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return await self._generate(prompt, model)

    async def generate_json(self, prompt: str, model: Optional[str] = None, images: Optional[List[bytes]] = None) -> Dict[str, Any]:
        contents: Any = prompt
        if images:
            contents = [prompt] + [{"mime_type": image_mime_type(data), "data": data} for data in images]

        raw = await self._generate(contents, model, generation_config={"response_mime_type": "application/json"})
        return self.parse_json_object(raw, model or self.model_name)
