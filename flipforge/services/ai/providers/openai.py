import base64
import logging
from typing import Dict, Any, List, Optional
from openai import AsyncOpenAI, RateLimitError, AuthenticationError, APIConnectionError, OpenAIError

from flipforge.services.ai.base import AIProvider, image_mime_type
from flipforge.services.exceptions import ProviderError

logger = logging.getLogger(__name__)

JSON_SYSTEM_PROMPT = "You extract product facts for resale listings. Output valid JSON only."


class OpenAIProvider(AIProvider):
    """
    OpenAI chat completions. 키가 여러 개면 rate limit / 인증 / 연결 오류 시
    다음 키로 넘어가며, 모든 키가 실패하면 마지막 벤더 메시지로 ProviderError.
    """
    name = "openai"

    def __init__(self, api_keys: List[str], model_name: str = "gpt-4o-mini"):
        self.api_keys = [k for k in api_keys if k]
        self.model_name = model_name
        self.key_index = 0
        self.client: Optional[AsyncOpenAI] = None
        self._use_key(0)

    def _use_key(self, index: int):
        if not self.api_keys:
            logger.warning("[AI] OpenAI provider has no API keys")
            self.client = None
            return
        self.key_index = index % len(self.api_keys)
        self.client = AsyncOpenAI(api_key=self.api_keys[self.key_index])
        logger.info(f"[AI] OpenAI using key #{self.key_index}")

    async def _complete(self, messages: List[Dict[str, Any]], model: str, **kwargs) -> str:
        if not self.client:
            raise ProviderError("OpenAI API key is not configured", provider=self.name, model=model)

        last_error: Optional[OpenAIError] = None
        for attempt in range(len(self.api_keys)):
            try:
                response = await self.client.chat.completions.create(model=model, messages=messages, **kwargs)
                return response.choices[0].message.content or ""
            except (RateLimitError, AuthenticationError, APIConnectionError) as e:
                last_error = e
                logger.warning(f"[AI] OpenAI key #{self.key_index} failed ({e.__class__.__name__}): {e}")
                if attempt + 1 < len(self.api_keys):
                    self._use_key(self.key_index + 1)
            except OpenAIError as e:
                logger.error(f"[AI] OpenAI request failed: {e}")
                raise ProviderError(
                    str(e), provider=self.name, model=model, status_code_upstream=getattr(e, "status_code", None)
                ) from e

        logger.error("[AI] All OpenAI keys failed")
        raise ProviderError(
            str(last_error), provider=self.name, model=model, status_code_upstream=getattr(last_error, "status_code", None)
        ) from last_error

    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        return await self._complete([{"role": "user", "content": prompt}], model or self.model_name, temperature=0.7)

    async def generate_json(self, prompt: str, model: Optional[str] = None, images: Optional[List[bytes]] = None) -> Dict[str, Any]:
        target_model = model or self.model_name

        user_content: Any = prompt
        if images:
            user_content = [{"type": "text", "text": prompt}]
            for data in images:
                encoded = base64.b64encode(data).decode("utf-8")
                user_content.append(
                    {"type": "image_url", "image_url": {"url": f"data:{image_mime_type(data)};base64,{encoded}"}}
                )

        raw = await self._complete(
            [
                {"role": "system", "content": JSON_SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            target_model,
            response_format={"type": "json_object"},
            temperature=0.3,
        )
        return self.parse_json_object(raw, target_model)
