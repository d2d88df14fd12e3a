from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
import json

from flipforge.services.exceptions import ProviderError


def image_mime_type(data: bytes) -> str:
    """매직 바이트로 이미지 형식 판별 (모르면 jpeg)."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"GIF8"):
        return "image/gif"
    return "image/jpeg"


class AIProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        """
        Generates simple text response.
        """
        pass

    @abstractmethod
    async def generate_json(self, prompt: str, model: Optional[str] = None, images: Optional[List[bytes]] = None) -> Dict[str, Any]:
        """
        Generates structured JSON response, optionally with image input.
        실패 시 ProviderError 를 발생시킵니다 (빈 dict 반환 금지).
        """
        pass

    def parse_json_object(self, raw: Optional[str], model: str) -> Dict[str, Any]:
        label = self.name.capitalize()
        if not raw:
            raise ProviderError(f"{label} returned an empty response", provider=self.name, model=model)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProviderError(f"{label} returned invalid JSON: {e}", provider=self.name, model=model) from e
        if not isinstance(parsed, dict):
            raise ProviderError(f"{label} returned a non-object JSON payload", provider=self.name, model=model)
        return parsed
