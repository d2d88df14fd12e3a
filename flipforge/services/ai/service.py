import json
import logging
from typing import Dict, Any, List, Literal, Optional

from pydantic import ValidationError as PydanticValidationError

from flipforge.schemas.enrichment import IdentificationGuess, MarketFacts, SEOCopy
from flipforge.services.ai.base import AIProvider
from flipforge.services.exceptions import ProviderError
from flipforge.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

ProviderType = Literal["gemini", "ollama", "openai", "auto"]

IDENTIFY_PROMPT = """You are a product analysis expert. Analyze the product photos and identify the item.

1. Identify the product name, model and brand
2. Identify the product category
3. Assess the condition of the product
4. List any visible defects or wear
5. List concrete key features (with specs/units where visible)
6. Provide a confidence score (0-100) for your identification. If it is not clear, set it to 0. If it is not a product, set it to 0.

Return ONLY valid JSON with this structure:
{
  "name": string,
  "model": string,
  "brand": string,
  "category": string,
  "confidence": number,
  "condition": string,
  "defects": string[],
  "key_features": string[]
}"""

ENRICH_PROMPT = """You are a product research specialist. Find REAL market and specification data for: "{model}"

Include current Amazon and eBay prices with listing URLs, MSRP, a competitive resale price for a used unit,
brand, category, release year, weight, dimensions, manufacturer, model number, color, material and key selling points.
Use null for anything you cannot verify. Do not invent URLs.

Return ONLY valid JSON with this exact format:
{{
  "amazon_price": number | null,
  "amazon_url": string | null,
  "ebay_price": number | null,
  "ebay_url": string | null,
  "msrp": number | null,
  "competitive_price": number | null,
  "brand": string | null,
  "category": string | null,
  "year": string | null,
  "weight": string | null,
  "dimensions": string | null,
  "manufacturer": string | null,
  "model_number": string | null,
  "color": string | null,
  "material": string | null,
  "key_selling_points": string[]
}}"""

SEO_PROMPT = """You are an expert SEO copywriter specializing in e-commerce listings for used products.
Focus on long-tail keywords buyers actually search for, include condition-specific keywords
(used, refurbished, pre-owned) and highlight the value versus buying new.

Product facts:
{facts}

Return ONLY valid JSON with this exact format:
{{
  "seo_title": string (max 60 chars),
  "meta_description": string (max 160 chars),
  "url_slug": string,
  "keywords": string[],
  "tags": string[],
  "seo_score": number (0-100),
  "content_suggestions": string[]
}}"""


def build_provider(name: str, config: Settings) -> AIProvider:
    if name == "gemini":
        from flipforge.services.ai.providers.gemini import GeminiProvider
        return GeminiProvider(api_keys=config.gemini_api_keys, model_name=config.gemini_model)
    if name == "ollama":
        from flipforge.services.ai.providers.ollama import OllamaProvider
        return OllamaProvider(
            base_url=config.ollama_base_url,
            model_name=config.ollama_model,
            vision_model_name=config.ollama_vision_model,
        )
    from flipforge.services.ai.providers.openai import OpenAIProvider
    return OpenAIProvider(api_keys=config.openai_api_keys, model_name=config.openai_model)


class EnrichmentService:
    """
    파이프라인이 쓰는 세 가지 enrichment capability.

        identify(images)  -> IdentificationGuess   (stage 1)
        enrich(model)     -> MarketFacts           (stage 2, post-completion refresh)
        write_seo(facts)  -> SEOCopy               (stage 3)

    벤더 응답이 스키마와 맞지 않으면 ProviderError 로 올립니다.
    """

    def __init__(self, providers: Optional[Dict[str, AIProvider]] = None, default_provider: Optional[str] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.default_provider_name = default_provider or self.config.default_ai_provider
        self._providers: Dict[str, AIProvider] = dict(providers or {})

    def _get_provider(self, provider_type: ProviderType = "auto") -> AIProvider:
        if provider_type == "auto":
            provider_type = self.default_provider_name
        if provider_type not in self._providers:
            # 실제로 쓰일 때 생성 (미설정 벤더 SDK 초기화 방지)
            self._providers[provider_type] = build_provider(provider_type, self.config)
        return self._providers[provider_type]

    async def _generate(self, prompt: str, provider: ProviderType, images: Optional[List[bytes]] = None) -> Dict[str, Any]:
        target = self._get_provider(provider)
        return await target.generate_json(prompt, images=images)

    async def identify(self, images: List[bytes], provider: ProviderType = "auto") -> IdentificationGuess:
        if not images:
            raise ProviderError("identify() requires at least one image")
        raw = await self._generate(IDENTIFY_PROMPT, provider, images=images)
        guess = _validate(IdentificationGuess, raw, "identify")
        logger.info(f"[AI] identify: model={guess.model!r} confidence={guess.confidence}")
        return guess

    async def enrich(self, model: str, provider: ProviderType = "auto") -> MarketFacts:
        if not model:
            raise ProviderError("enrich() requires a model string")
        raw = await self._generate(ENRICH_PROMPT.format(model=model), provider)
        facts = _validate(MarketFacts, raw, "enrich")
        logger.info(f"[AI] enrich: model={model!r} amazon={facts.amazon_price} msrp={facts.msrp}")
        return facts

    async def write_seo(self, facts: Dict[str, Any], provider: ProviderType = "auto") -> SEOCopy:
        prompt = SEO_PROMPT.format(facts=json.dumps(facts, ensure_ascii=False, default=str, indent=2))
        raw = await self._generate(prompt, provider)
        copy = _validate(SEOCopy, raw, "write_seo")
        logger.info(f"[AI] write_seo: title={copy.seo_title!r} score={copy.seo_score}")
        return copy


def _validate(schema: type, raw: Dict[str, Any], capability: str):
    try:
        return schema.model_validate(raw)
    except PydanticValidationError as e:
        logger.error(f"[AI] {capability} returned an unexpected payload: {e}")
        raise ProviderError(f"{capability} returned an unexpected payload: {e}") from e
