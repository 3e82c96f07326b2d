"""LLM service for OpenAI vision calls, caching and cost tracking."""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from openai import AsyncOpenAI

from ekotaka.config import settings

logger = logging.getLogger(__name__)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` (or bare ```) fence."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class LLMService:
    """
    Service for vision-model interactions with OpenAI.

    Features:
    - OpenAI chat completions with inline base64 images
    - Structured JSON output (tolerates markdown fences)
    - Caching (Redis-based, best effort)
    - Cost tracking with a daily limit
    """

    def __init__(self):
        self._client: Optional[AsyncOpenAI] = None
        self._redis: Optional[redis.Redis] = None
        self._daily_cost: float = 0.0
        self._call_count: int = 0

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not settings.openai_api_key:
                raise ValueError("OpenAI API key not configured")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url or None,
            )
        return self._client

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get or create Redis connection for caching."""
        if not settings.llm_cache_enabled:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            except Exception as e:
                logger.warning(f"Failed to connect to Redis for LLM cache: {e}")
                return None
        return self._redis

    def _get_cache_key(self, prompt: str, image_digest: str, model: str) -> str:
        """Generate cache key from prompt, image digest and model."""
        combined = f"{image_digest}:{prompt}:{model}"
        key_hash = hashlib.sha256(combined.encode("utf-8")).hexdigest()
        return f"vision_cache:{key_hash}"

    async def _cache_get(self, key: str) -> Optional[str]:
        redis_client = await self._get_redis()
        if not redis_client:
            return None
        try:
            return await redis_client.get(key)
        except Exception as e:
            logger.warning(f"LLM cache read failed: {e}")
            return None

    async def _cache_set(self, key: str, value: str):
        redis_client = await self._get_redis()
        if not redis_client:
            return
        try:
            await redis_client.setex(key, settings.llm_cache_ttl_seconds, value)
        except Exception as e:
            logger.warning(f"LLM cache write failed: {e}")

    async def _check_cost_limit(self) -> bool:
        """Check if daily cost limit is exceeded."""
        if not settings.track_llm_costs:
            return True

        if self._daily_cost >= settings.llm_cost_limit_per_day:
            logger.warning(
                f"Daily LLM cost limit reached: ${self._daily_cost:.2f} >= ${settings.llm_cost_limit_per_day:.2f}"
            )
            return False
        return True

    def _estimate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """
        Estimate cost for a vision call.

        Pricing (approximate, per 1K tokens):
        - gpt-4o-mini: $0.00015 input, $0.0006 output
        - gpt-4o and others: $0.0025 input, $0.01 output
        """
        if "mini" in model.lower():
            input_cost = (prompt_tokens / 1000) * 0.00015
            output_cost = (completion_tokens / 1000) * 0.0006
        else:
            input_cost = (prompt_tokens / 1000) * 0.0025
            output_cost = (completion_tokens / 1000) * 0.01

        return input_cost + output_cost

    async def call_vision(
        self,
        prompt: str,
        image_b64: str,
        mime_type: str,
        system_prompt: str = "",
        model: Optional[str] = None,
        use_cache: bool = True,
    ) -> str:
        """
        Send a prompt plus one inline image and return the text response.

        Args:
            prompt: User prompt
            image_b64: Base64-encoded image bytes
            mime_type: Image MIME type (e.g. image/jpeg)
            system_prompt: System prompt/instructions
            model: Model name (defaults to settings.vision_model)
            use_cache: Whether to use the Redis cache

        Returns:
            Model response text
        """
        model = model or settings.vision_model

        if not await self._check_cost_limit():
            raise RuntimeError("Daily LLM cost limit exceeded")

        cache_key = None
        if use_cache and settings.llm_cache_enabled:
            image_digest = hashlib.sha256(image_b64.encode("ascii")).hexdigest()
            cache_key = self._get_cache_key(prompt, image_digest, model)
            cached = await self._cache_get(cache_key)
            if cached:
                logger.debug(f"Vision cache hit for image {image_digest[:12]}")
                self._call_count += 1
                return cached

        try:
            client = await self._get_client()

            messages = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{image_b64}"},
                        },
                    ],
                }
            )

            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                timeout=settings.classification_timeout_seconds,
            )

            result = response.choices[0].message.content
            if result is None:
                result = ""

            if settings.track_llm_costs and response.usage is not None:
                prompt_tokens = response.usage.prompt_tokens
                completion_tokens = response.usage.completion_tokens
                cost = self._estimate_cost(model, prompt_tokens, completion_tokens)
                self._daily_cost += cost
                logger.debug(
                    f"Vision call cost: ${cost:.4f} "
                    f"(tokens: {prompt_tokens}+{completion_tokens}, total: ${self._daily_cost:.2f})"
                )

            self._call_count += 1

            if cache_key and result:
                await self._cache_set(cache_key, result)

            return result

        except Exception as e:
            logger.error(f"Vision API call failed: {e}")
            raise

    async def call_vision_structured(
        self,
        prompt: str,
        image_b64: str,
        mime_type: str,
        system_prompt: str = "",
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Call the vision model and parse its JSON response.

        Raises:
            ValueError: When the response is not a JSON object
        """
        response_text = await self.call_vision(
            prompt=prompt,
            image_b64=image_b64,
            mime_type=mime_type,
            system_prompt=system_prompt,
            model=model,
        )

        response_text = strip_code_fences(response_text)
        try:
            parsed = json.loads(response_text)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse vision JSON response: {e}\nResponse: {response_text[:200]}")
            raise ValueError(f"Invalid JSON response from LLM: {e}") from e

        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
        return parsed

    def get_stats(self) -> Dict[str, Any]:
        """
        Get LLM service statistics.

        Returns:
            Dictionary with call count, daily cost, etc.
        """
        return {
            "call_count": self._call_count,
            "daily_cost": self._daily_cost,
            "cost_limit": settings.llm_cost_limit_per_day,
            "cache_enabled": settings.llm_cache_enabled,
        }

    async def close(self):
        """Close connections."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        if self._client:
            await self._client.close()
            self._client = None


# Global LLM service instance
llm_service = LLMService()
