"""
ReefScan Gateway — OpenAI Fallback Provider
============================================

What:  Secondary vision provider used only when the primary call fails or
       the primary circuit is open.
Why:   Keeps scans working through a Gemini outage, at a higher price per
       request. The daily spend cap keeps an outage from becoming a bill.
How:   openai AsyncOpenAI chat completion with a system message, a text part
       (mode prompt + schema) and the image as a base64 data URL, in JSON
       object mode. After every call the estimated cost is added to a shared
       Redis counter that expires at the next UTC midnight.

Refusals (raised before any network call):
    DISABLED           enable_openai_fallback is off
    NOT_CONFIGURED     no OPENAI_API_KEY
    COST_LIMIT         today's spend has reached openai_max_cost_per_day
    STORE_UNAVAILABLE  today's spend cannot be read, so the cap is unknown

Pricing:
    $5 per 1M input tokens, $15 per 1M output tokens.
"""

import base64
import logging
import time
from typing import Optional

import openai
from openai import AsyncOpenAI

from reefscan import clock
from reefscan.config import settings
from reefscan.exceptions import StoreUnavailableError
from reefscan.services.prompts import SYSTEM_PROMPT, mode_instructions
from reefscan.services.provider_base import AnalysisProvider, ProviderResult, parse_analysis_text
from reefscan.store import RedisStore, store

logger = logging.getLogger(__name__)

DAILY_COST_KEY = "openai:daily_cost"
COST_PER_INPUT_TOKEN = 0.005 / 1000
COST_PER_OUTPUT_TOKEN = 0.015 / 1000


def calculate_cost(input_tokens: int, output_tokens: int) -> float:
    return input_tokens * COST_PER_INPUT_TOKEN + output_tokens * COST_PER_OUTPUT_TOKEN


class OpenAIProvider(AnalysisProvider):
    """GPT-4o vision adapter with a shared daily spend cap."""

    name = "openai"

    def __init__(self, store: RedisStore, client: Optional[AsyncOpenAI] = None):
        self.store = store
        self._client = client

    @property
    def enabled(self) -> bool:
        return settings.enable_openai_fallback

    @property
    def configured(self) -> bool:
        return bool(settings.openai_api_key) or self._client is not None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.provider_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def get_current_daily_cost(self) -> float:
        return await self.store.get_float(DAILY_COST_KEY)

    async def is_available(self) -> bool:
        if not (self.enabled and self.configured):
            return False
        return await self.get_current_daily_cost() < settings.openai_max_cost_per_day

    async def _add_to_daily_cost(self, cost: float) -> float:
        return await self.store.incr_float(
            DAILY_COST_KEY, cost, ttl=clock.seconds_until_utc_midnight()
        )

    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: str,
        mode: str,
        credential: Optional[str] = None,
        language: Optional[str] = None,
    ) -> ProviderResult:
        if not self.enabled:
            raise self.error("DISABLED", "OpenAI fallback is disabled")
        if not self.configured:
            raise self.error("NOT_CONFIGURED", "OpenAI API key not configured")

        try:
            daily_cost = await self.get_current_daily_cost()
        except StoreUnavailableError as e:
            logger.error("OpenAI daily cost unreadable, refusing fallback: %s", e.context)
            raise self.error("STORE_UNAVAILABLE", "Cannot verify today's OpenAI spend")
        if daily_cost >= settings.openai_max_cost_per_day:
            logger.warning(
                "OpenAI daily cost limit reached: $%.2f of $%.2f",
                daily_cost, settings.openai_max_cost_per_day,
            )
            raise self.error("COST_LIMIT", "Daily cost limit reached for OpenAI fallback")

        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        start_time = time.perf_counter()

        try:
            response = await self.client.chat.completions.create(
                model=settings.openai_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": mode_instructions(mode, language)},
                            {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
                        ],
                    },
                ],
                max_tokens=2048,
                temperature=0.2,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as e:
            code = "RATE_LIMITED" if e.status_code == 429 else "API_ERROR"
            logger.warning("OpenAI API error: status=%s code=%s", e.status_code, code)
            raise self.error(code, str(e), upstream_status=e.status_code)
        except openai.OpenAIError as e:
            logger.warning("OpenAI request failed: %s", type(e).__name__)
            raise self.error("API_ERROR", str(e))

        duration_ms = (time.perf_counter() - start_time) * 1000
        usage = response.usage
        tokens_in = int(getattr(usage, "prompt_tokens", 0) or 0)
        tokens_out = int(getattr(usage, "completion_tokens", 0) or 0)
        cost = calculate_cost(tokens_in, tokens_out)

        # Spend is recorded even when the content turns out unusable
        try:
            await self._add_to_daily_cost(cost)
        except StoreUnavailableError as e:
            logger.error("OpenAI spend of $%.4f not recorded: %s", cost, e.context)

        content = response.choices[0].message.content if response.choices else None
        result = parse_analysis_text(self, content, mode)

        logger.info(
            "OpenAI fallback analysis completed in %.0fms (mode=%s, tokens=%d/%d, cost=$%.4f)",
            duration_ms, mode, tokens_in, tokens_out, cost,
        )
        return ProviderResult(result=result, tokens_input=tokens_in, tokens_output=tokens_out, cost=cost)


openai_provider = OpenAIProvider(store)
