"""
ReefScan Gateway — Google Gemini Provider
==========================================

What:  Primary vision provider, called with whichever API key the key pool
       selected for this request.
Why:   Gemini is the cheaper provider and carries the bulk of traffic; its
       per-key rate limits are why the key pool exists.
How:   google-genai async client, one client per API key (clients hold the
       credential, so they are cached by key). Prompt text and inline image
       bytes go in a single generate_content call in JSON output mode.

Error mapping:
    HTTP 429 from Gemini       → RATE_LIMITED (upstream_status 429, key cools down)
    any other API error        → API_ERROR (upstream_status = HTTP code)
    empty candidate text       → INVALID_RESPONSE
    text that is not JSON      → PARSE_ERROR

Resilience:
    No retry here. The orchestrator wraps this call in a timeout and the
    shared circuit breaker; a failed call fails over to OpenAI instead of
    retrying the same provider.
"""

import logging
import time
from functools import lru_cache
from typing import Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from reefscan.config import settings
from reefscan.services.prompts import build_prompt
from reefscan.services.provider_base import AnalysisProvider, ProviderResult, parse_analysis_text

logger = logging.getLogger(__name__)


@lru_cache(maxsize=32)
def _client_for(api_key: str, timeout_ms: int) -> genai.Client:
    return genai.Client(api_key=api_key, http_options=types.HttpOptions(timeout=timeout_ms))


class GeminiProvider(AnalysisProvider):
    """Gemini Vision adapter; stateless apart from the client cache."""

    name = "gemini"

    def __init__(self, model: Optional[str] = None):
        self.model = model or settings.gemini_model

    def _generation_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=0.2,
            max_output_tokens=2048,
            response_mime_type="application/json",
        )

    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: str,
        mode: str,
        credential: Optional[str] = None,
        language: Optional[str] = None,
    ) -> ProviderResult:
        if not credential:
            raise self.error("NOT_CONFIGURED", "No Gemini API key supplied")

        client = _client_for(credential, int(settings.provider_timeout_seconds * 1000))
        start_time = time.perf_counter()

        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=[
                    build_prompt(mode, language),
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                ],
                config=self._generation_config(),
            )
        except genai_errors.APIError as e:
            status = getattr(e, "code", None)
            code = "RATE_LIMITED" if status == 429 else "API_ERROR"
            logger.warning(
                "Gemini API error after %.0fms: status=%s code=%s",
                (time.perf_counter() - start_time) * 1000, status, code,
            )
            raise self.error(code, getattr(e, "message", None) or f"HTTP {status}", upstream_status=status)
        except Exception as e:
            # Transport failures (DNS, TLS, connection reset) surface from httpx
            logger.error("Gemini request failed: %s", type(e).__name__, exc_info=True)
            raise self.error("API_ERROR", f"Gemini request failed: {type(e).__name__}")

        duration_ms = (time.perf_counter() - start_time) * 1000
        result = parse_analysis_text(self, response.text, mode)

        usage = getattr(response, "usage_metadata", None)
        tokens_in = int(getattr(usage, "prompt_token_count", 0) or 0)
        tokens_out = int(getattr(usage, "candidates_token_count", 0) or 0)

        logger.debug(
            "Gemini analysis completed in %.0fms (mode=%s, tokens=%d/%d)",
            duration_ms, mode, tokens_in, tokens_out,
        )
        return ProviderResult(result=result, tokens_input=tokens_in, tokens_output=tokens_out)


gemini_provider = GeminiProvider()
