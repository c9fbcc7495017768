"""
ReefScan Gateway — Analysis Provider Interface
===============================================

What:  Abstract contract for vision-AI providers plus the normalization every
       provider answer goes through.
Why:   The orchestrator treats Gemini and OpenAI interchangeably: same call,
       same result type, same failure type. Swapping or adding a provider
       touches only its adapter.
How:   Concrete providers implement analyze(); on any failure they raise
       ProviderError with a code and, when the upstream answered, its HTTP
       status. Adapters never retry; failover is the orchestrator's job.

Normalization rules (provider output is untrusted):
    tank_health       one of Excellent/Good/Fair/Needs Attention/Critical, else "Good"
    summary           defaults to "Analysis complete"
    identification    name "Unknown"; category from the fixed list, else "other";
                      confidence clamped to [0, 1], 0.5 when missing or not a number;
                      severity only when is_problem (default "low"), otherwise null
    recommendations   list of strings
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from reefscan.exceptions import ProviderError
from reefscan.schemas.analysis import AnalysisResult

logger = logging.getLogger(__name__)

TANK_HEALTH_VALUES = ("Excellent", "Good", "Fair", "Needs Attention", "Critical")
CATEGORIES = ("fish", "coral", "invertebrate", "algae", "pest", "equipment", "other")
SEVERITIES = ("low", "medium", "high")


@dataclass
class ProviderResult:
    """A successful provider call: normalized result plus accounting."""

    result: AnalysisResult
    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0

    @property
    def tokens_total(self) -> int:
        return self.tokens_input + self.tokens_output


class AnalysisProvider(ABC):
    """
    Contract:
        - analyze() sends one image and returns a normalized ProviderResult
        - every failure surfaces as ProviderError (no SDK exception leaks)
        - no retries inside the adapter
    """

    name: str = ""

    @abstractmethod
    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: str,
        mode: str,
        credential: Optional[str] = None,
        language: Optional[str] = None,
    ) -> ProviderResult:
        """
        Args:
            image_bytes: Decoded image.
            mime_type:   image/jpeg or image/png.
            mode:        One of the analysis modes.
            credential:  API key chosen by the key pool (primary provider);
                         providers with a single configured key ignore it.
            language:    Optional output language code.

        Raises:
            ProviderError
        """
        ...

    def error(self, code: str, message: str, upstream_status: Optional[int] = None) -> ProviderError:
        return ProviderError(code, message, provider=self.name, upstream_status=upstream_status)


# ══════════════════════════════════════════════════════════════════════════
# Response Normalization
# ══════════════════════════════════════════════════════════════════════════

def _confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return min(1.0, max(0.0, float(value)))


def _identification(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raw = {}
    is_problem = bool(raw.get("is_problem"))
    severity = None
    if is_problem:
        severity = raw.get("severity") if raw.get("severity") in SEVERITIES else "low"
    category = raw.get("category")
    return {
        "name": str(raw.get("name") or "Unknown"),
        "category": category if category in CATEGORIES else "other",
        "confidence": _confidence(raw.get("confidence")),
        "is_problem": is_problem,
        "severity": severity,
        "description": str(raw.get("description") or ""),
    }


def normalize_analysis(payload: Any) -> AnalysisResult:
    """Coerce a decoded provider payload into a valid AnalysisResult."""
    if not isinstance(payload, dict):
        raise ValueError("analysis payload is not a JSON object")

    tank_health = payload.get("tank_health")
    identifications = payload.get("identifications")
    recommendations = payload.get("recommendations")

    recs: List[str] = []
    if isinstance(recommendations, list):
        recs = [str(r) for r in recommendations if r is not None and str(r).strip()]

    return AnalysisResult(
        tank_health=tank_health if tank_health in TANK_HEALTH_VALUES else "Good",
        summary=str(payload.get("summary") or "Analysis complete"),
        identifications=[
            _identification(i) for i in (identifications if isinstance(identifications, list) else [])
        ],
        recommendations=recs,
    )


def strip_code_fence(text: str) -> str:
    """Removes a ```json ... ``` wrapper some models add despite JSON mode."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_analysis_text(provider: AnalysisProvider, text: Optional[str], mode: str) -> AnalysisResult:
    """
    Raw model text → AnalysisResult.

    Raises:
        ProviderError INVALID_RESPONSE for empty text or a non-object payload,
        PARSE_ERROR for text that is not JSON.
    """
    if not text or not text.strip():
        raise provider.error("INVALID_RESPONSE", "No content in response")
    try:
        payload = json.loads(strip_code_fence(text))
    except json.JSONDecodeError:
        logger.error(
            "Failed to parse %s response for mode=%s: %s",
            provider.name, mode, text[:500],
        )
        raise provider.error("PARSE_ERROR", "Failed to parse AI response")
    try:
        return normalize_analysis(payload)
    except ValueError as e:
        raise provider.error("INVALID_RESPONSE", str(e))
