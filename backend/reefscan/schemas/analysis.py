"""
ReefScan Gateway — Analysis Schemas
====================================

What:  Request body for POST /v1/analyze, the validated analysis result,
       and the scan response returned to the app.
Why:   Provider output is untrusted JSON; `AnalysisResult` is the single
       shape every provider answer is normalized into before it is cached,
       stored for idempotent replay, or returned.

Size check:
    The image arrives base64-encoded. Its decoded size is estimated as
    len(data) × 3/4 and rejected above `max_image_bytes` (5MB) before any
    decoding work is done.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from reefscan.config import settings

AnalysisMode = Literal["comprehensive", "fish_id", "coral_id", "algae_id", "pest_id"]
ANALYSIS_MODES = ("comprehensive", "fish_id", "coral_id", "algae_id", "pest_id")

TankHealth = Literal["Excellent", "Good", "Fair", "Needs Attention", "Critical"]
Category = Literal["fish", "coral", "invertebrate", "algae", "pest", "equipment", "other"]
Severity = Literal["low", "medium", "high"]


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class ImagePayload(BaseModel):
    data: str = Field(min_length=1, description="Base64-encoded image bytes")
    mime_type: Literal["image/jpeg", "image/png"] = Field(description="Image MIME type")

    @field_validator("data")
    @classmethod
    def validate_size(cls, v: str) -> str:
        estimated = len(v) * 3 // 4
        if estimated > settings.max_image_bytes:
            raise ValueError(
                f"Image too large: ~{estimated} bytes exceeds {settings.max_image_bytes} bytes"
            )
        return v


class AnalysisOptions(BaseModel):
    include_recommendations: bool = Field(default=True)
    language: Optional[str] = Field(default=None, min_length=2, max_length=5)


class AnalyzeRequest(BaseModel):
    """
    What:  Body of POST /v1/analyze.
    request_id: Optional idempotency key; the X-Request-ID header is used
                when absent. Replaying the same id returns the stored result.
    """
    image: ImagePayload
    mode: AnalysisMode = Field(default="comprehensive")
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
    request_id: Optional[str] = Field(default=None, min_length=1, max_length=128)


# ══════════════════════════════════════════════════════════════════════════
# Result Models
# ══════════════════════════════════════════════════════════════════════════


class Identification(BaseModel):
    name: str
    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    is_problem: bool
    severity: Optional[Severity] = None
    description: str = ""


class AnalysisResult(BaseModel):
    """A normalized provider answer. This is what the image cache stores."""
    tank_health: TankHealth
    summary: str
    identifications: List[Identification] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class UsageSnapshot(BaseModel):
    requests_today: int
    daily_limit: int
    reset_at: str = Field(description="Next quota reset (UTC ISO 8601)")


class ScanResult(AnalysisResult):
    """
    What:  Response of POST /v1/analyze.
    Note:  Replayed byte-for-byte for a repeated request_id, so `usage`
           reflects the moment the result was first produced.
    """
    request_id: str
    usage: UsageSnapshot


class ProviderStatus(BaseModel):
    available: bool
    circuit_state: str
    keys_available: Optional[int] = None
    keys_total: Optional[int] = None
    daily_cost: Optional[float] = None
    max_daily_cost: Optional[float] = None


class ProviderStatusResponse(BaseModel):
    providers: Dict[str, ProviderStatus]
    cache_enabled: bool
