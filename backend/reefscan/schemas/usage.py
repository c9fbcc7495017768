"""
ReefScan Gateway — Usage, Account and Metrics Schemas
======================================================

What:  Shapes returned by /v1/usage, /v1/usage/stats, /v1/account/export
       and /v1/metrics.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DailyQuota(BaseModel):
    used: int
    limit: int
    reset_at: str = Field(description="Next UTC midnight (ISO 8601)")


class UsageResponse(BaseModel):
    daily: DailyQuota
    tier: str
    subscription_status: str
    upgrade_url: Optional[str] = None


class UsageByDate(BaseModel):
    date: date
    requests: int
    tokens: int


class UsageStatsResponse(BaseModel):
    start_date: date
    end_date: date
    total_requests: int
    total_tokens: int
    by_mode: Dict[str, int]
    by_date: List[UsageByDate]


class RequestHistoryItem(BaseModel):
    request_id: str
    mode: str
    provider_used: Optional[str] = None
    status: str
    latency_ms: Optional[int] = None
    error_code: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AccountExport(BaseModel):
    """Everything stored about a device, for data-access requests."""
    device: Dict[str, Any]
    usage_history: List[UsageByDate]
    request_history: List[RequestHistoryItem]
    data_retention: Dict[str, str]
    exported_at: datetime


class MetricsResponse(BaseModel):
    requests: Dict[str, Any]
    devices: Dict[str, Any]
    providers: Dict[str, Any]
    key_pool: Dict[str, Any]
    circuits: Dict[str, Any]
    cache: Dict[str, Any]
    generated_at: datetime
