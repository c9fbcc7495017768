"""
ReefScan Gateway — Auth Schemas
================================

What:  Request/response bodies for device registration and token lifecycle.
Validation:
    device_uuid  must parse as a UUID (any version)
    platform     ios | android
    app_version  semantic version MAJOR.MINOR.PATCH
"""

import uuid
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

Platform = Literal["ios", "android"]


class RegisterRequest(BaseModel):
    device_uuid: str = Field(description="Client-generated install UUID")
    platform: Platform
    app_version: str = Field(pattern=r"^\d+\.\d+\.\d+$")
    app_secret: str = Field(min_length=1, description="Per-platform shared secret")

    @field_validator("device_uuid")
    @classmethod
    def validate_device_uuid(cls, v: str) -> str:
        try:
            uuid.UUID(v)
        except ValueError:
            raise ValueError("device_uuid must be a valid UUID")
        return v.lower()


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(description="Access token lifetime in seconds")


class DeviceInfo(BaseModel):
    device_uuid: str
    platform: str
    tier: str
    daily_limit: int
    subscription_status: str
    subscription_id: Optional[str] = None


class RegisterResponse(TokenPair):
    device: DeviceInfo


class MessageResponse(BaseModel):
    message: str
