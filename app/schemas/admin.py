"""Pydantic v2 schemas for admin platform settings."""

from pydantic import BaseModel, Field


class PlatformSettingsUpdate(BaseModel):
    escrow_period_minutes: int | None = Field(None, ge=1)


class PlatformSettingsResponse(BaseModel):
    success: bool = True
    escrow_period_minutes: int
