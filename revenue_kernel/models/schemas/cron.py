"""
Request bodies for the cron endpoints. All fields are optional; the
defaults come from configuration.
"""
from typing import Optional
from pydantic import BaseModel, Field


class UploadRunRequest(BaseModel):
    provider_key: Optional[str] = Field(None, max_length=64)
    limit: Optional[int] = Field(None, ge=1, description="Clamped to the configured cron maximum")


class AttemptCapRequest(BaseModel):
    max_attempts: Optional[int] = Field(None, description="Clamped to 1..20")
    min_age_minutes: int = Field(0, description="Clamped to 0..1440; 0 disables the age filter")


class RecoverProcessingRequest(BaseModel):
    min_age_minutes: Optional[int] = Field(None, description="Clamped to 1..60")


class ReconcileRunRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=500)


class BackfillRequest(BaseModel):
    from_year_month: str = Field(pattern=r"^\d{4}-\d{2}$")
    to_year_month: str = Field(pattern=r"^\d{4}-\d{2}$")
    site_id: Optional[str] = Field(None, max_length=64)
