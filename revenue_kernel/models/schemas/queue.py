"""
Pydantic schemas for the offline conversion queue.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, field_validator

from revenue_kernel.models.db.enums import ProviderErrorCategory, QueueAction, QueueStatus


class ClickIds(BaseModel):
    gclid: Optional[str] = Field(None, max_length=512)
    wbraid: Optional[str] = Field(None, max_length=512)
    gbraid: Optional[str] = Field(None, max_length=512)


class ConversionEnqueue(BaseModel):
    """A confirmed business event to be uploaded to an ad provider."""
    site_id: str = Field(min_length=1, max_length=64)
    provider_key: str = Field(min_length=1, max_length=64)
    source_event_id: str = Field(min_length=1, max_length=128, description="Event id unique per site and provider")
    occurred_at: datetime
    amount_minor: int = Field(ge=0, description="Conversion value in minor currency units")
    currency: str = Field("USD", min_length=3, max_length=3)
    click_ids: ClickIds = Field(default_factory=ClickIds)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class QueueActionRequest(BaseModel):
    """Bulk operator action on queue rows of one site."""
    site_id: str = Field(min_length=1, max_length=64)
    action: QueueAction
    ids: List[str] = Field(min_length=1, max_length=500)
    reason: Optional[str] = Field(None, max_length=1000, description="Stored as last_error for MARK_FAILED")
    error_code: Optional[str] = Field(None, max_length=64)
    error_category: Optional[ProviderErrorCategory] = None
    clear_errors: bool = Field(False, description="RESET_TO_QUEUED only: wipe error fields")


class QueueRowRead(BaseModel):
    id: str
    site_id: str
    provider_key: str
    source_event_id: str
    status: QueueStatus
    attempt_count: int
    provider_attempt_count: int
    amount_minor: int
    currency: str
    occurred_at: datetime
    next_retry_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    uploaded_at: Optional[datetime] = None
    updated_at: datetime
    provider_ref: Optional[str] = None
    provider_error_code: Optional[str] = None
    provider_error_category: Optional[ProviderErrorCategory] = None
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class QueueRowPage(BaseModel):
    items: List[QueueRowRead]
    total: int
    limit: int
    offset: int


class QueueStats(BaseModel):
    site_id: str
    totals: Dict[str, int]
    stuck_processing: int = Field(description="PROCESSING rows claimed longer ago than the stuck threshold")
    total: int
