"""Property schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PropertyUpsert(BaseModel):
    """Schema for creating or re-addressing a property."""
    slug: str = Field(..., min_length=1, max_length=200)
    address: str = Field(..., min_length=1, max_length=500)


class PropertyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slug: str
    address: str
    created_at: datetime
