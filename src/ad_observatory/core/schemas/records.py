"""Pydantic schema for a record produced by the field extractor."""

from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class AdRecord(BaseModel):
    """One ad as read from the page, before persistence.

    The owner is supplied separately to ``PersistenceGateway.save`` so the same
    record value can be checked against any owner's dedup namespace.
    """

    model_config = ConfigDict(frozen=True)

    advertiser_name: str
    description: str
    keyword: str
    source: str
    contact: Optional[str] = None
    location: Optional[str] = None
    started_on: Optional[date] = None
