"""SQLAlchemy ORM model for extracted ad records.

Deduplication is enforced by the database: ``dedup_hash`` is a SHA-256 digest
of the advertiser name and description, and ``(owner_id, dedup_hash)`` is
unique.  Two missions racing to insert the same record for
the same owner therefore produce exactly one row.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from ad_observatory.core.models.base import Base, utcnow

_FIELD_SEPARATOR = "\x1f"


def compute_dedup_hash(advertiser_name: str, description: str) -> str:
    """Return the hex SHA-256 of the advertiser and description.

    Matching is exact apart from leading and trailing whitespace: "Acme" and
    "ACME" are different advertisers.

    Args:
        advertiser_name: Advertiser name as extracted.
        description: Ad body text as extracted.

    Returns:
        64-character lowercase hex digest.
    """
    payload = _FIELD_SEPARATOR.join((advertiser_name.strip(), description.strip()))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ExtractedRecord(Base):
    """One persisted ad record.

    Attributes:
        id: UUID primary key.
        owner_id: Owner the record was extracted for.
        advertiser_name: Advertiser (page) name.
        description: Ad body text.
        contact: First phone number found in the description, if any.
        location: Free-form location, if known.
        source: Source tag (e.g. ``"facebook"``).
        keyword: Keyword of the mission that captured the record.
        started_on: Date the ad started running, when the card shows it.
        captured_at: When the record was persisted.
        dedup_hash: Digest of ``(advertiser_name, description)``.
    """

    __tablename__ = "extracted_records"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    advertiser_name: Mapped[str] = mapped_column(sa.String(500), nullable=False)
    description: Mapped[str] = mapped_column(sa.Text, nullable=False)
    contact: Mapped[Optional[str]] = mapped_column(sa.String(50), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    source: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    keyword: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    started_on: Mapped[Optional[date]] = mapped_column(sa.Date, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    dedup_hash: Mapped[str] = mapped_column(sa.String(64), nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("owner_id", "dedup_hash", name="uq_extracted_records_owner_dedup"),
        sa.Index("idx_extracted_records_owner_captured", "owner_id", "captured_at"),
        sa.Index("idx_extracted_records_owner_keyword", "owner_id", "keyword"),
    )
