"""Typed progress events exchanged between an extraction worker and the supervisor.

The same types travel over both channels: directly through an asyncio queue for
in-process workers, and encoded as tagged stdout lines for subprocess workers
(see ``ad_observatory.extraction.progress``).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ProgressKind(str, Enum):
    RECORD_SAVED = "record_saved"
    DUPLICATE_SKIPPED = "duplicate_skipped"


class ProgressEvent(BaseModel):
    """One per-record progress notification."""

    kind: ProgressKind
    saved: int = 0
    max_records: int = 0
    advertiser: str = ""


class ExtractionSummary(BaseModel):
    """Trailing summary of one worker run.

    Attributes:
        found: Records seen (saved plus duplicates).
        saved: Records persisted.
        duplicates: Records rejected as duplicates.
        processed: Records handled, including parse and persistence failures.
        target: The run's ``max_records``.
        achieved: Whether ``saved`` reached ``target``.
        stop_reason: Why the engine stopped (``"target_reached"``, ``"stalled"``, ...).
    """

    found: int = 0
    saved: int = 0
    duplicates: int = 0
    processed: int = 0
    target: Optional[int] = None
    achieved: Optional[bool] = None
    stop_reason: Optional[str] = None
