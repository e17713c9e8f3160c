"""Test data builders.

Available helpers
-----------------
AdRecordFactory : Factory Boy factory for AdRecord with unique dedup keys
ad_card / results_page / FakePageDriver : hand-built result pages (pages.py)
ScriptedLauncher / ScriptedHandle / RecordingSink : scripted workers (workers.py)
"""

from __future__ import annotations

from tests.factories.records import AdRecordFactory

__all__ = [
    "AdRecordFactory",
]
