"""Ad extraction engine.

Drives one headless browser session per mission, discovers record cards in a
virtualised results list, and persists deduplicated records as it goes.

Sub-modules:
- ``config`` : constants and :class:`EngineConfig` tunables
- ``dom`` : DOM snapshot model
- ``discovery`` : ordered record-container discovery strategies
- ``fields`` : per-card field extraction
- ``pagination`` : poll-based scroll pagination
- ``browser`` : Playwright page driver
- ``query`` : search URL construction
- ``progress`` : progress sinks and the line-protocol decoder
- ``engine`` : :class:`ExtractionEngine`
- ``worker`` : worker CLI (``python -m ad_observatory.extraction.worker``)
"""
