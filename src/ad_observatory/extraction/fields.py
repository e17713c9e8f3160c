"""Field extraction from one record container.

Each field is read with its own ordered fallback:

- advertiser: heading text, then the first qualifying link/button text, then
  bold-styled text, then :data:`~ad_observatory.extraction.config.UNKNOWN_ADVERTISER`.
- description: the pre-formatted body block, else the longest descendant text
  over 20 characters that differs from the advertiser.
- contact: first phone number in the description.
- started_on: date from "Started running on <date>" anywhere in the card.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from ad_observatory.core.exceptions import ExtractionParseError
from ad_observatory.core.schemas import AdRecord
from ad_observatory.extraction import config as cfg
from ad_observatory.extraction.dom import DomNode

_BOLD_STYLES: tuple[str, ...] = ("font-weight: 600", "font-weight: bold")


def extract_advertiser(card: DomNode) -> str:
    header = card.find_first(lambda n: n.tag in ("h4", "h3"))
    if header is not None and header.text:
        return header.text

    for node in card.find_all(
        lambda n: n.tag == "a" or (n.tag == "span" and n.get("role") == "button")
    ):
        text = node.text
        if (
            cfg.ADVERTISER_MIN_LEN < len(text) < cfg.ADVERTISER_MAX_LEN
            and text.lower() not in cfg.ADVERTISER_STOPWORDS
        ):
            return text

    bold = card.find_first(
        lambda n: n.tag == "span" and any(n.style_contains(s) for s in _BOLD_STYLES)
    )
    if bold is not None and bold.text:
        return bold.text

    return cfg.UNKNOWN_ADVERTISER


def extract_description(card: DomNode, advertiser: str) -> str:
    body = card.find_first(lambda n: n.tag == "div" and n.style_contains("white-space: pre-wrap"))
    if body is not None:
        return body.text

    longest = ""
    for node in card.find_tags("div", "span"):
        text = node.text
        if len(text) > len(longest) and len(text) > cfg.DESCRIPTION_MIN_LEN and text != advertiser:
            longest = text
    return longest


def extract_contact(description: str) -> Optional[str]:
    match = cfg.PHONE_PATTERN.search(description)
    return match.group(0) if match else None


def extract_started_on(card: DomNode) -> Optional[date]:
    match = cfg.STARTED_ON_PATTERN.search(card.text_content)
    if not match:
        return None
    raw = " ".join(match.group(1).split())
    for fmt in cfg.STARTED_ON_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def extract_record(card: DomNode, keyword: str, source: str) -> AdRecord:
    """Read one card into an :class:`AdRecord`.

    Raises:
        ExtractionParseError: If the card yields neither an advertiser nor a
            description, or reading it fails.
    """
    try:
        advertiser = extract_advertiser(card)
        description = extract_description(card, advertiser)
        if advertiser == cfg.UNKNOWN_ADVERTISER and not description:
            raise ExtractionParseError("card has no advertiser and no description")
        return AdRecord(
            advertiser_name=advertiser,
            description=description,
            keyword=keyword,
            source=source,
            contact=extract_contact(description),
            started_on=extract_started_on(card),
        )
    except ExtractionParseError:
        raise
    except (ValueError, TypeError, AttributeError) as exc:
        raise ExtractionParseError(f"failed to read card: {exc}") from exc
