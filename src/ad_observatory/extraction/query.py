"""Translate a keyword and :class:`FilterSet` into the ad library's search URL."""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from ad_observatory.core.schemas import FilterSet

AD_TYPE: str = "all"
SORT_DIRECTION: str = "desc"
SORT_MODE: str = "total_impressions"
SEARCH_TYPE_EXACT: str = "keyword_exact_phrase"
SEARCH_TYPE_UNORDERED: str = "keyword_unordered"


def _join(base_url: str, params: list[str]) -> str:
    sep = "&" if "?" in base_url else "?"
    return base_url + sep + "&".join(params)


def build_search_url(
    keyword: str,
    filters: Optional[FilterSet],
    base_url: str,
    default_region: str,
) -> str:
    """Return the search URL for *keyword*.

    Without filters (or with only a region) the URL searches active ads for
    the exact phrase.  Bracketed parameter names (``publisher_platforms[0]``,
    ``start_date[min]``) are left unescaped, matching what the site emits.

    Args:
        keyword: Search keyword; sent quoted.
        filters: Optional filter set.
        base_url: Ad library base URL.
        default_region: Region used when the filters do not name one.
    """
    filters = filters or FilterSet()
    region = filters.region or default_region
    q = quote(f'"{keyword}"', safe="")

    if filters.is_empty():
        return _join(base_url, [
            "active_status=active",
            f"ad_type={AD_TYPE}",
            f"country={region}",
            "is_targeted_country=false",
            "media_type=all",
            f"q={q}",
            f"search_type={SEARCH_TYPE_EXACT}",
            f"sort_data[direction]={SORT_DIRECTION}",
            f"sort_data[mode]={SORT_MODE}",
        ])

    active_status = filters.active_status if filters.active_status in ("active", "inactive") else "all"
    media_type = filters.media_type if filters.media_type and filters.media_type != "all" else "all"
    params = [
        f"active_status={active_status}",
        f"ad_type={AD_TYPE}",
        f"country={region}",
        "is_targeted_country=false",
        f"media_type={media_type}",
    ]
    params += [
        f"publisher_platforms[{i}]={platform.lower()}"
        for i, platform in enumerate(filters.platforms)
    ]
    params.append(f"q={q}")
    search_type = SEARCH_TYPE_UNORDERED if filters.language == "en" else SEARCH_TYPE_EXACT
    params += [
        f"search_type={search_type}",
        f"sort_data[direction]={SORT_DIRECTION}",
        f"sort_data[mode]={SORT_MODE}",
    ]
    if filters.start_date:
        params.append(f"start_date[min]={filters.start_date.isoformat()}")
    if filters.end_date:
        params.append(f"start_date[max]={filters.end_date.isoformat()}")
    if filters.advertiser and filters.advertiser != "all":
        params.append(f"advertiser_name={quote(filters.advertiser, safe='')}")
    return _join(base_url, params)
