"""Unit tests for record-container discovery.

Tests cover:
- the structural marker wins when present
- a page exposing only "See ad details" links still yields every card, once
- scoped class discovery only runs under a scoped results root
- the sibling-homogeneity heuristic finds an unmarked list
- scope resolution order and the diagnostic counts
"""

from __future__ import annotations

from ad_observatory.extraction.discovery import (
    DetailLinkDiscoverer,
    DiscoveryChain,
    MarkerAttributeDiscoverer,
    ScopedClassDiscoverer,
    SiblingHomogeneityDiscoverer,
    resolve_scope,
)
from ad_observatory.extraction.dom import DomNode, el
from ad_observatory.extraction.fields import extract_record
from tests.factories.pages import ad_card, results_page

LONG_TEXT = "Fresh sneakers for every season, limited stock, order online today and get free returns " * 2


def _cards(count: int, *, marker: bool) -> list[DomNode]:
    return [
        ad_card(f"Brand {i}", f"Brand {i} sells running shoes with free delivery", marker=marker)
        for i in range(count)
    ]


class TestDiscoveryChain:
    def test_marker_strategy_wins_when_present(self) -> None:
        page = results_page(_cards(3, marker=True))

        name, found = DiscoveryChain().discover_with_strategy(page)

        assert name == MarkerAttributeDiscoverer.name
        assert len(found) == 3

    def test_detail_link_fallback_yields_the_same_records(self) -> None:
        marked = DiscoveryChain().discover(results_page(_cards(4, marker=True)))
        name, unmarked = DiscoveryChain().discover_with_strategy(results_page(_cards(4, marker=False)))

        assert name == DetailLinkDiscoverer.name
        expected = [extract_record(c, "shoes", "facebook") for c in marked]
        actual = [extract_record(c, "shoes", "facebook") for c in unmarked]
        assert actual == expected

    def test_detail_link_containers_are_deduplicated(self) -> None:
        # Each card holds both a matching <a> and a matching nested <span>.
        found = DetailLinkDiscoverer().discover(results_page(_cards(2, marker=False)))
        assert len(found) == 2

    def test_detail_link_skips_small_ancestors(self) -> None:
        tiny = DomNode(
            "div",
            width=100,
            height=50,
            parts=[el("a", "See ad details")],
        )
        card = DomNode("div", width=400, height=200, parts=[tiny, el("h4", "Acme")])
        found = DetailLinkDiscoverer().discover(results_page([card]))

        assert found == [card]

    def test_empty_page_yields_nothing(self) -> None:
        assert DiscoveryChain().discover_with_strategy(results_page([])) == (None, [])

    def test_diagnose_counts_every_strategy(self) -> None:
        counts = DiscoveryChain().diagnose(results_page(_cards(2, marker=True)))

        assert counts["marker_attribute"] == 2
        assert counts["detail_link"] == 2
        assert set(counts) == {"marker_attribute", "detail_link", "scoped_class", "sibling_homogeneity"}


class TestScopedClass:
    def _card(self) -> DomNode:
        return el("div", el("span", LONG_TEXT), class_="xh8yej3 other")

    def test_found_under_scoped_root(self) -> None:
        page = results_page([self._card(), self._card()], scoped=True)
        assert len(ScopedClassDiscoverer().discover(page)) == 2

    def test_ignored_without_scope(self) -> None:
        page = results_page([self._card(), self._card()], scoped=False)
        assert ScopedClassDiscoverer().discover(page) == []


class TestSiblingHomogeneity:
    def _item(self, i: int, *, link: bool = True) -> DomNode:
        parts = [el("p", f"{i} {LONG_TEXT}")]
        if link:
            parts.append(el("a", "Visit shop", href="#"))
        return DomNode("div", width=600, height=120, parts=parts)

    def test_finds_homogeneous_list(self) -> None:
        items = [self._item(i) for i in range(4)] + [el("div", "footer")]
        page = el("body", el("div", *items))

        found = SiblingHomogeneityDiscoverer().discover(page)

        assert found == items[:4]

    def test_requires_majority_of_card_like_children(self) -> None:
        items = [self._item(i) for i in range(3)] + [el("div", "x") for _ in range(3)]
        page = el("body", el("div", *items))

        assert SiblingHomogeneityDiscoverer().discover(page) == []

    def test_chain_falls_through_to_sibling_strategy(self) -> None:
        page = el("body", el("div", *[self._item(i) for i in range(3)]))

        name, found = DiscoveryChain().discover_with_strategy(page)

        assert name == SiblingHomogeneityDiscoverer.name
        assert len(found) == 3


class TestResolveScope:
    def test_role_main_preferred(self) -> None:
        main = el("div", role="main")
        page = el("body", el("div", data_testid="search_results_container"), main)
        assert resolve_scope(page) is main

    def test_test_id_fallback(self) -> None:
        container = el("div", data_testid="ad_library_main_content")
        page = el("body", container)
        assert resolve_scope(page) is container

    def test_body_fallback(self) -> None:
        page = el("body", el("div"))
        assert resolve_scope(page) is page
