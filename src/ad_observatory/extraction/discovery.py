"""Record-container discovery over a DOM snapshot.

The results list is virtualised and its markup changes between deployments,
so cards are located with an ordered chain of strategies, re-run on every
poll.  The first strategy returning a non-empty list wins:

1. :class:`MarkerAttributeDiscoverer`: the structural ``data-testid`` marker.
2. :class:`DetailLinkDiscoverer`: walk up from each "See ad details" link to
   the first sizeable ancestor.
3. :class:`ScopedClassDiscoverer`: known obfuscated card classes, only under a
   scoped results root.
4. :class:`SiblingHomogeneityDiscoverer`: a parent whose children mostly look
   like cards.

Each strategy implements ``discover(root) -> list[DomNode]`` where *root* is
the snapshot's ``<body>``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from ad_observatory.extraction import config as cfg
from ad_observatory.extraction.dom import DomNode

logger = logging.getLogger(__name__)


def resolve_scope(root: DomNode) -> DomNode:
    """Return the most specific results container, falling back to *root*."""
    main = root.find_first(lambda n: n.get("role") == cfg.SCOPE_ROLE)
    if main is not None:
        return main
    for test_id in cfg.SCOPE_TEST_IDS:
        node = root.find_first(lambda n, t=test_id: n.get("data-testid") == t)
        if node is not None:
            return node
    return root


def _has_link(node: DomNode) -> bool:
    return node.contains_tag("a")


class Discoverer(ABC):
    """One record-container discovery strategy."""

    name: str = "discoverer"

    @abstractmethod
    def discover(self, root: DomNode) -> list[DomNode]:
        """Return candidate record containers in document order (possibly empty)."""


class MarkerAttributeDiscoverer(Discoverer):
    name = "marker_attribute"

    def discover(self, root: DomNode) -> list[DomNode]:
        scope = resolve_scope(root)
        return scope.find_all(lambda n: n.get(cfg.MARKER_ATTRIBUTE) == cfg.MARKER_VALUE)


class DetailLinkDiscoverer(Discoverer):
    """Locate cards from their "details" link.

    For every ``a``/``span``/``div`` whose text is exactly one of the detail
    phrases, walk up at most :data:`~ad_observatory.extraction.config.DETAIL_LINK_MAX_DEPTH`
    ancestors, stopping at the scope or document root, and take the first
    ancestor larger than the minimum card box.  Containers are deduplicated by
    identity, so nested matching elements inside one card yield one card.
    """

    name = "detail_link"

    def discover(self, root: DomNode) -> list[DomNode]:
        scope = resolve_scope(root)
        body = root.root()
        seen: set[DomNode] = set()
        containers: list[DomNode] = []
        for node in scope.iter_descendants():
            if node.tag not in cfg.DETAIL_LINK_TAGS:
                continue
            if node.text.lower() not in cfg.DETAIL_LINK_PHRASES:
                continue
            parent = node
            for _ in range(cfg.DETAIL_LINK_MAX_DEPTH):
                parent = parent.parent
                if parent is None or parent is scope or parent is body:
                    break
                if parent.width > cfg.CARD_MIN_WIDTH and parent.height > cfg.CARD_MIN_HEIGHT:
                    if parent.parent is not None and parent not in seen:
                        seen.add(parent)
                        containers.append(parent)
                    break
        return containers


class ScopedClassDiscoverer(Discoverer):
    name = "scoped_class"

    def discover(self, root: DomNode) -> list[DomNode]:
        scope = resolve_scope(root)
        if scope is root:
            return []
        return scope.find_all(
            lambda n: n.tag == "div"
            and any(n.has_class(c) for c in cfg.CARD_CLASS_NAMES)
            and len(n.text_content) > cfg.SCOPED_CLASS_MIN_TEXT
        )


class SiblingHomogeneityDiscoverer(Discoverer):
    """Find a results list by the shape of its children.

    Scans every ``div`` in the document.  A child is card-like when it
    contains a link, has enough text and is tall enough.  The first parent
    with at least three card-like children making up more than 60% of its
    children is taken as the list; its children that contain a link and
    enough text are returned.
    """

    name = "sibling_homogeneity"

    @staticmethod
    def _card_like(child: DomNode) -> bool:
        return (
            _has_link(child)
            and len(child.text_content) > cfg.SIBLING_MIN_TEXT
            and child.height > cfg.SIBLING_MIN_HEIGHT
        )

    def discover(self, root: DomNode) -> list[DomNode]:
        for div in root.root().iter_descendants():
            if div.tag != "div":
                continue
            children = div.children
            if not cfg.SIBLING_MIN_CHILDREN <= len(children) <= cfg.SIBLING_MAX_CHILDREN:
                continue
            card_like = sum(1 for c in children if self._card_like(c))
            if card_like >= cfg.SIBLING_MIN_CARD_LIKE and card_like / len(children) > cfg.SIBLING_MIN_RATIO:
                return [
                    c for c in children
                    if _has_link(c) and len(c.text_content) > cfg.SIBLING_MIN_TEXT
                ]
        return []


class DiscoveryChain:
    """Ordered fallback over several :class:`Discoverer` strategies."""

    def __init__(self, strategies: Sequence[Discoverer] | None = None) -> None:
        self.strategies: list[Discoverer] = list(strategies) if strategies is not None else [
            MarkerAttributeDiscoverer(),
            DetailLinkDiscoverer(),
            ScopedClassDiscoverer(),
            SiblingHomogeneityDiscoverer(),
        ]

    def discover_with_strategy(self, root: DomNode) -> tuple[str | None, list[DomNode]]:
        """Return the winning strategy's name and its containers."""
        for strategy in self.strategies:
            found = strategy.discover(root)
            if found:
                return strategy.name, found
        return None, []

    def discover(self, root: DomNode) -> list[DomNode]:
        return self.discover_with_strategy(root)[1]

    def diagnose(self, root: DomNode) -> dict[str, int]:
        """Count what every strategy finds; used for the empty-page diagnostic log."""
        return {s.name: len(s.discover(root)) for s in self.strategies}
