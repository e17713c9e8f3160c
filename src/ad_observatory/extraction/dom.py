"""Immutable DOM snapshot used by the discovery and field-extraction heuristics.

The page driver serialises the live document once per poll with
:data:`SNAPSHOT_SCRIPT` and the engine rebuilds it here as a tree of
:class:`DomNode`.  All heuristics then run in Python against the snapshot,
which keeps them independent of the browser and testable with hand-built
trees.

Serialised node shape::

    {"t": "div", "a": {"role": "main"}, "w": 1200.0, "h": 640.0,
     "c": [<node>, "text node", ...]}

Text nodes appear as plain strings inside ``"c"`` so that
:attr:`DomNode.text_content` concatenates text in document order, the way the
browser's ``textContent`` does.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any, Optional, Union

#: Attributes kept in the snapshot; everything else is dropped to bound its size.
SNAPSHOT_ATTRIBUTES: tuple[str, ...] = ("id", "class", "role", "style", "data-testid", "href")

#: Elements never serialised.
SKIPPED_TAGS: tuple[str, ...] = ("script", "style", "noscript", "svg", "template", "link", "meta")

SNAPSHOT_SCRIPT: str = """
() => {
  const KEEP = %(attrs)s;
  const SKIP = new Set(%(skip)s);
  const walk = (el) => {
    const a = {};
    for (const name of KEEP) {
      const v = el.getAttribute(name);
      if (v !== null) a[name] = v;
    }
    const r = el.getBoundingClientRect();
    const c = [];
    for (const child of el.childNodes) {
      if (child.nodeType === Node.TEXT_NODE) {
        if (child.nodeValue) c.push(child.nodeValue);
      } else if (child.nodeType === Node.ELEMENT_NODE) {
        if (!SKIP.has(child.tagName.toLowerCase())) c.push(walk(child));
      }
    }
    return {t: el.tagName.toLowerCase(), a: a, w: r.width, h: r.height, c: c};
  };
  return document.body ? walk(document.body) : null;
}
""" % {
    "attrs": json.dumps(list(SNAPSHOT_ATTRIBUTES)),
    "skip": json.dumps(list(SKIPPED_TAGS)),
}


class DomNode:
    """One element of a DOM snapshot.

    Nodes compare and hash by identity, so a set of nodes deduplicates by
    element the way a JavaScript ``Set`` of elements does.
    """

    __slots__ = ("tag", "attrs", "width", "height", "parent", "parts", "_text_content")

    def __init__(
        self,
        tag: str,
        attrs: Optional[dict[str, str]] = None,
        width: float = 0.0,
        height: float = 0.0,
        parts: Optional[list[Union["DomNode", str]]] = None,
    ) -> None:
        self.tag = tag.lower()
        self.attrs: dict[str, str] = dict(attrs or {})
        self.width = float(width)
        self.height = float(height)
        self.parent: Optional[DomNode] = None
        self.parts: list[Union[DomNode, str]] = []
        self._text_content: Optional[str] = None
        for part in parts or []:
            self.append(part)

    def __repr__(self) -> str:
        return f"<DomNode {self.tag} {self.attrs!r} children={len(self.children)}>"

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def append(self, part: Union["DomNode", str]) -> "DomNode":
        if isinstance(part, DomNode):
            part.parent = self
        self.parts.append(part)
        self._text_content = None
        return self

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "DomNode":
        """Rebuild a tree from :data:`SNAPSHOT_SCRIPT` output."""
        root = cls(data.get("t", "body"), data.get("a"), data.get("w", 0), data.get("h", 0))
        stack: list[tuple[DomNode, list[Any]]] = [(root, list(data.get("c") or []))]
        while stack:
            node, raw_children = stack.pop()
            for raw in raw_children:
                if isinstance(raw, str):
                    node.append(raw)
                    continue
                child = cls(raw.get("t", "div"), raw.get("a"), raw.get("w", 0), raw.get("h", 0))
                node.append(child)
                stack.append((child, list(raw.get("c") or [])))
        return root

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def children(self) -> list["DomNode"]:
        return [p for p in self.parts if isinstance(p, DomNode)]

    @property
    def text_content(self) -> str:
        """Concatenated descendant text, unstripped."""
        if self._text_content is None:
            self._text_content = "".join(
                p if isinstance(p, str) else p.text_content for p in self.parts
            )
        return self._text_content

    @property
    def text(self) -> str:
        """``text_content`` with surrounding whitespace stripped."""
        return self.text_content.strip()

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attrs.get(name, default)

    def has_class(self, name: str) -> bool:
        return name in (self.attrs.get("class") or "").split()

    def style_contains(self, fragment: str) -> bool:
        return fragment in (self.attrs.get("style") or "")

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def iter_descendants(self) -> Iterator["DomNode"]:
        """Yield every descendant element in document order, excluding self."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def find_all(self, predicate: Callable[["DomNode"], bool]) -> list["DomNode"]:
        return [n for n in self.iter_descendants() if predicate(n)]

    def find_first(self, predicate: Callable[["DomNode"], bool]) -> Optional["DomNode"]:
        for node in self.iter_descendants():
            if predicate(node):
                return node
        return None

    def find_tags(self, *tags: str) -> list["DomNode"]:
        wanted = frozenset(t.lower() for t in tags)
        return self.find_all(lambda n: n.tag in wanted)

    def contains_tag(self, tag: str) -> bool:
        return self.find_first(lambda n: n.tag == tag) is not None

    def ancestors(self) -> Iterator["DomNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def root(self) -> "DomNode":
        node = self
        while node.parent is not None:
            node = node.parent
        return node


def el(tag: str, *parts: Union[DomNode, str], width: float = 0.0, height: float = 0.0, **attrs: str) -> DomNode:
    """Build a :class:`DomNode` concisely.

    Keyword attribute names use ``_`` for ``-`` (``data_testid`` becomes
    ``data-testid``) and ``class_`` for ``class``.
    """
    clean = {k.rstrip("_").replace("_", "-"): v for k, v in attrs.items()}
    return DomNode(tag, clean, width=width, height=height, parts=list(parts))
