"""
Selector resolver -- ordered extraction strategies per semantic field.

Each field (``"name"``, ``"rating"``, ...) owns an ordered list of
strategies reflecting known page layouts, newest first. ``resolve`` tries
them in order and returns the first non-empty match; matches are never
merged or ranked across strategies. A broken layout therefore degrades one
field instead of the whole extractor.
"""

import re
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Union

from bs4 import Tag
from pydantic import BaseModel, ConfigDict, Field

import gmb_export.config as cfg
from gmb_export.core.errors import SelectorNotFound
from gmb_export.utils.text import clean_text, node_text


class Strategy(BaseModel):
    """One way of locating a field inside a listing node."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["text", "attr", "all", "regex"]
    selector: str = ""
    attribute: Optional[str] = None
    pattern: Optional[str] = None
    source: Literal["text", "html"] = "text"

    @classmethod
    def from_spec(cls, spec: Sequence[str]) -> "Strategy":
        """Build from a ``config.FIELD_STRATEGIES`` tuple."""
        kind = spec[0]
        if kind == "attr":
            return cls(kind="attr", selector=spec[1], attribute=spec[2])
        if kind == "regex":
            source = spec[2] if len(spec) > 2 else "text"
            return cls(kind="regex", pattern=spec[1], source=source)
        return cls(kind=kind, selector=spec[1])

    @property
    def label(self) -> str:
        if self.kind == "regex":
            return f"regex:{self.pattern}"
        if self.kind == "attr":
            return f"attr:{self.selector or ':root'}@{self.attribute}"
        return f"{self.kind}:{self.selector}"

    def apply(self, field: str, root: Tag) -> Optional["MatchedNode"]:
        if self.kind == "all":
            nodes = root.select(self.selector)
            if nodes:
                return MatchedNode(field=field, strategy=self, nodes=nodes)
            return None

        if self.kind == "regex":
            haystack = str(root) if self.source == "html" else node_text(root)
            match = re.search(self.pattern, haystack, re.MULTILINE)
            if match is None:
                return None
            value = clean_text(match.group(1) if match.groups() else match.group(0))
            if value:
                return MatchedNode(field=field, strategy=self, value=value, nodes=[root])
            return None

        node = root.select_one(self.selector) if self.selector else root
        if node is None:
            return None
        if self.kind == "attr":
            raw = node.get(self.attribute)
            if isinstance(raw, list):
                raw = " ".join(raw)
        else:
            raw = node.get_text(" ")
        value = clean_text(raw)
        if value:
            return MatchedNode(field=field, strategy=self, value=value, nodes=[node])
        return None


class MatchedNode(BaseModel):
    """A successful resolution: the winning strategy and what it found."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    field: str
    strategy: Strategy
    value: Optional[str] = None
    nodes: List[Tag] = Field(default_factory=list)

    @property
    def node(self) -> Optional[Tag]:
        return self.nodes[0] if self.nodes else None

    @property
    def values(self) -> List[str]:
        """Cleaned text of every matched node (for multi-valued fields)."""
        if self.strategy.kind != "all":
            return [self.value] if self.value else []
        texts = (clean_text(n.get_text(" ")) for n in self.nodes)
        return [t for t in texts if t]


class NotFound:
    """Resolution result when no strategy matched. Falsy."""

    __slots__ = ("field",)

    def __init__(self, field: str) -> None:
        self.field = field

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"NotFound({self.field!r})"


Resolution = Union[MatchedNode, NotFound]


class SelectorResolver:
    """Holds the ordered strategy table and resolves fields against a node."""

    def __init__(
        self,
        strategies: Optional[Dict[str, Iterable[Sequence[str]]]] = None,
    ) -> None:
        table = cfg.FIELD_STRATEGIES if strategies is None else strategies
        self._strategies: Dict[str, List[Strategy]] = {
            field: [
                s if isinstance(s, Strategy) else Strategy.from_spec(s)
                for s in specs
            ]
            for field, specs in table.items()
        }

    @property
    def fields(self) -> List[str]:
        return list(self._strategies)

    def strategies(self, field: str) -> List[Strategy]:
        return list(self._strategies.get(field, ()))

    def resolve(self, field: str, root: Tag) -> Resolution:
        for strategy in self._strategies.get(field, ()):
            matched = strategy.apply(field, root)
            if matched is not None:
                return matched
        return NotFound(field)

    def require(self, field: str, root: Tag) -> MatchedNode:
        """Like ``resolve`` but raises ``SelectorNotFound`` on a miss."""
        matched = self.resolve(field, root)
        if not matched:
            raise SelectorNotFound(field)
        return matched

    def text(self, field: str, root: Tag) -> Optional[str]:
        matched = self.resolve(field, root)
        return matched.value if matched else None
