"""
Text normalisation shared by the resolver and the record extractor.
"""

import re
from typing import Optional

from bs4 import NavigableString, Tag

_WHITESPACE_RE = re.compile(r"\s+")
# C0/C1 control characters plus the private-use range Google uses for icons
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f\ue000-\uf8ff]")

# Number-looking substring: "4.6", "1,234", "4,5"
_NUMBER_RE = re.compile(r"\d+(?:[.,\u00a0]\d+)*")

_BLOCK_TAGS = frozenset(
    {
        "article", "br", "div", "h1", "h2", "h3", "h4", "h5", "h6",
        "li", "p", "section", "tr",
    }
)


def clean_text(raw: Optional[str]) -> Optional[str]:
    """Collapse whitespace and strip control characters. Empty -> None."""
    if raw is None:
        return None
    text = _WHITESPACE_RE.sub(" ", raw)
    text = _CONTROL_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text or None


def node_text(node: Tag) -> str:
    """
    Render visible text with one line per block element, roughly what a
    browser's ``innerText`` gives for a listing card.
    """
    parts = []
    for el in node.descendants:
        if type(el) is NavigableString:
            parts.append(str(el))
        elif isinstance(el, Tag) and el.name in _BLOCK_TAGS:
            parts.append("\n")
    lines = (" ".join(line.split()) for line in "".join(parts).splitlines())
    return "\n".join(line for line in lines if line)


def first_number(text: Optional[str]) -> Optional[str]:
    """Return the first number-looking substring of *text*, or None."""
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    return match.group(0) if match else None


def parse_float(text: Optional[str]) -> Optional[float]:
    """First number in *text* as a float; a lone comma is a decimal mark."""
    raw = first_number(text)
    if raw is None:
        return None
    raw = raw.replace("\u00a0", "")
    if "," in raw and "." not in raw and len(raw.rsplit(",", 1)[1]) != 3:
        raw = raw.replace(",", ".")
    else:
        raw = raw.replace(",", "")
    try:
        return float(raw)
    except ValueError:
        return None


def parse_int(text: Optional[str]) -> Optional[int]:
    """
    First number in *text* as an int, honouring thousands separators and a
    trailing K/M multiplier ("1.2K" -> 1200).

    A decimal-looking first number without a multiplier ("4.5") is not a
    count and yields None.
    """
    if not text:
        return None
    match = re.search(r"(\d+(?:[.,\u00a0]\d+)*)\s*([KkMm])?\b", text)
    if not match:
        return None
    raw, suffix = match.group(1), match.group(2)
    raw = raw.replace("\u00a0", "")
    if suffix:
        try:
            value = float(raw.replace(",", "."))
        except ValueError:
            return None
        return int(round(value * (1_000 if suffix.lower() == "k" else 1_000_000)))
    groups = re.split(r"[.,]", raw)
    # separators only ever split off groups of three digits
    if any(len(group) != 3 for group in groups[1:]):
        return None
    return int("".join(groups))
