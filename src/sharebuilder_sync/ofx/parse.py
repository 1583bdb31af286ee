from __future__ import annotations

import re
from typing import Any, Union

from bs4 import BeautifulSoup, Tag

from ..errors import MalformedPage


OfxTree = dict[str, Any]

_LEAF_RE = re.compile(r"<([A-Za-z0-9.]+)>([^<]*)")
_OFX_START_RE = re.compile(r"<OFX>", re.I)


def _close_leaf_elements(body: str) -> str:
    """
    OFX 1.x is SGML: leaf elements (`<TICKER>PERL`) are usually left unclosed while aggregates are
    always closed. Close the leaves so an HTML parser nests everything correctly.
    """

    def repl(m: re.Match[str]) -> str:
        tag, value = m.group(1), m.group(2)
        if not value.strip():
            return m.group(0)
        close = f"</{tag}>"
        if m.string[m.end() : m.end() + len(close)].lower() == close.lower():
            return m.group(0)
        return f"<{tag}>{value.strip()}{close}"

    return _LEAF_RE.sub(repl, body)


def _to_mapping(tag: Tag) -> Union[str, dict[str, Any]]:
    children = [c for c in tag.children if isinstance(c, Tag)]
    if not children:
        return tag.get_text().strip()

    out: dict[str, Any] = {}
    for child in children:
        value = _to_mapping(child)
        key = child.name
        if key not in out:
            out[key] = value
        elif isinstance(out[key], list):
            out[key].append(value)
        else:
            out[key] = [out[key], value]
    return out


def parse_ofx(text: str) -> OfxTree:
    """
    Turn an OFX document (SGML 1.x or XML 2.x) into a nested mapping.

    Keys are lower-cased element names; repeated sibling elements become lists; leaf values are
    stripped strings. The result always has a single top-level "ofx" key.
    """
    raw = (text or "").replace("\r", "")
    m = _OFX_START_RE.search(raw)
    if not m:
        raise MalformedPage("Document does not contain an <OFX> element")

    body = _close_leaf_elements(raw[m.start() :])
    # A byte-free str input keeps BeautifulSoup from guessing the encoding.
    soup = BeautifulSoup(body, "html.parser")
    root = soup.find("ofx")
    if root is None:
        raise MalformedPage("Document does not contain an <OFX> element")
    return {"ofx": _to_mapping(root)}
