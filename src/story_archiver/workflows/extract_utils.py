"""Find embeddable resource references inside story HTML fragments and CSS text.

Extraction is pure: nothing here touches the network or mutates its input.
References come back in document order, duplicates included; deduplication
happens when references are turned into fetch tasks.
"""

from __future__ import annotations

import re
import warnings
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning  # type: ignore

from .asset_fetch import KIND_ASSET, KIND_VIDEO
from .video_utils import is_video_url

warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

__all__ = [
    "AssetReference",
    "resolve_reference",
    "extract_css_references",
    "extract_html_references",
]

CSS_URL_RE = re.compile(r"""url\(\s*(['"]?)(?P<url>.*?)\1\s*\)""", re.IGNORECASE | re.DOTALL)
CSS_IMPORT_RE = re.compile(r"""@import\s+(['"])(?P<url>[^'"]+)\1""", re.IGNORECASE)

_SKIP_PREFIXES = ("data:", "blob:", "#", "javascript:", "about:", "mailto:", "tel:")

# Attributes that point straight at an embeddable resource on any tag.
_SRC_ATTRS = ("src", "data-src", "data-original", "data-lazy", "data-image", "poster")
_SRCSET_ATTRS = ("srcset", "data-srcset")
# Tags whose ``src`` is a document rather than a resource unless it is a video.
_DOCUMENT_TAGS = {"iframe", "frame", "embed", "script"}
_LINK_RELS = {"icon", "shortcut", "apple-touch-icon", "stylesheet", "preload", "image_src"}


@dataclass(frozen=True)
class AssetReference:
    """A remote resource referenced from somewhere in the story."""

    location: str
    url: str
    raw: str
    kind: str = KIND_ASSET


def resolve_reference(raw: str, base_url: Optional[str] = None) -> Optional[str]:
    """Return the absolute http(s) URL for a reference token, or None to skip it."""

    value = (raw or "").strip()
    if not value or value.lower().startswith(_SKIP_PREFIXES):
        return None
    if value.startswith("//"):
        return f"https:{value}"
    try:
        parsed = urlparse(value)
    except ValueError:
        return None
    if parsed.scheme in {"http", "https"}:
        return value if parsed.netloc else None
    if parsed.scheme:
        return None
    if base_url:
        return urljoin(base_url, value)
    return None


def _reference(location: str, raw: str, base_url: Optional[str]) -> Optional[AssetReference]:
    token = (raw or "").strip()
    url = resolve_reference(token, base_url)
    if url is None:
        return None
    kind = KIND_VIDEO if is_video_url(url) else KIND_ASSET
    return AssetReference(location=location, url=url, raw=token, kind=kind)


def _iter_css_tokens(css: str) -> Iterator[Tuple[int, str]]:
    for match in CSS_URL_RE.finditer(css):
        yield match.start(), match.group("url")
    for match in CSS_IMPORT_RE.finditer(css):
        yield match.start(), match.group("url")


def extract_css_references(css: str, location: str, base_url: Optional[str] = None) -> List[AssetReference]:
    """Every ``url(...)`` and ``@import "..."`` target in ``css``, in source order."""

    if not css:
        return []
    refs: List[AssetReference] = []
    for _pos, raw in sorted(_iter_css_tokens(css), key=lambda item: item[0]):
        ref = _reference(location, raw, base_url)
        if ref is not None:
            refs.append(ref)
    return refs


def _split_srcset(value: str) -> List[str]:
    candidates: List[str] = []
    for part in (value or "").split(","):
        tokens = part.strip().split()
        if tokens:
            candidates.append(tokens[0])
    return candidates


def _attr_text(value: object) -> str:
    if isinstance(value, list):
        return " ".join(str(v) for v in value)
    return str(value or "")


def extract_html_references(html: str, location: str, base_url: Optional[str] = None) -> List[AssetReference]:
    """Every embeddable resource referenced by an HTML fragment, in document order."""

    if not html:
        return []
    soup = BeautifulSoup(html, "lxml")
    refs: List[AssetReference] = []

    def add(raw: str) -> None:
        ref = _reference(location, raw, base_url)
        if ref is not None:
            refs.append(ref)

    for tag in soup.find_all(True):
        name = (tag.name or "").lower()
        for attr in _SRC_ATTRS:
            value = tag.get(attr)
            if not value:
                continue
            raw = _attr_text(value)
            if name in _DOCUMENT_TAGS and attr == "src":
                if is_video_url(raw.strip()):
                    add(raw)
                continue
            add(raw)
        for attr in _SRCSET_ATTRS:
            value = tag.get(attr)
            if value:
                for candidate in _split_srcset(_attr_text(value)):
                    add(candidate)
        if name == "link":
            rels = {r.lower() for r in _attr_text(tag.get("rel")).split()}
            if rels & _LINK_RELS and tag.get("href"):
                add(_attr_text(tag.get("href")))
        elif name == "image":
            href = tag.get("href") or tag.get("xlink:href")
            if href:
                add(_attr_text(href))
        style = tag.get("style")
        if style:
            refs.extend(extract_css_references(_attr_text(style), location, base_url))
        if name == "style" and tag.string:
            refs.extend(extract_css_references(str(tag.string), location, base_url))
    return refs
