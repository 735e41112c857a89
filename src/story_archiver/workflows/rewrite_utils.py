"""Point localized references at their archived copies and scope story CSS.

Rewriting is textual and token-bounded so the surrounding markup keeps its
exact formatting: a URL is only replaced where it stands as a whole reference
(delimited by quotes, parentheses, whitespace, commas or the ends of the
text). An unmapped URL that merely extends a mapped one is left untouched.
"""

from __future__ import annotations

import html as html_lib
import re
from typing import List, Mapping, Optional, Tuple

__all__ = [
    "rewrite_references",
    "rewrite_html",
    "scope_css",
]

_BEFORE = r"""(?<![^\s"'(,=])"""
_AFTER = r"""(?=[\s"'),<>=]|$)"""
# Quote entities also delimit references inside attribute values (``url(&quot;...&quot;)``).
_QUOTE_ENTITIES = ("&quot;", "&#34;", "&#39;", "&#x27;", "&apos;")
_HTML_BEFORE = "(?:{})".format("|".join([_BEFORE] + [f"(?<={re.escape(e)})" for e in _QUOTE_ENTITIES]))
_HTML_AFTER = "(?={})".format("|".join([r"""[\s"'),<>=]""", "$"] + [re.escape(e) for e in _QUOTE_ENTITIES]))

# Selectors that address the document root; inside a container they mean the container.
_ROOT_SELECTORS = ("html", "body", ":root")
# At-rules whose blocks hold ordinary rules and get scoped recursively.
_NESTED_AT_RULES = {"media", "supports", "document", "-moz-document", "layer", "container"}


def _compile(
    mapping: Mapping[str, str],
    before: str = _BEFORE,
    after: str = _AFTER,
) -> Optional["re.Pattern[str]"]:
    keys = sorted((k for k in mapping if k), key=len, reverse=True)
    if not keys:
        return None
    alternation = "|".join(re.escape(k) for k in keys)
    return re.compile(f"{before}({alternation}){after}")


def rewrite_references(content: str, mapping: Mapping[str, str]) -> str:
    """Replace every whole-token occurrence of a mapped reference with its local path."""

    if not content or not mapping:
        return content
    pattern = _compile(mapping)
    if pattern is None:
        return content
    return pattern.sub(lambda m: mapping[m.group(1)], content)


def rewrite_html(content: str, mapping: Mapping[str, str]) -> str:
    """Like :func:`rewrite_references`, also matching entity-escaped forms.

    Both the reference (``&amp;`` in query strings) and its delimiters
    (``&quot;`` inside ``style`` attributes) may be written as entities.
    """

    expanded = dict(mapping)
    for raw, local in mapping.items():
        escaped = html_lib.escape(raw, quote=False)
        if escaped != raw:
            expanded.setdefault(escaped, local)
    if not content or not expanded:
        return content
    pattern = _compile(expanded, _HTML_BEFORE, _HTML_AFTER)
    if pattern is None:
        return content
    return pattern.sub(lambda m: expanded[m.group(1)], content)


# ---------------------------------------------------------------------------
# Stylesheet scoping
# ---------------------------------------------------------------------------


def _skip_string(css: str, i: int) -> int:
    quote = css[i]
    i += 1
    while i < len(css):
        if css[i] == "\\":
            i += 2
            continue
        if css[i] == quote:
            return i + 1
        i += 1
    return i


def _skip_comment(css: str, i: int) -> int:
    end = css.find("*/", i + 2)
    return len(css) if end == -1 else end + 2


def _find_block_end(css: str, i: int) -> int:
    """Index of the ``}`` closing the block whose ``{`` sits at ``i``."""

    depth = 0
    while i < len(css):
        ch = css[i]
        if ch in "\"'":
            i = _skip_string(css, i)
            continue
        if css.startswith("/*", i):
            i = _skip_comment(css, i)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return len(css)


def _split_rules(css: str) -> List[Tuple[str, Optional[str]]]:
    """Split stylesheet text into ``(prelude, body)`` pairs at the top level.

    ``body`` is None for statements without a block (``@import ...;``),
    top-level comments and trailing text.
    """

    rules: List[Tuple[str, Optional[str]]] = []
    start = 0
    i = 0
    while i < len(css):
        ch = css[i]
        if ch in "\"'":
            i = _skip_string(css, i)
            continue
        if css.startswith("/*", i):
            end = _skip_comment(css, i)
            if not css[start:i].strip():
                rules.append((css[start:end], None))
                start = end
            i = end
            continue
        if ch == ";":
            rules.append((css[start:i + 1], None))
            start = i = i + 1
            continue
        if ch == "{":
            end = _find_block_end(css, i)
            rules.append((css[start:i], css[i + 1:end]))
            start = i = end + 1
            continue
        i += 1
    if start < len(css):
        rules.append((css[start:], None))
    return rules


def _split_selector_list(prelude: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    current = []
    for ch in prelude:
        if ch in "([":
            depth += 1
        elif ch in ")]" and depth:
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return parts


def _scope_selector(selector: str, container: str) -> str:
    sel = " ".join(selector.split())
    if not sel:
        return sel
    if sel == container or sel.startswith(container + " ") or sel.startswith(container + ">"):
        return sel
    tokens = sel.split(" ")
    while tokens and tokens[0].lower() in _ROOT_SELECTORS:
        tokens.pop(0)
    if not tokens:
        return container
    return f"{container} {' '.join(tokens)}"


def _scope_prelude(prelude: str, container: str) -> str:
    leading = prelude[: len(prelude) - len(prelude.lstrip())]
    scoped = [_scope_selector(s, container) for s in _split_selector_list(prelude)]
    return f"{leading}{', '.join(s for s in scoped if s)} "


def scope_css(css: str, container: str) -> str:
    """Confine every rule in ``css`` to elements inside ``container``.

    ``html``/``body``/``:root`` selectors become the container itself;
    ``@media``-style blocks are scoped recursively; ``@font-face``,
    ``@keyframes`` and other at-rules pass through. Already-scoped
    selectors are left as they are, so the transform is idempotent.
    """

    if not css:
        return css
    out: List[str] = []
    for prelude, body in _split_rules(css):
        if body is None:
            out.append(prelude)
            continue
        head = prelude.strip()
        if head.startswith("@"):
            name = head[1:].split(None, 1)[0].lower() if len(head) > 1 else ""
            if name in _NESTED_AT_RULES:
                out.append(f"{prelude}{{{scope_css(body, container)}}}")
            else:
                out.append(f"{prelude}{{{body}}}")
            continue
        out.append(f"{_scope_prelude(prelude, container)}{{{body}}}")
    return "".join(out)
