from story_archiver.workflows.rewrite_utils import rewrite_html, rewrite_references, scope_css

CONTAINER = "#story-container"


def test_rewrite_replaces_only_exact_references():
    mapping = {"https://cdn.example.com/x.png": "assets/x-1.png"}
    content = (
        '<img src="https://cdn.example.com/x.png">'
        '<img src="https://cdn.example.com/x.png2">'
        "<div style=\"background:url(https://cdn.example.com/x.png)\"></div>"
    )

    out = rewrite_references(content, mapping)

    assert out == (
        '<img src="assets/x-1.png">'
        '<img src="https://cdn.example.com/x.png2">'
        '<div style="background:url(assets/x-1.png)"></div>'
    )


def test_rewrite_is_idempotent_and_leaves_unmapped_urls():
    mapping = {"https://cdn.example.com/a.png": "assets/a.png"}
    content = "url(https://cdn.example.com/a.png) url(https://cdn.example.com/b.png)"

    once = rewrite_references(content, mapping)

    assert once == "url(assets/a.png) url(https://cdn.example.com/b.png)"
    assert rewrite_references(once, mapping) == once


def test_rewrite_prefers_longest_match():
    mapping = {
        "https://cdn.example.com/a": "assets/a",
        "https://cdn.example.com/a/b.png": "assets/b.png",
    }
    assert rewrite_references('"https://cdn.example.com/a/b.png"', mapping) == '"assets/b.png"'


def test_rewrite_html_handles_entity_escaped_ampersands():
    mapping = {"https://cdn.example.com/i.png?a=1&b=2": "assets/i.png"}
    content = '<img src="https://cdn.example.com/i.png?a=1&amp;b=2">'
    assert rewrite_html(content, mapping) == '<img src="assets/i.png">'


def test_scope_css_prefixes_selectors_and_maps_root():
    css = "body { margin: 0 }\nh1, .a > b { color: red }"
    assert scope_css(css, CONTAINER) == (
        "#story-container { margin: 0 }\n"
        "#story-container h1, #story-container .a > b { color: red }"
    )


def test_scope_css_recurses_into_media_and_skips_keyframes():
    css = (
        "@media (max-width: 600px) { p { color: blue } }"
        "@keyframes spin { from { opacity: 0 } to { opacity: 1 } }"
        "@font-face { font-family: X; src: url(assets/x.woff) }"
    )

    out = scope_css(css, CONTAINER)

    assert "@media (max-width: 600px) { #story-container p { color: blue } }" in out
    assert "@keyframes spin { from { opacity: 0 } to { opacity: 1 } }" in out
    assert "@font-face { font-family: X; src: url(assets/x.woff) }" in out


def test_scope_css_is_idempotent():
    css = "@import url(assets/t.css);\nhtml body .x { a: b }\n/* note */\n.y { c: d }"
    once = scope_css(css, CONTAINER)
    assert scope_css(once, CONTAINER) == once
    assert once.startswith("@import url(assets/t.css);")
    assert "#story-container .x { a: b }" in once


def test_rewrite_html_handles_unquoted_attributes():
    mapping = {"https://cdn.example.com/a.png": "assets/a.png"}
    content = "<img src=https://cdn.example.com/a.png><img src=https://cdn.example.com/a.png alt=x>"
    assert rewrite_html(content, mapping) == '<img src=assets/a.png><img src=assets/a.png alt=x>'
    assert rewrite_references("src=https://cdn.example.com/a.png", mapping) == "src=assets/a.png"


def test_rewrite_html_handles_entity_quoted_style_urls():
    mapping = {"https://cdn.example.com/a.png": "assets/a.png"}
    content = (
        '<div style="background:url(&quot;https://cdn.example.com/a.png&quot;)"></div>'
        '<div style="background:url(&#39;https://cdn.example.com/a.png&#39;)"></div>'
        '<div style="background:url(&quot;https://cdn.example.com/a.png2&quot;)"></div>'
    )

    out = rewrite_html(content, mapping)

    assert out == (
        '<div style="background:url(&quot;assets/a.png&quot;)"></div>'
        '<div style="background:url(&#39;assets/a.png&#39;)"></div>'
        '<div style="background:url(&quot;https://cdn.example.com/a.png2&quot;)"></div>'
    )
    assert rewrite_html(out, mapping) == out
