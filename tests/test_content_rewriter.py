from urllib.parse import unquote

import pytest

from core.proxy.content_rewriter import ContentRewriter, classify_content_type, split_srcset
from core.proxy.settings import ProxySettings
from tests.conftest import PROXY_BASE, proxied

BASE = "https://example.com/dir/page.html"


class TestRewriteUrl:
    """Single-reference rewriting."""

    def test_relative_reference_is_resolved_and_encoded(self, rewriter):
        assert rewriter.rewrite_url("/page", "https://example.com/") == proxied("https://example.com/page")

    def test_encoded_url_round_trips(self, rewriter):
        absolute = "https://example.com/a b/c?x=1&y=2#frag"
        rewritten = rewriter.rewrite_url(absolute, BASE)
        assert rewritten.startswith(PROXY_BASE)
        assert unquote(rewritten[len(PROXY_BASE):]) == absolute
        assert rewriter.unproxy_url(rewritten) == absolute

    def test_encoded_part_has_no_delimiters(self, rewriter):
        rewritten = rewriter.rewrite_url("https://x.com/a'b\"c(d),e f", BASE)
        encoded = rewritten[len(PROXY_BASE):]
        for char in "'\"(), /":
            assert char not in encoded

    def test_unresolvable_reference_left_unchanged(self, rewriter):
        assert rewriter.rewrite_url("about:blank", BASE) == "about:blank"

    def test_unproxy_rejects_foreign_url(self, rewriter):
        with pytest.raises(ValueError):
            rewriter.unproxy_url("https://example.com/")

    def test_proxy_base_comes_from_settings(self):
        other = ContentRewriter(ProxySettings(proxy_base="https://mirror.example.org:9000/proxy"))
        assert other.rewrite_url("/a", "https://x.com/") == (
            "https://mirror.example.org:9000/proxy/https%3A%2F%2Fx.com%2Fa"
        )


class TestRewriteHtml:
    """Pattern-based HTML rewriting."""

    def test_end_to_end_anchor(self, rewriter):
        html = '<a href="/page">x</a>'
        result = rewriter.rewrite_html(html, "https://example.com/")
        assert result == '<a href="http://proxy.test/proxy/https%3A%2F%2Fexample.com%2Fpage">x</a>'

    @pytest.mark.parametrize(
        "attribute",
        ["href", "src", "action", "data", "cite", "background", "poster", "data-src", "data-href"],
    )
    def test_url_attributes(self, rewriter, attribute):
        html = f'<x-el {attribute}="img/a.png"></x-el>'
        result = rewriter.rewrite_html(html, BASE)
        assert result == f'<x-el {attribute}="{proxied("https://example.com/dir/img/a.png")}"></x-el>'

    def test_single_quoted_and_unquoted_attributes(self, rewriter):
        html = "<img src='/a.png'><a href=/b>b</a>"
        result = rewriter.rewrite_html(html, BASE)
        assert f"src='{proxied('https://example.com/a.png')}'" in result
        assert f"href={proxied('https://example.com/b')}>" in result

    def test_attribute_names_are_case_insensitive_and_preserved(self, rewriter):
        result = rewriter.rewrite_html('<A HREF="/x">', BASE)
        assert result == f'<A HREF="{proxied("https://example.com/x")}">'

    def test_html_entities_decoded_before_resolution(self, rewriter):
        result = rewriter.rewrite_html('<a href="/s?a=1&amp;b=2">', BASE)
        assert proxied("https://example.com/s?a=1&b=2") in result

    def test_data_src_is_not_confused_with_src(self, rewriter):
        html = '<img data-src="/lazy.png" src="/real.png" srcset="/s.png 2x">'
        result = rewriter.rewrite_html(html, BASE)
        assert f'data-src="{proxied("https://example.com/lazy.png")}"' in result
        assert f' src="{proxied("https://example.com/real.png")}"' in result
        assert f'srcset="{proxied("https://example.com/s.png")} 2x"' in result

    def test_attribute_like_text_inside_other_values_untouched(self, rewriter):
        html = '<img alt="see href=/x" title="src=\'y\'">'
        assert rewriter.rewrite_html(html, BASE) == html

    def test_srcset_descriptors_preserved(self, rewriter):
        html = '<img srcset="a.png 1x, b.png 2x">'
        result = rewriter.rewrite_html(html, BASE)
        expected = (
            f'{proxied("https://example.com/dir/a.png")} 1x, '
            f'{proxied("https://example.com/dir/b.png")} 2x'
        )
        assert result == f'<img srcset="{expected}">'

    def test_srcset_width_descriptors_and_loose_commas(self, rewriter):
        html = '<source srcset="/small.jpg 480w,/large.jpg 1080w">'
        result = rewriter.rewrite_html(html, BASE)
        expected = (
            f'{proxied("https://example.com/small.jpg")} 480w, '
            f'{proxied("https://example.com/large.jpg")} 1080w'
        )
        assert f'srcset="{expected}"' in result

    def test_srcset_keeps_data_uri_with_comma(self, rewriter):
        html = '<img srcset="data:image/png;base64,AAAA 1x, /b.png 2x">'
        result = rewriter.rewrite_html(html, BASE)
        assert "data:image/png;base64,AAAA 1x, " in result
        assert f'{proxied("https://example.com/b.png")} 2x' in result

    def test_meta_refresh_keeps_delay_and_separator(self, rewriter):
        html = '<meta http-equiv="refresh" content="5;URL=/next">'
        result = rewriter.rewrite_html(html, BASE)
        assert result == f'<meta http-equiv="refresh" content="5;URL={proxied("https://example.com/next")}">'

    def test_meta_refresh_with_inner_quotes(self, rewriter):
        html = "<meta http-equiv=\"refresh\" content=\"0; url='https://other.org/'\">"
        result = rewriter.rewrite_html(html, BASE)
        assert f"content=\"0; url='{proxied('https://other.org/')}'\"" in result

    def test_other_meta_content_untouched(self, rewriter):
        html = '<meta property="og:image" content="https://example.com/og.png">'
        assert rewriter.rewrite_html(html, BASE) == html

    def test_style_attribute_keeps_attribute_quoting_intact(self, rewriter):
        html = "<div style=\"background: url('/bg.png') no-repeat\"></div>"
        result = rewriter.rewrite_html(html, BASE)
        assert result == f"<div style=\"background: url('{proxied('https://example.com/bg.png')}') no-repeat\"></div>"

    def test_style_attribute_with_entity_quotes(self, rewriter):
        html = '<div style="background:url(&quot;/bg.png&quot;)"></div>'
        result = rewriter.rewrite_html(html, BASE)
        assert f'url(&quot;{proxied("https://example.com/bg.png")}&quot;)' in result

    def test_style_block_urls(self, rewriter):
        html = "<style>body { background: url(img/bg.gif); }</style>"
        result = rewriter.rewrite_html(html, BASE)
        assert f"url({proxied('https://example.com/dir/img/bg.gif')})" in result

    def test_inline_script_absolute_literals(self, rewriter):
        html = "<script>var api = 'https://api.example.com/v1'; var x = \"not a url\";</script>"
        result = rewriter.rewrite_html(html, BASE)
        assert f"var api = '{proxied('https://api.example.com/v1')}'" in result
        assert '"not a url"' in result

    def test_inline_script_variables_named_like_attributes_untouched(self, rewriter):
        html = '<script>var data = "hello"; el.src = "x.js";</script>'
        assert rewriter.rewrite_html(html, BASE) == html

    def test_script_src_attribute_rewritten(self, rewriter):
        html = '<script src="/app.js"></script>'
        assert rewriter.rewrite_html(html, BASE) == f'<script src="{proxied("https://example.com/app.js")}"></script>'

    def test_json_script_bodies_untouched(self, rewriter):
        html = '<script type="application/ld+json">{"@context": "https://schema.org"}</script>'
        assert rewriter.rewrite_html(html, BASE) == html

    def test_module_script_bodies_rewritten(self, rewriter):
        html = '<script type="module">import x from "https://cdn.example.com/x.js";</script>'
        assert proxied("https://cdn.example.com/x.js") in rewriter.rewrite_html(html, BASE)

    @pytest.mark.parametrize(
        "reference",
        ["javascript:void(0)", "mailto:a@b.c", "tel:123", "data:image/gif;base64,R0lG", "#top",
         "http://proxy.test/proxy/https%3A%2F%2Fx.com"],
    )
    def test_skipped_references_are_byte_identical(self, rewriter, reference):
        html = f'<a href="{reference}">x</a><div style="background:url({reference})"></div>'
        assert rewriter.rewrite_html(html, BASE) == html

    def test_unresolvable_reference_does_not_break_document(self, rewriter):
        html = '<a href="about:blank">a</a><a href="/ok">b</a>'
        result = rewriter.rewrite_html(html, BASE)
        assert 'href="about:blank"' in result
        assert proxied("https://example.com/ok") in result

    def test_empty_href_points_to_document_itself(self, rewriter):
        assert rewriter.rewrite_html('<form action="">', BASE) == f'<form action="{proxied(BASE)}">'

    def test_no_double_rewrite_across_overlapping_rules(self, rewriter):
        html = '<link href="/a.css" style="x:url(/b.png)"><style>@import url("/c.css");</style>'
        result = rewriter.rewrite_html(html, BASE)
        assert result.count(PROXY_BASE) == 3
        assert "http%3A%2F%2Fproxy.test" not in result


class TestRewriteCss:
    """Stylesheet rewriting."""

    @pytest.mark.parametrize("url_value", ["img/a.png", "'img/a.png'", '"img/a.png"', " 'img/a.png' "])
    def test_url_function_normalized_to_double_quotes(self, rewriter, url_value):
        css = f".a {{ background: url({url_value}); }}"
        result = rewriter.rewrite_css(css, "https://example.com/css/site.css")
        assert result == f'.a {{ background: url("{proxied("https://example.com/css/img/a.png")}"); }}'

    def test_data_uri_and_fragments_skipped(self, rewriter):
        css = "a { b: url(data:image/png;base64,AAA); c: url(#filter); }"
        assert rewriter.rewrite_css(css, BASE) == css

    def test_import_string(self, rewriter):
        css = '@import "theme.css";\n@import url(print.css) print;'
        result = rewriter.rewrite_css(css, "https://example.com/css/main.css")
        assert f'@import "{proxied("https://example.com/css/theme.css")}";' in result
        assert f'@import url("{proxied("https://example.com/css/print.css")}") print;' in result

    def test_empty_url_untouched(self, rewriter):
        assert rewriter.rewrite_css("a { b: url(); }", BASE) == "a { b: url(); }"


class TestRewriteJs:
    """Conservative JavaScript literal rewriting."""

    def test_absolute_literals(self, rewriter):
        js = "fetch('https://api.example.com/data?x=1'); load(\"http://cdn.example.com/lib.js\");"
        result = rewriter.rewrite_js(js, BASE)
        assert f"fetch('{proxied('https://api.example.com/data?x=1')}')" in result
        assert f'load("{proxied("http://cdn.example.com/lib.js")}")' in result

    def test_protocol_relative_literals_normalized_to_https(self, rewriter):
        result = rewriter.rewrite_js('s.src = "//www.example-analytics.com/a.js";', BASE)
        assert proxied("https://www.example-analytics.com/a.js") in result

    def test_non_url_literals_and_comments_untouched(self, rewriter):
        js = 'var a = "hello"; var b = "/relative/path"; // comment\nvar c = "// not a url";'
        assert rewriter.rewrite_js(js, BASE) == js

    def test_concatenated_urls_are_not_detected(self, rewriter):
        js = 'var u = "https://" + host + "/x";'
        assert rewriter.rewrite_js(js, BASE) == js


class TestIdempotence:
    """Re-running a rewriter over its own output changes nothing."""

    HTML = (
        '<html><head><meta http-equiv="refresh" content="3; url=/later">'
        '<link rel="stylesheet" href="css/site.css"><style>.x{background:url("/bg.png")}</style>'
        "<script>var u = 'https://api.example.com/'; var p = \"//cdn.example.com/p.js\";</script></head>"
        '<body><a href="/page?a=1&amp;b=2">a</a><img src=logo.png srcset="a.png 1x, b.png 2x" '
        "style=\"background:url('x.png')\"><form action=\"\"></form><a href=\"#top\">t</a></body></html>"
    )
    CSS = '@import "a.css"; .a{background:url(b.png)} .b{background:url(data:image/png;base64,AA)}'
    JS = "var a = 'https://x.com/a'; var b = \"//cdn.x.com/b.js\"; var c = 'plain';"

    def test_html(self, rewriter):
        once = rewriter.rewrite_html(self.HTML, BASE)
        assert once != self.HTML
        assert rewriter.rewrite_html(once, BASE) == once

    def test_css(self, rewriter):
        once = rewriter.rewrite_css(self.CSS, BASE)
        assert rewriter.rewrite_css(once, BASE) == once

    def test_js(self, rewriter):
        once = rewriter.rewrite_js(self.JS, BASE)
        assert rewriter.rewrite_js(once, BASE) == once


class TestDispatch:
    """Content-type classification and dispatch."""

    @pytest.mark.parametrize(
        "content_type, expected",
        [
            ("text/html; charset=utf-8", "html"),
            ("TEXT/CSS", "css"),
            ("application/javascript", "js"),
            ("text/javascript; charset=UTF-8", "js"),
            ("image/png", None),
            ("application/json", None),
            (None, None),
        ],
    )
    def test_classify_content_type(self, content_type, expected):
        assert classify_content_type(content_type) == expected

    def test_rewrite_passes_other_types_through(self, rewriter):
        body = '{"url": "https://example.com/"}'
        assert rewriter.rewrite(body, "application/json", BASE) == body

    def test_rewrite_dispatches_on_type(self, rewriter):
        assert PROXY_BASE in rewriter.rewrite('<a href="/x">', "text/html", BASE)
        assert PROXY_BASE in rewriter.rewrite("a{b:url(/x)}", "text/css", BASE)
        assert PROXY_BASE in rewriter.rewrite("'https://x.com/'", "application/x-javascript", BASE)


class TestSplitSrcset:
    """srcset candidate parsing."""

    def test_candidates(self):
        assert split_srcset(" a.png 1x ,b.png 2x,  c.png") == [("a.png", "1x"), ("b.png", "2x"), ("c.png", "")]

    def test_trailing_comma_ends_url(self):
        assert split_srcset("a.png,b.png 2x") == [("a.png,b.png", "2x")]
        assert split_srcset("a.png, b.png") == [("a.png", ""), ("b.png", "")]

    def test_empty(self):
        assert split_srcset("  ") == []
