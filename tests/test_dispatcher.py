import pytest

from core.proxy.dispatcher import extract_target_url, is_proxy_path


class TestExtractTargetUrl:
    """Target URL extraction from the raw request path."""

    def test_encoded_target_is_decoded_once(self):
        assert extract_target_url("/proxy/https%3A%2F%2Fexample.com%2Fa%3Fb%3D1") == "https://example.com/a?b=1"

    def test_double_encoding_survives_one_decode(self):
        assert extract_target_url("/proxy/https%3A%2F%2Fx.com%2Fa%2520b") == "https://x.com/a%20b"

    def test_unencoded_target_is_accepted(self):
        assert extract_target_url("/proxy/https://example.com/page") == "https://example.com/page"

    def test_browser_query_is_merged_into_target(self):
        raw = "/proxy/https%3A%2F%2Fexample.com%2Fsearch?q=cats&page=2"
        assert extract_target_url(raw) == "https://example.com/search?q=cats&page=2"

    def test_browser_query_appended_to_existing_query(self):
        raw = "/proxy/https%3A%2F%2Fexample.com%2Fsearch%3Flang%3Den?q=cats"
        assert extract_target_url(raw) == "https://example.com/search?lang=en&q=cats"

    def test_fragment_stays_last_after_merge(self):
        raw = "/proxy/https%3A%2F%2Fexample.com%2Fa%23top?q=1"
        assert extract_target_url(raw) == "https://example.com/a?q=1#top"

    def test_no_validation_is_performed(self):
        assert extract_target_url("/proxy/not%20a%20url") == "not a url"
        assert extract_target_url("/proxy/") == ""


@pytest.mark.parametrize(
    "path, expected",
    [("/proxy/https%3A%2F%2Fx.com", True), ("/proxy/", True), ("/", False), ("/proxyx/a", False), ("/other", False)],
)
def test_is_proxy_path(path, expected):
    assert is_proxy_path(path) is expected
