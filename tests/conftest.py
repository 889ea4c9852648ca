from urllib.parse import quote

import pytest

from core.proxy.content_rewriter import ContentRewriter
from core.proxy.settings import ProxySettings

PUBLIC_URL = "http://proxy.test"
PROXY_BASE = "http://proxy.test/proxy/"


def proxied(url: str) -> str:
    """Expected proxied form of an absolute URL."""
    return PROXY_BASE + quote(url, safe="")


@pytest.fixture
def settings():
    return ProxySettings.from_public_url(PUBLIC_URL)


@pytest.fixture
def rewriter(settings):
    return ContentRewriter(settings)
