"""
Proxy modules package.

Rewrite engine (resolver, skip classifier, HTML/CSS/JS rewriters) and the
response pipeline for a single proxied request.
"""

from .content_rewriter import ContentRewriter, classify_content_type
from .errors import (
    MalformedTargetURL,
    ProxyError,
    RedirectLimitExceeded,
    URLResolutionError,
    UpstreamTransportFailure,
)
from .pipeline import ResponsePipeline
from .settings import ProxySettings
from .skip_classifier import SkipClassifier
from .url_resolver import resolve

__all__ = [
    'ContentRewriter',
    'classify_content_type',
    'MalformedTargetURL',
    'ProxyError',
    'RedirectLimitExceeded',
    'URLResolutionError',
    'UpstreamTransportFailure',
    'ResponsePipeline',
    'ProxySettings',
    'SkipClassifier',
    'resolve',
]
