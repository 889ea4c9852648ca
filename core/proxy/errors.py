"""Ошибки прокси, возвращаемые клиенту как HTTP 400"""


class ProxyError(Exception):
    """Базовая ошибка одного проксируемого запроса"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MalformedTargetURL(ProxyError):
    """Целевой URL не является абсолютным http(s) URL"""


class UpstreamTransportFailure(ProxyError):
    """Сетевая ошибка, DNS, TLS или таймаут при обращении к upstream"""


class RedirectLimitExceeded(ProxyError):
    """Цепочка редиректов длиннее настроенного максимума"""

    def __init__(self, max_redirects: int, last_url: str):
        super().__init__(f"Too many redirects (limit {max_redirects}), last location: {last_url}")
        self.max_redirects = max_redirects
        self.last_url = last_url


class URLResolutionError(ValueError):
    """Ссылку внутри контента не удалось привести к абсолютному URL"""
