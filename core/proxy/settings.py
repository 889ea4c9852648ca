"""Неизменяемые настройки прокси, собираемые один раз при старте"""

from dataclasses import dataclass
from urllib.parse import urlsplit

PROXY_PATH_PREFIX = '/proxy/'


@dataclass(frozen=True)
class ProxySettings:
    """
    Настройки, которые передаются в конвейер и rewriter при создании

    Attributes:
        proxy_base: Абсолютный префикс эндпоинта /proxy/ (всегда заканчивается на '/')
        max_redirects: Максимальное число редиректов, по которым идет прокси
        timeout_total: Общий таймаут запроса к upstream (секунды)
        timeout_connect: Таймаут установки соединения (секунды)
    """
    proxy_base: str
    max_redirects: int = 10
    timeout_total: float = 30.0
    timeout_connect: float = 10.0
    verify_ssl: bool = True
    override_host: bool = True
    send_sec_fetch: bool = True
    server_name: str = '/Purge Full Proxy'
    connection_limit: int = 100
    connection_limit_per_host: int = 20

    def __post_init__(self):
        parts = urlsplit(self.proxy_base)
        if parts.scheme not in ('http', 'https') or not parts.netloc:
            raise ValueError(f"Proxy base must be an absolute http(s) URL, got {self.proxy_base!r}")
        if not self.proxy_base.endswith('/'):
            object.__setattr__(self, 'proxy_base', self.proxy_base + '/')
        if self.max_redirects < 0:
            raise ValueError("max_redirects must not be negative")

    @property
    def proxy_host(self) -> str:
        """host[:port] прокси в нижнем регистре (без userinfo)"""
        return urlsplit(self.proxy_base).netloc.rpartition('@')[2].lower()

    @classmethod
    def from_public_url(cls, public_url: str, **kwargs) -> 'ProxySettings':
        """Строит настройки из публичного адреса сервера (https://host:port)"""
        return cls(proxy_base=public_url.rstrip('/') + PROXY_PATH_PREFIX, **kwargs)

    @classmethod
    def from_config(cls, config) -> 'ProxySettings':
        """
        Собирает настройки из ConfigManager

        Args:
            config: ConfigManager (или объект с методом get по dot notation)

        Returns:
            ProxySettings: Неизменяемые настройки
        """
        host = config.get('proxy.host', '127.0.0.1')
        port = config.get('proxy.port', 61000)
        scheme = 'https' if config.get('tls.enabled', False) else 'http'
        public_url = config.get('proxy.public_url') or f"{scheme}://{host}:{port}"

        return cls.from_public_url(
            public_url,
            max_redirects=int(config.get('proxy.max_redirects', 10)),
            timeout_total=float(config.get('proxy.timeout_total', 30)),
            timeout_connect=float(config.get('proxy.timeout_connect', 10)),
            verify_ssl=bool(config.get('proxy.verify_ssl', True)),
            override_host=bool(config.get('proxy.override_host', True)),
            send_sec_fetch=bool(config.get('proxy.send_sec_fetch', True)),
            server_name=config.get('proxy.server_name', '/Purge Full Proxy'),
            connection_limit=int(config.get('proxy.connection_limit', 100)),
            connection_limit_per_host=int(config.get('proxy.connection_limit_per_host', 20)),
        )
