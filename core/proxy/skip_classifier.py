"""Определяет ссылки, которые нельзя переписывать"""

from urllib.parse import urlsplit


class SkipClassifier:
    """Якоря, псевдо-URL, data: URI и ссылки, уже указывающие на сам прокси"""

    SKIPPED_PREFIXES = ('javascript:', 'mailto:', 'tel:', 'data:', '#')

    def __init__(self, proxy_base: str):
        """
        Args:
            proxy_base: Абсолютный префикс /proxy/ эндпоинта
        """
        self.proxy_host = urlsplit(proxy_base).netloc.rpartition('@')[2].lower()

    def should_skip(self, reference: str) -> bool:
        value = reference.strip().lower()
        if value.startswith(self.SKIPPED_PREFIXES):
            return True
        # Ссылка на сам прокси: повторное кодирование привело бы к циклу
        return bool(self.proxy_host) and self.proxy_host in value
