"""Извлечение целевого URL из входящего пути /proxy/<url>"""

from urllib.parse import unquote

from core.proxy.settings import PROXY_PATH_PREFIX


def is_proxy_path(raw_path: str) -> bool:
    return raw_path.startswith(PROXY_PATH_PREFIX)


def extract_target_url(raw_path: str) -> str:
    """
    Достает целевой URL из сырого пути запроса

    Сегмент после /proxy/ декодируется один раз. Query string, который браузер
    дописывает к URL прокси (GET-форма), переносится в целевой URL. Валидация
    не выполняется.

    Args:
        raw_path: Путь запроса без декодирования (request.raw_path)

    Returns:
        str: Целевой URL
    """
    encoded = raw_path[len(PROXY_PATH_PREFIX):] if is_proxy_path(raw_path) else raw_path
    encoded, _, query = encoded.partition('?')
    target_url = unquote(encoded)

    if query:
        target_url, _, fragment = target_url.partition('#')
        separator = '&' if '?' in target_url else '?'
        target_url = f"{target_url}{separator}{query}"
        if fragment:
            target_url = f"{target_url}#{fragment}"

    return target_url
