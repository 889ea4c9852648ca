"""Приведение относительных ссылок к абсолютным URL"""

from urllib.parse import urljoin, urlsplit, urlunsplit

from core.proxy.errors import URLResolutionError

_ABSOLUTE_PREFIXES = ('http://', 'https://')


def get_origin(url: str) -> str:
    """Возвращает scheme://host[:port] без userinfo"""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc.rpartition('@')[2]}"


def _directory_base(base: str) -> str:
    """
    Последний сегмент пути без расширения считается каталогом:
    https://x.com/a/b -> https://x.com/a/b/
    """
    parts = urlsplit(base)
    last_segment = parts.path.rsplit('/', 1)[-1]
    if last_segment and '.' not in last_segment:
        return urlunsplit((parts.scheme, parts.netloc, parts.path + '/', '', ''))
    return base


def resolve(reference: str, base: str, extensionless_dirs: bool = True) -> str:
    """
    Резолвит ссылку относительно базового URL

    Относительные ссылки резолвятся по RFC 3986. Исключение - ссылки вида
    ../x из контента: сегмент без расширения в base считается каталогом
    (../g от https://x.com/a/b -> https://x.com/a/g).

    Args:
        reference: Ссылка как она записана в контенте
        base: Абсолютный URL документа
        extensionless_dirs: False для Location - только RFC 3986

    Returns:
        str: Абсолютный URL

    Raises:
        URLResolutionError: Если результат не является http(s) URL с хостом
    """
    reference = reference.strip()

    if not reference:
        return base

    if reference.lower().startswith(_ABSOLUTE_PREFIXES):
        return reference

    if reference.startswith('//'):
        return f"https:{reference}"

    if reference.startswith('/'):
        return f"{get_origin(base)}{reference}"

    try:
        if extensionless_dirs and reference.startswith('../'):
            base = _directory_base(base)
        resolved = urljoin(base, reference)
        parts = urlsplit(resolved)
    except ValueError as e:
        raise URLResolutionError(f"Cannot resolve {reference!r} against {base!r}: {e}") from e

    if parts.scheme not in ('http', 'https') or not parts.netloc:
        raise URLResolutionError(f"Not an http(s) reference: {reference!r}")

    return resolved
