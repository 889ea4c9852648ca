# core/proxy/content_rewriter.py
"""Модуль для перезаписи URL в контенте"""

import re
import html
import logging
from typing import List, Optional, Tuple
from urllib.parse import quote, unquote

from core.proxy.errors import URLResolutionError
from core.proxy.settings import ProxySettings
from core.proxy.skip_classifier import SkipClassifier
from core.proxy.url_resolver import resolve

logger = logging.getLogger(__name__)

# Канонические Content-Type для переписанных ответов
CANONICAL_CONTENT_TYPES = {
    'html': 'text/html',
    'css': 'text/css',
    'js': 'application/javascript',
}

_JS_SCRIPT_TYPES = {
    '', 'module', 'text/javascript', 'application/javascript', 'application/x-javascript',
    'text/ecmascript', 'application/ecmascript', 'text/jscript',
}


def classify_content_type(content_type: Optional[str]) -> Optional[str]:
    """
    Определяет тип контента для перезаписи

    Args:
        content_type: Значение заголовка Content-Type

    Returns:
        str или None: 'html', 'css', 'js' или None для остального (бинарные данные и т.п.)
    """
    content_type = (content_type or '').lower()
    if 'text/html' in content_type:
        return 'html'
    if 'text/css' in content_type:
        return 'css'
    if 'javascript' in content_type:
        return 'js'
    return None


def split_srcset(value: str) -> List[Tuple[str, str]]:
    """
    Разбирает srcset на пары (url, дескриптор)

    URL - непрерывная последовательность без пробелов (может содержать запятые,
    как в data: URI), дескриптор - все до следующей запятой.
    """
    candidates = []
    pos, length = 0, len(value)

    while pos < length:
        while pos < length and (value[pos].isspace() or value[pos] == ','):
            pos += 1
        if pos >= length:
            break

        start = pos
        while pos < length and not value[pos].isspace():
            pos += 1
        url = value[start:pos]

        descriptor = ''
        if url.endswith(','):
            url = url.rstrip(',')
        else:
            start = pos
            while pos < length and value[pos] != ',':
                pos += 1
            descriptor = value[start:pos].strip()

        candidates.append((url, descriptor))

    return candidates


class ContentRewriter:
    """Класс для перезаписи URL в HTML/CSS/JS контенте"""

    URL_ATTRIBUTES = frozenset({
        'href', 'src', 'action', 'data', 'cite', 'background', 'poster', 'data-src', 'data-href',
    })
    SRCSET_ATTRIBUTES = frozenset({'srcset', 'data-srcset'})

    # Предкомпилированные регулярные выражения
    _SCRIPT_BLOCK_PATTERN = re.compile(
        r'''(?P<open><script\b(?P<attrs>(?:"[^"]*"|'[^']*'|[^'">])*)>)(?P<body>.*?)(?P<close></script\s*>)''',
        re.IGNORECASE | re.DOTALL,
    )
    _TAG_PATTERN = re.compile(r'''<(?P<name>[a-zA-Z][\w:-]*)(?P<attrs>(?:"[^"]*"|'[^']*'|[^'">])*)>''')
    _ATTRIBUTE_PATTERN = re.compile(
        r'''(?P<name>[^\s"'>/=]+)(?:(?P<eq>\s*=\s*)(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<uq>[^\s"'>]+)))?'''
    )
    _SCRIPT_TYPE_PATTERN = re.compile(r'''(?<![\w-])type\s*=\s*["']?(?P<type>[^"'\s>]*)''', re.IGNORECASE)
    _META_REFRESH_PATTERN = re.compile(
        r'''^(?P<prefix>\s*\d+\s*;\s*url\s*=\s*)(?P<q>['"]?)(?P<url>.*?)(?P=q)(?P<suffix>\s*)$''',
        re.IGNORECASE | re.DOTALL,
    )
    _CSS_URL_PATTERN = re.compile(
        r'''(?<![\w-])url\(\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|&quot;(?P<eq>.*?)&quot;|(?P<uq>[^"'\s()]*))\s*\)''',
        re.IGNORECASE,
    )
    _CSS_IMPORT_PATTERN = re.compile(r'''@import\s+(?P<q>["'])(?P<url>[^"']*)(?P=q)''', re.IGNORECASE)
    _JS_ABSOLUTE_LITERAL_PATTERN = re.compile(r'''(?P<q>["'])(?P<url>https?://[^"'\s\\/][^"'\s\\]*)(?P=q)''', re.IGNORECASE)
    _JS_PROTOCOL_RELATIVE_LITERAL_PATTERN = re.compile(r'''(?P<q>["'])(?P<url>//[^"'\s\\/][^"'\s\\]*)(?P=q)''')

    def __init__(self, settings: ProxySettings):
        """
        Инициализация ContentRewriter

        Args:
            settings: Настройки прокси (proxy_base используется для построения ссылок)
        """
        self.proxy_base = settings.proxy_base
        self.skip_classifier = SkipClassifier(settings.proxy_base)

        logger.debug(f"ContentRewriter: → {self.proxy_base}")

    # --- Отдельные URL ---

    def proxy_url(self, absolute_url: str) -> str:
        """Строит URL прокси для абсолютного URL"""
        return f"{self.proxy_base}{quote(absolute_url, safe='')}"

    def unproxy_url(self, proxied_url: str) -> str:
        """Восстанавливает целевой URL из URL прокси"""
        if not proxied_url.startswith(self.proxy_base):
            raise ValueError(f"Not a proxied URL: {proxied_url!r}")
        return unquote(proxied_url[len(self.proxy_base):])

    def rewrite_url(self, reference: str, base_url: str, extensionless_dirs: bool = True) -> str:
        """
        Перезаписывает одну ссылку

        Args:
            reference: Ссылка как она записана в контенте
            base_url: URL документа для резолвинга
            extensionless_dirs: см. resolve (False для заголовка Location)

        Returns:
            str: URL прокси или исходная ссылка (если пропущена или не резолвится)
        """
        if self.skip_classifier.should_skip(reference):
            return reference

        try:
            absolute_url = resolve(reference, base_url, extensionless_dirs)
        except URLResolutionError as e:
            logger.debug(f"ContentRewriter: left unrewritten: {e}")
            return reference

        return self.proxy_url(absolute_url)

    def _rewrite_encoded_url(self, raw: str, base_url: str) -> Optional[str]:
        """Ссылка из HTML (с сущностями вида &amp;); None если менять нечего"""
        decoded = html.unescape(raw)
        rewritten = self.rewrite_url(decoded, base_url)
        return None if rewritten == decoded else rewritten

    # --- Диспетчеризация ---

    def rewrite(self, content: str, content_type: str, base_url: str) -> str:
        """
        Перезаписывает URL в контенте

        Args:
            content: Контент для обработки
            content_type: MIME type контента
            base_url: URL, с которого получен контент

        Returns:
            str: Обработанный контент с перезаписанными URL
        """
        kind = classify_content_type(content_type)
        if kind == 'html':
            return self.rewrite_html(content, base_url)
        if kind == 'css':
            return self.rewrite_css(content, base_url)
        if kind == 'js':
            return self.rewrite_js(content, base_url)
        return content

    # --- HTML ---

    def rewrite_html(self, content: str, base_url: str) -> str:
        """
        Перезаписывает URL в HTML контенте

        Тела <script> обрабатываются как JS, остальная разметка - по тегам
        и правилу url(...).

        Args:
            content: HTML контент
            base_url: URL документа

        Returns:
            str: Обработанный HTML
        """
        parts = []
        pos = 0

        for match in self._SCRIPT_BLOCK_PATTERN.finditer(content):
            parts.append(self._rewrite_markup(content[pos:match.start()], base_url))
            parts.append(self._rewrite_markup(match.group('open'), base_url))

            body = match.group('body')
            if self._is_javascript(match.group('attrs')):
                body = self.rewrite_js(body, base_url)
            parts.append(body)

            parts.append(match.group('close'))
            pos = match.end()

        parts.append(self._rewrite_markup(content[pos:], base_url))
        return ''.join(parts)

    def _is_javascript(self, script_attrs: str) -> bool:
        type_match = self._SCRIPT_TYPE_PATTERN.search(script_attrs)
        script_type = type_match.group('type').lower() if type_match else ''
        return script_type in _JS_SCRIPT_TYPES

    def _rewrite_markup(self, markup: str, base_url: str) -> str:
        markup = self._TAG_PATTERN.sub(lambda m: self._rewrite_tag(m, base_url), markup)
        # url(...) вне атрибутов: блоки <style> и все остальное
        return self._rewrite_css_urls(markup, base_url, force_quote=None)

    def _rewrite_tag(self, tag_match: re.Match, base_url: str) -> str:
        attrs = self._ATTRIBUTE_PATTERN.sub(
            lambda m: self._rewrite_attribute(m, base_url),
            tag_match.group('attrs'),
        )
        return f"<{tag_match.group('name')}{attrs}>"

    def _rewrite_attribute(self, attr_match: re.Match, base_url: str) -> str:
        if attr_match.group('eq') is None:
            return attr_match.group(0)

        name = attr_match.group('name').lower()
        if attr_match.group('dq') is not None:
            quote_char, value = '"', attr_match.group('dq')
        elif attr_match.group('sq') is not None:
            quote_char, value = "'", attr_match.group('sq')
        else:
            quote_char, value = '', attr_match.group('uq')

        if name in self.URL_ATTRIBUTES:
            new_value = self._rewrite_encoded_url(value, base_url)
        elif name in self.SRCSET_ATTRIBUTES:
            new_value = self._rewrite_srcset(value, base_url)
        elif name == 'content':
            new_value = self._rewrite_meta_refresh(value, base_url)
        elif name == 'style':
            new_value = self._rewrite_css_urls(value, base_url, force_quote=None)
        else:
            new_value = None

        if new_value is None or new_value == value:
            return attr_match.group(0)

        return f"{attr_match.group('name')}{attr_match.group('eq')}{quote_char}{new_value}{quote_char}"

    def _rewrite_srcset(self, value: str, base_url: str) -> Optional[str]:
        """Каждый URL в srcset переписывается отдельно, дескрипторы сохраняются"""
        changed = False
        rewritten = []

        for url, descriptor in split_srcset(value):
            new_url = self._rewrite_encoded_url(url, base_url)
            if new_url is None:
                new_url = url
            else:
                changed = True
            rewritten.append(f"{new_url} {descriptor}" if descriptor else new_url)

        if not changed:
            return None
        return ', '.join(rewritten)

    def _rewrite_meta_refresh(self, value: str, base_url: str) -> Optional[str]:
        """content="N; url=..." - меняется только URL"""
        match = self._META_REFRESH_PATTERN.match(value)
        if not match:
            return None

        new_url = self._rewrite_encoded_url(match.group('url'), base_url)
        if new_url is None:
            return None

        return f"{match.group('prefix')}{match.group('q')}{new_url}{match.group('q')}{match.group('suffix')}"

    # --- CSS ---

    def rewrite_css(self, content: str, base_url: str) -> str:
        """
        Перезаписывает URL в CSS контенте

        Args:
            content: CSS контент
            base_url: URL таблицы стилей

        Returns:
            str: Обработанный CSS
        """
        content = self._rewrite_css_imports(content, base_url)
        return self._rewrite_css_urls(content, base_url, force_quote='"')

    def _rewrite_css_urls(self, content: str, base_url: str, force_quote: Optional[str]) -> str:
        """
        Замена url(...)

        force_quote='"' дает url("...") как в таблицах стилей; None сохраняет
        исходные кавычки, чтобы не сломать атрибут, внутри которого стоит url(...)
        """
        def replace(match):
            for group, original_quote in (('dq', '"'), ('sq', "'"), ('eq', '&quot;'), ('uq', '')):
                if match.group(group) is not None:
                    raw = match.group(group)
                    break

            if not raw.strip():
                return match.group(0)

            new_url = self._rewrite_encoded_url(raw, base_url)
            if new_url is None:
                return match.group(0)

            quote_char = original_quote if force_quote is None else force_quote
            return f"url({quote_char}{new_url}{quote_char})"

        return self._CSS_URL_PATTERN.sub(replace, content)

    def _rewrite_css_imports(self, content: str, base_url: str) -> str:
        """@import "file.css" (форма @import url(...) обрабатывается как url())"""
        def replace(match):
            new_url = self._rewrite_encoded_url(match.group('url'), base_url)
            if new_url is None:
                return match.group(0)
            return f"@import {match.group('q')}{new_url}{match.group('q')}"

        return self._CSS_IMPORT_PATTERN.sub(replace, content)

    # --- JavaScript ---

    def rewrite_js(self, content: str, base_url: str) -> str:
        """
        Перезаписывает строковые литералы с абсолютными URL в JS

        URL, собранные конкатенацией или шаблонными строками, не находятся.

        Args:
            content: JS контент
            base_url: URL скрипта

        Returns:
            str: Обработанный JS
        """
        def replace(match):
            new_url = self.rewrite_url(match.group('url'), base_url)
            if new_url == match.group('url'):
                return match.group(0)
            return f"{match.group('q')}{new_url}{match.group('q')}"

        content = self._JS_ABSOLUTE_LITERAL_PATTERN.sub(replace, content)
        # //host/path резолвер приводит к https:
        return self._JS_PROTOCOL_RELATIVE_LITERAL_PATTERN.sub(replace, content)
