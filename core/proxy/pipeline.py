"""Конвейер одного проксируемого запроса: запрос к upstream, редиректы, перезапись, заголовки"""

import asyncio
import re
import logging
from typing import Optional, Tuple
from urllib.parse import urlsplit

from aiohttp import web, hdrs, ClientError, ClientResponse, ClientSession, ClientTimeout
from multidict import CIMultiDict

from core.proxy.content_rewriter import CANONICAL_CONTENT_TYPES, ContentRewriter, classify_content_type
from core.proxy.errors import (
    MalformedTargetURL,
    RedirectLimitExceeded,
    URLResolutionError,
    UpstreamTransportFailure,
)
from core.proxy.settings import ProxySettings
from core.proxy.url_resolver import resolve

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

STREAM_CHUNK_SIZE = 64 * 1024

# <meta charset="..."> или http-equiv Content-Type ищется в начале HTML
META_CHARSET_SNIFF_BYTES = 1024
_META_CHARSET_PATTERN = re.compile(rb"""<meta\s[^>]*?charset\s*=\s*["']?\s*(?P<charset>[A-Za-z0-9_.:-]+)""", re.IGNORECASE)

# Заголовки "обычного браузера", чтобы upstream не блокировал как бота
BROWSER_HEADERS = {
    'User-Agent': (
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
        '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
    ),
    'Accept': (
        'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,'
        'image/apng,*/*;q=0.8'
    ),
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept-Encoding': 'identity',
    'Cache-Control': 'no-cache',
    'DNT': '1',
    'Upgrade-Insecure-Requests': '1',
}

SEC_FETCH_HEADERS = {
    'Sec-Fetch-Dest': 'document',
    'Sec-Fetch-Mode': 'navigate',
    'Sec-Fetch-Site': 'none',
    'Sec-Fetch-User': '?1',
}

# Не копируются из ответа upstream (тело перекодируется / пересчитывается)
SKIPPED_RESPONSE_HEADERS = frozenset({
    'connection', 'keep-alive', 'transfer-encoding', 'content-encoding', 'content-length',
    'proxy-authenticate', 'proxy-authorization', 'te', 'trailer', 'upgrade',
})

# Мешают встраиванию проксированной страницы
BLOCKING_SECURITY_HEADERS = frozenset({
    'content-security-policy', 'content-security-policy-report-only',
    'x-frame-options', 'x-content-type-options',
})

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': '*',
}


def error_response(message: str, server_name: Optional[str] = None) -> web.Response:
    """Ответ 400 text/plain вида 'Error: <message>'"""
    headers = dict(CORS_HEADERS)
    if server_name:
        headers['X-Proxy-Server'] = server_name
    return web.Response(
        status=400,
        text=f"Error: {message}",
        content_type='text/plain',
        headers=headers,
    )


def validate_target_url(target_url: str) -> str:
    """
    Проверяет, что целевой URL абсолютный http(s) с хостом

    Raises:
        MalformedTargetURL: Если это не так
    """
    try:
        parts = urlsplit(target_url)
        hostname = parts.hostname
    except ValueError as e:
        raise MalformedTargetURL(f"Invalid URL: {target_url} ({e})") from e

    if parts.scheme.lower() not in ('http', 'https') or not hostname:
        raise MalformedTargetURL(f"Invalid URL: {target_url}")

    return target_url


class ResponsePipeline:
    """
    Один цикл запрос/ответ через прокси

    BUILDING_REQUEST → AWAITING_UPSTREAM → (REDIRECTING)* → CLASSIFYING_BODY →
    REWRITING → FINALIZING_HEADERS. Любая ProxyError пробрасывается вызывающему,
    который отвечает 400.
    """

    def __init__(self, settings: ProxySettings, session: ClientSession, rewriter: Optional[ContentRewriter] = None):
        """
        Args:
            settings: Настройки прокси
            session: Общая aiohttp сессия (пул соединений)
            rewriter: ContentRewriter (создается из settings, если не передан)
        """
        self.settings = settings
        self.session = session
        self.rewriter = rewriter or ContentRewriter(settings)
        self.timeout = ClientTimeout(total=settings.timeout_total, connect=settings.timeout_connect)

    async def handle(self, request: web.Request, target_url: str) -> web.StreamResponse:
        """
        Проксирует запрос на target_url

        Args:
            request: Входящий запрос
            target_url: Декодированный целевой URL

        Returns:
            web.StreamResponse: Переписанный или потоково переданный ответ

        Raises:
            ProxyError: MalformedTargetURL, UpstreamTransportFailure, RedirectLimitExceeded
        """
        target_url = validate_target_url(target_url)
        body = await request.read()

        upstream, final_url = await self.fetch(request, target_url, body)
        try:
            kind = classify_content_type(upstream.headers.get(hdrs.CONTENT_TYPE))
            if kind is None:
                return await self._stream_through(request, upstream, final_url)
            return await self._rewrite_response(upstream, kind, final_url)
        finally:
            upstream.release()

    # --- BUILDING_REQUEST ---

    def build_headers(self, request: web.Request, target_url: str, body: bytes = b'') -> dict:
        """
        Заголовки запроса к upstream

        Cookie, Authorization и входящий Host не пересылаются; Referer - как есть.
        """
        headers = dict(BROWSER_HEADERS)

        if self.settings.send_sec_fetch:
            headers.update(SEC_FETCH_HEADERS)

        if self.settings.override_host:
            headers['Host'] = urlsplit(target_url).netloc.rpartition('@')[2]

        referer = request.headers.get(hdrs.REFERER)
        if referer:
            headers['Referer'] = referer

        content_type = request.headers.get(hdrs.CONTENT_TYPE)
        if body and content_type:
            headers['Content-Type'] = content_type

        return headers

    # --- AWAITING_UPSTREAM / REDIRECTING ---

    async def fetch(self, request: web.Request, target_url: str, body: bytes = b'') -> Tuple[ClientResponse, str]:
        """
        Запрос к upstream с ручным следованием редиректам

        Выполняется не более max_redirects + 1 запросов.

        Returns:
            tuple: (ответ upstream, итоговый URL после редиректов)
        """
        method = request.method
        current_url = target_url

        for hop in range(self.settings.max_redirects + 1):
            response = await self._send(method, current_url, self.build_headers(request, current_url, body), body)

            location = response.headers.get(hdrs.LOCATION)
            if response.status not in REDIRECT_STATUSES or not location:
                return response, current_url

            response.release()

            try:
                next_url = resolve(location, current_url, extensionless_dirs=False)
            except URLResolutionError as e:
                raise MalformedTargetURL(f"Invalid redirect location: {location}") from e

            logger.debug(f"🔁 {response.status} [{hop + 1}/{self.settings.max_redirects}] {current_url} → {next_url}")

            if response.status == 303 or (response.status in (301, 302) and method not in ('GET', 'HEAD')):
                if method != 'HEAD':
                    method = 'GET'
                body = b''

            current_url = validate_target_url(next_url)

        logger.warning(f"⚠️ Redirect limit ({self.settings.max_redirects}) exceeded for {target_url}")
        raise RedirectLimitExceeded(self.settings.max_redirects, current_url)

    async def _send(self, method: str, url: str, headers: dict, body: bytes) -> ClientResponse:
        logger.debug(f"→ {method} {url}")
        try:
            return await self.session.request(
                method,
                url,
                headers=headers,
                data=body or None,
                allow_redirects=False,
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamTransportFailure(f"Upstream request timed out: {url}") from e
        except ClientError as e:
            raise UpstreamTransportFailure(str(e) or e.__class__.__name__) from e
        except ValueError as e:
            raise MalformedTargetURL(f"Invalid URL: {url} ({e})") from e

    # --- CLASSIFYING_BODY / REWRITING ---

    async def _rewrite_response(self, upstream: ClientResponse, kind: str, final_url: str) -> web.Response:
        try:
            raw = await upstream.read()
        except asyncio.TimeoutError as e:
            raise UpstreamTransportFailure(f"Upstream response timed out: {final_url}") from e
        except ClientError as e:
            raise UpstreamTransportFailure(str(e) or e.__class__.__name__) from e

        charset = upstream.charset
        if charset is None and kind == 'html':
            charset = self._sniff_meta_charset(raw)
        text = self._decode(raw, charset)
        rewritten = self.rewriter.rewrite(text, CANONICAL_CONTENT_TYPES[kind], final_url)

        headers = self.finalize_headers(upstream.headers, final_url)
        headers[hdrs.CONTENT_TYPE] = f"{CANONICAL_CONTENT_TYPES[kind]}; charset=utf-8"

        logger.debug(f"✏️ {kind} rewritten: {final_url} ({len(raw)} → {len(rewritten)} chars)")

        return web.Response(status=upstream.status, body=rewritten.encode('utf-8'), headers=headers)

    @staticmethod
    def _sniff_meta_charset(raw: bytes) -> Optional[str]:
        """Кодировка из <meta> в первых META_CHARSET_SNIFF_BYTES байтах"""
        match = _META_CHARSET_PATTERN.search(raw[:META_CHARSET_SNIFF_BYTES])
        if match:
            return match.group('charset').decode('ascii')
        return None

    @staticmethod
    def _decode(raw: bytes, charset: Optional[str]) -> str:
        try:
            return raw.decode(charset or 'utf-8', errors='replace')
        except LookupError:
            return raw.decode('utf-8', errors='replace')

    async def _stream_through(self, request: web.Request, upstream: ClientResponse, final_url: str) -> web.StreamResponse:
        """Бинарный и прочий контент передается без буферизации"""
        response = web.StreamResponse(status=upstream.status, headers=self.finalize_headers(upstream.headers, final_url))

        encoding = upstream.headers.get(hdrs.CONTENT_ENCODING, 'identity').lower()
        if upstream.content_length is not None and encoding == 'identity':
            response.content_length = upstream.content_length

        await response.prepare(request)
        try:
            async for chunk in upstream.content.iter_chunked(STREAM_CHUNK_SIZE):
                await response.write(chunk)
        except (ClientError, asyncio.TimeoutError) as e:
            # Заголовки уже отправлены - 400 вернуть нельзя, соединение будет закрыто
            logger.error(f"❌ Upstream stream interrupted for {final_url}: {e!r}")
            raise

        await response.write_eof()
        return response

    # --- FINALIZING_HEADERS ---

    def finalize_headers(self, upstream_headers, final_url: str) -> CIMultiDict:
        """
        Копирует заголовки upstream, убирает блокирующие встраивание и добавляет CORS

        Args:
            upstream_headers: Заголовки ответа upstream
            final_url: URL, с которого получен ответ (для Location)

        Returns:
            CIMultiDict: Заголовки для клиента
        """
        headers = CIMultiDict()

        for key, value in upstream_headers.items():
            key_lower = key.lower()
            if key_lower in SKIPPED_RESPONSE_HEADERS or key_lower in BLOCKING_SECURITY_HEADERS:
                continue
            if key_lower == 'location':
                value = self.rewriter.rewrite_url(value, final_url, extensionless_dirs=False)
            headers.add(key, value)

        headers.update(CORS_HEADERS)
        headers['X-Proxy-Server'] = self.settings.server_name
        return headers
