# proxy_manager.py
import asyncio
import logging
import time
import threading
from typing import Optional
from aiohttp import web, ClientSession, ClientTimeout, DummyCookieJar, TCPConnector
from core.config_manager import get_config
from core.landing_page import render_landing_page
from core.proxy.content_rewriter import ContentRewriter
from core.proxy.dispatcher import extract_target_url
from core.proxy.errors import ProxyError
from core.proxy.pipeline import ResponsePipeline, error_response
from core.proxy.settings import PROXY_PATH_PREFIX, ProxySettings
from utils.port_utils import check_port_availability, get_process_using_port

logger = logging.getLogger(__name__)


class RewriteProxy:
    def __init__(self, settings: ProxySettings):
        """
        Args:
            settings: Неизменяемые настройки прокси (proxy_base, таймауты, лимиты)
        """
        self.settings = settings
        self.rewriter = ContentRewriter(settings)

        # Connection pool для переиспользования соединений
        self.connector = None
        self.session = None
        self.pipeline = None

        # Статистика (только для логов, на обработку запросов не влияет)
        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'errors': 0
        }

    async def initialize(self):
        """Инициализация connection pool для upstream"""
        if self.connector is None:
            connector_kwargs = {
                'limit': self.settings.connection_limit,
                'limit_per_host': self.settings.connection_limit_per_host,
                'ttl_dns_cache': 300,  # DNS кэш на 5 минут
                'keepalive_timeout': 60,
            }
            if not self.settings.verify_ssl:
                connector_kwargs['ssl'] = False
            self.connector = TCPConnector(**connector_kwargs)

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(total=self.settings.timeout_total, connect=self.settings.timeout_connect),
                cookie_jar=DummyCookieJar(),  # Cookie между запросами не сохраняются
            )
            self.pipeline = ResponsePipeline(self.settings, self.session, self.rewriter)

    async def cleanup(self, app: Optional[web.Application] = None):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
            self.pipeline = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def handle_proxy(self, request: web.Request) -> web.StreamResponse:
        """Обработка /proxy/<url>"""
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            target_url = extract_target_url(request.raw_path)
            logger.debug(f"🔐 {request.method} {target_url}")

            await self.initialize()
            response = await self.pipeline.handle(request, target_url)

            self.stats['total_responses'] += 1
            return response

        except ProxyError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ {e.__class__.__name__}: {e.message}")
            return error_response(e.message, self.settings.server_name)

        finally:
            self.stats['active_connections'] -= 1

    async def handle_index(self, request: web.Request) -> web.Response:
        """Информационная страница для всех путей вне /proxy/"""
        return web.Response(text=render_landing_page(self.settings), content_type='text/html')

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors']
        }


PROXY_APP_KEY = web.AppKey('proxy', RewriteProxy)


def create_app(settings: ProxySettings) -> web.Application:
    """
    Создает aiohttp приложение прокси

    Args:
        settings: Настройки прокси

    Returns:
        web.Application: Приложение с маршрутами /proxy/{target} и /{path}
    """
    proxy = RewriteProxy(settings)

    app = web.Application()
    app[PROXY_APP_KEY] = proxy
    app.router.add_route('*', PROXY_PATH_PREFIX + '{target:.*}', proxy.handle_proxy)
    app.router.add_route('*', '/{path:.*}', proxy.handle_index)
    app.on_cleanup.append(proxy.cleanup)
    return app


class ProxyManager:
    def __init__(self, config=None):
        """
        Args:
            config: ConfigManager (по умолчанию глобальный)
        """
        self.config = config or get_config()
        self.is_running = False
        self.settings = None
        self.host = '127.0.0.1'
        self.local_port = 61000
        self.proxy = None
        self.runner = None
        self.site = None
        self.loop = None
        self.thread = None

        # Error tracking
        self.last_error_type = None  # 'port', 'config', 'tls', 'server'
        self.last_error_details = None

    def start(self, settings: Optional[ProxySettings] = None) -> bool:
        """
        Запуск прокси сервера

        Args:
            settings: Настройки прокси (по умолчанию собираются из конфига)

        Returns:
            bool: True если успешно запущен
        """
        if self.is_running:
            logger.warning("⚠️ Прокси уже запущен")
            return False

        self.last_error_type = None
        self.last_error_details = None

        try:
            self.settings = settings or ProxySettings.from_config(self.config)
        except ValueError as e:
            logger.error(f"❌ Некорректная конфигурация прокси: {e}")
            self.last_error_type = 'config'
            self.last_error_details = str(e)
            return False

        self.host = self.config.get('proxy.host', '127.0.0.1')
        self.local_port = int(self.config.get('proxy.port', 61000))

        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")
            process_info = get_process_using_port(self.local_port)
            if process_info:
                logger.info(
                    f"📌 Процесс на порту {self.local_port}:\n"
                    f"   PID: {process_info.get('pid')}\n"
                    f"   Name: {process_info.get('name')}\n"
                    f"   User: {process_info.get('username', 'N/A')}"
                )
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        ssl_context = None
        if self.config.get('tls.enabled', False):
            from core.certificate_manager import CertificateManager
            certificate_manager = CertificateManager(hostname=self.host)
            if not certificate_manager.ensure_certificates_exist():
                self.last_error_type = 'tls'
                self.last_error_details = "Не удалось создать SSL сертификаты"
                return False
            try:
                ssl_context = certificate_manager.create_ssl_context()
            except OSError as e:
                # ssl.SSLError - подкласс OSError (ключ не подходит к сертификату и т.п.)
                logger.error(f"❌ Не удалось загрузить SSL сертификат: {e}")
                self.last_error_type = 'tls'
                self.last_error_details = str(e)
                return False

        self.thread = threading.Thread(
            target=self._run_server,
            args=(ssl_context,),
            daemon=True
        )
        self.thread.start()

        # Ждём запуска (максимум 5 секунд)
        for _ in range(50):
            if self.is_running or self.last_error_type:
                break
            time.sleep(0.1)

        if not self.is_running:
            logger.error("❌ Прокси не запустился за отведенное время")
            return False

        logger.info(f"✅ Proxy server started on {self.settings.proxy_base}")
        return True

    def _run_server(self, ssl_context):
        """Запускает сервер в отдельном event loop"""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)

            self.loop.run_until_complete(self._start_server(ssl_context))

            if self.is_running:
                self.loop.run_forever()

        except Exception as e:
            logger.error(f"❌ Ошибка в event loop: {e}", exc_info=True)
            self.is_running = False
        finally:
            if self.loop:
                self.loop.close()

    async def _start_server(self, ssl_context):
        """Асинхронный запуск сервера"""
        try:
            app = create_app(self.settings)
            self.proxy = app[PROXY_APP_KEY]

            await self.proxy.initialize()

            # handler_cancellation: отключение клиента отменяет запрос к upstream
            self.runner = web.AppRunner(app, access_log=None, handler_cancellation=True)
            await self.runner.setup()

            self.site = web.TCPSite(
                self.runner,
                host=self.host,
                port=self.local_port,
                ssl_context=ssl_context,
            )

            await self.site.start()
            self.is_running = True
            logger.info(f"✅ Сервер успешно запущен на {self.host}:{self.local_port}")
            logger.info(
                f"📊 Connection pool: лимит={self.proxy.connector.limit}, "
                f"per_host={self.proxy.connector.limit_per_host}, "
                f"max_redirects={self.settings.max_redirects}, timeout={self.settings.timeout_total}s"
            )

        except OSError as e:
            logger.error(f"❌ Ошибка запуска сервера: {e}")
            self.last_error_type = 'server'
            self.last_error_details = str(e)
            self.is_running = False
            if self.runner:
                await self.runner.cleanup()

    def stop(self):
        """Остановка прокси сервера"""
        if not self.is_running:
            logger.warning("⚠️ Прокси не запущен")
            return

        logger.info("🛑 Stopping proxy...")
        self.is_running = False

        if self.loop and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
            try:
                future.result(timeout=10)
            except Exception as e:
                logger.error(f"❌ Ошибка при остановке сервера: {e}")

            self.loop.call_soon_threadsafe(self.loop.stop)

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}\n"
                f"   Active connections: {stats.get('active', 0)}"
            )

        logger.info("✅ Proxy stopped")

    async def _stop_server(self):
        """Асинхронная остановка сервера"""
        if self.site:
            await self.site.stop()
        if self.runner:
            # on_cleanup закрывает сессию RewriteProxy
            await self.runner.cleanup()
        logger.debug("✅ Сервер успешно остановлен")

    def get_status(self):
        """Возвращает статус прокси"""
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.local_port,
            'proxy_base': self.settings.proxy_base if self.settings else None,
        }

        if self.last_error_type:
            status['last_error'] = {'type': self.last_error_type, 'details': self.last_error_details}

        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()

        return status


# Синглтон для глобального доступа
_proxy_manager = None


def get_proxy_manager() -> ProxyManager:
    """Возвращает глобальный экземпляр ProxyManager"""
    global _proxy_manager
    if _proxy_manager is None:
        _proxy_manager = ProxyManager()
    return _proxy_manager
