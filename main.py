# main.py
import sys
import time
import logging


def setup_logging():
    """Настраивает логирование ДО всех операций с ротацией"""
    from core.config_manager import get_app_data_dir, get_config
    from logging.handlers import RotatingFileHandler

    config = get_config()

    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / "purge_proxy.log"

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.get('logging.max_bytes', 5 * 1024 * 1024),
        backupCount=config.get('logging.backup_count', 5),
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=config.get('logging.level', 'INFO'),
        handlers=[console_handler, file_handler]
    )


logger = logging.getLogger(__name__)


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Необработанное исключение:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def main():
    """Основная функция приложения"""
    setup_logging()
    setup_exception_handler()

    from core.proxy_manager import get_proxy_manager

    logger.info("🚀 Запуск Purge Proxy")

    proxy_manager = get_proxy_manager()
    if not proxy_manager.start():
        logger.error(
            f"❌ Не удалось запустить прокси: "
            f"{proxy_manager.last_error_type}: {proxy_manager.last_error_details}"
        )
        return 1

    logger.info("Нажмите Ctrl+C для остановки")

    try:
        while proxy_manager.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("🛑 Завершение работы приложения")
    finally:
        proxy_manager.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
