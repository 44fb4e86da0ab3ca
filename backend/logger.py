"""
Система логирования турнирного сервиса.
"""
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logger(name: str = "tournament_online", log_dir: str = "logs") -> logging.Logger:
    """
    Настраивает и возвращает logger.

    Логгеры движка (tournament_online.engine) являются дочерними и
    пишут через эти же обработчики.

    Args:
        name: Имя логгера
        log_dir: Директория для логов

    Returns:
        Настроенный logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    # Не добавляем обработчики повторно
    if logger.handlers:
        return logger

    Path(log_dir).mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Файл с ротацией: 10 MB, 5 архивов
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, f'{name}.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger
