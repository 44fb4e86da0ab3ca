"""
Настройки турнирного сервиса.
"""
import os
from typing import Dict

import pytz
from pydantic import BaseModel, Field, field_validator

# Переменные окружения -> поле настроек
ENV_PREFIX = "TOURNAMENT_"


class ManagerSettings(BaseModel):
    """Параметры уровня сервиса (не конкретного турнира)."""
    max_concurrent_tournaments: int = Field(5, ge=1, le=100)
    auto_save_interval: float = Field(30.0, gt=0, description="Период автосохранения, секунды")
    db_path: str = Field("tournaments.db", min_length=1)
    log_dir: str = Field("logs", min_length=1)
    timezone: str = Field("UTC", description="Часовой пояс для отображения времени")

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        """Проверяет, что часовой пояс известен pytz."""
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Неизвестный часовой пояс: {v}")
        return v

    @property
    def tz(self):
        return pytz.timezone(self.timezone)


def load_settings(environ: Dict[str, str] = None) -> ManagerSettings:
    """
    Собирает настройки из переменных окружения TOURNAMENT_*.

    Args:
        environ: Словарь окружения (по умолчанию os.environ)

    Returns:
        Проверенные настройки
    """
    environ = os.environ if environ is None else environ
    values = {}
    for field_name in ManagerSettings.model_fields:
        key = ENV_PREFIX + field_name.upper()
        if key in environ:
            values[field_name] = environ[key]
    return ManagerSettings(**values)
