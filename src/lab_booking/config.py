"""
Настройки контекста бронирования лабораторий.
"""

import os
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX = "LAB_BOOKING_"


class BookingSettings(BaseModel):
    """Настройки сервиса бронирования."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Часовой пояс, в котором заданы дата и время заявки
    local_timezone: str = "UTC"
    # Группа, получающая заявки на одобрение
    approval_group: str = Field("ADMIN_GROUP", min_length=1)
    system_sender_id: str = Field("SYSTEM", min_length=1)
    log_level: str = "INFO"

    @field_validator("local_timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            raise ValueError(f"Неизвестный часовой пояс: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Неизвестный уровень логирования: {v}")
        return level

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.local_timezone)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BookingSettings":
        """Читает настройки из переменных окружения LAB_BOOKING_*."""
        environ = os.environ if environ is None else environ
        values = {
            name: environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in environ
        }
        return cls(**values)
