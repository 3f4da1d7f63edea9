"""
Основные доменные типы и утилиты общего ядра.
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Общие типы идентификаторов
EntityId = UUID


def generate_id() -> UUID:
    """Генерирует новый UUID."""
    return uuid4()


def as_utc(value: datetime) -> datetime:
    """Приводит момент времени к UTC; наивные значения считаются UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimeRange(BaseModel):
    """Полуинтервал времени [start, end)."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def normalize_to_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def is_valid(self) -> bool:
        return self.start < self.end

    def overlaps(self, other: "TimeRange") -> bool:
        """Строгая проверка пересечения полуинтервалов."""
        return self.start < other.end and other.start < self.end


class DomainEvent(BaseModel):
    """Базовый класс для всех доменных событий."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    event_id: UUID = Field(default_factory=uuid4)
    occurred_on: datetime = Field(default_factory=lambda: now())
    event_type: str


# Общие исключения
class DomainException(Exception):
    """Базовое исключение для доменных ошибок."""

    pass


class ConcurrencyException(DomainException):
    """Исключение при конфликте версий."""

    pass


# Общие утилиты
def now() -> datetime:
    """Возвращает текущие дату и время в UTC."""
    return datetime.now(timezone.utc)
