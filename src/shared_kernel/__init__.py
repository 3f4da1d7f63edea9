"""
Общее ядро (Shared Kernel) системы бронирования лабораторий.

Содержит общие типы данных и утилиты, используемые в различных ограниченных контекстах.
"""

from .domain import (
    ConcurrencyException,
    DomainEvent,
    # Исключения
    DomainException,
    # Базовые типы
    EntityId,
    TimeRange,
    as_utc,
    generate_id,
    # Утилиты
    now,
)

__all__ = [
    # Базовые типы
    "EntityId",
    "generate_id",
    "TimeRange",
    "DomainEvent",
    # Исключения
    "DomainException",
    "ConcurrencyException",
    # Утилиты
    "now",
    "as_utc",
]
