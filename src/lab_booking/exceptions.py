"""
Исключения контекста бронирования лабораторий.

Ошибки проверки заявки несут исходный ConflictResult в атрибуте ``result``,
чтобы вызывающая сторона могла показать занятое окно или период обслуживания.
"""

from typing import TYPE_CHECKING, Optional

from shared_kernel import DomainException

if TYPE_CHECKING:
    from .domain import Booking, ConflictResult


class LabBookingError(DomainException):
    """Базовое исключение контекста бронирования."""

    def __init__(self, message: str, result: Optional["ConflictResult"] = None):
        super().__init__(message)
        self.message = message
        self.result = result


class InputValidationError(LabBookingError):
    """Некорректный интервал или поля заявки."""

    pass


class ResourceNotFoundError(LabBookingError):
    """Лаборатория или бронирование не найдены."""

    pass


class ResourceUnavailableError(LabBookingError):
    """Лаборатория на обслуживании или отключена."""

    pass


class CapacityExceededError(LabBookingError):
    """Запрошено больше систем, чем есть в лаборатории."""

    pass


class SchedulingConflictError(LabBookingError):
    """Запрошенное окно пересекается с активным бронированием."""

    @property
    def conflicting_booking(self) -> Optional["Booking"]:
        if self.result is None:
            return None
        return self.result.conflicting_booking


class AuthorizationError(LabBookingError):
    """Привилегированная операция без соответствующих прав."""

    pass


class BookingStateError(LabBookingError):
    """Недопустимый переход состояния бронирования."""

    pass
