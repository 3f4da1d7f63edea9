"""
Интерфейсы (порты) для контекста бронирования лабораторий.
"""

from __future__ import annotations

from typing import Any, ContextManager, List, Optional, Protocol

from shared_kernel import EntityId

from .domain import Booking, BookingStatus, Lab, NotificationEvent


class ILogger(Protocol):
    """Интерфейс для логгера."""

    def info(self, message: str, **kwargs: Any) -> None: ...
    def error(self, message: str, **kwargs: Any) -> None: ...
    def warning(self, message: str, **kwargs: Any) -> None: ...
    def debug(self, message: str, **kwargs: Any) -> None: ...


class ILabRegistry(Protocol):
    """Реестр лабораторий (внешний, только чтение)."""

    def get_lab(self, lab_id: str) -> Optional[Lab]: ...
    def list_labs(self) -> List[Lab]: ...


class IBookingRepository(Protocol):
    """Интерфейс хранилища бронирований."""

    def add(self, booking: Booking) -> EntityId: ...
    def get_by_id(self, booking_id: EntityId) -> Booking: ...
    def update(self, booking: Booking) -> None: ...
    def find_active_for_lab(
        self, lab_id: str, exclude_booking_id: Optional[EntityId] = None
    ) -> List[Booking]: ...
    def find(
        self,
        lab_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]: ...


class INotificationSink(Protocol):
    """Приемник уведомлений (доставка выполняется внешней системой)."""

    def publish(self, event: NotificationEvent) -> None: ...


class ILabLocks(Protocol):
    """Сериализация записи по лабораториям."""

    def hold(self, *lab_ids: str) -> ContextManager[None]: ...


class IBookingUnitOfWork(Protocol):
    """Интерфейс Unit of Work для контекста бронирования лабораторий."""

    @property
    def bookings(self) -> IBookingRepository: ...
    @property
    def labs(self) -> ILabRegistry: ...
    @property
    def notifications(self) -> INotificationSink: ...

    def __enter__(self) -> IBookingUnitOfWork: ...
    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...
