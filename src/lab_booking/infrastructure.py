"""
Инфраструктурный слой контекста бронирования лабораторий.

Содержит реализации репозиториев и других интерфейсов,
зависимые от конкретных технологий (хранилище, блокировки, логирование).
"""

import logging
import threading
import weakref
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Type

from shared_kernel import ConcurrencyException, DomainEvent, EntityId

from . import interfaces as ports
from .domain import TERMINAL_STATUSES, Booking, BookingStatus, Lab, NotificationEvent
from .exceptions import ResourceNotFoundError


class StdLogger(ports.ILogger):
    """Логгер поверх модуля logging; контекст выводится парами key=value."""

    def __init__(self, name: str = "lab_booking"):
        self._logger = logging.getLogger(name)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, kwargs)

    def _log(self, level: int, message: str, context: Dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        if context:
            pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
            message = f"{message} [{pairs}]"
        self._logger.log(level, message)


class InMemoryLabRegistry(ports.ILabRegistry):
    """Реестр лабораторий в памяти."""

    def __init__(self, labs: Iterable[Lab] = ()):
        self._labs: Dict[str, Lab] = {lab.id: lab for lab in labs}

    def get_lab(self, lab_id: str) -> Optional[Lab]:
        return self._labs.get(lab_id)

    def list_labs(self) -> List[Lab]:
        return sorted(self._labs.values(), key=lambda lab: lab.id)


class InMemoryBookingRepository(ports.IBookingRepository):
    """
    Реализация хранилища бронирований в памяти.

    Хранит копии агрегатов, поэтому изменения вступают в силу только через
    ``update``. Обновление проверяет версию и то, что журнал аудита только
    дополнен: сохраненные записи должны остаться неизменным префиксом.
    """

    def __init__(self):
        self._bookings: Dict[EntityId, Booking] = {}
        self._lock = threading.RLock()
        self._journal = threading.local()

    def add(self, booking: Booking) -> EntityId:
        with self._lock:
            if booking.id in self._bookings:
                raise ValueError(f"Booking with id {booking.id} already exists")
            self._remember(booking.id)
            self._bookings[booking.id] = booking.model_copy(deep=True)
            return booking.id

    def get_by_id(self, booking_id: EntityId) -> Booking:
        with self._lock:
            if booking_id not in self._bookings:
                raise ResourceNotFoundError(f"Бронирование {booking_id} не найдено")
            return self._bookings[booking_id].model_copy(deep=True)

    def update(self, booking: Booking) -> None:
        with self._lock:
            stored = self._bookings.get(booking.id)
            if stored is None:
                raise ResourceNotFoundError(f"Бронирование {booking.id} не найдено")
            if stored.version != booking.version:
                raise ConcurrencyException(
                    f"Бронирование {booking.id} изменено параллельно "
                    f"(версия {booking.version}, в хранилище {stored.version})"
                )
            prefix = booking.logs[: len(stored.logs)]
            if len(booking.logs) < len(stored.logs) or prefix != stored.logs:
                raise ConcurrencyException(
                    f"Журнал бронирования {booking.id} можно только дополнять"
                )

            self._remember(booking.id)
            booking.version = stored.version + 1
            self._bookings[booking.id] = booking.model_copy(deep=True)

    def find_active_for_lab(
        self, lab_id: str, exclude_booking_id: Optional[EntityId] = None
    ) -> List[Booking]:
        with self._lock:
            return [
                booking.model_copy(deep=True)
                for booking in self._bookings.values()
                if booking.lab_id == lab_id
                and booking.id != exclude_booking_id
                and booking.status not in TERMINAL_STATUSES
            ]

    def find(
        self,
        lab_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]:
        with self._lock:
            return [
                booking.model_copy(deep=True)
                for booking in self._bookings.values()
                if (lab_id is None or booking.lab_id == lab_id)
                and (requester_id is None or booking.requester.id == requester_id)
                and (status is None or booking.status == status)
            ]

    # Журнал изменений текущего потока для отката единицы работы

    def begin(self) -> None:
        self._journal.entries = []

    def commit(self) -> None:
        self._journal.entries = None

    def rollback(self) -> None:
        entries: Optional[List[Tuple[EntityId, Optional[Booking]]]] = getattr(
            self._journal, "entries", None
        )
        self._journal.entries = None
        if not entries:
            return
        with self._lock:
            for booking_id, previous in reversed(entries):
                if previous is None:
                    self._bookings.pop(booking_id, None)
                else:
                    self._bookings[booking_id] = previous

    def _remember(self, booking_id: EntityId) -> None:
        entries = getattr(self._journal, "entries", None)
        if entries is not None:
            entries.append((booking_id, self._bookings.get(booking_id)))


class LabLockManager(ports.ILabLocks):
    """Блокировки по лабораториям: проверка и запись выполняются под одной блокировкой."""

    def __init__(self):
        self._guard = threading.Lock()
        # Запись исчезает, когда блокировку больше никто не использует
        self._locks: "weakref.WeakValueDictionary[str, Any]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _lock_for(self, lab_id: str) -> Any:
        with self._guard:
            lock = self._locks.get(lab_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[lab_id] = lock
            return lock

    @contextmanager
    def hold(self, *lab_ids: str) -> Iterator[None]:
        # Единый порядок захвата исключает взаимную блокировку
        locks = [self._lock_for(lab_id) for lab_id in sorted(set(lab_ids))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class InMemoryEventBus(ports.INotificationSink):
    """Реализация шины событий в памяти."""

    def __init__(self, logger: Optional[ports.ILogger] = None):
        self._subscribers: Dict[Type[DomainEvent], List[Callable]] = defaultdict(list)
        self._logger = logger or StdLogger()

    def publish(self, event: DomainEvent) -> None:
        """Публикует событие."""
        event_type = type(event)
        if not self._subscribers[event_type]:
            self._logger.debug(f"No subscribers for event type {event_type.__name__}")
            return

        self._logger.info(
            f"Publishing event: {event_type.__name__}", event_id=event.event_id
        )

        for handler in self._subscribers[event_type]:
            try:
                handler(event)
            except Exception as e:
                self._logger.error(
                    f"Error in event handler for {event_type.__name__}",
                    error=str(e),
                    event_id=event.event_id,
                )

    def subscribe(self, event_type: Type[DomainEvent], handler: Callable) -> None:
        """Подписывает обработчик на события указанного типа."""
        self._subscribers[event_type].append(handler)
        self._logger.debug(f"Subscribed handler to {event_type.__name__} events")


class InMemoryNotificationInbox(ports.INotificationSink):
    """Хранилище отправленных уведомлений (для демонстрации и тестов)."""

    def __init__(self):
        self._events: List[NotificationEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: NotificationEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[NotificationEvent]:
        with self._lock:
            return list(self._events)

    def for_recipient(self, recipient: str) -> List[NotificationEvent]:
        """Уведомления получателя, новые первыми."""
        return sorted(
            (event for event in self.events if event.recipient == recipient),
            key=lambda event: event.occurred_on,
            reverse=True,
        )


class LabBookingUnitOfWork(ports.IBookingUnitOfWork):
    """Единица работы для контекста бронирования лабораторий."""

    def __init__(
        self,
        bookings_repo: Optional[InMemoryBookingRepository] = None,
        labs: Optional[ports.ILabRegistry] = None,
        notifications: Optional[ports.INotificationSink] = None,
        logger: Optional[ports.ILogger] = None,
    ):
        self._logger = logger or StdLogger()
        self._bookings = bookings_repo or InMemoryBookingRepository()
        self._labs = labs or InMemoryLabRegistry()
        self._notifications = notifications or InMemoryEventBus(self._logger)

    @property
    def bookings(self) -> InMemoryBookingRepository:
        return self._bookings

    @property
    def labs(self) -> ports.ILabRegistry:
        return self._labs

    @property
    def notifications(self) -> ports.INotificationSink:
        return self._notifications

    def commit(self) -> None:
        """Фиксирует все изменения."""
        self._bookings.commit()
        self._logger.debug("LabBookingUnitOfWork committed")

    def rollback(self) -> None:
        """Откатывает все изменения."""
        self._bookings.rollback()
        self._logger.warning("LabBookingUnitOfWork rolled back")

    def __enter__(self) -> "LabBookingUnitOfWork":
        self._bookings.begin()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False  # Пробрасываем исключение дальше, если оно было
