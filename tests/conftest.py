"""
Конфигурация тестов для pytest.
Добавляет каталог src в PYTHONPATH и объявляет общие фикстуры.
"""
import sys
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path

import pytest

# Добавляем каталог с исходным кодом в PYTHONPATH
root_dir = str(Path(__file__).parent.parent / "src")
if root_dir not in sys.path:
    sys.path.insert(0, root_dir)

from lab_booking.application import (  # noqa: E402
    BookingLifecycleService,
    CreateBookingRequest,
)
from lab_booking.config import BookingSettings  # noqa: E402
from lab_booking.domain import Lab, LabStatus, Requester, UserRole  # noqa: E402
from lab_booking.infrastructure import (  # noqa: E402
    InMemoryLabRegistry,
    InMemoryNotificationInbox,
    LabBookingUnitOfWork,
)

BOOKING_DAY = date(2025, 3, 10)


class FrozenClock:
    """Управляемые часы для тестов."""

    def __init__(self, current: datetime):
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


def at(hour: int, minute: int = 0, day: date = BOOKING_DAY) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


def make_request(
    requester: Requester,
    start: str = "09:00",
    end: str = "11:00",
    lab_id: str = "L1",
    system_count: int = 30,
    subject: str = "Алгоритмы",
    **extra,
) -> CreateBookingRequest:
    return CreateBookingRequest(
        lab_id=lab_id,
        subject=subject,
        booking_date=extra.pop("booking_date", BOOKING_DAY),
        start_time=time.fromisoformat(start),
        end_time=time.fromisoformat(end),
        system_count=system_count,
        requester=requester,
        **extra,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(at(7))


@pytest.fixture
def admin() -> Requester:
    return Requester(id="a-1", name="Системный администратор", role=UserRole.ADMIN)


@pytest.fixture
def faculty() -> Requester:
    return Requester(id="f-1", name="Иван Петров", role=UserRole.FACULTY)


@pytest.fixture
def other_faculty() -> Requester:
    return Requester(id="f-2", name="Мария Смирнова", role=UserRole.FACULTY)


@pytest.fixture
def labs() -> InMemoryLabRegistry:
    return InMemoryLabRegistry(
        [
            Lab(id="L1", name="Lab 1", capacity=60),
            Lab(
                id="L2",
                name="Lab 2",
                capacity=40,
                status=LabStatus.MAINTENANCE,
                maintenance_until=at(9, day=BOOKING_DAY + timedelta(days=1)),
            ),
            Lab(id="L3", name="Lab 3", capacity=50, status=LabStatus.OFFLINE),
            Lab(id="L4", name="Lab 4", capacity=20),
        ]
    )


@pytest.fixture
def inbox() -> InMemoryNotificationInbox:
    return InMemoryNotificationInbox()


@pytest.fixture
def uow(labs, inbox) -> LabBookingUnitOfWork:
    return LabBookingUnitOfWork(labs=labs, notifications=inbox)


@pytest.fixture
def service(uow, clock) -> BookingLifecycleService:
    """Сервис приложения с чистым хранилищем и фиксированными часами."""
    return BookingLifecycleService(
        uow=uow, settings=BookingSettings(local_timezone="UTC"), clock=clock
    )
