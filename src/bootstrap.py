import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from lab_booking.application import BookingLifecycleService
from lab_booking.config import BookingSettings
from lab_booking.domain import Lab, LabStatus, NotificationEvent
from lab_booking.infrastructure import (
    InMemoryEventBus,
    InMemoryLabRegistry,
    InMemoryNotificationInbox,
    LabBookingUnitOfWork,
    LabLockManager,
    StdLogger,
)


def demo_labs() -> list:
    """Лаборатории для демонстрационного запуска."""
    return [
        Lab(
            id="l1",
            name="Lab 1 - Programming",
            capacity=60,
            location="Block A, 1st Floor",
            features=("High Perf PCs", "Projector"),
        ),
        Lab(
            id="l2",
            name="Lab 2 - AI/ML",
            capacity=40,
            location="Block B, 2nd Floor",
            features=("GPU Workstations",),
        ),
        Lab(
            id="l3",
            name="Lab 3 - Networking",
            capacity=50,
            location="Block A, 3rd Floor",
            status=LabStatus.MAINTENANCE,
            maintenance_until=datetime.now(timezone.utc) + timedelta(days=1),
            features=("Cisco Routers",),
        ),
    ]


def bootstrap_app(
    settings: Optional[BookingSettings] = None,
    labs: Optional[Iterable[Lab]] = None,
):
    """Создает и настраивает все компоненты приложения."""
    settings = settings or BookingSettings.from_env()
    logging.basicConfig(level=settings.log_level)
    logger = StdLogger("lab_booking")

    # 1. Шина уведомлений и входящие для просмотра отправленного
    event_bus = InMemoryEventBus(logger)
    inbox = InMemoryNotificationInbox()
    event_bus.subscribe(NotificationEvent, inbox.publish)

    # 2. Unit of Work с реестром лабораторий
    uow = LabBookingUnitOfWork(
        labs=InMemoryLabRegistry(demo_labs() if labs is None else labs),
        notifications=event_bus,
        logger=logger,
    )

    # 3. Сервис жизненного цикла
    booking_service = BookingLifecycleService(
        uow=uow,
        locks=LabLockManager(),
        settings=settings,
        logger=logger,
    )

    return {
        "booking_uow": uow,
        "booking_service": booking_service,
        "event_bus": event_bus,
        "inbox": inbox,
    }
