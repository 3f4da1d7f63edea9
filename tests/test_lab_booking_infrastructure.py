"""
Тесты инфраструктурного слоя: хранилище, единица работы, блокировки, шина событий.
"""

import gc
import logging
import threading
from unittest.mock import MagicMock

import pytest
from conftest import at
from pydantic import ValidationError

from lab_booking.config import BookingSettings
from lab_booking.domain import Booking, Lab, NotificationEvent, Requester, UserRole
from lab_booking.exceptions import ResourceNotFoundError
from lab_booking.infrastructure import (
    InMemoryBookingRepository,
    InMemoryEventBus,
    InMemoryLabRegistry,
    InMemoryNotificationInbox,
    LabBookingUnitOfWork,
    LabLockManager,
    StdLogger,
)
from shared_kernel import ConcurrencyException, TimeRange

OWNER = Requester(id="f-1", name="Иван Петров", role=UserRole.FACULTY)
ADMIN = Requester(id="a-1", name="Администратор", role=UserRole.ADMIN)


def new_booking(**kwargs) -> Booking:
    return Booking.create(
        lab_id=kwargs.pop("lab_id", "L1"),
        requester=OWNER,
        subject="Сети",
        period=TimeRange(start=at(9), end=at(11)),
        system_count=10,
        actor=OWNER,
        at=at(7),
        **kwargs,
    )


@pytest.fixture
def repo() -> InMemoryBookingRepository:
    return InMemoryBookingRepository()


class TestInMemoryBookingRepository:
    def test_returns_copies(self, repo):
        booking = new_booking()
        repo.add(booking)

        loaded = repo.get_by_id(booking.id)
        loaded.subject = "Изменено без сохранения"
        loaded.approve(ADMIN, at(8))

        stored = repo.get_by_id(booking.id)
        assert stored.subject == "Сети"
        assert len(stored.logs) == 1

    def test_duplicate_id(self, repo):
        booking = new_booking()
        repo.add(booking)

        with pytest.raises(ValueError):
            repo.add(booking)

    def test_unknown_id(self, repo):
        with pytest.raises(ResourceNotFoundError):
            repo.get_by_id(new_booking().id)
        with pytest.raises(ResourceNotFoundError):
            repo.update(new_booking())

    def test_update_bumps_version(self, repo):
        booking = new_booking()
        repo.add(booking)

        loaded = repo.get_by_id(booking.id)
        loaded.approve(ADMIN, at(8))
        repo.update(loaded)

        assert loaded.version == 1
        assert repo.get_by_id(booking.id).version == 1

    def test_stale_version_is_refused(self, repo):
        booking = new_booking()
        repo.add(booking)
        first = repo.get_by_id(booking.id)
        second = repo.get_by_id(booking.id)

        first.approve(ADMIN, at(8))
        repo.update(first)
        second.reject(ADMIN, at(8))

        with pytest.raises(ConcurrencyException):
            repo.update(second)

    def test_log_cannot_be_rewritten(self, repo):
        booking = new_booking()
        repo.add(booking)
        loaded = repo.get_by_id(booking.id)

        loaded.logs = []
        with pytest.raises(ConcurrencyException):
            repo.update(loaded)

        loaded = repo.get_by_id(booking.id)
        loaded.logs[0] = loaded.logs[0].model_copy(update={"details": "подмена"})
        with pytest.raises(ConcurrencyException):
            repo.update(loaded)

    def test_active_bookings_exclude_terminal_and_excluded(self, repo):
        kept = new_booking()
        excluded = new_booking()
        rejected = new_booking()
        rejected.reject(ADMIN, at(8))
        other_lab = new_booking(lab_id="L2")
        for booking in (kept, excluded, rejected, other_lab):
            repo.add(booking)

        active = repo.find_active_for_lab("L1", exclude_booking_id=excluded.id)

        assert [b.id for b in active] == [kept.id]

    def test_find_filters(self, repo):
        mine = new_booking()
        theirs = Booking.create(
            lab_id="L1",
            requester=ADMIN,
            subject="Экзамен",
            period=TimeRange(start=at(12), end=at(13)),
            system_count=5,
            actor=ADMIN,
            at=at(7),
        )
        repo.add(mine)
        repo.add(theirs)

        assert [b.id for b in repo.find(requester_id=OWNER.id)] == [mine.id]
        assert [b.id for b in repo.find(status=theirs.status)] == [theirs.id]
        assert len(repo.find(lab_id="L1")) == 2
        assert repo.find(lab_id="L9") == []


class TestLabBookingUnitOfWork:
    def test_commit_keeps_changes(self):
        uow = LabBookingUnitOfWork()
        booking = new_booking()

        with uow:
            uow.bookings.add(booking)

        assert uow.bookings.get_by_id(booking.id).id == booking.id

    def test_failure_rolls_back_added_and_updated(self):
        uow = LabBookingUnitOfWork()
        existing = new_booking()
        with uow:
            uow.bookings.add(existing)

        added = new_booking()
        with pytest.raises(RuntimeError):
            with uow:
                uow.bookings.add(added)
                loaded = uow.bookings.get_by_id(existing.id)
                loaded.approve(ADMIN, at(8))
                uow.bookings.update(loaded)
                raise RuntimeError("сбой")

        with pytest.raises(ResourceNotFoundError):
            uow.bookings.get_by_id(added.id)
        restored = uow.bookings.get_by_id(existing.id)
        assert restored.version == 0
        assert len(restored.logs) == 1

    def test_rollback_is_logged(self):
        logger = MagicMock()
        uow = LabBookingUnitOfWork(logger=logger)

        with pytest.raises(RuntimeError):
            with uow:
                raise RuntimeError("сбой")

        logger.warning.assert_called_once()

    def test_default_components(self):
        uow = LabBookingUnitOfWork()

        assert isinstance(uow.bookings, InMemoryBookingRepository)
        assert uow.labs.list_labs() == []
        assert isinstance(uow.notifications, InMemoryEventBus)


class TestInMemoryLabRegistry:
    def test_lookup(self):
        registry = InMemoryLabRegistry(
            [Lab(id="L2", capacity=10), Lab(id="L1", capacity=20)]
        )

        assert registry.get_lab("L1").capacity == 20
        assert registry.get_lab("L9") is None
        assert [lab.id for lab in registry.list_labs()] == ["L1", "L2"]


class TestLabLockManager:
    def test_hold_is_reentrant(self):
        locks = LabLockManager()

        with locks.hold("L1"):
            with locks.hold("L1", "L2"):
                pass

    def test_hold_excludes_other_threads(self):
        locks = LabLockManager()
        entered = threading.Event()

        def contender():
            with locks.hold("L2", "L1"):
                entered.set()

        with locks.hold("L1"):
            thread = threading.Thread(target=contender)
            thread.start()
            assert not entered.wait(0.1)

        thread.join(timeout=1)
        assert entered.is_set()

    def test_locks_are_released_on_error(self):
        locks = LabLockManager()

        with pytest.raises(RuntimeError):
            with locks.hold("L1"):
                raise RuntimeError("сбой")

        acquired = threading.Event()

        def worker():
            with locks.hold("L1"):
                acquired.set()

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join(timeout=1)
        assert acquired.is_set()

    def test_unused_locks_are_forgotten(self):
        locks = LabLockManager()

        with locks.hold("L1"):
            for index in range(1000):
                with locks.hold(f"unknown-{index}"):
                    pass
            gc.collect()
            assert len(locks) == 1

        gc.collect()
        assert len(locks) == 0


def make_event(recipient: str, message: str = "Привет") -> NotificationEvent:
    return NotificationEvent(sender_id="SYSTEM", recipient=recipient, message=message)


class TestEventBusAndInbox:
    def test_publish_to_subscribers(self):
        bus = InMemoryEventBus(MagicMock())
        inbox = InMemoryNotificationInbox()
        bus.subscribe(NotificationEvent, inbox.publish)

        bus.publish(make_event("f-1"))

        assert [event.recipient for event in inbox.events] == ["f-1"]

    def test_failing_handler_is_isolated(self):
        logger = MagicMock()
        bus = InMemoryEventBus(logger)
        inbox = InMemoryNotificationInbox()
        bus.subscribe(NotificationEvent, MagicMock(side_effect=RuntimeError("сбой")))
        bus.subscribe(NotificationEvent, inbox.publish)

        bus.publish(make_event("f-1"))

        assert len(inbox.events) == 1
        logger.error.assert_called_once()

    def test_inbox_for_recipient_newest_first(self):
        inbox = InMemoryNotificationInbox()
        first = make_event("f-1", "первое").model_copy(update={"occurred_on": at(8)})
        second = make_event("f-1", "второе").model_copy(update={"occurred_on": at(9)})
        inbox.publish(first)
        inbox.publish(make_event("f-2"))
        inbox.publish(second)

        assert [e.message for e in inbox.for_recipient("f-1")] == ["второе", "первое"]
        assert inbox.for_recipient("nobody") == []


class TestStdLogger:
    def test_context_is_appended(self, caplog):
        logger = StdLogger("lab_booking.test")

        with caplog.at_level(logging.INFO, logger="lab_booking.test"):
            logger.info("Booking created", lab_id="L1", booking_id="b-1")

        assert caplog.messages == ["Booking created [booking_id=b-1 lab_id=L1]"]

    def test_disabled_level_is_skipped(self, caplog):
        logger = StdLogger("lab_booking.test")

        with caplog.at_level(logging.WARNING, logger="lab_booking.test"):
            logger.debug("hidden")
            logger.error("shown")

        assert caplog.messages == ["shown"]


class TestBookingSettings:
    def test_defaults(self):
        settings = BookingSettings()

        assert settings.local_timezone == "UTC"
        assert settings.approval_group == "ADMIN_GROUP"
        assert settings.system_sender_id == "SYSTEM"

    def test_from_env(self):
        settings = BookingSettings.from_env(
            {
                "LAB_BOOKING_LOCAL_TIMEZONE": "Europe/Moscow",
                "LAB_BOOKING_LOG_LEVEL": "debug",
                "UNRELATED": "x",
            }
        )

        assert settings.tz.key == "Europe/Moscow"
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("local_timezone", "Mars/Olympus"),
            ("local_timezone", "America"),
            ("log_level", "LOUD"),
            ("approval_group", ""),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            BookingSettings(**{field: value})
