"""
Прикладной слой контекста бронирования лабораторий.

Содержит сервис приложения, который координирует реестр лабораторий,
хранилище бронирований, проверку конфликтов и рассылку уведомлений.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from shared_kernel import EntityId, TimeRange, now

from . import interfaces as ports
from .config import BookingSettings
from .domain import (
    Booking,
    BookingLogEntry,
    BookingStatus,
    BookingType,
    ConflictChecker,
    ConflictResult,
    NotificationEvent,
    NotificationSeverity,
    Requester,
)
from .exceptions import AuthorizationError, InputValidationError
from .infrastructure import LabLockManager, StdLogger

T_Request = TypeVar("T_Request", bound="UpdateBookingRequest")

# DTO (Data Transfer Objects) для входящих данных


class UpdateBookingRequest(BaseModel):
    """Запрос на изменение бронирования: лаборатория, дата и время, число систем."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    lab_id: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    booking_date: date
    start_time: time
    end_time: time
    system_count: int = Field(..., ge=1)
    reminder: bool = False

    @field_validator("subject")
    @classmethod
    def subject_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Тема бронирования не может быть пустой")
        return v

    @classmethod
    def from_payload(cls: Type[T_Request], payload: Mapping[str, Any]) -> T_Request:
        """Проверяет сырые данные заявки на границе сервиса."""
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            )
            raise InputValidationError(f"Некорректная заявка: {problems}")

    def to_period(self, tz: tzinfo) -> TimeRange:
        """Переводит дату и время по местным часам в абсолютный интервал."""
        return TimeRange(
            start=_local_instant(self.booking_date, self.start_time, tz),
            end=_local_instant(self.booking_date, self.end_time, tz),
        )


def _local_instant(day: date, wall_time: time, tz: tzinfo) -> datetime:
    local = datetime.combine(day, wall_time, tzinfo=tz)
    # Время, пропущенное при переводе часов, не переживает перевод в UTC и обратно
    restored = local.astimezone(timezone.utc).astimezone(tz)
    if restored.replace(tzinfo=None) != local.replace(tzinfo=None):
        zone = getattr(tz, "key", str(tz))
        raise InputValidationError(
            f"Время {wall_time:%H:%M} {day.isoformat()} не существует "
            f"в часовом поясе {zone} из-за перевода часов"
        )
    return local


class CreateBookingRequest(UpdateBookingRequest):
    """Запрос на создание бронирования."""

    requester: Requester
    booking_type: BookingType = BookingType.EXTRA


# DTO для исходящих данных


class BookingDTO(BaseModel):
    """DTO для представления бронирования."""

    id: EntityId
    lab_id: str
    requester_id: str
    requester_name: str
    subject: str
    start_time: datetime
    end_time: datetime
    system_count: int
    status: BookingStatus
    booking_type: BookingType
    reminder: bool
    logs: List[BookingLogEntry]
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, booking: Booking, at: datetime) -> "BookingDTO":
        """Создает DTO из доменной модели; статус учитывает завершение на момент at."""
        return cls(
            id=booking.id,
            lab_id=booking.lab_id,
            requester_id=booking.requester.id,
            requester_name=booking.requester.name,
            subject=booking.subject,
            start_time=booking.start_time,
            end_time=booking.end_time,
            system_count=booking.system_count,
            status=booking.effective_status(at),
            booking_type=booking.booking_type,
            reminder=booking.reminder,
            logs=list(booking.logs),
            created_at=booking.created_at.isoformat(),
            updated_at=booking.updated_at.isoformat(),
        )


# Сервисы приложения


class BookingLifecycleService:
    """Сервис приложения: жизненный цикл бронирований лабораторий."""

    def __init__(
        self,
        uow: ports.IBookingUnitOfWork,
        locks: Optional[ports.ILabLocks] = None,
        settings: Optional[BookingSettings] = None,
        logger: Optional[ports.ILogger] = None,
        clock: Callable[[], datetime] = now,
    ):
        """Инициализирует сервис."""
        self._uow = uow
        self._locks = locks if locks is not None else LabLockManager()
        self._settings = settings or BookingSettings()
        self._logger = logger or StdLogger()
        self._clock = clock
        self._checker = ConflictChecker(display_tz=self._settings.tz)

    def check_availability(
        self,
        request: UpdateBookingRequest,
        exclude_booking_id: Optional[EntityId] = None,
        override: bool = False,
        actor: Optional[Requester] = None,
    ) -> ConflictResult:
        """Проверяет заявку без изменения состояния."""
        actor = actor or getattr(request, "requester", None)
        if override:
            self._ensure_privileged(actor, "бронировать принудительно")
        result, _, _ = self._evaluate(request, exclude_booking_id, override)
        return result

    def create_booking(
        self,
        request: CreateBookingRequest,
        override: bool = False,
        actor: Optional[Requester] = None,
    ) -> BookingDTO:
        """Создает бронирование или выбрасывает типизированную ошибку проверки."""
        actor = actor or request.requester
        if override:
            self._ensure_privileged(actor, "бронировать принудительно")
        if actor.id != request.requester.id and not actor.is_privileged:
            raise AuthorizationError(
                f"Пользователь {actor.name} не может бронировать от имени других"
            )

        with self._locks.hold(request.lab_id):
            result, period, active = self._evaluate(request, None, override)
            if result.has_conflict:
                self._logger.warning(
                    "Booking request rejected",
                    lab_id=request.lab_id,
                    requester_id=request.requester.id,
                    reason=result.reason.value,
                )
                raise result.to_exception()

            at = self._clock()
            displaced: List[Booking] = []
            if override:
                displaced = self._checker.find_overlapping(
                    lab_id=request.lab_id, period=period, bookings=active, at=at
                )

            booking = Booking.create(
                lab_id=request.lab_id,
                requester=request.requester,
                subject=request.subject,
                period=period,
                system_count=request.system_count,
                actor=actor,
                at=at,
                reminder=request.reminder,
                booking_type=request.booking_type,
                override=override,
                displaced=displaced,
            )
            with self._uow:
                self._uow.bookings.add(booking)

        self._logger.info(
            "Booking created",
            booking_id=booking.id,
            lab_id=booking.lab_id,
            status=booking.status.value,
            override=override,
        )

        if booking.status == BookingStatus.PENDING:
            self._notify(
                self._settings.system_sender_id,
                self._settings.approval_group,
                f"Новая заявка на бронирование от {request.requester.name}: "
                f"«{booking.subject}».",
                NotificationSeverity.INFO,
                booking.id,
            )
        elif actor.id != request.requester.id:
            self._notify(
                actor.id,
                request.requester.id,
                f"Администратор {actor.name} забронировал «{booking.subject}» для вас.",
                NotificationSeverity.INFO,
                booking.id,
            )
        for other in displaced:
            self._notify(
                actor.id,
                other.requester.id,
                f"Ваше бронирование «{other.subject}» перекрыто принудительным "
                f"бронированием администратора {actor.name}.",
                NotificationSeverity.ALERT,
                other.id,
            )

        return BookingDTO.from_domain(booking, at)

    def update_booking(
        self,
        booking_id: EntityId,
        request: UpdateBookingRequest,
        editor: Requester,
        override: bool = False,
    ) -> BookingDTO:
        """Изменяет бронирование с полной повторной проверкой."""
        if isinstance(request, CreateBookingRequest):
            raise InputValidationError(
                "Заявитель и тип бронирования не изменяются; "
                "используйте UpdateBookingRequest"
            )
        if override:
            self._ensure_privileged(editor, "бронировать принудительно")
        current = self._uow.bookings.get_by_id(booking_id)
        self._ensure_owner_or_privileged(current, editor, "изменить")

        with self._locks.hold(current.lab_id, request.lab_id):
            booking = self._uow.bookings.get_by_id(booking_id)
            booking.ensure_editable(self._clock())
            previous_subject = booking.subject
            result, period, _ = self._evaluate(request, booking.id, override)
            if result.has_conflict:
                self._logger.warning(
                    "Booking update rejected",
                    booking_id=booking.id,
                    reason=result.reason.value,
                )
                raise result.to_exception()

            at = self._clock()
            booking.reschedule(
                lab_id=request.lab_id,
                subject=request.subject,
                period=period,
                system_count=request.system_count,
                reminder=request.reminder,
                editor=editor,
                at=at,
                details="Изменено принудительно" if override else None,
            )
            with self._uow:
                self._uow.bookings.update(booking)

        self._logger.info("Booking updated", booking_id=booking.id, editor_id=editor.id)

        if editor.id != booking.requester.id:
            self._notify(
                editor.id,
                booking.requester.id,
                f"Ваше бронирование «{previous_subject}» изменено пользователем "
                f"{editor.name}.",
                NotificationSeverity.ALERT,
                booking.id,
            )

        return BookingDTO.from_domain(booking, at)

    def cancel_booking(self, booking_id: EntityId, actor: Requester) -> BookingDTO:
        """Отменяет бронирование; повторная отмена не меняет статус."""
        booking = self._uow.bookings.get_by_id(booking_id)
        self._ensure_owner_or_privileged(booking, actor, "отменить")

        at = self._clock()
        booking.cancel(actor, at)
        with self._uow:
            self._uow.bookings.update(booking)

        self._logger.info(
            "Booking cancelled",
            booking_id=booking.id,
            actor_id=actor.id,
            status=booking.effective_status(at).value,
        )

        if actor.id != booking.requester.id:
            self._notify(
                actor.id,
                booking.requester.id,
                f"Ваше бронирование «{booking.subject}» отменено пользователем "
                f"{actor.name}.",
                NotificationSeverity.ALERT,
                booking.id,
            )

        return BookingDTO.from_domain(booking, at)

    def approve_booking(self, booking_id: EntityId, actor: Requester) -> BookingDTO:
        """Одобряет заявку (только для администратора)."""
        self._ensure_privileged(actor, "одобрять бронирования")
        booking = self._uow.bookings.get_by_id(booking_id)

        at = self._clock()
        booking.approve(actor, at)
        with self._uow:
            self._uow.bookings.update(booking)

        self._logger.info("Booking approved", booking_id=booking.id, actor_id=actor.id)
        self._notify(
            actor.id,
            booking.requester.id,
            f"Ваша заявка на бронирование «{booking.subject}» одобрена.",
            NotificationSeverity.INFO,
            booking.id,
        )
        return BookingDTO.from_domain(booking, at)

    def reject_booking(self, booking_id: EntityId, actor: Requester) -> BookingDTO:
        """Отклоняет заявку (только для администратора)."""
        self._ensure_privileged(actor, "отклонять бронирования")
        booking = self._uow.bookings.get_by_id(booking_id)

        at = self._clock()
        booking.reject(actor, at)
        with self._uow:
            self._uow.bookings.update(booking)

        self._logger.info("Booking rejected", booking_id=booking.id, actor_id=actor.id)
        self._notify(
            actor.id,
            booking.requester.id,
            f"Ваша заявка на бронирование «{booking.subject}» отклонена.",
            NotificationSeverity.ALERT,
            booking.id,
        )
        return BookingDTO.from_domain(booking, at)

    def get_booking(self, booking_id: EntityId) -> BookingDTO:
        """Возвращает информацию о бронировании."""
        booking = self._uow.bookings.get_by_id(booking_id)
        return BookingDTO.from_domain(booking, self._clock())

    def history(self, booking_id: EntityId) -> Tuple[BookingLogEntry, ...]:
        """Журнал аудита бронирования."""
        return self._uow.bookings.get_by_id(booking_id).history

    def list_bookings(
        self,
        lab_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[BookingDTO]:
        """Возвращает бронирования, новые по времени начала первыми."""
        at = self._clock()
        bookings = self._uow.bookings.find(lab_id=lab_id, requester_id=requester_id)
        if status is not None:
            bookings = [b for b in bookings if b.effective_status(at) == status]
        bookings.sort(key=lambda b: b.start_time, reverse=True)
        return [BookingDTO.from_domain(booking, at) for booking in bookings]

    def get_next_session(self, requester_id: Optional[str] = None) -> Optional[BookingDTO]:
        """Ближайшее одобренное бронирование, которое еще не закончилось."""
        at = self._clock()
        upcoming = [
            booking
            for booking in self._uow.bookings.find(
                requester_id=requester_id, status=BookingStatus.APPROVED
            )
            if booking.end_time > at
        ]
        if not upcoming:
            return None
        upcoming.sort(key=lambda b: b.start_time)
        return BookingDTO.from_domain(upcoming[0], at)

    def due_reminders(self, within: timedelta) -> List[BookingDTO]:
        """Одобренные бронирования с напоминанием, начинающиеся в ближайшее время."""
        at = self._clock()
        due = [
            booking
            for booking in self._uow.bookings.find(status=BookingStatus.APPROVED)
            if booking.reminder and at <= booking.start_time <= at + within
        ]
        due.sort(key=lambda b: b.start_time)
        return [BookingDTO.from_domain(booking, at) for booking in due]

    def _evaluate(
        self,
        request: UpdateBookingRequest,
        exclude_booking_id: Optional[EntityId],
        override: bool,
    ) -> Tuple[ConflictResult, TimeRange, List[Booking]]:
        lab = self._uow.labs.get_lab(request.lab_id)
        active: List[Booking] = []
        if lab is not None:
            active = self._uow.bookings.find_active_for_lab(
                request.lab_id, exclude_booking_id
            )
        period = request.to_period(self._settings.tz)
        result = self._checker.check(
            lab_id=request.lab_id,
            lab=lab,
            period=period,
            system_count=request.system_count,
            bookings=active,
            at=self._clock(),
            exclude_booking_id=exclude_booking_id,
            override=override,
        )
        return result, period, active

    def _notify(
        self,
        sender_id: str,
        recipient: str,
        message: str,
        severity: NotificationSeverity,
        booking_id: EntityId,
    ) -> None:
        """Отправляет уведомление; сбой доставки не отменяет изменение бронирования."""
        event = NotificationEvent(
            sender_id=sender_id,
            recipient=recipient,
            message=message,
            severity=severity,
            booking_id=booking_id,
        )
        try:
            self._uow.notifications.publish(event)
        except Exception as e:
            self._logger.error(
                "Notification dispatch failed",
                error=str(e),
                recipient=recipient,
                booking_id=booking_id,
            )

    def _ensure_privileged(self, actor: Optional[Requester], action: str) -> None:
        if actor is None or not actor.is_privileged:
            name = actor.name if actor is not None else "anonymous"
            raise AuthorizationError(f"Пользователь {name} не может {action}")

    def _ensure_owner_or_privileged(
        self, booking: Booking, actor: Requester, action: str
    ) -> None:
        if actor.id != booking.requester.id and not actor.is_privileged:
            raise AuthorizationError(
                f"Пользователь {actor.name} не может {action} чужое бронирование"
            )
