"""
Доменная модель контекста бронирования лабораторий.

Содержит сущности, агрегат бронирования с журналом аудита
и доменный сервис проверки конфликтов расписания.
"""

from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field
from shared_kernel import DomainEvent, EntityId, TimeRange, as_utc, generate_id, now

from .exceptions import (
    BookingStateError,
    CapacityExceededError,
    InputValidationError,
    LabBookingError,
    ResourceNotFoundError,
    ResourceUnavailableError,
    SchedulingConflictError,
)


class LabStatus(str, Enum):
    """Статусы лаборатории."""

    ACTIVE = "active"
    MAINTENANCE = "maintenance"  # На техническом обслуживании
    OFFLINE = "offline"  # Отключена


class UserRole(str, Enum):
    """Роли пользователей."""

    ADMIN = "admin"
    FACULTY = "faculty"
    STUDENT = "student"


class BookingStatus(str, Enum):
    """Статусы бронирования."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({BookingStatus.REJECTED, BookingStatus.COMPLETED})


class BookingType(str, Enum):
    """Типы бронирований."""

    REGULAR = "regular"  # Занятие по расписанию
    EXTRA = "extra"  # Дополнительное занятие
    EVENT = "event"
    MAINTENANCE = "maintenance"


class LogAction(str, Enum):
    """Действия, фиксируемые в журнале бронирования."""

    CREATED = "created"
    UPDATED = "updated"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    OVERRIDE = "override"


class NotificationSeverity(str, Enum):
    """Уровни важности уведомлений."""

    INFO = "info"
    ALERT = "alert"
    REMINDER = "reminder"


class ConflictReason(str, Enum):
    """Причина отказа в бронировании."""

    LAB_NOT_FOUND = "lab_not_found"
    LAB_UNAVAILABLE = "lab_unavailable"
    INVALID_INTERVAL = "invalid_interval"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    OVERLAP = "overlap"


class Lab(BaseModel):
    """Лаборатория (внешняя сущность, только для чтения)."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    capacity: int = Field(..., gt=0)  # Максимум одновременно выделяемых систем
    location: Optional[str] = None
    status: LabStatus = LabStatus.ACTIVE
    maintenance_until: Optional[datetime] = None
    features: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def is_available(self) -> bool:
        return self.status == LabStatus.ACTIVE


class Requester(BaseModel):
    """Пользователь, от имени которого выполняется действие."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    role: UserRole = UserRole.STUDENT

    @property
    def is_privileged(self) -> bool:
        """Может ли пользователь одобрять, отклонять и бронировать принудительно."""
        return self.role == UserRole.ADMIN


class BookingLogEntry(BaseModel):
    """Запись журнала аудита. После создания не изменяется."""

    model_config = ConfigDict(frozen=True)

    action: LogAction
    actor_id: str
    actor_name: str
    timestamp: datetime
    details: Optional[str] = None


class NotificationEvent(DomainEvent):
    """Уведомление для внешней системы доставки."""

    event_type: str = "BookingNotification"
    sender_id: str
    recipient: str  # Идентификатор пользователя или группы
    message: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    booking_id: Optional[EntityId] = None


class Booking(BaseModel):
    """Бронирование лаборатории (агрегат)."""

    id: EntityId = Field(default_factory=generate_id)
    lab_id: str
    requester: Requester
    subject: str
    period: TimeRange
    system_count: int = Field(..., ge=1)
    status: BookingStatus = BookingStatus.PENDING
    booking_type: BookingType = BookingType.EXTRA
    reminder: bool = False
    logs: List[BookingLogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)
    version: int = 0

    @property
    def start_time(self) -> datetime:
        return self.period.start

    @property
    def end_time(self) -> datetime:
        return self.period.end

    @property
    def history(self) -> Tuple[BookingLogEntry, ...]:
        """Журнал аудита в виде неизменяемой последовательности."""
        return tuple(self.logs)

    def effective_status(self, at: datetime) -> BookingStatus:
        """Статус с учетом завершения: одобренное и прошедшее считается завершенным."""
        if self.status == BookingStatus.APPROVED and self.period.end <= at:
            return BookingStatus.COMPLETED
        return self.status

    def is_terminal(self, at: datetime) -> bool:
        return self.effective_status(at) in TERMINAL_STATUSES

    def is_active(self, at: datetime) -> bool:
        return not self.is_terminal(at)

    def record(
        self,
        action: LogAction,
        actor: Requester,
        at: datetime,
        details: Optional[str] = None,
    ) -> BookingLogEntry:
        """Добавляет запись в журнал аудита."""
        entry = BookingLogEntry(
            action=action,
            actor_id=actor.id,
            actor_name=actor.name,
            timestamp=at,
            details=details,
        )
        self.logs.append(entry)
        self.updated_at = at
        return entry

    def approve(self, actor: Requester, at: datetime) -> None:
        """Одобряет заявку."""
        self._ensure_pending(at, "одобрить")
        self.status = BookingStatus.APPROVED
        self.record(LogAction.APPROVED, actor, at, "Заявка одобрена")

    def reject(self, actor: Requester, at: datetime) -> None:
        """Отклоняет заявку."""
        self._ensure_pending(at, "отклонить")
        self.status = BookingStatus.REJECTED
        self.record(LogAction.REJECTED, actor, at, "Заявка отклонена")

    def cancel(self, actor: Requester, at: datetime) -> None:
        """Отменяет бронирование. Для завершенных и отклоненных статус не меняется."""
        if self.is_terminal(at):
            self.record(
                LogAction.CANCELLED,
                actor,
                at,
                f"Повторная отмена, статус {self.effective_status(at).value} сохранен",
            )
            return

        self.status = BookingStatus.REJECTED
        self.record(LogAction.CANCELLED, actor, at, "Бронирование отменено")

    def reschedule(
        self,
        *,
        lab_id: str,
        subject: str,
        period: TimeRange,
        system_count: int,
        reminder: bool,
        editor: Requester,
        at: datetime,
        details: Optional[str] = None,
    ) -> None:
        """Перезаписывает изменяемые поля. Статус не меняется."""
        self.ensure_editable(at)

        previous = f"Было: «{self.subject}», {self.lab_id}, {_iso_window(self.period)}"
        self.lab_id = lab_id
        self.subject = subject
        self.period = period
        self.system_count = system_count
        self.reminder = reminder
        self.record(
            LogAction.UPDATED,
            editor,
            at,
            f"{details}. {previous}" if details else previous,
        )

    def ensure_editable(self, at: datetime) -> None:
        """Завершенные и отклоненные бронирования не изменяются."""
        if self.is_terminal(at):
            raise BookingStateError(
                f"Невозможно изменить бронирование в статусе "
                f"{self.effective_status(at).value}"
            )

    def _ensure_pending(self, at: datetime, verb: str) -> None:
        status = self.effective_status(at)
        if status != BookingStatus.PENDING:
            raise BookingStateError(
                f"Невозможно {verb} бронирование в статусе {status.value}"
            )

    @classmethod
    def create(
        cls,
        *,
        lab_id: str,
        requester: Requester,
        subject: str,
        period: TimeRange,
        system_count: int,
        actor: Requester,
        at: datetime,
        reminder: bool = False,
        booking_type: BookingType = BookingType.EXTRA,
        override: bool = False,
        displaced: Sequence["Booking"] = (),
    ) -> "Booking":
        """Создает бронирование в начальном состоянии с первой записью журнала."""
        status = (
            BookingStatus.APPROVED if actor.is_privileged else BookingStatus.PENDING
        )
        booking = cls(
            lab_id=lab_id,
            requester=requester,
            subject=subject,
            period=period,
            system_count=system_count,
            status=status,
            booking_type=booking_type,
            reminder=reminder,
            created_at=at,
            updated_at=at,
        )

        if override:
            details = "Принудительное бронирование администратором"
            if displaced:
                ids = ", ".join(str(other.id) for other in displaced)
                details += f"; перекрыты бронирования: {ids}"
            booking.record(LogAction.OVERRIDE, actor, at, details)
        else:
            booking.record(LogAction.CREATED, actor, at, "Заявка на бронирование")

        return booking


_REASON_ERRORS: dict = {
    ConflictReason.LAB_NOT_FOUND: ResourceNotFoundError,
    ConflictReason.LAB_UNAVAILABLE: ResourceUnavailableError,
    ConflictReason.INVALID_INTERVAL: InputValidationError,
    ConflictReason.CAPACITY_EXCEEDED: CapacityExceededError,
    ConflictReason.OVERLAP: SchedulingConflictError,
}


class ConflictResult(BaseModel):
    """Результат проверки заявки."""

    has_conflict: bool
    message: Optional[str] = None
    reason: Optional[ConflictReason] = None
    conflicting_booking: Optional[Booking] = None

    @classmethod
    def ok(cls) -> "ConflictResult":
        return cls(has_conflict=False)

    @classmethod
    def failed(
        cls,
        reason: ConflictReason,
        message: str,
        conflicting_booking: Optional[Booking] = None,
    ) -> "ConflictResult":
        return cls(
            has_conflict=True,
            reason=reason,
            message=message,
            conflicting_booking=conflicting_booking,
        )

    def to_exception(self) -> LabBookingError:
        """Типизированное исключение, соответствующее причине отказа."""
        if not self.has_conflict or self.reason is None:
            raise ValueError("Нет конфликта для преобразования в исключение")
        error_class: Type[LabBookingError] = _REASON_ERRORS[self.reason]
        return error_class(self.message or self.reason.value, result=self)

    def raise_for_conflict(self) -> None:
        if self.has_conflict:
            raise self.to_exception()


class ConflictChecker:
    """
    Доменный сервис проверки заявки на бронирование.

    Проверки выполняются в фиксированном порядке, первая неудачная
    определяет результат:

    1. лаборатория существует;
    2. лаборатория не на обслуживании и не отключена (пропускается при override);
    3. начало раньше окончания;
    4. запрошенное число систем не больше вместимости;
    5. нет пересечения с активными бронированиями (пропускается при override).

    Проверка не имеет побочных эффектов: результат определяется снимком
    лаборатории, списком бронирований и моментом оценки ``at``.
    """

    def __init__(self, display_tz: tzinfo = timezone.utc):
        self._display_tz = display_tz

    def check(
        self,
        *,
        lab_id: str,
        lab: Optional[Lab],
        period: TimeRange,
        system_count: int,
        bookings: Iterable[Booking],
        at: datetime,
        exclude_booking_id: Optional[EntityId] = None,
        override: bool = False,
    ) -> ConflictResult:
        if lab is None:
            return ConflictResult.failed(
                ConflictReason.LAB_NOT_FOUND, f"Лаборатория {lab_id} не найдена"
            )

        if not override and not lab.is_available:
            return ConflictResult.failed(
                ConflictReason.LAB_UNAVAILABLE, self._unavailable_message(lab)
            )

        if not period.is_valid:
            return ConflictResult.failed(
                ConflictReason.INVALID_INTERVAL,
                "Время окончания должно быть позже времени начала",
            )

        if system_count > lab.capacity:
            return ConflictResult.failed(
                ConflictReason.CAPACITY_EXCEEDED,
                f"Запрошено систем ({system_count}) больше, "
                f"чем вместимость лаборатории ({lab.capacity})",
            )

        if override:
            return ConflictResult.ok()

        overlapping = self.find_overlapping(
            lab_id=lab.id,
            period=period,
            bookings=bookings,
            at=at,
            exclude_booking_id=exclude_booking_id,
        )
        if overlapping:
            conflict = overlapping[0]
            return ConflictResult.failed(
                ConflictReason.OVERLAP,
                f"Обнаружен конфликт: лаборатория занята пользователем "
                f"{conflict.requester.name} для «{conflict.subject}» "
                f"({self.format_window(conflict.period)})",
                conflicting_booking=conflict,
            )

        return ConflictResult.ok()

    def find_overlapping(
        self,
        *,
        lab_id: str,
        period: TimeRange,
        bookings: Iterable[Booking],
        at: datetime,
        exclude_booking_id: Optional[EntityId] = None,
    ) -> List[Booking]:
        """Активные бронирования лаборатории, пересекающие период.

        Порядок: по времени начала, затем по времени создания.
        """
        result = [
            booking
            for booking in bookings
            if booking.lab_id == lab_id
            and booking.id != exclude_booking_id
            and booking.is_active(at)
            and booking.period.overlaps(period)
        ]
        return sorted(result, key=lambda b: (b.period.start, b.created_at))

    def format_window(self, period: TimeRange) -> str:
        start = period.start.astimezone(self._display_tz)
        end = period.end.astimezone(self._display_tz)
        if start.date() == end.date():
            return f"{start:%H:%M} - {end:%H:%M}"
        return f"{start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M}"

    def _unavailable_message(self, lab: Lab) -> str:
        if lab.status == LabStatus.MAINTENANCE:
            message = f"Лаборатория {lab.display_name} на техническом обслуживании"
            if lab.maintenance_until is not None:
                until = as_utc(lab.maintenance_until).astimezone(self._display_tz)
                message += f" до {until:%Y-%m-%d %H:%M}"
            return message + " и недоступна для бронирования"
        return f"Лаборатория {lab.display_name} отключена и недоступна для бронирования"


def _iso_window(period: TimeRange) -> str:
    return f"{period.start.isoformat()} - {period.end.isoformat()}"
