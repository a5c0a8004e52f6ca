from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal, get_args

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from .config import MAX_TOTAL_SPOTS

Category = Literal["yoga", "spinning", "weights", "functional", "crossfit"]
ClassStatus = Literal["active", "full", "cancelled"]
ReservationStatus = Literal["confirmed", "cancelled", "completed"]
Role = Literal["user", "admin"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

# indexed by datetime.weekday()
WEEKDAYS: tuple[Weekday, ...] = get_args(Weekday)


def as_utc(dt: datetime) -> datetime:
    # naive datetimes are taken to be UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class GymClassCreate(BaseModel):
    name: str = Field(..., min_length=3)
    description: str = Field(..., min_length=10)
    instructor: str = Field(..., min_length=1)
    category: Category
    icon: str | None = None
    start_time: datetime
    end_time: datetime
    total_spots: int = Field(..., ge=1, le=MAX_TOTAL_SPOTS)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_tz(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_schedule(self) -> GymClassCreate:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class GymClassUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=3)
    description: str | None = Field(default=None, min_length=10)
    instructor: str | None = Field(default=None, min_length=1)
    category: Category | None = None
    icon: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    total_spots: int | None = Field(default=None, ge=1, le=MAX_TOTAL_SPOTS)
    # "full" is derived from the counters and cannot be set
    status: Literal["active", "cancelled"] | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_tz(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)


class GymClass(BaseModel):
    class_id: str
    name: str
    description: str
    instructor: str
    category: Category
    icon: str | None = None
    start_time: datetime
    end_time: datetime
    total_spots: int
    reserved_spots: int = 0
    cancelled: bool = False
    created_at: datetime | None = None
    # holders of confirmed reservations, kept on the class item so the
    # duplicate check commits together with the counter
    booked_user_ids: frozenset[str] = Field(default_factory=frozenset, exclude=True)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def available_spots(self) -> int:
        return self.total_spots - self.reserved_spots

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ClassStatus:
        if self.cancelled:
            return "cancelled"
        return "full" if self.available_spots <= 0 else "active"

    @property
    def class_time(self) -> str:
        return f"{self.start_time:%H:%M} - {self.end_time:%H:%M}"

    @property
    def weekday(self) -> Weekday:
        return WEEKDAYS[self.start_time.weekday()]

    def has_started(self, now: datetime) -> bool:
        return self.start_time <= now


class Reservation(BaseModel):
    reservation_id: str
    user_id: str
    user_name: str
    user_email: str
    class_id: str
    class_name: str
    class_date: datetime
    class_time: str
    reservation_date: datetime
    status: ReservationStatus = "confirmed"

    def has_started(self, now: datetime) -> bool:
        return self.class_date <= now

    def as_of(self, now: datetime) -> Reservation:
        """Return the reservation with ``completed`` derived from the clock.

        A confirmed booking counts as completed from the moment its class
        starts, which is also when it stops being cancellable.
        """
        if self.status == "confirmed" and self.has_started(now):
            return self.model_copy(update={"status": "completed"})
        return self


class ReservationSummary(BaseModel):
    total: int = 0
    upcoming: int = 0
    completed: int = 0
    cancelled: int = 0


class Principal(BaseModel):
    uid: str = Field(..., min_length=1)
    display_name: str = "Member"
    email: str = ""
    role: Role = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
