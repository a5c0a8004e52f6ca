"""Typed errors raised by the booking core.

Every error carries a stable ``code`` and the HTTP status the API layer
answers with. Business-rule failures are deterministic; only
``StorageFailure`` is flagged as retryable.
"""
from __future__ import annotations

from http import HTTPStatus


class BookingError(Exception):
    code = "booking_error"
    default_message = "Booking request failed"
    status_code = HTTPStatus.BAD_REQUEST
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(BookingError):
    code = "not_found"
    default_message = "Resource not found"
    status_code = HTTPStatus.NOT_FOUND


class ClassNotFound(NotFoundError):
    code = "class_not_found"
    default_message = "Class not found"


class ReservationNotFound(NotFoundError):
    code = "reservation_not_found"
    default_message = "Reservation not found"


class ValidationError(BookingError):
    code = "validation_error"
    default_message = "Invalid class data"
    status_code = HTTPStatus.UNPROCESSABLE_ENTITY


class DuplicateBooking(BookingError):
    code = "duplicate_booking"
    default_message = "You already have a reservation for this class"
    status_code = HTTPStatus.CONFLICT


class NoAvailableSpots(BookingError):
    code = "no_available_spots"
    default_message = "No spots available for this class"
    status_code = HTTPStatus.CONFLICT


class ClassNotBookable(BookingError):
    code = "class_not_bookable"
    default_message = "This class is not open for booking"
    status_code = HTTPStatus.CONFLICT


class AlreadyCancelled(BookingError):
    code = "already_cancelled"
    default_message = "Reservation is already cancelled"
    status_code = HTTPStatus.CONFLICT


class ClassAlreadyOccurred(BookingError):
    code = "class_already_occurred"
    default_message = "You cannot cancel a class that has already started"
    status_code = HTTPStatus.CONFLICT


class Conflict(BookingError):
    code = "conflict"
    default_message = "Class still has confirmed reservations"
    status_code = HTTPStatus.CONFLICT


class Forbidden(BookingError):
    code = "forbidden"
    default_message = "Administrator role required"
    status_code = HTTPStatus.FORBIDDEN


class StorageFailure(BookingError):
    code = "storage_failure"
    default_message = "Booking storage is unavailable, please retry"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    retryable = True
