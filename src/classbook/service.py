from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from .catalog import ClassCatalog
from .coordinator import CapacityCoordinator
from .errors import ReservationNotFound
from .ledger import ReservationLedger
from .models import GymClass, GymClassCreate, GymClassUpdate, Principal, Reservation, ReservationSummary, Weekday


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReservationService:
    """Booking operations used by the API layer.

    Adds no rules of its own: errors from the coordinator propagate as-is and
    the list views only filter data that is already consistent.
    """

    def __init__(
        self,
        catalog: ClassCatalog | None = None,
        ledger: ReservationLedger | None = None,
        coordinator: CapacityCoordinator | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.catalog = catalog or ClassCatalog()
        self.ledger = ledger or ReservationLedger()
        self.coordinator = coordinator or CapacityCoordinator(self.catalog, self.ledger)
        self._now = now

    # bookings

    def reserve(self, principal: Principal, class_id: str) -> Reservation:
        return self.coordinator.reserve(principal, class_id, self._now())

    def cancel(self, reservation_id: str, principal: Principal | None = None) -> Reservation:
        if principal is not None:
            self.get_reservation(reservation_id, principal)
        return self.coordinator.cancel(reservation_id, self._now())

    def get_reservation(self, reservation_id: str, principal: Principal | None = None) -> Reservation:
        reservation = self.ledger.get(reservation_id)
        # members only see their own bookings
        if principal is not None and not principal.is_admin and reservation.user_id != principal.uid:
            raise ReservationNotFound()
        return reservation.as_of(self._now())

    def find_reservation(self, user_id: str, class_id: str) -> Reservation:
        reservation = self.ledger.find_by_user_and_class(user_id, class_id, "confirmed")
        if reservation is None:
            raise ReservationNotFound()
        return reservation.as_of(self._now())

    def list_reservations(self, user_id: str) -> list[Reservation]:
        now = self._now()
        return [r.as_of(now) for r in self.ledger.list_by_user(user_id)]

    def list_upcoming(self, user_id: str) -> list[Reservation]:
        return [r for r in self.list_reservations(user_id) if r.status == "confirmed"]

    def list_completed(self, user_id: str) -> list[Reservation]:
        return [r for r in self.list_reservations(user_id) if r.status == "completed"]

    def list_cancelled(self, user_id: str) -> list[Reservation]:
        return [r for r in self.list_reservations(user_id) if r.status == "cancelled"]

    def reservation_summary(self, user_id: str) -> ReservationSummary:
        reservations = self.list_reservations(user_id)
        summary = ReservationSummary(total=len(reservations))
        for r in reservations:
            if r.status == "confirmed":
                summary.upcoming += 1
            elif r.status == "completed":
                summary.completed += 1
            else:
                summary.cancelled += 1
        return summary

    def class_reservations(self, class_id: str) -> list[Reservation]:
        self.catalog.get(class_id)
        now = self._now()
        return [r.as_of(now) for r in self.ledger.list_by_class(class_id, "confirmed")]

    def all_reservations(self) -> list[Reservation]:
        now = self._now()
        return [r.as_of(now) for r in self.ledger.list_all()]

    # classes

    def list_classes(self) -> list[GymClass]:
        return self.catalog.list_all()

    def list_bookable_classes(
        self, category: str | None = None, weekday: Weekday | None = None
    ) -> list[GymClass]:
        return self.catalog.list_bookable(self._now(), category, weekday)

    def get_class(self, class_id: str) -> GymClass:
        return self.catalog.get(class_id)

    def create_class(self, payload: GymClassCreate) -> GymClass:
        return self.catalog.create(payload, self._now())

    def update_class(self, class_id: str, patch: GymClassUpdate) -> GymClass:
        return self.catalog.update(class_id, patch, self._now())

    def delete_class(self, class_id: str) -> None:
        self.coordinator.delete_class(class_id)

    def reconcile_class(self, class_id: str) -> GymClass:
        return self.coordinator.reconcile(class_id)
