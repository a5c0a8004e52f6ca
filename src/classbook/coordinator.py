"""Seat allocation and release.

Each reserve or cancel is a single DynamoDB transaction holding both the
ledger write and the class counter move, so the two can never disagree.
Within a process, mutations of one class are serialized by a per-class lock;
across processes, the conditions attached to the transaction reject any write
whose premise was invalidated by another writer.
"""
from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from aws_lambda_powertools import Logger

from . import storage
from .catalog import ClassCatalog
from .errors import (
    AlreadyCancelled,
    ClassAlreadyOccurred,
    ClassNotBookable,
    Conflict,
    DuplicateBooking,
    NoAvailableSpots,
    StorageFailure,
)
from .ledger import ReservationLedger
from .models import GymClass, Principal, Reservation
from .storage import ConditionFailed, DynamoDBClient
from .transaction import Transaction

logger = Logger()


class ClassLocks:
    """Lock per class id, kept only while some caller holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, class_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(class_id, threading.Lock())
            self._users[class_id] = self._users.get(class_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[class_id] -= 1
                if not self._users[class_id]:
                    del self._users[class_id]
                    del self._locks[class_id]


def check_bookable(gym_class: GymClass, user_id: str, now: datetime) -> None:
    if gym_class.cancelled:
        raise ClassNotBookable("This class has been cancelled")
    if gym_class.has_started(now):
        raise ClassNotBookable("This class has already started")
    if user_id in gym_class.booked_user_ids:
        raise DuplicateBooking()
    if gym_class.available_spots <= 0:
        raise NoAvailableSpots()


class CapacityCoordinator:
    def __init__(
        self,
        catalog: ClassCatalog,
        ledger: ReservationLedger,
        client: DynamoDBClient | None = None,
        locks: ClassLocks | None = None,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._client = client if client is not None else storage.client()
        self._locks = locks if locks is not None else ClassLocks()

    def reserve(self, principal: Principal, class_id: str, now: datetime) -> Reservation:
        with self._locks.hold(class_id):
            gym_class = self._catalog.get(class_id)
            check_bookable(gym_class, principal.uid, now)

            reservation = self._ledger.new_reservation(principal, gym_class, now)
            txn = Transaction(self._client)
            self._ledger.insert(reservation, txn)
            self._catalog.adjust_spots(txn, class_id, principal.uid, +1)
            try:
                txn.commit()
            except ConditionFailed:
                # another process moved the counter; report what it changed
                logger.warning(
                    "Reserve lost a race", extra={"class_id": class_id, "user_id": principal.uid}
                )
                check_bookable(self._catalog.get(class_id), principal.uid, now)
                raise StorageFailure("Class changed while booking, please retry") from None

        logger.info(
            "Seat reserved",
            extra={
                "class_id": class_id,
                "reservation_id": reservation.reservation_id,
                "user_id": principal.uid,
                "reserved_spots": gym_class.reserved_spots + 1,
                "total_spots": gym_class.total_spots,
            },
        )
        return reservation

    def cancel(self, reservation_id: str, now: datetime) -> Reservation:
        # class_id never changes, so it is safe to read it before locking
        class_id = self._ledger.get(reservation_id).class_id
        with self._locks.hold(class_id):
            reservation = self._ledger.get(reservation_id)
            if reservation.status == "cancelled":
                raise AlreadyCancelled()
            # the cancellation window closes when the class starts
            if reservation.has_started(now):
                raise ClassAlreadyOccurred()

            txn = Transaction(self._client)
            self._ledger.set_status(reservation_id, "cancelled", txn, expected="confirmed")
            self._catalog.adjust_spots(txn, class_id, reservation.user_id, -1)
            try:
                txn.commit()
            except ConditionFailed:
                logger.warning("Cancel lost a race", extra={"reservation_id": reservation_id})
                if self._ledger.get(reservation_id).status == "cancelled":
                    raise AlreadyCancelled() from None
                # still confirmed, so the class record disagrees with the ledger
                self._catalog.get(class_id)
                raise Conflict("Seat counter out of sync with reservations") from None

        logger.info(
            "Reservation cancelled",
            extra={"class_id": class_id, "reservation_id": reservation_id, "user_id": reservation.user_id},
        )
        return reservation.model_copy(update={"status": "cancelled"})

    def delete_class(self, class_id: str) -> None:
        with self._locks.hold(class_id):
            self._catalog.get(class_id)
            if self._ledger.list_by_class(class_id, "confirmed"):
                raise Conflict()
            self._catalog.delete(class_id)

    def reconcile(self, class_id: str) -> GymClass:
        """Rewrite the class counters from the confirmed reservations on record."""
        with self._locks.hold(class_id):
            before = self._catalog.get(class_id)
            confirmed = self._ledger.list_by_class(class_id, "confirmed")
            holders = {r.user_id for r in confirmed}
            after = self._catalog.set_spot_counts(class_id, len(confirmed), holders)
        if before.reserved_spots != after.reserved_spots or before.booked_user_ids != after.booked_user_ids:
            logger.warning(
                "Seat counter repaired",
                extra={"class_id": class_id, "was": before.reserved_spots, "now": after.reserved_spots},
            )
        return after
