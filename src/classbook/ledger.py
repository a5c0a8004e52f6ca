from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, TypedDict, cast

from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr, Key

from . import config, storage
from .errors import Conflict, ReservationNotFound
from .models import GymClass, Principal, Reservation, ReservationStatus
from .storage import ConditionFailed, DynamoDBTable, dt_to_iso, iso_to_dt, storage_errors
from .transaction import Transaction

logger = Logger()


class ReservationItem(TypedDict, total=False):
    reservation_id: str
    user_id: str
    user_name: str
    user_email: str
    class_id: str
    class_name: str
    class_date: str
    class_time: str
    reservation_date: str
    status: str


class ReservationLedger:
    """Reservation records. Records are never deleted, only cancelled."""

    def __init__(self, table: DynamoDBTable | None = None) -> None:
        self._table = table if table is not None else storage.reservations_table()

    @property
    def table_name(self) -> str:
        return self._table.name

    @staticmethod
    def new_reservation(principal: Principal, gym_class: GymClass, now: datetime) -> Reservation:
        # class name and schedule are copied so history survives class edits
        return Reservation(
            reservation_id=str(uuid.uuid4()),
            user_id=principal.uid,
            user_name=principal.display_name,
            user_email=principal.email,
            class_id=gym_class.class_id,
            class_name=gym_class.name,
            class_date=gym_class.start_time,
            class_time=gym_class.class_time,
            reservation_date=now,
            status="confirmed",
        )

    def insert(self, reservation: Reservation, txn: Transaction | None = None) -> Reservation:
        reservation = reservation.model_copy(update={"status": "confirmed"})
        item = _to_item(reservation)
        condition = Attr("reservation_id").not_exists()
        if txn is not None:
            txn.put(self.table_name, dict(item), condition=condition)
            return reservation

        logger.info("Inserting reservation", extra={"reservation_id": reservation.reservation_id})
        with storage_errors("PutItem"):
            self._table.put_item(Item=item, ConditionExpression=condition)  # type: ignore
        return reservation

    def get(self, reservation_id: str) -> Reservation:
        with storage_errors("GetItem"):
            resp = cast(
                dict[str, Any],
                self._table.get_item(Key={"reservation_id": reservation_id}, ConsistentRead=True),
            )
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise ReservationNotFound()
        return _to_model(cast(ReservationItem, item))

    def set_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        txn: Transaction | None = None,
        expected: ReservationStatus | None = None,
    ) -> None:
        condition = Attr("reservation_id").exists()
        if expected is not None:
            condition = condition & Attr("status").eq(expected)
        kwargs: dict[str, Any] = {
            "Key": {"reservation_id": reservation_id},
            "UpdateExpression": "SET #s = :s",
            "ExpressionAttributeNames": {"#s": "status"},
            "ExpressionAttributeValues": {":s": status},
        }
        if txn is not None:
            txn.update(
                self.table_name,
                key=kwargs["Key"],
                update_expression=kwargs["UpdateExpression"],
                names=kwargs["ExpressionAttributeNames"],
                values=kwargs["ExpressionAttributeValues"],
                condition=condition,
            )
            return

        try:
            with storage_errors("UpdateItem"):
                self._table.update_item(ConditionExpression=condition, **kwargs)
        except ConditionFailed:
            # raises ReservationNotFound when the record is gone
            current = self.get(reservation_id)
            logger.warning(
                "Reservation status changed concurrently",
                extra={"reservation_id": reservation_id, "status": current.status, "expected": expected},
            )
            raise Conflict(f"Reservation is {current.status}") from None

    def find_by_user_and_class(
        self, user_id: str, class_id: str, status: ReservationStatus = "confirmed"
    ) -> Reservation | None:
        """Look up a member's reservation for a class.

        Reads the user index, which is eventually consistent: a booking that
        just committed may not show up yet. Do not use this to reject
        duplicate bookings; the holder set on the class item
        (``GymClass.booked_user_ids``, read consistently) is the guard for
        that.
        """
        items = storage.query_all(
            self._table,
            IndexName=config.USER_INDEX_NAME,
            KeyConditionExpression=Key("user_id").eq(user_id),
            FilterExpression=Attr("class_id").eq(class_id) & Attr("status").eq(status),
        )
        if not items:
            return None
        return _to_model(cast(ReservationItem, items[0]))

    def list_by_user(self, user_id: str) -> list[Reservation]:
        items = storage.query_all(
            self._table,
            IndexName=config.USER_INDEX_NAME,
            KeyConditionExpression=Key("user_id").eq(user_id),
            ScanIndexForward=False,
        )
        return [_to_model(cast(ReservationItem, it)) for it in items]

    def list_by_class(self, class_id: str, status: ReservationStatus | None = None) -> list[Reservation]:
        kwargs: dict[str, Any] = {
            "IndexName": config.CLASS_INDEX_NAME,
            "KeyConditionExpression": Key("class_id").eq(class_id),
        }
        if status is not None:
            kwargs["FilterExpression"] = Attr("status").eq(status)
        items = storage.query_all(self._table, **kwargs)
        return [_to_model(cast(ReservationItem, it)) for it in items]

    def list_all(self) -> list[Reservation]:
        reservations = [_to_model(cast(ReservationItem, it)) for it in storage.scan_all(self._table)]
        return sorted(reservations, key=lambda r: r.reservation_date, reverse=True)


def _to_item(reservation: Reservation) -> ReservationItem:
    return {
        "reservation_id": reservation.reservation_id,
        "user_id": reservation.user_id,
        "user_name": reservation.user_name,
        "user_email": reservation.user_email,
        "class_id": reservation.class_id,
        "class_name": reservation.class_name,
        "class_date": dt_to_iso(reservation.class_date),
        "class_time": reservation.class_time,
        "reservation_date": dt_to_iso(reservation.reservation_date),
        "status": reservation.status,
    }


def _to_model(item: ReservationItem) -> Reservation:
    return Reservation(
        reservation_id=item["reservation_id"],
        user_id=item["user_id"],
        user_name=item.get("user_name", ""),
        user_email=item.get("user_email", ""),
        class_id=item["class_id"],
        class_name=item.get("class_name", ""),
        class_date=iso_to_dt(item["class_date"]),
        class_time=item.get("class_time", ""),
        reservation_date=iso_to_dt(item["reservation_date"]),
        status=item.get("status", "confirmed"),  # type: ignore[arg-type]
    )
