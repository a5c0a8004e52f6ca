from __future__ import annotations

import uuid
from collections.abc import Collection
from datetime import datetime
from typing import Any, TypedDict, cast

from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr

from . import storage
from .errors import ClassNotFound, Conflict, ValidationError
from .models import GymClass, GymClassCreate, GymClassUpdate, Weekday
from .storage import ConditionFailed, DynamoDBTable, dt_to_iso, iso_to_dt, storage_errors
from .transaction import Transaction

logger = Logger()

_PATCHABLE = ("name", "description", "instructor", "category", "icon", "start_time", "end_time", "total_spots")


class ClassItem(TypedDict, total=False):
    class_id: str
    name: str
    description: str
    instructor: str
    category: str
    icon: str
    start_time: str
    end_time: str
    total_spots: int
    reserved_spots: int
    cancelled: bool
    created_at: str
    booked_user_ids: set[str]


class ClassCatalog:
    """Class records and their seat counters."""

    def __init__(self, table: DynamoDBTable | None = None) -> None:
        self._table = table if table is not None else storage.classes_table()

    @property
    def table_name(self) -> str:
        return self._table.name

    def get(self, class_id: str) -> GymClass:
        with storage_errors("GetItem"):
            resp = cast(dict[str, Any], self._table.get_item(Key={"class_id": class_id}, ConsistentRead=True))
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise ClassNotFound()
        return _to_model(cast(ClassItem, item))

    def list_all(self) -> list[GymClass]:
        classes = [_to_model(cast(ClassItem, it)) for it in storage.scan_all(self._table)]
        return sorted(classes, key=lambda c: c.start_time)

    def list_bookable(
        self, now: datetime, category: str | None = None, weekday: Weekday | None = None
    ) -> list[GymClass]:
        """Open classes that have not started yet, soonest first.

        ``weekday`` matches the UTC day the class starts on.
        """
        condition = Attr("cancelled").ne(True) & Attr("start_time").gt(dt_to_iso(now))
        if category:
            condition = condition & Attr("category").eq(category)
        items = storage.scan_all(self._table, FilterExpression=condition)
        classes = [_to_model(cast(ClassItem, it)) for it in items]
        if weekday is not None:
            classes = [c for c in classes if c.weekday == weekday]
        return sorted((c for c in classes if c.status == "active"), key=lambda c: c.start_time)

    def create(self, payload: GymClassCreate, now: datetime) -> GymClass:
        if payload.start_time <= now:
            raise ValidationError("Class must start in the future")

        class_id = str(uuid.uuid4())
        item: ClassItem = {
            "class_id": class_id,
            "name": payload.name,
            "description": payload.description,
            "instructor": payload.instructor,
            "category": payload.category,
            "start_time": dt_to_iso(payload.start_time),
            "end_time": dt_to_iso(payload.end_time),
            "total_spots": payload.total_spots,
            "reserved_spots": 0,
            "cancelled": False,
            "created_at": dt_to_iso(now),
        }
        if payload.icon:
            item["icon"] = payload.icon

        logger.info("Creating class", extra={"class_id": class_id, "total_spots": payload.total_spots})
        with storage_errors("PutItem"):
            self._table.put_item(Item=item, ConditionExpression=Attr("class_id").not_exists())  # type: ignore
        return _to_model(item)

    def update(self, class_id: str, patch: GymClassUpdate, now: datetime) -> GymClass:
        current = self.get(class_id)
        changes = {f: getattr(patch, f) for f in _PATCHABLE if getattr(patch, f) is not None}
        if patch.status is not None:
            changes["cancelled"] = patch.status == "cancelled"
        if not changes:
            return current

        start = changes.get("start_time", current.start_time)
        end = changes.get("end_time", current.end_time)
        if "start_time" in changes and start <= now:
            raise ValidationError("Class must start in the future")
        if end <= start:
            raise ValidationError("end_time must be after start_time")

        total = changes.get("total_spots")
        if total is not None and total < current.reserved_spots:
            raise ValidationError(
                f"Cannot lower capacity to {total}: {current.reserved_spots} spots already reserved"
            )

        set_parts: list[str] = []
        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        for name, value in changes.items():
            if isinstance(value, datetime):
                value = dt_to_iso(value)
            names[f"#_{name}"] = name
            values[f":{name}"] = value
            set_parts.append(f"#_{name} = :{name}")

        # the capacity check is repeated at write time in case a reserve
        # committed after the read above
        condition = Attr("class_id").exists()
        if total is not None:
            condition = condition & Attr("reserved_spots").lte(total)

        logger.info("Updating class", extra={"class_id": class_id, "fields": sorted(changes)})
        try:
            with storage_errors("UpdateItem"):
                resp = cast(
                    dict[str, Any],
                    self._table.update_item(
                        Key={"class_id": class_id},
                        UpdateExpression="SET " + ", ".join(set_parts),
                        ConditionExpression=condition,
                        ExpressionAttributeNames=names,
                        ExpressionAttributeValues=values,
                        ReturnValues="ALL_NEW",
                    ),
                )
        except ConditionFailed:
            latest = self.get(class_id)
            raise ValidationError(
                f"Cannot lower capacity to {total}: {latest.reserved_spots} spots already reserved"
            ) from None
        return _to_model(cast(ClassItem, resp.get("Attributes") or {}))

    def set_spot_counts(
        self,
        class_id: str,
        reserved_spots: int,
        holder_ids: Collection[str] | None = None,
    ) -> GymClass:
        """Overwrite the seat counter (and optionally the holder set).

        Rejected with ``Conflict`` when the count would break
        ``0 <= reserved_spots <= total_spots``.
        """
        if reserved_spots < 0:
            raise Conflict("Reserved spots cannot be negative")

        set_parts = ["reserved_spots = :reserved"]
        values: dict[str, Any] = {":reserved": reserved_spots}
        remove_holders = False
        if holder_ids is not None:
            if holder_ids:
                set_parts.append("booked_user_ids = :holders")
                values[":holders"] = set(holder_ids)
            else:
                # DynamoDB does not store empty sets
                remove_holders = True

        update_expr = "SET " + ", ".join(set_parts)
        if remove_holders:
            update_expr += " REMOVE booked_user_ids"

        try:
            with storage_errors("UpdateItem"):
                resp = cast(
                    dict[str, Any],
                    self._table.update_item(
                        Key={"class_id": class_id},
                        UpdateExpression=update_expr,
                        ConditionExpression=Attr("class_id").exists() & Attr("total_spots").gte(reserved_spots),
                        ExpressionAttributeValues=values,
                        ReturnValues="ALL_NEW",
                    ),
                )
        except ConditionFailed:
            latest = self.get(class_id)
            raise Conflict(
                f"Cannot reserve {reserved_spots} of {latest.total_spots} spots"
            ) from None
        logger.info("Seat counter set", extra={"class_id": class_id, "reserved_spots": reserved_spots})
        return _to_model(cast(ClassItem, resp.get("Attributes") or {}))

    def adjust_spots(self, txn: Transaction, class_id: str, user_id: str, delta: int) -> None:
        """Add a one-seat counter move for ``user_id`` to ``txn``.

        The conditions repeat the booking rules so the write fails if another
        writer got there first.
        """
        values: dict[str, Any] = {":delta": delta, ":holder": {user_id}}
        if delta == 1:
            update_expr = "ADD reserved_spots :delta, booked_user_ids :holder"
            condition = (
                Attr("class_id").exists()
                & Attr("cancelled").ne(True)
                & Attr("reserved_spots").lt(Attr("total_spots"))
                & ~Attr("booked_user_ids").contains(user_id)
            )
        elif delta == -1:
            update_expr = "ADD reserved_spots :delta DELETE booked_user_ids :holder"
            condition = Attr("reserved_spots").gt(0) & Attr("booked_user_ids").contains(user_id)
        else:
            raise ValueError(f"Seat counters move one spot at a time, got {delta}")

        txn.update(
            self.table_name,
            key={"class_id": class_id},
            update_expression=update_expr,
            values=values,
            condition=condition,
        )

    def delete(self, class_id: str) -> None:
        logger.info("Deleting class", extra={"class_id": class_id})
        try:
            with storage_errors("DeleteItem"):
                self._table.delete_item(
                    Key={"class_id": class_id},
                    ConditionExpression=Attr("class_id").exists() & Attr("reserved_spots").eq(0),
                )
        except ConditionFailed:
            self.get(class_id)
            raise Conflict() from None


def _to_model(item: ClassItem) -> GymClass:
    return GymClass(
        class_id=item["class_id"],
        name=item["name"],
        description=item["description"],
        instructor=item["instructor"],
        category=item["category"],  # type: ignore[arg-type]
        icon=item.get("icon"),
        start_time=iso_to_dt(item["start_time"]),
        end_time=iso_to_dt(item["end_time"]),
        # numbers come back from DynamoDB as Decimal
        total_spots=int(item["total_spots"]),
        reserved_spots=int(item.get("reserved_spots", 0)),
        cancelled=bool(item.get("cancelled", False)),
        created_at=iso_to_dt(item["created_at"]) if item.get("created_at") else None,
        booked_user_ids=frozenset(item.get("booked_user_ids") or ()),
    )
