from __future__ import annotations

import copy
import os
import re
import threading
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")

from boto3.dynamodb.conditions import ConditionBase, ConditionExpressionBuilder  # noqa: E402
from botocore.exceptions import ClientError  # noqa: E402

from classbook.catalog import ClassCatalog  # noqa: E402
from classbook.coordinator import CapacityCoordinator  # noqa: E402
from classbook.ledger import ReservationLedger  # noqa: E402
from classbook.models import GymClassCreate, Principal  # noqa: E402
from classbook.service import ReservationService  # noqa: E402

_CLAUSE = re.compile(r"\b(SET|ADD|DELETE|REMOVE)\b")

NOW = datetime(2030, 1, 1, 8, 0, tzinfo=UTC)


_TOKEN = re.compile(r"\(|\)|,|<>|<=|>=|=|<|>|[#:]?\w+")
_COMPARE = {
    "=": lambda a, b: a == b,
    "<>": lambda a, b: a != b,
    "<": lambda a, b: a is not None and b is not None and a < b,
    "<=": lambda a, b: a is not None and b is not None and a <= b,
    ">": lambda a, b: a is not None and b is not None and a > b,
    ">=": lambda a, b: a is not None and b is not None and a >= b,
}


class _Expression:
    """Evaluates the condition grammar produced by boto3's expression builder."""

    def __init__(self, expr: str, item: dict[str, Any], names: dict[str, str], values: dict[str, Any]):
        self.tokens = _TOKEN.findall(expr)
        self.pos = 0
        self.item = item
        self.names = names
        self.values = values

    def peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, expected: str | None = None) -> str:
        tok = self.tokens[self.pos]
        if expected is not None and tok != expected:
            raise SyntaxError(f"expected {expected!r}, got {tok!r}")
        self.pos += 1
        return tok

    def operand(self, tok: str) -> Any:
        if tok.startswith("#"):
            return self.item.get(self.names[tok])
        if tok.startswith(":"):
            return self.values[tok]
        raise SyntaxError(tok)

    def evaluate(self) -> bool:
        result = self.disjunction()
        if self.peek() is not None:
            raise SyntaxError(f"trailing {self.peek()!r}")
        return result

    def disjunction(self) -> bool:
        result = self.conjunction()
        while self.peek() == "OR":
            self.take()
            rhs = self.conjunction()
            result = result or rhs
        return result

    def conjunction(self) -> bool:
        result = self.unary()
        while self.peek() == "AND":
            self.take()
            rhs = self.unary()
            result = result and rhs
        return result

    def unary(self) -> bool:
        if self.peek() == "NOT":
            self.take()
            return not self.unary()
        if self.peek() == "(":
            self.take()
            result = self.disjunction()
            self.take(")")
            return result
        return self.predicate()

    def predicate(self) -> bool:
        tok = self.take()
        if tok in ("attribute_exists", "attribute_not_exists"):
            self.take("(")
            name = self.names[self.take()]
            self.take(")")
            return (name in self.item) == (tok == "attribute_exists")
        if tok in ("contains", "begins_with"):
            self.take("(")
            container = self.operand(self.take())
            self.take(",")
            needle = self.operand(self.take())
            self.take(")")
            if container is None:
                return False
            return needle in container if tok == "contains" else str(container).startswith(needle)
        op = self.take()
        return _COMPARE[op](self.operand(tok), self.operand(self.take()))


def matches(
    condition: Any,
    item: dict[str, Any],
    names: dict[str, str] | None = None,
    values: dict[str, Any] | None = None,
    key_condition: bool = False,
) -> bool:
    """Evaluate a condition (builder object or expression string) against an item."""
    if condition is None:
        return True
    names, values = dict(names or {}), dict(values or {})
    if isinstance(condition, ConditionBase):
        built = ConditionExpressionBuilder().build_expression(condition, is_key_condition=key_condition)
        condition = built.condition_expression
        names.update(built.attribute_name_placeholders)
        values.update(built.attribute_value_placeholders)
    return _Expression(condition, item, names, values).evaluate()


def apply_update(item: dict[str, Any], expr: str, names: dict[str, str], values: dict[str, Any]) -> None:
    parts = _CLAUSE.split(expr)
    for action, body in zip(parts[1::2], parts[2::2]):
        for clause in [c.strip() for c in body.split(",") if c.strip()]:
            if action == "REMOVE":
                item.pop(names.get(clause, clause), None)
                continue
            if action == "SET":
                name, placeholder = [s.strip() for s in clause.split("=")]
            else:
                name, placeholder = clause.split()
            name = names.get(name, name)
            value = copy.deepcopy(values[placeholder])
            if action == "SET":
                item[name] = value
            elif action == "ADD":
                current = item.get(name)
                item[name] = (set(current or ()) | value) if isinstance(value, set) else (current or 0) + value
            else:
                remaining = set(item.get(name) or ()) - value
                if remaining:
                    item[name] = remaining
                else:
                    item.pop(name, None)


def _condition_failed(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


class FakeTable:
    def __init__(self, dynamo: FakeDynamo, name: str, key: str, indexes: dict[str, tuple[str, str | None]]):
        self.dynamo = dynamo
        self.name = name
        self.key = key
        self.indexes = indexes
        self.items: dict[str, dict[str, Any]] = {}

    def _current(self, key: dict[str, Any]) -> dict[str, Any]:
        return self.items.get(key[self.key], {})

    def put_item(self, Item, ConditionExpression=None):  # noqa NOSONAR
        with self.dynamo.lock:
            self.dynamo.check_failure("PutItem")
            if not matches(ConditionExpression, self._current(Item)):
                raise _condition_failed("PutItem")
            self.items[Item[self.key]] = copy.deepcopy(dict(Item))
        return {}

    def get_item(self, Key, ConsistentRead=False):  # noqa NOSONAR
        with self.dynamo.lock:
            self.dynamo.check_failure("GetItem")
            item = self.items.get(Key[self.key])
            return {"Item": copy.deepcopy(item)} if item else {}

    def update_item(self, **kwargs):
        with self.dynamo.lock:
            self.dynamo.check_failure("UpdateItem")
            attrs = self.dynamo.apply(self, kwargs, "UpdateItem")
            return {"Attributes": copy.deepcopy(attrs)}

    def delete_item(self, Key, ConditionExpression=None):  # noqa NOSONAR
        with self.dynamo.lock:
            self.dynamo.check_failure("DeleteItem")
            if not matches(ConditionExpression, self._current(Key)):
                raise _condition_failed("DeleteItem")
            self.items.pop(Key[self.key], None)
        return {}

    def query(self, **kwargs):
        with self.dynamo.lock:
            self.dynamo.check_failure("Query")
            _, range_key = self.indexes[kwargs["IndexName"]]
            items = [
                copy.deepcopy(it)
                for it in self.items.values()
                if matches(kwargs["KeyConditionExpression"], it, key_condition=True)
                and matches(kwargs.get("FilterExpression"), it)
            ]
        if range_key:
            items.sort(key=lambda it: it[range_key], reverse=not kwargs.get("ScanIndexForward", True))
        return {"Items": items}

    def scan(self, **kwargs):
        with self.dynamo.lock:
            self.dynamo.check_failure("Scan")
            items = [copy.deepcopy(it) for it in self.items.values() if matches(kwargs.get("FilterExpression"), it)]
        return {"Items": items}


class FakeDynamo:
    """In-memory DynamoDB: each call is atomic, transactions are all-or-nothing."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.tables: dict[str, FakeTable] = {}
        self.fail_with: str | None = None
        self.transactions = 0

    def table(self, name: str, key: str, indexes: dict[str, tuple[str, str | None]] | None = None) -> FakeTable:
        self.tables[name] = FakeTable(self, name, key, indexes or {})
        return self.tables[name]

    def check_failure(self, operation: str) -> None:
        if self.fail_with:
            raise ClientError({"Error": {"Code": self.fail_with, "Message": "injected"}}, operation)

    def apply(self, table: FakeTable, op: dict[str, Any], operation: str) -> dict[str, Any]:
        key = op["Key"]
        current = table._current(key)
        names = op.get("ExpressionAttributeNames") or {}
        values = op.get("ExpressionAttributeValues") or {}
        if not matches(op.get("ConditionExpression"), current, names, values):
            raise _condition_failed(operation)
        item = copy.deepcopy(current) or dict(key)
        apply_update(item, op["UpdateExpression"], names, values)
        table.items[key[table.key]] = item
        return item

    def transact_write_items(self, TransactItems):  # noqa NOSONAR
        with self.lock:
            self.check_failure("TransactWriteItems")
            reasons = []
            for entry in TransactItems:
                (kind, op), = entry.items()
                table = self.tables[op["TableName"]]
                target = op["Item"] if kind == "Put" else op["Key"]
                ok = matches(
                    op.get("ConditionExpression"),
                    table._current(target),
                    op.get("ExpressionAttributeNames"),
                    op.get("ExpressionAttributeValues"),
                )
                reasons.append({"Code": "None" if ok else "ConditionalCheckFailed"})
            if any(r["Code"] != "None" for r in reasons):
                raise ClientError(
                    {
                        "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
                        "CancellationReasons": reasons,
                    },
                    "TransactWriteItems",
                )
            for entry in TransactItems:
                (kind, op), = entry.items()
                table = self.tables[op["TableName"]]
                if kind == "Put":
                    table.items[op["Item"][table.key]] = copy.deepcopy(op["Item"])
                else:
                    self.apply(table, op, "TransactWriteItems")
            self.transactions += 1
        return {}


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def dynamo() -> FakeDynamo:
    return FakeDynamo()


@pytest.fixture()
def classes_table(dynamo: FakeDynamo) -> FakeTable:
    return dynamo.table("classes", "class_id")


@pytest.fixture()
def reservations_table(dynamo: FakeDynamo) -> FakeTable:
    return dynamo.table(
        "reservations",
        "reservation_id",
        indexes={"user_id_index": ("user_id", "class_date"), "class_id_index": ("class_id", None)},
    )


@pytest.fixture()
def catalog(classes_table: FakeTable) -> ClassCatalog:
    return ClassCatalog(classes_table)  # type: ignore[arg-type]


@pytest.fixture()
def ledger(reservations_table: FakeTable) -> ReservationLedger:
    return ReservationLedger(reservations_table)  # type: ignore[arg-type]


@pytest.fixture()
def coordinator(catalog: ClassCatalog, ledger: ReservationLedger, dynamo: FakeDynamo) -> CapacityCoordinator:
    return CapacityCoordinator(catalog, ledger, client=dynamo)  # type: ignore[arg-type]


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def service(
    catalog: ClassCatalog, ledger: ReservationLedger, coordinator: CapacityCoordinator, clock: Clock
) -> ReservationService:
    return ReservationService(catalog, ledger, coordinator, now=clock)


def class_payload(**overrides: Any) -> GymClassCreate:
    base: dict[str, Any] = dict(
        name="Morning Yoga",
        description="Gentle flow to start the day",
        instructor="Ana Garcia",
        category="yoga",
        icon="🧘",
        start_time=NOW + timedelta(days=1),
        end_time=NOW + timedelta(days=1, hours=1),
        total_spots=10,
    )
    base.update(overrides)
    return GymClassCreate(**base)


def member(uid: str = "u-1", **overrides: Any) -> Principal:
    return Principal(uid=uid, display_name=f"Member {uid}", email=f"{uid}@example.com", **overrides)
