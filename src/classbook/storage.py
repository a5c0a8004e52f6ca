from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.client import DynamoDBClient
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBClient = Any  # type: ignore[assignment]
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from . import config
from .errors import StorageFailure
from .models import as_utc

logger = Logger()

_dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")

_CONDITION_FAILED = "ConditionalCheckFailedException"
_TRANSACTION_CANCELLED = "TransactionCanceledException"


class ConditionFailed(Exception):
    """A write was rejected by its condition expression."""


def classes_table() -> DynamoDBTable:
    return _dynamodb.Table(config.CLASSES_TABLE_NAME)


def reservations_table() -> DynamoDBTable:
    return _dynamodb.Table(config.RESERVATIONS_TABLE_NAME)


def client() -> DynamoDBClient:
    # the resource's client applies the same type serialization as Table,
    # so transact items can carry plain python values
    return cast(DynamoDBClient, _dynamodb.meta.client)


def dt_to_iso(dt: datetime) -> str:
    return as_utc(dt).isoformat()


def iso_to_dt(s: str) -> datetime:
    return as_utc(datetime.fromisoformat(s))


def _is_condition_failure(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    if code == _CONDITION_FAILED:
        return True
    if code == _TRANSACTION_CANCELLED:
        reasons = cast(list[dict[str, Any]], exc.response.get("CancellationReasons") or [])
        return any(r.get("Code") == "ConditionalCheckFailed" for r in reasons)
    return False


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate boto errors into ``ConditionFailed`` or ``StorageFailure``."""
    try:
        yield
    except ClientError as exc:
        if _is_condition_failure(exc):
            raise ConditionFailed(operation) from exc
        logger.exception("DynamoDB call failed", extra={"operation": operation})
        raise StorageFailure() from exc
    except BotoCoreError as exc:
        logger.exception("DynamoDB unreachable", extra={"operation": operation})
        raise StorageFailure() from exc


def scan_all(table: DynamoDBTable, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        with storage_errors("Scan"):
            resp = cast(dict[str, Any], table.scan(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def query_all(table: DynamoDBTable, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        with storage_errors("Query"):
            resp = cast(dict[str, Any], table.query(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key
