from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import ConditionBase, ConditionExpressionBuilder

from .storage import DynamoDBClient, storage_errors

logger = Logger()


def _with_condition(op: dict[str, Any], condition: ConditionBase | None) -> dict[str, Any]:
    # boto3 only renders condition builders at the top level of a request,
    # so transact items need the expression and placeholders spelled out
    if condition is None:
        return op
    built = ConditionExpressionBuilder().build_expression(condition)
    op["ConditionExpression"] = built.condition_expression
    if built.attribute_name_placeholders:
        op["ExpressionAttributeNames"] = {
            **op.get("ExpressionAttributeNames", {}),
            **built.attribute_name_placeholders,
        }
    if built.attribute_value_placeholders:
        op["ExpressionAttributeValues"] = {
            **op.get("ExpressionAttributeValues", {}),
            **built.attribute_value_placeholders,
        }
    return op


class Transaction:
    """Collects writes for a single ``TransactWriteItems`` call.

    Either every write commits or none does. A write whose condition does not
    hold aborts the whole unit with ``ConditionFailed``.
    """

    def __init__(self, client: DynamoDBClient) -> None:
        self._client = client
        self._items: list[dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._items)

    def put(self, table_name: str, item: dict[str, Any], condition: ConditionBase | None = None) -> None:
        op: dict[str, Any] = {"TableName": table_name, "Item": item}
        self._items.append({"Put": _with_condition(op, condition)})

    def update(
        self,
        table_name: str,
        key: dict[str, Any],
        update_expression: str,
        names: dict[str, str] | None = None,
        values: dict[str, Any] | None = None,
        condition: ConditionBase | None = None,
    ) -> None:
        op: dict[str, Any] = {
            "TableName": table_name,
            "Key": key,
            "UpdateExpression": update_expression,
        }
        if names:
            op["ExpressionAttributeNames"] = dict(names)
        if values:
            op["ExpressionAttributeValues"] = dict(values)
        self._items.append({"Update": _with_condition(op, condition)})

    def commit(self) -> None:
        if not self._items:
            return
        logger.debug("Committing transaction", extra={"writes": len(self._items)})
        with storage_errors("TransactWriteItems"):
            self._client.transact_write_items(TransactItems=self._items)  # type: ignore[arg-type]
        self._items = []
