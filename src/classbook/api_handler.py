from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext
from mangum import Mangum

from classbook.api import app, metrics

logger = Logger()
# no startup/shutdown hooks; table handles are created at import
handler = Mangum(app, lifespan="off")


def _normalize_http_v2(event: dict[str, Any]) -> None:
    # minimal API Gateway HTTP API v2.0 events (local runs, tests) lack these
    request_context = event.setdefault("requestContext", {})
    http_ctx = request_context.setdefault("http", {})
    http_ctx.setdefault("sourceIp", "127.0.0.1")
    http_ctx.setdefault("userAgent", "pytest")
    request_context.setdefault("stage", "$default")


@metrics.log_metrics
@logger.inject_lambda_context(clear_state=True)
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    if isinstance(event, dict) and event.get("version") == "2.0":
        _normalize_http_v2(event)
        claims = event["requestContext"].get("authorizer", {}).get("jwt", {}).get("claims") or {}
        if claims.get("sub"):
            logger.append_keys(user_id=claims["sub"])

    return handler(event, context)
