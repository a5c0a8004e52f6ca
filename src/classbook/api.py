from __future__ import annotations

from typing import Any, Literal

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from .config import METRICS_NAMESPACE
from .errors import BookingError, Forbidden
from .models import GymClass, GymClassCreate, GymClassUpdate, Principal, Reservation, ReservationSummary, Weekday
from .service import ReservationService

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace=METRICS_NAMESPACE)

app = FastAPI(title="Class Booking API", version="0.1.0")
service = ReservationService()


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    logger.info("Request rejected", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
    )


def _jwt_claims(request: Request) -> dict[str, Any]:
    # Mangum exposes the raw API Gateway event in the ASGI scope
    event = request.scope.get("aws.event") or {}
    authorizer = event.get("requestContext", {}).get("authorizer") or {}
    return authorizer.get("jwt", {}).get("claims") or {}


def current_principal(request: Request) -> Principal:
    claims = _jwt_claims(request)
    headers = request.headers
    uid = claims.get("sub") or headers.get("x-user-id")
    if not uid:
        raise HTTPException(status_code=401, detail="Authentication required")
    role = claims.get("custom:role") or headers.get("x-user-role") or "user"
    return Principal(
        uid=uid,
        display_name=claims.get("name") or headers.get("x-user-name") or "Member",
        email=claims.get("email") or headers.get("x-user-email") or "",
        role="admin" if role == "admin" else "user",
    )


def require_admin(principal: Principal = Depends(current_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden()
    return principal


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# classes

@tracer.capture_method
@app.get("/classes", response_model=list[GymClass])
def list_bookable_classes(category: str | None = None, day: Weekday | None = None) -> list[GymClass]:
    return service.list_bookable_classes(category, day)


@tracer.capture_method
@app.get("/classes/all", response_model=list[GymClass])
def list_all_classes(_: Principal = Depends(require_admin)) -> list[GymClass]:
    return service.list_classes()


@tracer.capture_method
@app.get("/classes/{class_id}", response_model=GymClass)
def get_class(class_id: str) -> GymClass:
    return service.get_class(class_id)


@tracer.capture_method
@app.post("/classes", response_model=GymClass, status_code=201)
def create_class(payload: GymClassCreate, _: Principal = Depends(require_admin)) -> GymClass:
    return service.create_class(payload)


@tracer.capture_method
@app.patch("/classes/{class_id}", response_model=GymClass)
def update_class(class_id: str, payload: GymClassUpdate, _: Principal = Depends(require_admin)) -> GymClass:
    return service.update_class(class_id, payload)


@tracer.capture_method
@app.delete("/classes/{class_id}")
def delete_class(class_id: str, _: Principal = Depends(require_admin)) -> Response:
    service.delete_class(class_id)
    return Response(status_code=204)


@tracer.capture_method
@app.post("/classes/{class_id}/reconcile", response_model=GymClass)
def reconcile_class(class_id: str, _: Principal = Depends(require_admin)) -> GymClass:
    return service.reconcile_class(class_id)


@tracer.capture_method
@app.get("/classes/{class_id}/reservations", response_model=list[Reservation])
def class_reservations(class_id: str, _: Principal = Depends(require_admin)) -> list[Reservation]:
    return service.class_reservations(class_id)


@tracer.capture_method
@app.get("/classes/{class_id}/reservations/me", response_model=Reservation)
def my_class_reservation(class_id: str, principal: Principal = Depends(current_principal)) -> Reservation:
    return service.find_reservation(principal.uid, class_id)


# reservations

@tracer.capture_method
@app.post("/classes/{class_id}/reservations", response_model=Reservation, status_code=201)
def reserve(class_id: str, principal: Principal = Depends(current_principal)) -> Reservation:
    try:
        reservation = service.reserve(principal, class_id)
    except BookingError as exc:
        metrics.add_metric(name="ReservationRejected", value=1, unit=MetricUnit.Count)
        logger.info("Reservation rejected", extra={"class_id": class_id, "code": exc.code})
        raise
    metrics.add_metric(name="ReservationCreated", value=1, unit=MetricUnit.Count)
    return reservation


@tracer.capture_method
@app.post("/reservations/{reservation_id}/cancel", response_model=Reservation)
def cancel_reservation(reservation_id: str, principal: Principal = Depends(current_principal)) -> Reservation:
    reservation = service.cancel(reservation_id, principal)
    metrics.add_metric(name="ReservationCancelled", value=1, unit=MetricUnit.Count)
    return reservation


@tracer.capture_method
@app.get("/reservations/{reservation_id}", response_model=Reservation)
def get_reservation(reservation_id: str, principal: Principal = Depends(current_principal)) -> Reservation:
    return service.get_reservation(reservation_id, principal)


@tracer.capture_method
@app.get("/reservations", response_model=list[Reservation])
def all_reservations(_: Principal = Depends(require_admin)) -> list[Reservation]:
    return service.all_reservations()


@tracer.capture_method
@app.get("/me/reservations", response_model=list[Reservation])
def my_reservations(
    view: Literal["upcoming", "completed", "cancelled", "all"] = "all",
    principal: Principal = Depends(current_principal),
) -> list[Reservation]:
    views = {
        "upcoming": service.list_upcoming,
        "completed": service.list_completed,
        "cancelled": service.list_cancelled,
        "all": service.list_reservations,
    }
    return views[view](principal.uid)


@tracer.capture_method
@app.get("/me/reservations/summary", response_model=ReservationSummary)
def my_reservation_summary(principal: Principal = Depends(current_principal)) -> ReservationSummary:
    return service.reservation_summary(principal.uid)
