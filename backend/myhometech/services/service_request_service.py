"""Service-request lifecycle.

Every mutation is a single read-modify-write on one ``ServiceRequest`` row:
load by id, check ownership, check the current status against the operation's
allowed sources, apply the change, append an audit row and flush. The row's
``version`` column guards the UPDATE, so a writer that read a stale row gets
``ConcurrentModification`` instead of silently overwriting the winner.

Callers own the transaction: functions flush but never commit. A flush that
loses a concurrent update rolls the session back before
``ConcurrentModification`` is raised, so callers reload rather than retry on
the same state.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from myhometech.core.auth import ROLE_CLIENT, ROLE_TECHNICIAN
from myhometech.core.config import get_settings
from myhometech.models.service_request import ServiceRequest
from myhometech.schemas.service_request import (
    AcceptRequest,
    OfferPriceRequest,
    ScheduleRequest,
    ServiceRequestCreate,
    ServiceRequestStatus,
)
from myhometech.services.audit_service import create_audit_log
from myhometech.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

ENTITY_TYPE = "service_request"

ALLOWED_TRANSITIONS = {
    ServiceRequestStatus.PENDING: {
        ServiceRequestStatus.OFFERED,
        ServiceRequestStatus.ACCEPTED,
        ServiceRequestStatus.SCHEDULED,
        ServiceRequestStatus.CANCELLED,
    },
    ServiceRequestStatus.OFFERED: {ServiceRequestStatus.ACCEPTED},
    ServiceRequestStatus.ACCEPTED: {ServiceRequestStatus.SCHEDULED},
    ServiceRequestStatus.SCHEDULED: {ServiceRequestStatus.COMPLETED},
    ServiceRequestStatus.IN_PROGRESS: {ServiceRequestStatus.COMPLETED},
    ServiceRequestStatus.COMPLETED: set(),
    ServiceRequestStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)


class ServiceRequestError(Exception):
    status_code = 400
    code = "service_request_error"

    def __init__(self, message: str, *, request_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class ServiceRequestNotFound(ServiceRequestError):
    status_code = 404
    code = "not_found"


class NotRequestOwner(ServiceRequestError):
    status_code = 403
    code = "not_owner"


class InvalidStatusTransition(ServiceRequestError):
    status_code = 409
    code = "invalid_status"

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[int] = None,
        current: Optional[ServiceRequestStatus] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message, request_id=request_id)
        self.current = current
        self.operation = operation


class ConcurrentModification(ServiceRequestError):
    status_code = 409
    code = "concurrent_modification"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _money(value: float) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return _as_utc(value).isoformat() if value is not None else None


def _reject(exc: ServiceRequestError, operation: str, actor_id: Optional[int]) -> ServiceRequestError:
    logger.warning(
        "service_request id=%s %s rejected code=%s actor=%s",
        exc.request_id,
        operation,
        exc.code,
        actor_id,
    )
    alert_tracker.record(
        "SERVICE_REQUEST_TRANSITION_REJECTED",
        {"operation": operation, "code": exc.code, "request_id": exc.request_id},
    )
    return exc


def _load(db: Session, request_id: int, operation: str, actor_id: Optional[int]) -> ServiceRequest:
    service_request = db.get(ServiceRequest, request_id)
    if service_request is None:
        raise _reject(
            ServiceRequestNotFound(f"Service request {request_id} not found", request_id=request_id),
            operation,
            actor_id,
        )
    return service_request


def _ensure_owner(
    service_request: ServiceRequest,
    field: str,
    actor_id: int,
    operation: str,
) -> None:
    if getattr(service_request, field) != actor_id:
        raise _reject(
            NotRequestOwner(
                f"Service request {service_request.id} does not belong to this {field.split('_')[0]}",
                request_id=service_request.id,
            ),
            operation,
            actor_id,
        )


def _ensure_status(
    service_request: ServiceRequest,
    allowed: Iterable[ServiceRequestStatus],
    operation: str,
    actor_id: int,
) -> ServiceRequestStatus:
    current = ServiceRequestStatus(service_request.status)
    if current not in allowed:
        raise _reject(
            InvalidStatusTransition(
                f"Cannot {operation} service request {service_request.id} in status {current.value}",
                request_id=service_request.id,
                current=current,
                operation=operation,
            ),
            operation,
            actor_id,
        )
    return current


def _flush(db: Session, request_id: int, operation: str, actor_id: Optional[int]) -> None:
    try:
        db.flush()
    except StaleDataError as exc:
        db.rollback()
        alert_tracker.record("SERVICE_REQUEST_CONFLICT", {"operation": operation, "request_id": request_id})
        logger.warning(
            "service_request id=%s %s lost a concurrent update actor=%s",
            request_id,
            operation,
            actor_id,
        )
        raise ConcurrentModification(
            f"Service request {request_id} was modified concurrently, reload and retry",
            request_id=request_id,
        ) from exc


def _apply_transition(
    db: Session,
    service_request: ServiceRequest,
    *,
    operation: str,
    new_status: ServiceRequestStatus,
    actor_type: str,
    actor_id: int,
    now: datetime,
    changes: dict[str, Any],
    ip_address: Optional[str],
    user_agent: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> ServiceRequest:
    current = ServiceRequestStatus(service_request.status)
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise _reject(
            InvalidStatusTransition(
                f"Transition {current.value} -> {new_status.value} is not allowed",
                request_id=service_request.id,
                current=current,
                operation=operation,
            ),
            operation,
            actor_id,
        )

    request_id = service_request.id
    for field, value in changes.items():
        setattr(service_request, field, value)
    service_request.status = new_status.value
    service_request.updated_at = now

    create_audit_log(
        db,
        entity_type=ENTITY_TYPE,
        entity_id=str(request_id),
        action="STATUS_CHANGE",
        old_value={"status": current.value},
        new_value={"status": new_status.value, **_audit_changes(changes)},
        actor_type=actor_type,
        actor_id=str(actor_id),
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"operation": operation, **(metadata or {})},
    )
    _flush(db, request_id, operation, actor_id)
    logger.info(
        "service_request id=%s %s -> %s actor=%s:%s",
        request_id,
        current.value,
        new_status.value,
        actor_type,
        actor_id,
    )
    return service_request


def _audit_changes(changes: dict[str, Any]) -> dict[str, Any]:
    out = {}
    for field, value in changes.items():
        if isinstance(value, datetime):
            out[field] = _iso(value)
        elif isinstance(value, Decimal):
            out[field] = float(value)
        else:
            out[field] = value
    return out


def create_service_request(
    db: Session,
    client_id: int,
    payload: ServiceRequestCreate,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    now = now or _utcnow()
    valid_minutes = payload.valid_minutes or get_settings().default_valid_minutes
    service_request = ServiceRequest(
        client_id=client_id,
        appliance_id=payload.appliance_id,
        description=payload.description,
        client_price=_money(payload.client_price),
        status=ServiceRequestStatus.PENDING.value,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(minutes=valid_minutes),
    )
    db.add(service_request)
    db.flush()

    create_audit_log(
        db,
        entity_type=ENTITY_TYPE,
        entity_id=str(service_request.id),
        action="SERVICE_REQUEST_CREATED",
        old_value=None,
        new_value={"status": service_request.status, "client_price": float(service_request.client_price)},
        actor_type=ROLE_CLIENT,
        actor_id=str(client_id),
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"valid_minutes": valid_minutes},
    )
    db.flush()
    logger.info(
        "service_request id=%s created client=%s appliance=%s expires_at=%s",
        service_request.id,
        client_id,
        payload.appliance_id,
        _iso(service_request.expires_at),
    )
    return service_request


def offer_price(
    db: Session,
    request_id: int,
    technician_id: int,
    payload: OfferPriceRequest,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    operation = "offer_price"
    service_request = _load(db, request_id, operation, technician_id)
    _ensure_status(service_request, {ServiceRequestStatus.PENDING}, operation, technician_id)
    return _apply_transition(
        db,
        service_request,
        operation=operation,
        new_status=ServiceRequestStatus.OFFERED,
        actor_type=ROLE_TECHNICIAN,
        actor_id=technician_id,
        now=now or _utcnow(),
        changes={"technician_id": technician_id, "technician_price": _money(payload.technician_price)},
        ip_address=ip_address,
        user_agent=user_agent,
    )


def accept(
    db: Session,
    request_id: int,
    client_id: int,
    payload: Optional[AcceptRequest] = None,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    operation = "accept"
    now = now or _utcnow()
    service_request = _load(db, request_id, operation, client_id)
    _ensure_owner(service_request, "client_id", client_id, operation)
    _ensure_status(
        service_request,
        {ServiceRequestStatus.PENDING, ServiceRequestStatus.OFFERED},
        operation,
        client_id,
    )
    metadata = None
    if payload is not None:
        metadata = {"accept_client_price": payload.accept_client_price}
    return _apply_transition(
        db,
        service_request,
        operation=operation,
        new_status=ServiceRequestStatus.ACCEPTED,
        actor_type=ROLE_CLIENT,
        actor_id=client_id,
        now=now,
        changes={"accepted_at": now},
        ip_address=ip_address,
        user_agent=user_agent,
        metadata=metadata,
    )


def schedule(
    db: Session,
    request_id: int,
    technician_id: int,
    payload: ScheduleRequest,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    operation = "schedule"
    service_request = _load(db, request_id, operation, technician_id)
    _ensure_owner(service_request, "technician_id", technician_id, operation)
    _ensure_status(service_request, {ServiceRequestStatus.ACCEPTED}, operation, technician_id)
    metadata = {"comment": payload.comment} if payload.comment else None
    return _apply_transition(
        db,
        service_request,
        operation=operation,
        new_status=ServiceRequestStatus.SCHEDULED,
        actor_type=ROLE_TECHNICIAN,
        actor_id=technician_id,
        now=now or _utcnow(),
        changes={"scheduled_at": _as_utc(payload.scheduled_at)},
        ip_address=ip_address,
        user_agent=user_agent,
        metadata=metadata,
    )


def accept_by_technician(
    db: Session,
    request_id: int,
    technician_id: int,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    """Accept a pending request and schedule it for right now in one step."""
    operation = "accept_by_technician"
    now = now or _utcnow()
    service_request = _load(db, request_id, operation, technician_id)
    _ensure_status(service_request, {ServiceRequestStatus.PENDING}, operation, technician_id)
    return _apply_transition(
        db,
        service_request,
        operation=operation,
        new_status=ServiceRequestStatus.SCHEDULED,
        actor_type=ROLE_TECHNICIAN,
        actor_id=technician_id,
        now=now,
        changes={"technician_id": technician_id, "accepted_at": now, "scheduled_at": now},
        ip_address=ip_address,
        user_agent=user_agent,
    )


def complete_by_client(
    db: Session,
    request_id: int,
    client_id: int,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    operation = "complete_by_client"
    now = now or _utcnow()
    service_request = _load(db, request_id, operation, client_id)
    _ensure_owner(service_request, "client_id", client_id, operation)
    _ensure_status(
        service_request,
        {ServiceRequestStatus.SCHEDULED, ServiceRequestStatus.IN_PROGRESS},
        operation,
        client_id,
    )
    return _apply_transition(
        db,
        service_request,
        operation=operation,
        new_status=ServiceRequestStatus.COMPLETED,
        actor_type=ROLE_CLIENT,
        actor_id=client_id,
        now=now,
        changes={"completed_at": now},
        ip_address=ip_address,
        user_agent=user_agent,
    )


def reject_by_technician(
    db: Session,
    request_id: int,
    technician_id: int,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    """Cancel a pending request on a technician's rejection.

    The rejecting technician is kept in ``technician_id`` so the record shows who turned it down.
    """
    operation = "reject_by_technician"
    now = now or _utcnow()
    service_request = _load(db, request_id, operation, technician_id)
    _ensure_status(service_request, {ServiceRequestStatus.PENDING}, operation, technician_id)
    return _apply_transition(
        db,
        service_request,
        operation=operation,
        new_status=ServiceRequestStatus.CANCELLED,
        actor_type=ROLE_TECHNICIAN,
        actor_id=technician_id,
        now=now,
        changes={"technician_id": technician_id, "cancelled_at": now},
        ip_address=ip_address,
        user_agent=user_agent,
    )


def cancel_by_client(
    db: Session,
    request_id: int,
    client_id: int,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    operation = "cancel_by_client"
    now = now or _utcnow()
    service_request = _load(db, request_id, operation, client_id)
    _ensure_owner(service_request, "client_id", client_id, operation)
    _ensure_status(service_request, {ServiceRequestStatus.PENDING}, operation, client_id)
    return _apply_transition(
        db,
        service_request,
        operation=operation,
        new_status=ServiceRequestStatus.CANCELLED,
        actor_type=ROLE_CLIENT,
        actor_id=client_id,
        now=now,
        changes={"cancelled_at": now},
        ip_address=ip_address,
        user_agent=user_agent,
    )


def update_client_price(
    db: Session,
    request_id: int,
    client_id: int,
    client_price: float,
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ServiceRequest:
    operation = "update_client_price"
    service_request = _load(db, request_id, operation, client_id)
    _ensure_owner(service_request, "client_id", client_id, operation)
    _ensure_status(
        service_request,
        {ServiceRequestStatus.PENDING, ServiceRequestStatus.OFFERED},
        operation,
        client_id,
    )

    old_price = float(service_request.client_price)
    service_request.client_price = _money(client_price)
    service_request.updated_at = now or _utcnow()
    create_audit_log(
        db,
        entity_type=ENTITY_TYPE,
        entity_id=str(request_id),
        action="CLIENT_PRICE_UPDATED",
        old_value={"client_price": old_price},
        new_value={"client_price": float(service_request.client_price)},
        actor_type=ROLE_CLIENT,
        actor_id=str(client_id),
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"operation": operation},
    )
    _flush(db, request_id, operation, client_id)
    return service_request


def find_by_id(db: Session, request_id: int) -> Optional[ServiceRequest]:
    return db.get(ServiceRequest, request_id)


def find_pending(db: Session, *, now: Optional[datetime] = None) -> list[ServiceRequest]:
    """Pending requests whose expiry window is still open.

    Expired requests keep their ``pending`` status; they only drop out of this listing.
    """
    now = now or _utcnow()
    stmt = (
        select(ServiceRequest)
        .where(
            ServiceRequest.status == ServiceRequestStatus.PENDING.value,
            ServiceRequest.expires_at > now,
        )
        .order_by(desc(ServiceRequest.created_at), desc(ServiceRequest.id))
    )
    return list(db.execute(stmt).scalars().all())


def find_all(db: Session) -> list[ServiceRequest]:
    stmt = select(ServiceRequest).order_by(desc(ServiceRequest.created_at), desc(ServiceRequest.id))
    return list(db.execute(stmt).scalars().all())


def find_by_client(db: Session, client_id: int) -> list[ServiceRequest]:
    stmt = (
        select(ServiceRequest)
        .where(ServiceRequest.client_id == client_id)
        .order_by(desc(ServiceRequest.created_at), desc(ServiceRequest.id))
    )
    return list(db.execute(stmt).scalars().all())


def find_by_technician(db: Session, technician_id: int) -> list[ServiceRequest]:
    stmt = (
        select(ServiceRequest)
        .where(ServiceRequest.technician_id == technician_id)
        .order_by(ServiceRequest.scheduled_at.asc().nulls_last(), ServiceRequest.id)
    )
    return list(db.execute(stmt).scalars().all())


def _calendar(
    db: Session,
    *,
    owner_column,
    owner_id: int,
    statuses: Iterable[ServiceRequestStatus],
    start: Optional[datetime],
    end: Optional[datetime],
) -> list[ServiceRequest]:
    stmt = select(ServiceRequest).where(
        owner_column == owner_id,
        ServiceRequest.status.in_([status.value for status in statuses]),
    )
    if start is not None:
        stmt = stmt.where(ServiceRequest.scheduled_at >= _as_utc(start))
    if end is not None:
        stmt = stmt.where(ServiceRequest.scheduled_at <= _as_utc(end))
    stmt = stmt.order_by(ServiceRequest.scheduled_at.asc(), ServiceRequest.id)
    return list(db.execute(stmt).scalars().all())


def technician_calendar(
    db: Session,
    technician_id: int,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[ServiceRequest]:
    return _calendar(
        db,
        owner_column=ServiceRequest.technician_id,
        owner_id=technician_id,
        statuses=[ServiceRequestStatus.SCHEDULED],
        start=start,
        end=end,
    )


def client_calendar(
    db: Session,
    client_id: int,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[ServiceRequest]:
    return _calendar(
        db,
        owner_column=ServiceRequest.client_id,
        owner_id=client_id,
        statuses=[ServiceRequestStatus.SCHEDULED, ServiceRequestStatus.COMPLETED],
        start=start,
        end=end,
    )
