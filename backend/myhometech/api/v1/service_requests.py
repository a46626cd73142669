from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from myhometech.core.auth import (
    ROLE_ADMIN,
    ROLE_CLIENT,
    ROLE_TECHNICIAN,
    CurrentUser,
    get_current_user,
    require_roles,
)
from myhometech.core.dependencies import get_db
from myhometech.models.service_request import AuditLog, ServiceRequest
from myhometech.schemas.service_request import (
    AcceptRequest,
    AuditLogOut,
    ErrorOut,
    OfferPriceRequest,
    ScheduleRequest,
    ServiceRequestCreate,
    ServiceRequestOut,
    ServiceRequestStatus,
    UpdateClientPriceRequest,
)
from myhometech.services import service_request_service as lifecycle
from myhometech.services.audit_service import list_audit_logs
from myhometech.utils.rate_limit import get_client_ip, get_user_agent

router = APIRouter()

ERROR_RESPONSES = {
    403: {"model": ErrorOut},
    404: {"model": ErrorOut},
    409: {"model": ErrorOut},
}


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_out(service_request: ServiceRequest) -> ServiceRequestOut:
    return ServiceRequestOut(
        id=service_request.id,
        client_id=service_request.client_id,
        appliance_id=service_request.appliance_id,
        description=service_request.description,
        client_price=float(service_request.client_price),
        technician_price=float(service_request.technician_price) if service_request.technician_price is not None else None,
        status=ServiceRequestStatus(service_request.status),
        technician_id=service_request.technician_id,
        created_at=_utc(service_request.created_at),
        updated_at=_utc(service_request.updated_at),
        expires_at=_utc(service_request.expires_at),
        accepted_at=_utc(service_request.accepted_at),
        scheduled_at=_utc(service_request.scheduled_at),
        completed_at=_utc(service_request.completed_at),
        cancelled_at=_utc(service_request.cancelled_at),
        version=service_request.version,
    )


def _to_list(items: list[ServiceRequest]) -> list[ServiceRequestOut]:
    return [_to_out(item) for item in items]


def _audit_to_out(log: AuditLog) -> AuditLogOut:
    return AuditLogOut(
        id=str(log.id),
        entity_type=log.entity_type,
        entity_id=log.entity_id,
        action=log.action,
        old_value=log.old_value,
        new_value=log.new_value,
        actor_type=log.actor_type,
        actor_id=log.actor_id,
        metadata=log.audit_meta,
        timestamp=_utc(log.timestamp),
    )


def _calendar_range(start: Optional[datetime], end: Optional[datetime]) -> tuple[Optional[datetime], Optional[datetime]]:
    # Offset-less query values are read as UTC.
    start, end = _utc(start), _utc(end)
    if start and end and start > end:
        raise HTTPException(400, "startDate must not be after endDate")
    return start, end


def _ensure_self_or_admin(current_user: CurrentUser, identity_id: int) -> None:
    if current_user.role == ROLE_ADMIN:
        return
    if current_user.id != identity_id:
        raise HTTPException(403, "Forbidden")


def _commit(db: Session, service_request: ServiceRequest) -> ServiceRequestOut:
    db.commit()
    db.refresh(service_request)
    return _to_out(service_request)


@router.post("/service-requests", response_model=ServiceRequestOut, status_code=201)
async def create_service_request(
    payload: ServiceRequestCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_CLIENT)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.create_service_request(
        db,
        current_user.id,
        payload,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.get("/service-requests", response_model=list[ServiceRequestOut])
async def list_all_service_requests(
    current_user: CurrentUser = Depends(require_roles(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    return _to_list(lifecycle.find_all(db))


@router.get("/service-requests/pending", response_model=list[ServiceRequestOut])
async def list_pending_service_requests(
    current_user: CurrentUser = Depends(require_roles(ROLE_TECHNICIAN, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    return _to_list(lifecycle.find_pending(db))


@router.get("/service-requests/client/{client_id}", response_model=list[ServiceRequestOut])
async def list_client_service_requests(
    client_id: int,
    current_user: CurrentUser = Depends(require_roles(ROLE_CLIENT, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    _ensure_self_or_admin(current_user, client_id)
    return _to_list(lifecycle.find_by_client(db, client_id))


@router.get("/service-requests/technician/{technician_id}", response_model=list[ServiceRequestOut])
async def list_technician_service_requests(
    technician_id: int,
    current_user: CurrentUser = Depends(require_roles(ROLE_TECHNICIAN, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    _ensure_self_or_admin(current_user, technician_id)
    return _to_list(lifecycle.find_by_technician(db, technician_id))


@router.get("/service-requests/calendar/technician/{technician_id}", response_model=list[ServiceRequestOut])
async def technician_calendar(
    technician_id: int,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: CurrentUser = Depends(require_roles(ROLE_TECHNICIAN, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    _ensure_self_or_admin(current_user, technician_id)
    start_date, end_date = _calendar_range(start_date, end_date)
    return _to_list(lifecycle.technician_calendar(db, technician_id, start=start_date, end=end_date))


@router.get("/service-requests/calendar/client/{client_id}", response_model=list[ServiceRequestOut])
async def client_calendar(
    client_id: int,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: CurrentUser = Depends(require_roles(ROLE_CLIENT, ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    _ensure_self_or_admin(current_user, client_id)
    start_date, end_date = _calendar_range(start_date, end_date)
    return _to_list(lifecycle.client_calendar(db, client_id, start=start_date, end=end_date))


@router.get("/service-requests/{request_id}", response_model=ServiceRequestOut, responses={404: {"model": ErrorOut}})
async def get_service_request(
    request_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.find_by_id(db, request_id)
    if service_request is None:
        raise lifecycle.ServiceRequestNotFound(f"Service request {request_id} not found", request_id=request_id)
    return _to_out(service_request)


@router.get("/service-requests/{request_id}/audit-logs", response_model=list[AuditLogOut])
async def get_service_request_audit_logs(
    request_id: int,
    current_user: CurrentUser = Depends(require_roles(ROLE_ADMIN)),
    db: Session = Depends(get_db),
):
    if lifecycle.find_by_id(db, request_id) is None:
        raise lifecycle.ServiceRequestNotFound(f"Service request {request_id} not found", request_id=request_id)
    logs = list_audit_logs(db, entity_type=lifecycle.ENTITY_TYPE, entity_id=str(request_id))
    return [_audit_to_out(log) for log in logs]


@router.post("/service-requests/{request_id}/offer", response_model=ServiceRequestOut, responses=ERROR_RESPONSES)
async def offer_price(
    request_id: int,
    payload: OfferPriceRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_TECHNICIAN)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.offer_price(
        db,
        request_id,
        current_user.id,
        payload,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.post("/service-requests/{request_id}/accept", response_model=ServiceRequestOut, responses=ERROR_RESPONSES)
async def accept(
    request_id: int,
    request: Request,
    payload: Optional[AcceptRequest] = Body(None),
    current_user: CurrentUser = Depends(require_roles(ROLE_CLIENT)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.accept(
        db,
        request_id,
        current_user.id,
        payload,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.post("/service-requests/{request_id}/schedule", response_model=ServiceRequestOut, responses=ERROR_RESPONSES)
async def schedule(
    request_id: int,
    payload: ScheduleRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_TECHNICIAN)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.schedule(
        db,
        request_id,
        current_user.id,
        payload,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.post(
    "/service-requests/{request_id}/accept-and-schedule",
    response_model=ServiceRequestOut,
    responses=ERROR_RESPONSES,
)
async def accept_and_schedule(
    request_id: int,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_TECHNICIAN)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.accept_by_technician(
        db,
        request_id,
        current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.post("/service-requests/{request_id}/complete", response_model=ServiceRequestOut, responses=ERROR_RESPONSES)
async def complete(
    request_id: int,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_CLIENT)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.complete_by_client(
        db,
        request_id,
        current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.post("/service-requests/{request_id}/reject", response_model=ServiceRequestOut, responses=ERROR_RESPONSES)
async def reject(
    request_id: int,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_TECHNICIAN)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.reject_by_technician(
        db,
        request_id,
        current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.post("/service-requests/{request_id}/cancel", response_model=ServiceRequestOut, responses=ERROR_RESPONSES)
async def cancel(
    request_id: int,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_CLIENT)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.cancel_by_client(
        db,
        request_id,
        current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)


@router.patch(
    "/service-requests/{request_id}/client-price",
    response_model=ServiceRequestOut,
    responses=ERROR_RESPONSES,
)
async def update_client_price(
    request_id: int,
    payload: UpdateClientPriceRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(ROLE_CLIENT)),
    db: Session = Depends(get_db),
):
    service_request = lifecycle.update_client_price(
        db,
        request_id,
        current_user.id,
        payload.client_price,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _commit(db, service_request)
