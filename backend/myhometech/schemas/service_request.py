from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ServiceRequestStatus(str, Enum):
    PENDING = "pending"
    OFFERED = "offered"
    ACCEPTED = "accepted"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ServiceRequestCreate(CamelModel):
    appliance_id: int = Field(gt=0)
    description: str = Field(min_length=1, max_length=5000)
    client_price: float = Field(gt=0)
    valid_minutes: Optional[int] = Field(default=None, gt=0)


class OfferPriceRequest(CamelModel):
    technician_price: float = Field(gt=0)


class AcceptRequest(CamelModel):
    # true: client keeps its own price, false: client takes the technician's offer.
    accept_client_price: bool = True


class ScheduleRequest(CamelModel):
    scheduled_at: datetime
    comment: Optional[str] = Field(default=None, max_length=1000)


class UpdateClientPriceRequest(CamelModel):
    client_price: float = Field(gt=0)


class ServiceRequestOut(CamelModel):
    id: int
    client_id: int
    appliance_id: int
    description: str
    client_price: float
    technician_price: Optional[float] = None
    status: ServiceRequestStatus
    technician_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int


class ErrorOut(BaseModel):
    detail: str
    code: Optional[str] = None


class AuditLogOut(CamelModel):
    id: str
    entity_type: str
    entity_id: str
    action: str
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    actor_type: str
    actor_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
