"""
Domain models for service requests and the doctors who fill them.
"""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


class RequestStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class UrgencyLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class Doctor(BaseModel):
    id: str
    name: str
    phone: str
    offered_service_refs: set[str] = Field(default_factory=set)
    is_available: bool = True
    is_verified: bool = False

    def offers(self, service_ref: str) -> bool:
        return service_ref in self.offered_service_refs


class Business(BaseModel):
    id: str
    name: str
    phone: str | None = None


class MedicalService(BaseModel):
    id: str
    name: str


class ServiceRequest(BaseModel):
    id: str
    business_ref: str
    service_ref: str
    doctor_ref: str | None = None  # None => broadcast copy open to any doctor
    status: RequestStatus = RequestStatus.PENDING
    requested_at: datetime
    is_escalated: bool = False
    original_request_id: str | None = None  # set on every sibling copy
    declined_by_doctors: set[str] = Field(default_factory=set)

    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    service_type: str | None = None
    description: str | None = None
    estimated_duration: int | None = None  # hours
    requested_service_datetime: datetime | None = None
    total_amount: Decimal | None = None
    notes: str | None = None

    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    rejected_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    @property
    def group_id(self) -> str:
        """Id of the root request of this record's sibling group."""
        return self.original_request_id or self.id


# Fields a sibling copy takes verbatim from its root.
COPIED_REQUEST_FIELDS = (
    "business_ref",
    "service_ref",
    "urgency_level",
    "service_type",
    "description",
    "estimated_duration",
    "requested_service_datetime",
    "total_amount",
    "notes",
)
