import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from medmatch.database import DoctorDirectory, RequestStore
from medmatch.errors import DoctorNotEligible, NotFound
from medmatch.models import ServiceRequest, UrgencyLevel
from medmatch.notifier import NotificationGateway

logger = logging.getLogger(__name__)


class CreateServiceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: str = Field(alias="businessId")
    service_id: str = Field(alias="serviceId")
    doctor_id: str | None = Field(default=None, alias="doctorId")
    urgency_level: UrgencyLevel = Field(
        default=UrgencyLevel.MEDIUM, alias="urgencyLevel"
    )
    service_type: str | None = Field(default=None, alias="serviceType")
    description: str | None = None
    estimated_duration: int | None = Field(
        default=None, alias="estimatedDuration", ge=1
    )
    requested_service_datetime: datetime | None = Field(
        default=None, alias="requestedServiceDateTime"
    )
    total_amount: Decimal | None = Field(default=None, alias="totalAmount", ge=0)
    notes: str | None = None


async def create_service_request(
    payload: CreateServiceRequest,
    *,
    store: RequestStore,
    directory: DoctorDirectory,
    notifier: NotificationGateway,
    now_fn: Callable[[], datetime],
) -> tuple[ServiceRequest, int]:
    """
    Create a root request, either assigned to one doctor or broadcast to all
    verified, available doctors offering the service. Returns the request and
    the number of doctors notified.
    """
    if directory.get_business(payload.business_id) is None:
        raise NotFound(f"Business {payload.business_id} not found")
    if directory.get_service(payload.service_id) is None:
        raise NotFound(f"Service {payload.service_id} not found")

    if payload.doctor_id is not None:
        doctor = directory.get_doctor(payload.doctor_id)
        if doctor is None:
            raise NotFound(f"Doctor {payload.doctor_id} not found")
        if not doctor.is_available:
            raise DoctorNotEligible("Doctor is currently unavailable")
        if not doctor.is_verified:
            raise DoctorNotEligible(
                "Doctor is not verified and cannot receive service requests"
            )
        recipients = [doctor]
    else:
        recipients = directory.find_doctors_offering_service(
            payload.service_id, verified_only=True, available_only=True
        )

    request = store.create(
        ServiceRequest(
            id=str(uuid4()),
            business_ref=payload.business_id,
            service_ref=payload.service_id,
            doctor_ref=payload.doctor_id,
            requested_at=now_fn(),
            urgency_level=payload.urgency_level,
            service_type=payload.service_type,
            description=payload.description,
            estimated_duration=payload.estimated_duration,
            requested_service_datetime=payload.requested_service_datetime,
            total_amount=payload.total_amount,
            notes=payload.notes,
        )
    )
    logger.info(
        "created %s request %s for service %s",
        "direct" if request.doctor_ref else "broadcast",
        request.id,
        request.service_ref,
    )

    results = await asyncio.gather(
        *(notifier.notify_doctor_assigned(d.id, request.id) for d in recipients),
        return_exceptions=True,
    )
    for doctor, result in zip(recipients, results):
        if isinstance(result, Exception):
            logger.error(
                "Notifying doctor %s of request %s failed: %s",
                doctor.id,
                request.id,
                result,
            )
    return request, len(recipients)
