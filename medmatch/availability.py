import logging

from medmatch.database import DoctorDirectory, RequestFilter, RequestStore
from medmatch.errors import NotFound
from medmatch.models import RequestStatus, ServiceRequest

logger = logging.getLogger(__name__)


class AvailabilityView:
    def __init__(self, store: RequestStore, directory: DoctorDirectory) -> None:
        self.store = store
        self.directory = directory

    def get_available_requests(self, doctor_id: str) -> list[ServiceRequest]:
        """
        Pending requests this doctor may act on: those assigned to them, plus
        unassigned ones for a service they offer that they have not declined.
        """
        doctor = self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise NotFound(f"Doctor {doctor_id} not found")
        if not doctor.is_verified:
            logger.info("unverified doctor %s polled available requests", doctor_id)
            return []

        pending = {RequestStatus.PENDING}
        assigned = self.store.find(
            RequestFilter(statuses=pending, doctor_ref=doctor_id)
        )
        broadcast = [
            r
            for r in self.store.find(
                RequestFilter(
                    statuses=pending,
                    assigned=False,
                    service_refs=set(doctor.offered_service_refs),
                )
            )
            if doctor_id not in r.declined_by_doctors
        ]
        return sorted(
            assigned + broadcast, key=lambda r: r.requested_at, reverse=True
        )

    def get_doctor_requests(self, doctor_id: str) -> list[ServiceRequest]:
        """Requests the doctor has won: accepted and completed."""
        if self.directory.get_doctor(doctor_id) is None:
            raise NotFound(f"Doctor {doctor_id} not found")
        requests = self.store.find(
            RequestFilter(
                statuses={RequestStatus.ACCEPTED, RequestStatus.COMPLETED},
                doctor_ref=doctor_id,
            )
        )
        return sorted(requests, key=lambda r: r.requested_at, reverse=True)

    def get_business_requests(self, business_id: str) -> list[ServiceRequest]:
        requests = self.store.find(RequestFilter(business_ref=business_id))
        return sorted(requests, key=lambda r: r.requested_at, reverse=True)

    def get_sibling_group(self, request_id: str) -> list[ServiceRequest]:
        request = self.store.get(request_id)
        if request is None:
            raise NotFound(f"Service request {request_id} not found")
        group = self.store.find_group(request.group_id)
        # root first, then siblings in creation order
        return sorted(
            group,
            key=lambda r: (r.original_request_id is not None, r.requested_at, r.id),
        )
