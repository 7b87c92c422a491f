"""
Acceptance resolver: accept/decline/complete/cancel transitions on service
requests.

Each transition runs as one store transaction. For acceptance that
transaction covers the whole sibling group: the winner's
pending -> accepted write and the cancellation of every other pending
member commit together, so a second acceptance in the same group can only
observe the outcome and fail with AlreadyAssigned.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from medmatch.database import DoctorDirectory, RequestStore
from medmatch.declines import DeclineTracker
from medmatch.errors import (
    AlreadyAssigned,
    DoctorNotEligible,
    InvalidTransition,
    NotFound,
)
from medmatch.models import (
    Doctor,
    RequestStatus,
    ServiceRequest,
)
from medmatch.notifier import NotificationGateway

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

WON_STATUSES = frozenset({RequestStatus.ACCEPTED, RequestStatus.COMPLETED})
ACTIVE_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.ACCEPTED})


class AcceptanceResolver:
    def __init__(
        self,
        store: RequestStore,
        directory: DoctorDirectory,
        notifier: NotificationGateway,
        *,
        now_fn: NowFn,
        declines: DeclineTracker | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.now_fn = now_fn
        self.declines = declines or DeclineTracker(store)

    def _get(self, request_id: str) -> ServiceRequest:
        request = self.store.get(request_id)
        if request is None:
            raise NotFound(f"Service request {request_id} not found")
        return request

    def _doctor(self, doctor_id: str) -> Doctor:
        doctor = self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise NotFound(f"Doctor {doctor_id} not found")
        return doctor

    def claim(
        self, request_id: str, doctor_id: str
    ) -> tuple[ServiceRequest, list[str]]:
        """
        Synchronous core of accept(). Returns the accepted request and the
        ids of the group members it cancelled.
        """
        doctor = self._doctor(doctor_id)
        if not doctor.is_verified:
            raise DoctorNotEligible(
                "Only verified doctors can accept service requests"
            )

        with self.store.transaction():
            request = self._get(request_id)
            group = self.store.find_group(request.group_id)

            winner = next((m for m in group if m.status in WON_STATUSES), None)
            if winner is not None:
                raise AlreadyAssigned(
                    f"Service request {request_id} was already accepted"
                    f" (request {winner.id}, doctor {winner.doctor_ref})"
                )
            if request.status != RequestStatus.PENDING:
                raise InvalidTransition(
                    f"Service request {request_id} is {request.status.value}"
                )
            if request.doctor_ref is not None and request.doctor_ref != doctor_id:
                raise AlreadyAssigned(
                    f"Service request {request_id} is assigned to another doctor"
                )
            if self.declines.has_declined(request, doctor_id):
                raise DoctorNotEligible(
                    f"Doctor {doctor_id} declined service request {request_id}"
                )

            now = self.now_fn()
            accepted = self.store.conditional_update(
                request.id,
                RequestStatus.PENDING,
                {
                    "status": RequestStatus.ACCEPTED,
                    "doctor_ref": doctor_id,
                    "accepted_at": now,
                },
            )
            if not accepted:
                raise AlreadyAssigned(
                    f"Service request {request_id} is no longer pending"
                )

            cancelled = []
            for member in group:
                if member.id == request.id or member.status != RequestStatus.PENDING:
                    continue
                if self.store.conditional_update(
                    member.id,
                    RequestStatus.PENDING,
                    {
                        "status": RequestStatus.CANCELLED,
                        "cancelled_at": now,
                        "cancellation_reason": "Request was accepted by another doctor",
                    },
                ):
                    cancelled.append(member.id)

            result = self._get(request.id)
            self.directory.set_doctor_available(doctor_id, False)

        logger.info(
            "request %s accepted by doctor %s; cancelled %d group member(s)",
            request_id,
            doctor_id,
            len(cancelled),
        )
        return result, cancelled

    async def accept(self, request_id: str, doctor_id: str) -> ServiceRequest:
        request, _ = self.claim(request_id, doctor_id)
        try:
            await self.notifier.notify_business_accepted(request.id, doctor_id)
        except Exception:
            # acceptance is already committed
            logger.exception(
                "failed to notify business of acceptance of request %s", request.id
            )
        return request

    async def decline(self, request_id: str, doctor_id: str) -> ServiceRequest:
        """
        Directly assigned record -> rejected. Broadcast record -> stays pending
        but is hidden from this doctor from now on. Siblings are untouched.
        """
        self._doctor(doctor_id)

        with self.store.transaction():
            request = self._get(request_id)
            if request.status != RequestStatus.PENDING:
                raise InvalidTransition(
                    f"Service request {request_id} is {request.status.value}"
                )
            if request.doctor_ref is not None and request.doctor_ref != doctor_id:
                raise AlreadyAssigned(
                    f"Service request {request_id} is assigned to another doctor"
                )

            self.declines.record(request.id, doctor_id)

            if request.doctor_ref == doctor_id:
                self.store.conditional_update(
                    request.id,
                    RequestStatus.PENDING,
                    {"status": RequestStatus.REJECTED, "rejected_at": self.now_fn()},
                )
                logger.info(
                    "request %s rejected by assigned doctor %s", request_id, doctor_id
                )

            return self._get(request.id)

    async def complete(
        self, request_id: str, doctor_id: str | None = None
    ) -> ServiceRequest:
        with self.store.transaction():
            request = self._get(request_id)
            if request.status != RequestStatus.ACCEPTED:
                raise InvalidTransition(
                    f"Service request {request_id} cannot be completed"
                    f" from {request.status.value}"
                )
            if doctor_id is not None and request.doctor_ref != doctor_id:
                raise DoctorNotEligible(
                    f"Doctor {doctor_id} is not assigned to service request {request_id}"
                )
            self.store.conditional_update(
                request.id,
                RequestStatus.ACCEPTED,
                {"status": RequestStatus.COMPLETED, "completed_at": self.now_fn()},
            )
            self.directory.set_doctor_available(request.doctor_ref, True)
            return self._get(request.id)

    async def cancel(
        self, request_id: str, reason: str | None = None
    ) -> ServiceRequest:
        """
        Business-side cancellation of the logical request: every pending or
        accepted member of its sibling group is cancelled.
        """
        with self.store.transaction():
            request = self._get(request_id)
            active = [
                m
                for m in self.store.find_group(request.group_id)
                if m.status in ACTIVE_STATUSES
            ]
            if not active:
                raise InvalidTransition(
                    f"Service request {request_id} cannot be cancelled"
                )
            now = self.now_fn()
            for member in active:
                self.store.conditional_update(
                    member.id,
                    member.status,
                    {
                        "status": RequestStatus.CANCELLED,
                        "cancelled_at": now,
                        "cancellation_reason": reason or "Cancelled by business",
                    },
                )
                if member.status == RequestStatus.ACCEPTED:
                    self.directory.set_doctor_available(member.doctor_ref, True)
            logger.info(
                "request group %s cancelled (%d member(s))",
                request.group_id,
                len(active),
            )
            return self._get(request.id)
