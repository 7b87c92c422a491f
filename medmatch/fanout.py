from collections.abc import Callable, Iterable
from datetime import datetime
from uuid import uuid4

from medmatch.models import (
    COPIED_REQUEST_FIELDS,
    Doctor,
    RequestStatus,
    ServiceRequest,
)

IdFactory = Callable[[], str]


def _new_id() -> str:
    return str(uuid4())


def plan_siblings(
    root: ServiceRequest,
    roster: Iterable[Doctor],
    existing_siblings: Iterable[ServiceRequest] = (),
    *,
    requested_at: datetime,
    id_factory: IdFactory = _new_id,
) -> list[ServiceRequest]:
    """
    Build one pending sibling copy of `root` per alternate doctor.

    Skips the root's own doctor, any doctor already holding a pending
    sibling of the same root, and any doctor who declined a member of the
    group. Output is ordered by doctor id so the same inputs always yield the
    same plan (ids and timestamps aside).
    """
    holding: set[str] = set()
    declined: set[str] = set(root.declined_by_doctors)
    for sibling in existing_siblings:
        if sibling.original_request_id != root.id:
            continue
        declined |= sibling.declined_by_doctors
        if sibling.status == RequestStatus.PENDING and sibling.doctor_ref:
            holding.add(sibling.doctor_ref)

    alternates: dict[str, Doctor] = {}
    for doctor in roster:
        if (
            doctor.id == root.doctor_ref
            or doctor.id in holding
            or doctor.id in declined
        ):
            continue
        alternates.setdefault(doctor.id, doctor)

    copied = {field: getattr(root, field) for field in COPIED_REQUEST_FIELDS}
    return [
        ServiceRequest(
            id=id_factory(),
            doctor_ref=doctor_id,
            status=RequestStatus.PENDING,
            requested_at=requested_at,
            original_request_id=root.id,
            **copied,
        )
        for doctor_id in sorted(alternates)
    ]
