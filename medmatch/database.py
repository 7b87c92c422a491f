from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from datetime import datetime
from threading import RLock
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from medmatch.errors import StoreUnavailable
from medmatch.models import (
    Business,
    Doctor,
    MedicalService,
    RequestStatus,
    ServiceRequest,
)

K = TypeVar("K")
V = TypeVar("V")

DEFAULT_TIMEOUT_SECONDS = 5.0


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.

    Every access takes one re-entrant lock, acquired with a bounded timeout so
    a wedged writer surfaces as StoreUnavailable instead of blocking forever.
    """

    def __init__(self, *, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._store: MutableMapping[K, V] = {}
        self._lock = RLock()
        self._timeout = timeout

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the store lock across a read-modify-write sequence."""
        if not self._lock.acquire(timeout=self._timeout):
            raise StoreUnavailable(
                f"store lock not acquired within {self._timeout}s"
            )
        try:
            yield
        finally:
            self._lock.release()

    def put(self, key: K, value: V) -> None:
        with self.transaction():
            self._store[key] = value

    def get(self, key: K) -> V | None:
        with self.transaction():
            return self._store.get(key)

    def all(self) -> list[V]:
        with self.transaction():
            return list(self._store.values())


class RequestFilter(BaseModel):
    """
    Conjunction of request predicates; fields left as None do not filter.
    """

    ids: set[str] | None = None
    statuses: set[RequestStatus] | None = None
    doctor_ref: str | None = None
    assigned: bool | None = None
    business_ref: str | None = None
    service_refs: set[str] | None = None
    original_request_id: str | None = None
    requested_before: datetime | None = None
    is_escalated: bool | None = None

    def matches(self, request: ServiceRequest) -> bool:
        if self.ids is not None and request.id not in self.ids:
            return False
        if self.statuses is not None and request.status not in self.statuses:
            return False
        if self.doctor_ref is not None and request.doctor_ref != self.doctor_ref:
            return False
        if self.assigned is not None and (
            (request.doctor_ref is not None) != self.assigned
        ):
            return False
        if (
            self.business_ref is not None
            and request.business_ref != self.business_ref
        ):
            return False
        if (
            self.service_refs is not None
            and request.service_ref not in self.service_refs
        ):
            return False
        if (
            self.original_request_id is not None
            and request.original_request_id != self.original_request_id
        ):
            return False
        if (
            self.requested_before is not None
            and not request.requested_at < self.requested_before
        ):
            return False
        if (
            self.is_escalated is not None
            and request.is_escalated != self.is_escalated
        ):
            return False
        return True


def _request_key(request_id: str) -> str:
    return f"request:{request_id}"


class RequestStore:
    """
    Service request repository.

    Records are copied on the way in and out, so the only way to change a
    stored request is create() or conditional_update().
    """

    def __init__(self, db: InMemoryKeyValueDatabase[str, Any]) -> None:
        self._db = db

    def transaction(self):
        return self._db.transaction()

    def get(self, request_id: str) -> ServiceRequest | None:
        value = self._db.get(_request_key(request_id))
        if not isinstance(value, ServiceRequest):
            return None
        return value.model_copy(deep=True)

    def find(self, filters: RequestFilter | None = None) -> list[ServiceRequest]:
        filters = filters or RequestFilter()
        return [
            r.model_copy(deep=True)
            for r in self._db.all()
            if isinstance(r, ServiceRequest) and filters.matches(r)
        ]

    def find_group(self, root_id: str) -> list[ServiceRequest]:
        """The root request plus every sibling pointing at it."""
        return [
            r.model_copy(deep=True)
            for r in self._db.all()
            if isinstance(r, ServiceRequest) and r.group_id == root_id
        ]

    def create(self, request: ServiceRequest) -> ServiceRequest:
        with self._db.transaction():
            key = _request_key(request.id)
            if self._db.get(key) is not None:
                raise ValueError(f"request {request.id} already exists")
            self._db.put(key, request.model_copy(deep=True))
        return request

    def conditional_update(
        self,
        request_id: str,
        expected_status: RequestStatus,
        patch: Mapping[str, Any],
        *,
        where: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Atomically apply `patch` if the request is still in `expected_status`
        and every `where` field still holds its expected value.
        Returns True if the update was applied.
        """
        key = _request_key(request_id)
        with self._db.transaction():
            current = self._db.get(key)
            if not isinstance(current, ServiceRequest):
                return False
            if current.status != expected_status:
                return False
            for field, expected in (where or {}).items():
                if getattr(current, field) != expected:
                    return False
            self._db.put(key, current.model_copy(update=dict(patch), deep=True))
            return True


class DoctorDirectory:
    """Doctors, businesses and services, plus the doctor/service join."""

    def __init__(self, db: InMemoryKeyValueDatabase[str, Any]) -> None:
        self._db = db

    def add_doctor(self, doctor: Doctor) -> None:
        self._db.put(f"doctor:{doctor.id}", doctor)

    def add_business(self, business: Business) -> None:
        self._db.put(f"business:{business.id}", business)

    def add_service(self, service: MedicalService) -> None:
        self._db.put(f"service:{service.id}", service)

    def get_doctor(self, doctor_id: str) -> Doctor | None:
        doctor = self._db.get(f"doctor:{doctor_id}")
        return doctor if isinstance(doctor, Doctor) else None

    def get_business(self, business_id: str) -> Business | None:
        business = self._db.get(f"business:{business_id}")
        return business if isinstance(business, Business) else None

    def get_service(self, service_id: str) -> MedicalService | None:
        service = self._db.get(f"service:{service_id}")
        return service if isinstance(service, MedicalService) else None

    def set_doctor_available(self, doctor_id: str, available: bool) -> None:
        key = f"doctor:{doctor_id}"
        with self._db.transaction():
            doctor = self._db.get(key)
            if isinstance(doctor, Doctor):
                self._db.put(
                    key, doctor.model_copy(update={"is_available": available})
                )

    def get_doctor_by_phone(self, phone: str) -> Doctor | None:
        return next(
            (
                d
                for d in self._db.all()
                if isinstance(d, Doctor) and d.phone == phone
            ),
            None,
        )

    def find_doctors_offering_service(
        self,
        service_ref: str,
        exclude_doctor_id: str | None = None,
        *,
        verified_only: bool = False,
        available_only: bool = False,
    ) -> list[Doctor]:
        doctors = [
            d
            for d in self._db.all()
            if isinstance(d, Doctor)
            and d.offers(service_ref)
            and d.id != exclude_doctor_id
            and (d.is_verified or not verified_only)
            and (d.is_available or not available_only)
        ]
        return sorted(doctors, key=lambda d: d.id)
