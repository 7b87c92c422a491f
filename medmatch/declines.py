import logging

from medmatch.database import RequestStore
from medmatch.errors import NotFound
from medmatch.models import ServiceRequest

logger = logging.getLogger(__name__)


class DeclineTracker:
    """
    Per-request record of doctors who explicitly declined it. The set only
    grows; nothing here removes a doctor once recorded.
    """

    def __init__(self, store: RequestStore) -> None:
        self.store = store

    def record(self, request_id: str, doctor_id: str) -> bool:
        """Returns True if the decline was new."""
        with self.store.transaction():
            request = self.store.get(request_id)
            if request is None:
                raise NotFound(f"Service request {request_id} not found")
            if doctor_id in request.declined_by_doctors:
                return False
            updated = self.store.conditional_update(
                request_id,
                request.status,
                {"declined_by_doctors": request.declined_by_doctors | {doctor_id}},
            )
        if updated:
            logger.info("doctor %s declined request %s", doctor_id, request_id)
        return updated

    def declined_by(self, request_id: str) -> set[str]:
        request = self.store.get(request_id)
        if request is None:
            raise NotFound(f"Service request {request_id} not found")
        return set(request.declined_by_doctors)

    @staticmethod
    def has_declined(request: ServiceRequest, doctor_id: str) -> bool:
        return doctor_id in request.declined_by_doctors
