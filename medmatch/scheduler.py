"""
Escalation scheduler.

Every period, pending requests whose assigned doctor has not answered within
the staleness window are escalated: each gets one sibling copy per other
doctor offering the same service. The `is_escalated` flag is set
with a conditional write before any sibling is created, so a request is fanned
out at most once even if a tick crashes halfway through.

Only one scheduler instance may tick against a given store. Running several
replicas needs an external lock around run_tick().
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from pydantic import BaseModel, Field

from medmatch.config import Settings
from medmatch.database import DoctorDirectory, RequestFilter, RequestStore
from medmatch.errors import MissingReference, StoreUnavailable
from medmatch.fanout import plan_siblings
from medmatch.models import RequestStatus, ServiceRequest
from medmatch.notifier import NotificationGateway

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]


class TickReport(BaseModel):
    started_at: datetime
    deferred: bool = False
    escalated: list[str] = Field(default_factory=list)
    siblings_created: dict[str, list[str]] = Field(default_factory=dict)
    no_eligible_doctors: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class EscalationScheduler:
    def __init__(
        self,
        store: RequestStore,
        directory: DoctorDirectory,
        notifier: NotificationGateway,
        settings: Settings,
        *,
        now_fn: NowFn,
        sleep_fn: SleepFn,
    ) -> None:
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.settings = settings
        self.now_fn = now_fn
        self.sleep_fn = sleep_fn
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    def find_stale_requests(self, now: datetime) -> list[ServiceRequest]:
        candidates = self.store.find(
            RequestFilter(
                statuses={RequestStatus.PENDING},
                assigned=True,
                requested_before=now - self.settings.min_staleness,
                is_escalated=False,
            )
        )
        return sorted(
            (
                r
                for r in candidates
                if r.requested_at < now - self.settings.staleness_for(r.service_ref)
            ),
            key=lambda r: (r.requested_at, r.id),
        )

    async def run_tick(self) -> TickReport:
        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> TickReport:
        now = self.now_fn()
        report = TickReport(started_at=now)

        try:
            stale = self.find_stale_requests(now)
        except StoreUnavailable:
            logger.warning("Request store unavailable; escalation tick deferred")
            report.deferred = True
            return report

        if stale:
            logger.info("Found %d stale request(s) to escalate", len(stale))

        for request in stale:
            try:
                claimed = self.store.conditional_update(
                    request.id,
                    RequestStatus.PENDING,
                    {"is_escalated": True},
                    where={"is_escalated": False},
                )
            except StoreUnavailable:
                logger.warning(
                    "Could not mark request %s escalated; retrying next tick",
                    request.id,
                )
                continue
            if not claimed:
                # accepted/declined since the query, or another tick got it
                continue

            report.escalated.append(request.id)
            try:
                created = await self._fan_out(request, now)
            except Exception:
                logger.exception(
                    "Escalation of request %s failed; it stays marked escalated",
                    request.id,
                )
                report.failed.append(request.id)
                continue

            if created:
                report.siblings_created[request.id] = [s.id for s in created]
            else:
                logger.info(
                    "No other doctors for service %s; request %s escalated"
                    " without siblings",
                    request.service_ref,
                    request.id,
                )
                report.no_eligible_doctors.append(request.id)

        return report

    async def _fan_out(
        self, request: ServiceRequest, now: datetime
    ) -> list[ServiceRequest]:
        if self.directory.get_business(request.business_ref) is None:
            raise MissingReference(f"business {request.business_ref} not found")
        if self.directory.get_service(request.service_ref) is None:
            raise MissingReference(f"service {request.service_ref} not found")

        root = request
        if request.original_request_id is not None:
            root = self.store.get(request.original_request_id)
            if root is None:
                raise MissingReference(
                    f"root request {request.original_request_id} not found"
                )

        roster = self.directory.find_doctors_offering_service(
            request.service_ref,
            exclude_doctor_id=request.doctor_ref,
        )
        existing = self.store.find(RequestFilter(original_request_id=root.id))
        planned = plan_siblings(root, roster, existing, requested_at=now)

        created: list[ServiceRequest] = []
        for sibling in planned:
            try:
                created.append(self.store.create(sibling))
            except StoreUnavailable:
                logger.exception(
                    "Could not create sibling of %s for doctor %s",
                    root.id,
                    sibling.doctor_ref,
                )

        results = await asyncio.gather(
            *(
                self.notifier.notify_doctor_assigned(s.doctor_ref, s.id)
                for s in created
            ),
            return_exceptions=True,
        )
        for sibling, result in zip(created, results):
            if isinstance(result, Exception):
                logger.error(
                    "Notifying doctor %s of request %s failed: %s",
                    sibling.doctor_ref,
                    sibling.id,
                    result,
                )

        if created:
            logger.info(
                "Request %s escalated to %d doctor(s)", request.id, len(created)
            )
        return created

    async def run_forever(self) -> None:
        interval = self.settings.escalation_interval_seconds
        logger.info("Escalation scheduler started (every %ss)", interval)
        try:
            while True:
                try:
                    await self.run_tick()
                except Exception:
                    logger.exception("Escalation tick failed; retrying next period")
                await self.sleep_fn(interval)
        except asyncio.CancelledError:
            logger.info("Escalation scheduler stopped")
            return

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
