import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from medmatch.api import create_app
from medmatch.config import Settings
from medmatch.database import RequestStore
from medmatch.models import (
    Business,
    Doctor,
    MedicalService,
    ServiceRequest,
    UrgencyLevel,
)
from medmatch.notifier import NotificationGateway

T0 = datetime(2025, 7, 2, 0, 0, 0, tzinfo=UTC)


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def _dump_db(app, *, root_id: str | None = None) -> None:
    store: RequestStore = app.state.store
    requests = store.find_group(root_id) if root_id else store.find()

    _p("db requests:")
    for r in sorted(requests, key=lambda x: (x.requested_at, x.id)):
        _p(
            f"  - {r.id} | service={r.service_ref} doctor={r.doctor_ref} "
            f"status={r.status.value} escalated={r.is_escalated} "
            f"original={r.original_request_id} "
            f"declined={sorted(r.declined_by_doctors)}"
        )


class ManualClock:
    """
    Sleep function for the scheduler loop. Frozen time only moves when the
    test calls advance(); sleepers wake once it passes their wake-up time.
    """

    def __init__(self, frozen_time):
        self.frozen_time = frozen_time
        self.requested: list[float] = []
        self._moved = asyncio.Condition()

    async def advance(self, delta: timedelta) -> None:
        self.frozen_time.tick(delta=delta)
        _p(f"[clock] +{delta} -> {datetime.now(UTC).isoformat()}")
        async with self._moved:
            self._moved.notify_all()

    async def sleep(self, seconds: float) -> None:
        self.requested.append(seconds)
        wake_at = datetime.now(UTC) + timedelta(seconds=seconds)
        async with self._moved:
            await self._moved.wait_for(lambda: datetime.now(UTC) >= wake_at)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        scheduler_enabled=False,
        staleness_threshold_minutes=2,
        escalation_interval_seconds=60,
    )


@pytest.fixture
def notifier_mock() -> AsyncMock:
    return AsyncMock(spec=NotificationGateway)


@pytest.fixture
def app(settings, notifier_mock):
    return create_app(settings, notifier=notifier_mock)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client

    await app.state.scheduler.stop()


@pytest.fixture
def setup_test_data(app):
    directory = app.state.directory

    directory.add_business(
        Business(id="biz-1", name="Northside Care Home", phone="+15559000")
    )
    directory.add_service(MedicalService(id="svc-gp", name="GP home visit"))
    directory.add_service(MedicalService(id="svc-ecg", name="ECG"))

    for doctor in [
        Doctor(
            id="doc-a",
            name="Ada Okafor",
            phone="+15550001",
            offered_service_refs={"svc-gp"},
            is_verified=True,
        ),
        Doctor(
            id="doc-b",
            name="Ben Marsh",
            phone="+15550002",
            offered_service_refs={"svc-gp"},
            is_verified=True,
        ),
        Doctor(
            id="doc-c",
            name="Cleo Varga",
            phone="+15550003",
            offered_service_refs={"svc-gp", "svc-ecg"},
            is_verified=True,
        ),
        Doctor(
            id="doc-d",
            name="Dev Anand",
            phone="+15550004",
            offered_service_refs={"svc-ecg"},
            is_verified=True,
        ),
        Doctor(
            id="doc-u",
            name="Uma Lind",
            phone="+15550005",
            offered_service_refs={"svc-ecg"},
            is_verified=False,
        ),
    ]:
        directory.add_doctor(doctor)

    return directory


def make_request(
    request_id: str,
    *,
    doctor_ref: str | None = "doc-a",
    service_ref: str = "svc-gp",
    requested_at: datetime = T0,
    **fields,
) -> ServiceRequest:
    return ServiceRequest(
        id=request_id,
        business_ref=fields.pop("business_ref", "biz-1"),
        service_ref=service_ref,
        doctor_ref=doctor_ref,
        requested_at=requested_at,
        urgency_level=fields.pop("urgency_level", UrgencyLevel.HIGH),
        description=fields.pop("description", "Resident with chest pain"),
        total_amount=fields.pop("total_amount", Decimal("120.00")),
        **fields,
    )


@pytest.fixture
def root_request(app, setup_test_data) -> ServiceRequest:
    return app.state.store.create(make_request("req-0"))
