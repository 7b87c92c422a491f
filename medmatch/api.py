import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from medmatch.availability import AvailabilityView
from medmatch.config import Settings, configure_logging
from medmatch.database import DoctorDirectory, InMemoryKeyValueDatabase, RequestStore
from medmatch.errors import (
    AlreadyAssigned,
    DispatchError,
    DoctorNotEligible,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
)
from medmatch.intake import CreateServiceRequest, create_service_request
from medmatch.intent import RequestReplyIntent, parse_request_reply_intent
from medmatch.models import ServiceRequest
from medmatch.notifier import NotificationGateway
from medmatch.resolver import AcceptanceResolver
from medmatch.scheduler import EscalationScheduler

logger = logging.getLogger(__name__)

router = APIRouter()

_ERROR_STATUS: dict[type[DispatchError], tuple[int, str]] = {
    NotFound: (404, "not_found"),
    DoctorNotEligible: (403, "doctor_not_eligible"),
    InvalidTransition: (409, "invalid_transition"),
    AlreadyAssigned: (409, "already_assigned"),
    StoreUnavailable: (503, "store_unavailable"),
}


def _http_error(exc: DispatchError) -> HTTPException:
    status_code, code = _ERROR_STATUS.get(type(exc), (400, "dispatch_error"))
    return HTTPException(
        status_code=status_code, detail={"error": code, "message": str(exc)}
    )


def _dump(request: ServiceRequest) -> dict:
    return request.model_dump(mode="json")


class DoctorActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    doctor_id: str = Field(alias="doctorId")


class CompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    doctor_id: str | None = Field(default=None, alias="doctorId")


class CancelRequest(BaseModel):
    reason: str | None = None


class InboundMessageRequest(BaseModel):
    from_: str = Field(alias="from")
    body: str
    request_id: str


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/service-requests", status_code=201)
async def create_request(payload: CreateServiceRequest, request: Request) -> dict:
    state = request.app.state
    try:
        created, notified = await create_service_request(
            payload,
            store=state.store,
            directory=state.directory,
            notifier=state.notifier,
            now_fn=state.now_fn,
        )
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return {"service_request": _dump(created), "doctors_notified": notified}


@router.get("/service-requests/available/{doctor_id}")
async def get_available_requests(doctor_id: str, request: Request) -> list[dict]:
    try:
        available = request.app.state.availability.get_available_requests(doctor_id)
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return [_dump(r) for r in available]


@router.get("/service-requests/doctor/{doctor_id}")
async def get_doctor_requests(doctor_id: str, request: Request) -> list[dict]:
    try:
        won = request.app.state.availability.get_doctor_requests(doctor_id)
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return [_dump(r) for r in won]


@router.get("/service-requests/business/{business_id}")
async def get_business_requests(business_id: str, request: Request) -> list[dict]:
    try:
        requests = request.app.state.availability.get_business_requests(business_id)
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return [_dump(r) for r in requests]


@router.get("/service-requests/{request_id}")
async def get_request(request_id: str, request: Request) -> dict:
    found = request.app.state.store.get(request_id)
    if found is None:
        raise _http_error(NotFound(f"Service request {request_id} not found"))
    return _dump(found)


@router.get("/service-requests/{request_id}/siblings")
async def get_sibling_group(request_id: str, request: Request) -> dict:
    try:
        group = request.app.state.availability.get_sibling_group(request_id)
    except DispatchError as exc:
        raise _http_error(exc) from exc
    root = group[0]
    return {
        "root_id": root.id,
        "is_escalated": root.is_escalated,
        "members": [_dump(r) for r in group],
    }


@router.put("/service-requests/{request_id}/accept")
async def accept_request(
    request_id: str, action: DoctorActionRequest, request: Request
) -> dict:
    try:
        accepted = await request.app.state.resolver.accept(
            request_id, action.doctor_id
        )
    except DispatchError as exc:
        logger.info(
            "accept of %s by doctor %s refused: %s", request_id, action.doctor_id, exc
        )
        raise _http_error(exc) from exc
    return _dump(accepted)


@router.put("/service-requests/{request_id}/reject")
async def reject_request(
    request_id: str, action: DoctorActionRequest, request: Request
) -> dict:
    try:
        declined = await request.app.state.resolver.decline(
            request_id, action.doctor_id
        )
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return _dump(declined)


@router.put("/service-requests/{request_id}/complete")
async def complete_request(
    request_id: str, action: CompleteRequest, request: Request
) -> dict:
    try:
        completed = await request.app.state.resolver.complete(
            request_id, action.doctor_id
        )
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return _dump(completed)


@router.put("/service-requests/{request_id}/cancel")
async def cancel_request(
    request_id: str, action: CancelRequest, request: Request
) -> dict:
    try:
        cancelled = await request.app.state.resolver.cancel(request_id, action.reason)
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return _dump(cancelled)


@router.post("/messages/inbound")
async def handle_inbound_message(
    message: InboundMessageRequest, request: Request
) -> dict:
    """A doctor's free-text reply to a request notification."""
    state = request.app.state

    doctor = state.directory.get_doctor_by_phone(message.from_)
    if not doctor:
        raise HTTPException(
            status_code=404, detail="Doctor not found for phone number"
        )

    intent = await parse_request_reply_intent(message.body)

    try:
        if intent == RequestReplyIntent.ACCEPT:
            accepted = await state.resolver.accept(message.request_id, doctor.id)
            return {
                "status": "accepted",
                "request_id": accepted.id,
                "doctor_id": doctor.id,
                "accepted_at": accepted.accepted_at.isoformat(),
            }
        if intent == RequestReplyIntent.DECLINE:
            declined = await state.resolver.decline(message.request_id, doctor.id)
            return {
                "status": "declined",
                "request_id": declined.id,
                "request_status": declined.status.value,
            }
    except AlreadyAssigned:
        return {
            "status": "already_assigned",
            "request_id": message.request_id,
            "message": "Request has already been accepted by another doctor",
        }
    except DispatchError as exc:
        raise _http_error(exc) from exc

    return {
        "status": "not_understood",
        "request_id": message.request_id,
        "intent": intent.value,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.settings.scheduler_enabled:
        app.state.scheduler.start()
    yield
    await app.state.scheduler.stop()


def create_app(
    settings: Settings | None = None,
    *,
    notifier: NotificationGateway | None = None,
) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings

    db: InMemoryKeyValueDatabase[str, object] = InMemoryKeyValueDatabase(
        timeout=settings.store_timeout_seconds
    )
    app.state.database = db
    app.state.store = RequestStore(db)
    app.state.directory = DoctorDirectory(db)
    app.state.notifier = notifier or NotificationGateway(
        settings.notification_webhook_url,
        timeout=settings.notification_timeout_seconds,
    )

    # now_fn/sleep_fn are read through app.state on every call so tests can
    # swap the clock after the app is built
    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.sleep_fn = asyncio.sleep

    def now_fn() -> datetime:
        return app.state.now_fn()

    async def sleep_fn(seconds: float) -> None:
        await app.state.sleep_fn(seconds)

    app.state.resolver = AcceptanceResolver(
        app.state.store, app.state.directory, app.state.notifier, now_fn=now_fn
    )
    app.state.availability = AvailabilityView(app.state.store, app.state.directory)
    app.state.scheduler = EscalationScheduler(
        app.state.store,
        app.state.directory,
        app.state.notifier,
        settings,
        now_fn=now_fn,
        sleep_fn=sleep_fn,
    )

    app.include_router(router)
    return app
