"""
FastAPI Application Entry Point

Group Ordering Service - shared, time-boxed table orders reached by invite code.
Supports both the mock payment gateway (development) and Stripe (staging/production).

Lock, cancel, checkout and limit or payment-structure changes are leader only;
the caller names itself in the X-Participant-Id header.

Endpoints:
    - POST /group-orders/create: Open a group order for a table
    - POST /group-orders/join: Join through an invite code
    - GET  /group-orders/validate-join-code: Check an invite code
    - GET  /group-orders/{id}: Full group order projection
    - PUT  /group-orders/{id}/participant: Update a participant
    - PUT  /group-orders/{id}/spending-limits: Replace spending limits
    - PUT  /group-orders/{id}/spending-limits/{participantId}: One participant's limit
    - PUT  /group-orders/{id}/payment-structure: Choose how the bill is split
    - POST /group-orders/{id}/add-items | remove-items | leave
    - POST /group-orders/{id}/lock | cancel | checkout
    - GET  /group-orders/{id}/settlement: Amount due per participant
    - GET  /group-orders/{id}/payment-status | summary
    - GET  /health: System health check
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from group_ordering.core.config import get_settings, setup_logging
from group_ordering.core.exceptions import GroupOrderError
from group_ordering.database import engine, init_db
from group_ordering.schemas import (
    AddItemsRequest,
    ApiResponse,
    CancelGroupOrderRequest,
    CheckoutData,
    CreateGroupOrderData,
    CreateGroupOrderRequest,
    ErrorResponse,
    GroupOrderResponse,
    GroupOrderSummary,
    HealthResponse,
    JoinGroupOrderData,
    JoinGroupOrderRequest,
    LeaveGroupOrderData,
    LeaveGroupOrderRequest,
    OrderSummaryData,
    ParticipantOut,
    PaymentStatusData,
    PaymentStructureOut,
    RemoveItemsRequest,
    SettlementData,
    SpendingLimitsOut,
    UpdateParticipantLimitRequest,
    UpdateParticipantRequest,
    UpdatePaymentStructureRequest,
    UpdateSpendingLimitsRequest,
    ValidateJoinCodeData,
)
from group_ordering.services.group_order import (
    CheckoutCoordinator,
    GroupOrderRegistry,
    GroupOrderSettings,
    ParticipantIdentity,
    get_registry,
)
from group_ordering.services.group_order.session import GroupOrderSession
from group_ordering.services.payment import BasePaymentService, get_payment_service

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    if settings.persist_group_orders:
        await init_db()
        logger.info("✅ Database initialized")
    else:
        logger.info("ℹ️ Persistence disabled, group orders live in memory only")

    payment_service = get_payment_service()
    logger.info(f"✅ Payment Service: {payment_service.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    registry = get_registry()
    sweeper = asyncio.create_task(registry.run_sweeper())
    logger.info(f"✅ Expiry sweeper running every {settings.sweep_interval_seconds}s")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Shared table ordering: diners join one order through an invite code, "
        "with per-participant spending limits and bill splitting."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_checkout_coordinator(
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> CheckoutCoordinator:
    return CheckoutCoordinator(payment_service, currency=settings.stripe_currency)


def acting_participant(
    x_participant_id: str = Header(..., alias="X-Participant-Id"),
) -> str:
    """Participant on whose behalf a leader-only request is made."""
    return x_participant_id


def group_order_payload(session: GroupOrderSession) -> ApiResponse[GroupOrderResponse]:
    return ApiResponse(data=GroupOrderResponse.model_validate(session.snapshot()))


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    registry: GroupOrderRegistry = Depends(get_registry),
    payment_service: BasePaymentService = Depends(get_payment_service),
) -> HealthResponse:
    """Verify all system components are operational."""
    if registry.store is None:
        db_status = "disabled"
    elif await registry.store.health_check():
        db_status = "healthy"
    else:
        db_status = "unhealthy"

    payment_status = "healthy" if await payment_service.health_check() else "unhealthy"

    overall = "operational" if (
        db_status in ("healthy", "disabled") and payment_status == "healthy"
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        payment_service=payment_status,
        active_group_orders=registry.active_count,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# GROUP ORDER LIFECYCLE
# =============================================================================

@app.post(
    "/group-orders/create",
    response_model=ApiResponse[CreateGroupOrderData],
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Group Orders"],
    summary="Open a group order",
)
async def create_group_order(
    body: CreateGroupOrderRequest,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    group_settings = GroupOrderSettings(
        max_participants=settings.default_max_participants,
    )
    if body.settings is not None:
        if body.settings.max_participants is not None:
            group_settings.max_participants = body.settings.max_participants
        group_settings.allow_anonymous = body.settings.allow_anonymous

    session = await registry.create(
        restaurant_id=body.restaurant_id,
        table_id=body.table_id,
        ttl_minutes=body.expiration_minutes,
        settings=group_settings,
    )
    return ApiResponse(data=CreateGroupOrderData(
        group_order_id=session.id,
        invite_code=session.invite_code,
        display_code=registry.codes.format_for_display(session.invite_code),
        expires_at=session.expires_at,
    ))


@app.post(
    "/group-orders/join",
    response_model=ApiResponse[JoinGroupOrderData],
    responses=ERROR_RESPONSES,
    tags=["Group Orders"],
    summary="Join through an invite code",
)
async def join_group_order(
    body: JoinGroupOrderRequest,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = registry.resolve_invite_code(body.invite_code)
    participant = await session.join(
        ParticipantIdentity(name=body.user_name, email=body.user_email),
        payment_method_id=body.payment_method_id,
    )
    return ApiResponse(data=JoinGroupOrderData(
        participant_id=participant.id,
        group_order_id=session.id,
        name=participant.name,
        is_leader=session.leader_id == participant.id,
    ))


@app.get(
    "/group-orders/validate-join-code",
    response_model=ApiResponse[ValidateJoinCodeData],
    tags=["Group Orders"],
    summary="Check whether an invite code can be joined",
)
async def validate_join_code(
    join_code: Optional[str] = Query(None, alias="joinCode"),
    registry: GroupOrderRegistry = Depends(get_registry),
):
    is_valid, session = registry.validate_join_code(join_code)
    summary = GroupOrderSummary.model_validate(session.summary()) if session else None
    return ApiResponse(data=ValidateJoinCodeData(is_valid=is_valid, group_order=summary))


@app.get(
    "/group-orders/{group_order_id}",
    response_model=ApiResponse[GroupOrderResponse],
    responses={404: {"model": ErrorResponse}},
    tags=["Group Orders"],
    summary="Get a group order",
)
async def get_group_order(
    group_order_id: str,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    return group_order_payload(session)


@app.post(
    "/group-orders/{group_order_id}/lock",
    response_model=ApiResponse[GroupOrderResponse],
    responses=ERROR_RESPONSES,
    tags=["Group Orders"],
    summary="Freeze participants, items and the payment plan",
)
async def lock_group_order(
    group_order_id: str,
    actor_id: str = Depends(acting_participant),
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    await session.lock(actor_id=actor_id)
    return group_order_payload(session)


@app.post(
    "/group-orders/{group_order_id}/cancel",
    response_model=ApiResponse[GroupOrderResponse],
    responses=ERROR_RESPONSES,
    tags=["Group Orders"],
    summary="Cancel a group order",
)
async def cancel_group_order(
    group_order_id: str,
    body: Optional[CancelGroupOrderRequest] = None,
    actor_id: str = Depends(acting_participant),
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    await session.cancel(reason=body.reason if body else None, actor_id=actor_id)
    return group_order_payload(session)


# =============================================================================
# PARTICIPANTS & ITEMS
# =============================================================================

@app.post(
    "/group-orders/{group_order_id}/leave",
    response_model=ApiResponse[LeaveGroupOrderData],
    responses=ERROR_RESPONSES,
    tags=["Participants"],
    summary="Leave a group order",
)
async def leave_group_order(
    group_order_id: str,
    body: LeaveGroupOrderRequest,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    participant = await session.leave(body.participant_id)
    return ApiResponse(data=LeaveGroupOrderData(participant_id=participant.id))


@app.put(
    "/group-orders/{group_order_id}/participant",
    response_model=ApiResponse[ParticipantOut],
    responses=ERROR_RESPONSES,
    tags=["Participants"],
    summary="Update a participant's name, email or payment method",
)
async def update_participant(
    group_order_id: str,
    body: UpdateParticipantRequest,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    participant = await session.update_participant(
        body.participant_id,
        name=body.user_name,
        email=body.user_email,
        payment_method_id=body.payment_method_id,
    )
    data = participant.to_dict()
    data["is_leader"] = participant.id == session.leader_id
    return ApiResponse(data=ParticipantOut.model_validate(data))


@app.post(
    "/group-orders/{group_order_id}/add-items",
    response_model=ApiResponse[ParticipantOut],
    responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse}},
    tags=["Participants"],
    summary="Add items for a participant",
)
async def add_items(
    group_order_id: str,
    body: AddItemsRequest,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    participant = await session.add_items(
        body.participant_id,
        [item.model_dump() for item in body.items],
    )
    return ApiResponse(data=ParticipantOut.model_validate(participant.to_dict()))


@app.post(
    "/group-orders/{group_order_id}/remove-items",
    response_model=ApiResponse[ParticipantOut],
    responses=ERROR_RESPONSES,
    tags=["Participants"],
    summary="Remove items from a participant",
)
async def remove_items(
    group_order_id: str,
    body: RemoveItemsRequest,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    participant = await session.remove_items(body.participant_id, body.item_ids)
    return ApiResponse(data=ParticipantOut.model_validate(participant.to_dict()))


# =============================================================================
# LIMITS & PAYMENT
# =============================================================================

@app.put(
    "/group-orders/{group_order_id}/spending-limits",
    response_model=ApiResponse[SpendingLimitsOut],
    responses=ERROR_RESPONSES,
    tags=["Limits & Payment"],
    summary="Replace spending limits",
)
async def update_spending_limits(
    group_order_id: str,
    body: UpdateSpendingLimitsRequest,
    actor_id: str = Depends(acting_participant),
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    limits = await session.set_spending_limits(
        enabled=body.spending_limits.enabled,
        default_limit=body.spending_limits.default_limit,
        participant_limits=body.spending_limits.participant_limits,
        actor_id=actor_id,
    )
    return ApiResponse(data=SpendingLimitsOut.model_validate(limits.to_dict()))


@app.put(
    "/group-orders/{group_order_id}/spending-limits/{participant_id}",
    response_model=ApiResponse[SpendingLimitsOut],
    responses=ERROR_RESPONSES,
    tags=["Limits & Payment"],
    summary="Set or clear one participant's spending limit",
)
async def update_participant_limit(
    group_order_id: str,
    participant_id: str,
    body: UpdateParticipantLimitRequest,
    actor_id: str = Depends(acting_participant),
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    limits = await session.set_participant_limit(participant_id, body.limit, actor_id=actor_id)
    return ApiResponse(data=SpendingLimitsOut.model_validate(limits.to_dict()))


@app.put(
    "/group-orders/{group_order_id}/payment-structure",
    response_model=ApiResponse[PaymentStructureOut],
    responses=ERROR_RESPONSES,
    tags=["Limits & Payment"],
    summary="Choose how the bill is split",
)
async def update_payment_structure(
    group_order_id: str,
    body: UpdatePaymentStructureRequest,
    actor_id: str = Depends(acting_participant),
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    plan = await session.set_payment_structure(
        body.payment_structure,
        custom_splits=body.custom_splits,
        payer_id=body.payer_id,
        actor_id=actor_id,
    )
    return ApiResponse(data=PaymentStructureOut.model_validate(plan.to_dict()))


@app.get(
    "/group-orders/{group_order_id}/settlement",
    response_model=ApiResponse[SettlementData],
    responses={404: {"model": ErrorResponse}},
    tags=["Limits & Payment"],
    summary="Amount due per participant",
)
async def get_settlement(
    group_order_id: str,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    return ApiResponse(data=SettlementData(
        payment_structure=session.payment_plan.structure.value,
        total=float(session.total),
        settlement={pid: float(amount) for pid, amount in session.settlement().items()},
    ))


@app.get(
    "/group-orders/{group_order_id}/payment-status",
    response_model=ApiResponse[PaymentStatusData],
    responses={404: {"model": ErrorResponse}},
    tags=["Limits & Payment"],
    summary="Who has paid and what is still owed",
)
async def get_payment_status(
    group_order_id: str,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    return ApiResponse(data=PaymentStatusData.model_validate(session.payment_status()))


@app.get(
    "/group-orders/{group_order_id}/summary",
    response_model=ApiResponse[OrderSummaryData],
    responses={404: {"model": ErrorResponse}},
    tags=["Limits & Payment"],
    summary="Item totals across the group and the payment breakdown",
)
async def get_order_summary(
    group_order_id: str,
    registry: GroupOrderRegistry = Depends(get_registry),
):
    session = await registry.get(group_order_id)
    return ApiResponse(data=OrderSummaryData.model_validate(session.order_summary()))


@app.post(
    "/group-orders/{group_order_id}/checkout",
    response_model=ApiResponse[CheckoutData],
    responses=ERROR_RESPONSES,
    tags=["Limits & Payment"],
    summary="Charge every participant and finalize",
)
async def checkout_group_order(
    group_order_id: str,
    actor_id: str = Depends(acting_participant),
    registry: GroupOrderRegistry = Depends(get_registry),
    coordinator: CheckoutCoordinator = Depends(get_checkout_coordinator),
):
    session = await registry.get(group_order_id)
    result = await coordinator.checkout(session, actor_id=actor_id)
    return ApiResponse(data=CheckoutData.model_validate(result.to_dict()))


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(GroupOrderError)
async def group_order_exception_handler(request: Request, exc: GroupOrderError) -> JSONResponse:
    """Domain errors become the standard failure envelope."""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.error, message=exc.message).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and parameters are reported as InvalidRequest."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request."
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(error="InvalidRequest", message=message).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="InternalServerError",
            message=str(exc) if settings.debug else "An unexpected error occurred",
        ).model_dump(),
    )


# =============================================================================
# RUN SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "group_ordering.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
