"""
API routes for the ride payment lifecycle.

Domain errors are translated to HTTP statuses by the exception handlers
registered in ``ride_payments.api.main``.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ride_payments.core.cancellation import CancellationOutcome

from .auth import (
    CANCELLATIONS_WRITE,
    CAPTURE_RUN,
    EARNINGS_READ,
    EARNINGS_SETTLE,
    PAYMENTS_AUTHORIZE,
    PAYMENTS_READ,
    PAYMENTS_REFUND,
    QUEUE_INSPECT,
    QUEUE_REMEDIATE,
    RIDES_COMPLETE,
    ServiceIdentity,
    require_capability,
)
from .dependencies import PaymentServices, get_services
from .schemas import (
    AuthorizePaymentRequest,
    CancellationRequest,
    CancellationResponse,
    CancelPaymentRequest,
    CaptureQueueItemResponse,
    CaptureTickResponse,
    EarningsAdjustmentResponse,
    EarningsRecordResponse,
    HealthCheckResponse,
    PaymentIntentResponse,
    PayoutRequest,
    PayoutResponse,
    PendingEarningsResponse,
    RefundRequest,
    RefundResponse,
    RideCompletedRequest,
    RideCompletedResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
ride_router = APIRouter(prefix="/rides", tags=["rides"])
cancellation_router = APIRouter(prefix="/cancellations", tags=["cancellations"])
worker_router = APIRouter(prefix="/worker", tags=["worker"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
earnings_router = APIRouter(prefix="/earnings", tags=["earnings"])
monitoring_router = APIRouter(tags=["monitoring"])


def _cancellation_response(outcome: CancellationOutcome) -> CancellationResponse:
    decision = outcome.decision
    return CancellationResponse(
        cancellation_id=outcome.cancellation_id,
        booking_id=outcome.booking_id,
        payment_intent_id=outcome.payment_intent_id,
        actor_role=decision.actor_role,
        hours_before_departure=decision.hours_before_departure,
        refund_percentage=decision.refund_percentage,
        fee_percentage=decision.fee_percentage,
        outcome=outcome.outcome,
        original_amount=outcome.original_amount,
        refund_amount=outcome.refund_amount,
        fee_amount=outcome.fee_amount,
        payment_status=outcome.payment_status,
    )


@payment_router.post(
    "",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Authorize a booking payment",
    description="Create the payment intent and place a manual-capture hold",
)
async def authorize_payment(
    request: AuthorizePaymentRequest,
    identity: ServiceIdentity = Depends(require_capability(PAYMENTS_AUTHORIZE)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    """
    Authorize a booking's payment.

    Idempotent per booking: repeating the call returns the open intent.
    """
    logger.info(
        "api_authorize_payment_request",
        service=identity.name,
        booking_id=str(request.booking_id),
        amount_subtotal=request.amount_subtotal,
    )
    intent = await services.ledger.authorize(
        ride_id=request.ride_id,
        booking_id=request.booking_id,
        rider_id=request.rider_id,
        driver_id=request.driver_id,
        subtotal=request.amount_subtotal,
        discount_amount=request.discount_amount,
        customer_ref=request.customer_ref,
    )
    return PaymentIntentResponse.model_validate(intent)


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentIntentResponse,
    summary="Get payment intent",
)
async def get_payment(
    payment_id: uuid.UUID,
    identity: ServiceIdentity = Depends(require_capability(PAYMENTS_READ)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    intent = await services.ledger.get(payment_id)
    return PaymentIntentResponse.model_validate(intent)


@payment_router.post(
    "/{payment_id}/cancel",
    response_model=PaymentIntentResponse,
    summary="Void an authorized payment",
)
async def cancel_payment(
    payment_id: uuid.UUID,
    request: CancelPaymentRequest,
    identity: ServiceIdentity = Depends(require_capability(CANCELLATIONS_WRITE)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    logger.info("api_cancel_payment_request", service=identity.name, payment_id=str(payment_id))
    intent = await services.ledger.cancel(payment_id, reason=request.reason)
    return PaymentIntentResponse.model_validate(intent)


@payment_router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    summary="Refund a captured payment",
    description="Create a full or partial refund against the remaining captured balance",
)
async def refund_payment(
    payment_id: uuid.UUID,
    request: RefundRequest,
    identity: ServiceIdentity = Depends(require_capability(PAYMENTS_REFUND)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    logger.info(
        "api_refund_payment_request",
        service=identity.name,
        payment_id=str(payment_id),
        amount_cents=request.amount_cents,
        reason=request.reason,
    )
    refund = await services.ledger.refund(payment_id, request.amount_cents, reason=request.reason)
    return RefundResponse.model_validate(refund)


@ride_router.post(
    "/{ride_id}/completed",
    response_model=RideCompletedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ride completed",
    description="Queue each booking's authorized payment for capture",
)
async def ride_completed(
    ride_id: uuid.UUID,
    request: RideCompletedRequest,
    identity: ServiceIdentity = Depends(require_capability(RIDES_COMPLETE)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    items = await services.queue.enqueue_for_ride(ride_id, request.booking_ids)
    return RideCompletedResponse(
        ride_id=ride_id,
        enqueued=[CaptureQueueItemResponse.model_validate(item) for item in items],
    )


@cancellation_router.post(
    "",
    response_model=List[CancellationResponse],
    summary="Cancel a booking or a whole ride",
    description="Apply the cancellation policy and return refund/fee amounts",
)
async def create_cancellation(
    request: CancellationRequest,
    identity: ServiceIdentity = Depends(require_capability(CANCELLATIONS_WRITE)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    logger.info(
        "api_cancellation_request",
        service=identity.name,
        booking_id=str(request.booking_id) if request.booking_id else None,
        ride_id=str(request.ride_id) if request.ride_id else None,
        actor_role=request.actor_role.value,
    )
    if request.booking_id is not None:
        outcomes = [
            await services.cancellations.cancel_booking(
                request.booking_id,
                request.actor_role,
                request.departure_time,
                reason=request.reason,
                cancelled_by=request.cancelled_by,
            )
        ]
    else:
        outcomes = await services.cancellations.cancel_ride(
            request.ride_id,
            request.actor_role,
            request.departure_time,
            reason=request.reason,
            cancelled_by=request.cancelled_by,
        )
    return [_cancellation_response(outcome) for outcome in outcomes]


@worker_router.post(
    "/capture",
    response_model=CaptureTickResponse,
    summary="Run one capture worker tick",
    description="Cron-style trigger for the capture worker",
)
async def run_capture_tick(
    identity: ServiceIdentity = Depends(require_capability(CAPTURE_RUN)),
    services: PaymentServices = Depends(get_services),
) -> Dict[str, int]:
    logger.info("api_capture_tick_request", service=identity.name)
    return await services.worker.run_once()


@admin_router.get(
    "/capture-queue/failed",
    response_model=List[CaptureQueueItemResponse],
    summary="Dead-lettered capture items",
)
async def list_failed_captures(
    limit: int = Query(default=100, ge=1, le=1000),
    identity: ServiceIdentity = Depends(require_capability(QUEUE_INSPECT)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    items = await services.queue.list_failed(limit)
    return [CaptureQueueItemResponse.model_validate(item) for item in items]


@admin_router.post(
    "/payments/{payment_id}/capture",
    response_model=CaptureQueueItemResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Requeue a stuck capture",
    description=(
        "Give a dead-lettered or never-queued authorized payment a fresh "
        "capture item; the next worker tick captures it"
    ),
)
async def requeue_capture(
    payment_id: uuid.UUID,
    identity: ServiceIdentity = Depends(require_capability(QUEUE_REMEDIATE)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    logger.info(
        "api_capture_requeue_request", service=identity.name, payment_intent_id=str(payment_id)
    )
    item = await services.queue.requeue_failed(payment_id, requested_by=identity.name)
    return CaptureQueueItemResponse.model_validate(item)


@earnings_router.get(
    "/pending",
    response_model=PendingEarningsResponse,
    summary="Pending driver earnings",
    description="Earnings records and reversal adjustments awaiting payout",
)
async def pending_earnings(
    driver_id: Optional[uuid.UUID] = None,
    identity: ServiceIdentity = Depends(require_capability(EARNINGS_READ)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    pending = await services.earnings.list_pending(driver_id)
    return PendingEarningsResponse(
        records=[EarningsRecordResponse.model_validate(r) for r in pending["records"]],
        adjustments=[
            EarningsAdjustmentResponse.model_validate(a) for a in pending["adjustments"]
        ],
    )


@earnings_router.post(
    "/payouts",
    response_model=PayoutResponse,
    summary="Settle earnings into a payout batch",
)
async def settle_payout(
    request: PayoutRequest,
    identity: ServiceIdentity = Depends(require_capability(EARNINGS_SETTLE)),
    services: PaymentServices = Depends(get_services),
) -> Any:
    if not request.record_ids and not request.adjustment_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to settle"
        )
    counts = await services.earnings.mark_paid(
        request.record_ids, request.adjustment_ids, request.payout_batch_id
    )
    return PayoutResponse(payout_batch_id=request.payout_batch_id, **counts)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check database and provider health",
)
async def health(services: PaymentServices = Depends(get_services)) -> Any:
    """Health check endpoint for monitoring."""
    result = await services.health.check_all()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
