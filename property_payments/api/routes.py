"""
API routes for the payment transaction engine.

Engine errors are not caught here; the application's exception handler turns
them into {"error": {...}} bodies with the error's HTTP status.
"""
from dataclasses import asdict
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from property_payments.core.engine import PaymentEngine
from property_payments.core.enums import TransactionStatus
from property_payments.monitoring.health import HealthCheck

from .dependencies import get_health_check, get_payment_engine, require_admin_key
from .schemas import (
    CreateTransactionRequest,
    ErrorResponse,
    GatewayInfoResponse,
    HealthCheckResponse,
    ReceiptResponse,
    StatisticsResponse,
    TransactionEventResponse,
    TransactionListResponse,
    TransactionResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}

# Create routers
transaction_router = APIRouter(
    prefix="/transactions", tags=["transactions"], responses=ERROR_RESPONSES
)
user_router = APIRouter(prefix="/users", tags=["users"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
gateway_router = APIRouter(prefix="/gateways", tags=["gateways"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)
monitoring_router = APIRouter(tags=["monitoring"])

TimeoutParam = Query(
    default=None, gt=0, le=300, description="Seconds to wait for the gateway before giving up"
)


@transaction_router.post(
    "",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a transaction",
    description="Create a pending transaction; idempotent on reference",
)
async def create_transaction(
    request: CreateTransactionRequest,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> TransactionResponse:
    logger.info(
        "api_create_transaction_request",
        user_id=request.user_id,
        property_id=request.property_id,
        currency=request.currency,
        gateway=request.gateway,
        reference=request.reference,
    )
    transaction = await engine.create_transaction(
        user_id=request.user_id,
        property_id=request.property_id,
        amount=request.amount,
        currency=request.currency,
        transaction_type=request.type,
        method=request.method,
        gateway=request.gateway,
        reference=request.reference,
        description=request.description,
        metadata=request.metadata,
    )
    return TransactionResponse.from_transaction(transaction)


@transaction_router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a transaction",
)
async def get_transaction(
    transaction_id: UUID,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> TransactionResponse:
    return TransactionResponse.from_transaction(await engine.get_transaction(transaction_id))


@transaction_router.post(
    "/{transaction_id}/initialize",
    response_model=TransactionResponse,
    summary="Open a gateway session",
    description="Move a pending transaction to processing; returns the checkout URL if any",
)
async def initialize_transaction(
    transaction_id: UUID,
    timeout: Optional[float] = TimeoutParam,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> TransactionResponse:
    logger.info("api_initialize_transaction_request", transaction_id=str(transaction_id))
    transaction = await engine.initialize_transaction(transaction_id, timeout=timeout)
    return TransactionResponse.from_transaction(transaction)


@transaction_router.post(
    "/{transaction_id}/verify",
    response_model=TransactionResponse,
    summary="Poll the gateway",
    description="Ask the gateway for the result of a processing transaction",
)
async def verify_transaction(
    transaction_id: UUID,
    timeout: Optional[float] = TimeoutParam,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> TransactionResponse:
    transaction = await engine.verify_transaction(transaction_id, timeout=timeout)
    return TransactionResponse.from_transaction(transaction)


@transaction_router.post(
    "/{transaction_id}/retry",
    response_model=TransactionResponse,
    summary="Retry a failed transaction",
)
async def retry_transaction(
    transaction_id: UUID,
    timeout: Optional[float] = TimeoutParam,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> TransactionResponse:
    logger.info("api_retry_transaction_request", transaction_id=str(transaction_id))
    transaction = await engine.retry_transaction(transaction_id, timeout=timeout)
    return TransactionResponse.from_transaction(transaction)


@transaction_router.post(
    "/{transaction_id}/refund",
    response_model=TransactionResponse,
    summary="Refund a completed transaction",
)
async def refund_transaction(
    transaction_id: UUID,
    timeout: Optional[float] = TimeoutParam,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> TransactionResponse:
    logger.info("api_refund_transaction_request", transaction_id=str(transaction_id))
    transaction = await engine.initiate_refund(transaction_id, timeout=timeout)
    return TransactionResponse.from_transaction(transaction)


@transaction_router.get(
    "/{transaction_id}/receipt",
    response_model=ReceiptResponse,
    summary="Generate a receipt",
)
async def get_receipt(
    transaction_id: UUID,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> ReceiptResponse:
    receipt = await engine.generate_receipt(transaction_id)
    return ReceiptResponse(**asdict(receipt))


@transaction_router.get(
    "/{transaction_id}/receipt.pdf",
    summary="Download the receipt PDF",
    response_class=Response,
)
async def download_receipt(
    transaction_id: UUID,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> Response:
    receipt, pdf = await engine.render_receipt_pdf(transaction_id)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{receipt.filename}"',
            "X-Receipt-Id": receipt.receipt_id,
        },
    )


@transaction_router.get(
    "/{transaction_id}/events",
    response_model=List[TransactionEventResponse],
    summary="Transaction audit trail",
)
async def get_transaction_events(
    transaction_id: UUID,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> List[TransactionEventResponse]:
    events = await engine.get_transaction_events(transaction_id)
    return [TransactionEventResponse.from_event(event) for event in events]


@user_router.get(
    "/{user_id}/transactions",
    response_model=TransactionListResponse,
    summary="List a user's transactions",
    description="Newest first, optionally filtered by status",
)
async def get_user_transactions(
    user_id: str,
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    limit: Optional[int] = Query(default=None, gt=0, le=500),
    engine: PaymentEngine = Depends(get_payment_engine),
) -> TransactionListResponse:
    transactions = await engine.get_user_transactions(user_id, status=status_filter, limit=limit)
    return TransactionListResponse(
        transactions=[TransactionResponse.from_transaction(t) for t in transactions],
        count=len(transactions),
    )


@user_router.get(
    "/{user_id}/statistics",
    response_model=StatisticsResponse,
    summary="Payment statistics for a user",
)
async def get_user_statistics(
    user_id: str,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> StatisticsResponse:
    report = await engine.get_statistics(user_id=user_id)
    return StatisticsResponse(user_id=user_id, **report.to_dict())


@webhook_router.post(
    "/{gateway}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Verify and apply a gateway callback; stray callbacks are acknowledged",
)
async def gateway_webhook(
    gateway: str,
    request: Request,
    engine: PaymentEngine = Depends(get_payment_engine),
) -> WebhookResponse:
    body = await request.body()
    ack = await engine.handle_gateway_callback(gateway, body, request.headers)
    logger.info("api_webhook_processed", gateway=gateway, status=ack["status"])
    return WebhookResponse(**ack)


@gateway_router.get(
    "",
    response_model=List[GatewayInfoResponse],
    summary="Available gateways",
)
async def list_gateways(
    engine: PaymentEngine = Depends(get_payment_engine),
) -> List[GatewayInfoResponse]:
    return [GatewayInfoResponse(**info) for info in engine.list_gateways()]


@admin_router.get(
    "/statistics",
    response_model=StatisticsResponse,
    summary="Payment statistics across all users",
)
async def get_admin_statistics(
    engine: PaymentEngine = Depends(get_payment_engine),
) -> StatisticsResponse:
    report = await engine.get_statistics()
    return StatisticsResponse(**report.to_dict())


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
