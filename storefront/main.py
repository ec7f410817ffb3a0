"""
Storefront Service API

This module implements the FastAPI application for checkout, payment and
gateway reconciliation. Orders and payments persist in PostgreSQL; payment
links come from MoneySpace and confirmations go out by SMS through MailBIT.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders: Create an order from a checkout
    GET /orders/{order_id}: Get a single order with its items
    GET /orders/{order_id}/timeline: Order audit trail (admin only)
    POST /payments/create: Start a payment for a pending order
    POST /payments/{gateway}/webhook: Gateway payment callback

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "storefront-service"
"""
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, crud, models, schemas
from .config import get_settings
from .database import SessionLocal, engine, get_db
from .errors import OrderNotFound, StorefrontError
from .notifications import NotificationDispatcher
from .orders import OrderAssembler, get_order_detail
from .payments import PaymentService, ensure_payable
from .webhooks import WebhookReconciler

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

WEBHOOK_GATEWAYS = ("moneyspace", "moneyspec")
# Unmapped error codes answer 500 so the gateway retries
WEBHOOK_ERROR_STATUS = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "invalid_signature": status.HTTP_401_UNAUTHORIZED,
    "order_not_found": status.HTTP_404_NOT_FOUND,
}


@lru_cache
def get_order_assembler() -> OrderAssembler:
    return OrderAssembler(get_settings())


@lru_cache
def get_payment_service() -> PaymentService:
    return PaymentService(get_settings())


@lru_cache
def get_reconciler() -> WebhookReconciler:
    settings = get_settings()
    dispatcher = NotificationDispatcher(settings, session_factory=SessionLocal)
    return WebhookReconciler(settings, dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let in-flight payment SMS finish before the process exits
    reconciler = app.dependency_overrides.get(get_reconciler, get_reconciler)()
    await reconciler.wait_for_notifications()


app = FastAPI(title="storefront-service", lifespan=lifespan)


def _http_error(e: StorefrontError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the storefront service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.post("/orders", response_model=schemas.OrderCreated, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    assembler: OrderAssembler = Depends(get_order_assembler),
):
    """
    Create an order from a checkout.

    Prices are taken from the catalog and the free gift is added when the
    cart qualifies, whatever the client sent.

    Args:
        order: Checkout data
        db: Database session (injected)
        assembler: Order assembler (injected)

    Returns:
        The new order's id, number and total

    Raises:
        HTTPException: 400 for invalid input, 503 if no order number could be allocated
    """
    try:
        return assembler.create_order(db, order)
    except StorefrontError as e:
        logger.warning(f"Checkout rejected ({e.code}): {e}")
        raise _http_error(e)


@app.get("/orders/{order_id}", response_model=schemas.Order)
def read_order(order_id: int, db: Session = Depends(get_db)):
    """
    Retrieve an order with its items.

    Raises:
        HTTPException: 404 if the order doesn't exist
    """
    try:
        return get_order_detail(db, order_id)
    except OrderNotFound as e:
        raise _http_error(e)


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Get the audit timeline of an order, oldest event first.

    Args:
        order_id: Order ID
        db: Database session (injected)
        current_user: Admin user (injected)

    Raises:
        HTTPException: 404 if the order doesn't exist
    """
    try:
        get_order_detail(db, order_id)
    except OrderNotFound as e:
        raise _http_error(e)
    return crud.get_order_events(db, order_id)


@app.post("/payments/create", response_model=schemas.PaymentCreated)
async def create_payment(
    payment: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Start a payment for a pending order.

    When the gateway is unconfigured or fails, the response is still 200
    but carries ``fallback: true`` and a placeholder payment URL.

    Raises:
        HTTPException: 400 for a missing field, bad method or non-pending order,
            404 if the order doesn't exist
    """
    if payment.order_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required field: orderId")
    if not payment.method:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required field: method")

    try:
        order = get_order_detail(db, payment.order_id)
        ensure_payable(order)
        return await service.create_payment(db, order, payment.method)
    except StorefrontError as e:
        logger.warning(f"Payment not created for order {payment.order_id} ({e.code}): {e}")
        raise _http_error(e)


@app.post("/payments/{gateway}/webhook", response_model=schemas.WebhookResult)
async def payment_webhook(
    gateway: str,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """
    Receive a payment callback from the gateway.

    The body is read raw so the signature can be checked over the exact
    bytes the gateway signed. Non-200 answers make the gateway retry.

    Returns:
        200 with the reconciliation result, 400 for an undecodable body,
        401 for a bad signature, 404 for an unknown order, 500 otherwise
    """
    if gateway not in WEBHOOK_GATEWAYS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown gateway: {gateway}")

    raw_body = await request.body()
    signature = request.headers.get(f"x-{gateway}-signature")
    result = await reconciler.handle_webhook(db, raw_body, signature)
    if result.success:
        return result

    status_code = WEBHOOK_ERROR_STATUS.get(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=status_code, content=result.model_dump())
