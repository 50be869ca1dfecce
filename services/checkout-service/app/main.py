from fastapi import FastAPI, Depends, HTTPException, status, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime
from typing import Optional

from shared.utils import (
    get_db_client, settings, SuccessResponse, ErrorResponse,
    HealthResponse, require_admin
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from app.catalog import CatalogReader
from app.errors import ValidationError
from app.orders import (
    OrderStore, materialize_from_client, materialize_from_payment_intent, get_order, change_order_status
)
from app.payments import StripePaymentGateway, issue_payment_intent
from app.pricing import reconcile_checkout
from app.schemas import (
    CheckoutRequest, CheckoutResponse, CreateOrderRequest, CreateOrderResponse,
    OrderResponse, OrderStatusUpdate
)

# Setup Logging
logger = setup_logging("checkout-service")

app = FastAPI(title="Checkout Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="checkout-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

payment_gateway = StripePaymentGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    await OrderStore(app.mongodb).ensure_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
def get_catalog(request: Request) -> CatalogReader:
    return CatalogReader(request.app.mongodb)

def get_order_store(request: Request) -> OrderStore:
    return OrderStore(request.app.mongodb)

def get_payment_gateway() -> StripePaymentGateway:
    return payment_gateway

# --- Error Handlers ---
def error_response(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(exclude_none=True),
        headers=headers,
    )

def first_error_message(errors) -> str:
    if not errors:
        return "Invalid request"
    error = errors[0]
    if error.get("type") == "json_invalid":
        return "Invalid request body"
    # Messages raised by our own field validators
    ctx_error = (error.get("ctx") or {}).get("error")
    if ctx_error is not None:
        return str(ctx_error)
    location = ".".join(str(part) for part in error.get("loc", ())[1:])
    return f"Invalid {location}" if location else "Invalid request"

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, first_error_message(exc.errors()))

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", exc_info=exc, extra={"path": request.url.path})
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

# --- Endpoints ---

@app.post("/checkout", response_model=CheckoutResponse)
@limiter.limit(settings.CHECKOUT_RATE_LIMIT)
async def checkout(
    checkout_request: CheckoutRequest,
    request: Request,
    catalog: CatalogReader = Depends(get_catalog),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
):
    # Every rejection below happens before Stripe is called
    cart = await reconcile_checkout(catalog, checkout_request.items)
    return await issue_payment_intent(
        gateway, cart, checkout_request.customer, checkout_request.instructions
    )

@app.post("/orders", response_model=CreateOrderResponse)
@limiter.limit(settings.ORDERS_RATE_LIMIT)
async def create_order(
    order_request: CreateOrderRequest,
    request: Request,
    store: OrderStore = Depends(get_order_store),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
):
    # Recorded only once Stripe confirms the intent was paid for these amounts
    result = await materialize_from_client(store, gateway, order_request)
    return CreateOrderResponse(
        order_number=result.order_number,
        order_id=result.order_id,
        duplicate=result.duplicate,
    )

@app.get("/orders/{order_ref}", response_model=SuccessResponse[OrderResponse])
async def track_order(order_ref: str, store: OrderStore = Depends(get_order_store)):
    return SuccessResponse(data=await get_order(store, order_ref))

@app.put("/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    admin: dict = Depends(require_admin),
    store: OrderStore = Depends(get_order_store),
):
    order = await change_order_status(store, order_id, status_update.status)
    return SuccessResponse(data=order, message=f"Order {order.order_number} is {order.status.value}")

@app.post("/webhooks/stripe")
@limiter.limit(settings.WEBHOOK_RATE_LIMIT)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    store: OrderStore = Depends(get_order_store),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
):
    payload = await request.body()
    event = gateway.verify_event(payload, stripe_signature)

    event_type = event.get("type")
    intent = (event.get("data") or {}).get("object") or {}
    extra = {"event_type": event_type, "payment_intent_id": intent.get("id")}

    try:
        if event_type == "payment_intent.succeeded":
            result = await materialize_from_payment_intent(store, intent)
            extra["order_number"] = result.order_number
            logger.info("Payment succeeded (duplicate=%s)", result.duplicate, extra=extra)
        elif event_type == "payment_intent.payment_failed":
            logger.warning("Payment failed", extra=extra)
        else:
            logger.info("Unhandled event type", extra=extra)
    except ValidationError:
        # Retrying cannot fix the metadata; acknowledge so Stripe stops resending
        logger.error("Payment metadata could not be turned into an order", extra=extra, exc_info=True)
    except Exception:
        logger.error("Webhook handler failed", extra=extra, exc_info=True)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook handler failed")

    return {"received": True}

@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request, gateway: StripePaymentGateway = Depends(get_payment_gateway)):
    db_status = "unhealthy"

    # Check DB
    try:
        await request.app.mongodb.command("ping")
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    stripe_status = "configured" if gateway.is_configured else "not_configured"

    overall_status = "healthy" if db_status == "connected" and gateway.is_configured else "unhealthy"

    if overall_status == "unhealthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="checkout-service",
        status=overall_status,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"stripe": stripe_status}
    )
