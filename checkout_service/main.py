from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
from typing import Optional, List

from shared.utils import (
    get_db_client, settings, SuccessResponse, ErrorResponse, HealthResponse,
    AppException, get_current_buyer, ensure_buyer
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter, ID_PATTERN

from checkout_service.collaborators import AddressBookClient, CatalogClient
from checkout_service.errors import INTEGRITY_ERRORS, UnknownIntent
from checkout_service.gateway import build_gateway
from checkout_service.models import OrderDB, PaymentIntentDB
from checkout_service.schemas import (
    CartItemAdd, CartItemResponse, CartLineResponse, CartAddResponse, MessageResponse,
    CreateOrderRequest, CreateOrderResponse, VerifyPaymentRequest, GatewayCallback,
    VerifyPaymentResponse, IntentResponse, AddressResponse, OrderResponse
)
from checkout_service.service import CheckoutService

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

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    app.checkout = CheckoutService.build(
        app.mongodb,
        gateway=build_gateway(settings.PAYMENT_GATEWAY),
        catalog=CatalogClient(),
        address_book=AddressBookClient(),
    )
    await app.checkout.create_indexes()
    app.checkout.sweeper.start()
    logger.info(f"Checkout service started with '{settings.PAYMENT_GATEWAY}' gateway")

@app.on_event("shutdown")
async def shutdown_db_client():
    await app.checkout.sweeper.stop()
    app.mongodb_client.close()

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    body = ErrorResponse(message=exc.detail, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True), headers=exc.headers)

# --- Dependencies ---
def get_checkout() -> CheckoutService:
    return app.checkout

def request_id_of(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)

# --- Helper ---
def order_to_response(order: OrderDB) -> OrderResponse:
    return OrderResponse(
        order_id=order.order_id,
        intent_id=order.intent_id,
        buyer_id=order.buyer_id,
        product_id=order.product_id,
        product_name=order.product_name,
        category=order.category,
        quantity=order.quantity,
        amount=float(order.amount),
        currency=order.currency,
        address=AddressResponse(**order.address.model_dump()),
        status=order.status,
        payment_id=order.payment_id,
        order_date=order.order_date,
    )

def intent_to_response(intent: PaymentIntentDB) -> IntentResponse:
    return IntentResponse(
        intent_id=intent.intent_id,
        buyer_id=intent.buyer_id,
        status=intent.status,
        amount=float(intent.amount),
        currency=intent.currency,
        failure_reason=intent.failure_reason,
        created_at=intent.created_at,
        updated_at=intent.updated_at,
    )

# --- Endpoints ---

# Cart
@app.post("/cart/add", response_model=CartAddResponse)
async def add_to_cart(item: CartItemAdd, request: Request,
                      current_buyer: Optional[str] = Depends(get_current_buyer),
                      checkout: CheckoutService = Depends(get_checkout)):
    ensure_buyer(current_buyer, item.buyer_id)
    # Validate product exists before touching the cart
    await checkout.catalog.get_product(item.product_id, request_id_of(request))
    size = await checkout.cart_store.add_item(item.buyer_id, item.product_id, item.quantity)
    return CartAddResponse(message="Product added to cart", cart_size=size)

@app.put("/cart/update", response_model=SuccessResponse[CartItemResponse])
async def update_cart_item(
    buyer_id: str = Query(..., alias="buyerId", pattern=ID_PATTERN),
    product_id: str = Query(..., alias="productId", pattern=ID_PATTERN),
    quantity: int = Query(...),
    current_buyer: Optional[str] = Depends(get_current_buyer),
    checkout: CheckoutService = Depends(get_checkout)
):
    ensure_buyer(current_buyer, buyer_id)
    item = await checkout.cart_store.update_quantity(buyer_id, product_id, quantity)
    return SuccessResponse(data=CartItemResponse(**item.model_dump()), message="Quantity updated")

@app.delete("/cart/remove/{item_id}", response_model=MessageResponse)
async def remove_cart_item(item_id: str,
                           current_buyer: Optional[str] = Depends(get_current_buyer),
                           checkout: CheckoutService = Depends(get_checkout)):
    item = await checkout.cart_store.get_item(item_id)
    if item is not None:
        ensure_buyer(current_buyer, item.buyer_id)
        await checkout.cart_store.remove_by_id(item_id)
    return MessageResponse(message="Item removed from cart")

@app.delete("/cart/clear/{buyer_id}", response_model=MessageResponse)
async def clear_cart(buyer_id: str,
                     current_buyer: Optional[str] = Depends(get_current_buyer),
                     checkout: CheckoutService = Depends(get_checkout)):
    ensure_buyer(current_buyer, buyer_id)
    await checkout.cart_store.clear_cart(buyer_id)
    return MessageResponse(message="Cart cleared")

@app.get("/cart/buyer/{buyer_id}", response_model=List[CartLineResponse])
async def get_cart(buyer_id: str, request: Request,
                   current_buyer: Optional[str] = Depends(get_current_buyer),
                   checkout: CheckoutService = Depends(get_checkout)):
    ensure_buyer(current_buyer, buyer_id)
    lines = await checkout.get_cart(buyer_id, request_id_of(request))
    return [
        CartLineResponse(**{**line, "unit_cost": float(line["unit_cost"]), "line_total": float(line["line_total"])})
        for line in lines
    ]

# Payment
@app.post("/payment/create-order", response_model=CreateOrderResponse)
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def create_order(body: CreateOrderRequest, request: Request,
                       current_buyer: Optional[str] = Depends(get_current_buyer),
                       checkout: CheckoutService = Depends(get_checkout)):
    ensure_buyer(current_buyer, body.buyer_id)
    intent = await checkout.builder.create_intent(body.buyer_id, body.address_id, request_id_of(request))
    return CreateOrderResponse(
        key=checkout.gateway.key_id,
        order_id=intent.intent_id,
        amount=float(intent.amount),
        currency=intent.currency,
    )

@app.post("/payment/verify-payment", response_model=VerifyPaymentResponse)
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def verify_payment(body: VerifyPaymentRequest, request: Request,
                         current_buyer: Optional[str] = Depends(get_current_buyer),
                         checkout: CheckoutService = Depends(get_checkout)):
    """Client-relayed gateway response after the buyer completes payment."""
    ensure_buyer(current_buyer, body.buyer_id)
    intent = await checkout.intent_store.get(body.razorpay_order_id)
    if intent is None or intent.buyer_id != body.buyer_id:
        # Someone else's intent is reported exactly like a missing one
        logger.warning("Verify for unknown or foreign intent", extra={
            "intent_id": body.razorpay_order_id, "buyer_id": body.buyer_id
        })
        raise UnknownIntent(body.razorpay_order_id)

    result = await checkout.engine.handle_callback(
        body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature
    )
    return VerifyPaymentResponse(
        success=True,
        message=result.message,
        order_ids=[order.order_id for order in result.orders],
    )

@app.post("/payment/verify", response_model=VerifyPaymentResponse)
async def gateway_callback(body: GatewayCallback, checkout: CheckoutService = Depends(get_checkout)):
    """Server-to-server callback from the gateway, authenticated by its signature only."""
    try:
        result = await checkout.engine.handle_callback(
            body.gateway_order_id, body.gateway_payment_id, body.signature
        )
    except INTEGRITY_ERRORS as e:
        # Acknowledge so the gateway stops redelivering; nothing was changed
        return VerifyPaymentResponse(success=False, message=e.detail, code=e.code)
    return VerifyPaymentResponse(
        success=True,
        message=result.message,
        order_ids=[order.order_id for order in result.orders],
    )

@app.get("/payment/intent/{intent_id}", response_model=SuccessResponse[IntentResponse])
async def get_intent(intent_id: str,
                     current_buyer: Optional[str] = Depends(get_current_buyer),
                     checkout: CheckoutService = Depends(get_checkout)):
    intent = await checkout.intent_store.get(intent_id)
    if intent is None or (settings.AUTH_ENABLED and intent.buyer_id != current_buyer):
        # Someone else's intent is reported exactly like a missing one
        logger.warning("Lookup of unknown or foreign intent", extra={
            "intent_id": intent_id, "buyer_id": current_buyer
        })
        raise UnknownIntent(intent_id)
    return SuccessResponse(data=intent_to_response(intent))

# Orders
@app.get("/order/buyer/{buyer_id}", response_model=List[OrderResponse])
async def list_orders(buyer_id: str,
                      current_buyer: Optional[str] = Depends(get_current_buyer),
                      checkout: CheckoutService = Depends(get_checkout)):
    ensure_buyer(current_buyer, buyer_id)
    orders = await checkout.order_store.list_for_buyer(buyer_id)
    return [order_to_response(order) for order in orders]

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"

    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="checkout-service",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"payment-gateway": settings.PAYMENT_GATEWAY}
    )
