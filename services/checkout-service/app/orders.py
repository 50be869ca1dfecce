"""
Order materialization.

Two producers feed one sink: the browser reports a confirmed payment
(client path) and Stripe reports payment_intent.succeeded (webhook path).
Whichever arrives first creates the order; the other sees it through the
payment_intent_id lookup, or through the unique index when both race,
and writes nothing.
"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from shared.security_config import is_valid_amount
from shared.utils import settings, NotFoundException
from app.errors import ValidationError, PersistenceFailure, InvalidStatusTransition
from app.models import (
    OrderDB, OrderItemDB, OrderSource, OrderStatus, ModifierSnapshot,
    can_transition, to_document
)
from app.payments import StripePaymentGateway, CENT, decode_items_snapshot, round_money, to_minor_units
from app.schemas import CreateOrderRequest, OrderResponse, OrderItemResponse

logger = logging.getLogger(__name__)


class DraftItem(BaseModel):
    product_id: Optional[str] = None
    product_name: str
    product_type: Optional[str] = None
    size_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    modifiers: List[ModifierSnapshot] = []


class OrderDraft(BaseModel):
    payment_intent_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    platform_fee: Optional[Decimal] = None
    special_instructions: Optional[str] = None
    source: OrderSource
    items: List[DraftItem] = []


class MaterializedOrder(BaseModel):
    order_id: str
    order_number: str
    duplicate: bool = False


def order_number_for(payment_intent_id: str, prefix: Optional[str] = None) -> str:
    prefix = settings.ORDER_NUMBER_PREFIX if prefix is None else prefix
    return f"{prefix}-{payment_intent_id[-8:].upper()}"


class OrderStore:
    def __init__(self, db):
        self.orders = db.orders
        self.order_items = db.order_items

    async def ensure_indexes(self):
        # The unique index is what actually closes the client/webhook race
        await self.orders.create_index("payment_intent_id", unique=True)
        await self.orders.create_index("order_number")
        await self.orders.create_index([("created_at", DESCENDING)])
        await self.order_items.create_index([("order_id", ASCENDING)])

    async def find_by_payment_intent(self, payment_intent_id: str) -> Optional[dict]:
        return await self.orders.find_one({"payment_intent_id": payment_intent_id})

    async def insert_order(self, doc: dict) -> str:
        result = await self.orders.insert_one(doc)
        return str(result.inserted_id)

    async def insert_items(self, docs: List[dict]):
        await self.order_items.insert_many(docs)

    async def find_order(self, ref: str) -> Optional[dict]:
        """Look up by order id or by order number (case-insensitive)."""
        if ObjectId.is_valid(ref):
            order = await self.orders.find_one({"_id": ObjectId(ref)})
            if order:
                return order
        return await self.orders.find_one({"order_number": ref.strip().upper()})

    async def find_items(self, order_id: str) -> List[dict]:
        cursor = self.order_items.find({"order_id": order_id})
        return [doc async for doc in cursor]

    async def update_status(self, order_id: str, expected: OrderStatus, updates: dict) -> bool:
        result = await self.orders.update_one(
            {"_id": ObjectId(order_id), "status": expected.value},
            {"$set": updates},
        )
        return result.modified_count == 1


# --- Drafts ---

def draft_from_client(request: CreateOrderRequest, platform_fee: Optional[Decimal] = None) -> OrderDraft:
    return OrderDraft(
        payment_intent_id=request.payment_intent_id,
        customer_name=request.customer.name,
        customer_email=request.customer.email,
        customer_phone=request.customer.phone,
        subtotal=request.subtotal,
        tax=request.tax,
        total=request.total,
        platform_fee=platform_fee,
        special_instructions=request.instructions,
        source=OrderSource.CLIENT,
        items=[
            DraftItem(
                product_id=item.product_id,
                product_name=item.product_name,
                product_type=item.product_type,
                size_name=item.size_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                modifiers=[ModifierSnapshot(name=m.name, price=m.price) for m in item.modifiers],
            )
            for item in request.items
        ],
    )


def _metadata_amount(metadata: dict, key: str) -> Decimal:
    try:
        return Decimal(metadata[key])
    except (KeyError, TypeError, InvalidOperation):
        raise ValidationError("Invalid order amounts")


def draft_from_payment_intent(intent: dict) -> OrderDraft:
    """Rebuild an order from the metadata written at checkout."""
    payment_intent_id = intent.get("id")
    if not payment_intent_id:
        raise ValidationError("Payment event is missing the payment intent ID")

    metadata = intent.get("metadata") or {}
    email = metadata.get("customer_email")
    if not email:
        raise ValidationError("Payment metadata is missing customer details")

    try:
        snapshot, truncated = decode_items_snapshot(metadata.get("items"))
    except (ValueError, KeyError, TypeError):
        logger.warning("Unreadable item snapshot", extra={"payment_intent_id": payment_intent_id})
        snapshot, truncated = [], True
    if truncated:
        logger.warning(
            "Item detail was not recoverable from payment metadata",
            extra={"payment_intent_id": payment_intent_id},
        )

    if "total" in metadata:
        total = _metadata_amount(metadata, "total")
    else:
        total = Decimal(intent.get("amount_received") or intent.get("amount") or 0) / 100

    platform_fee = _metadata_amount(metadata, "platform_fee") if "platform_fee" in metadata else None

    return OrderDraft(
        payment_intent_id=payment_intent_id,
        customer_name=metadata.get("customer_name") or "Unknown",
        customer_email=email,
        customer_phone=metadata.get("customer_phone") or None,
        subtotal=_metadata_amount(metadata, "subtotal"),
        tax=_metadata_amount(metadata, "tax"),
        total=total,
        platform_fee=platform_fee,
        special_instructions=metadata.get("instructions") or None,
        source=OrderSource.WEBHOOK,
        items=[
            DraftItem(
                product_id=item.product_id,
                product_name=item.product_name,
                product_type=item.product_type,
                size_name=item.size_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                modifiers=[ModifierSnapshot(name=name, price=price) for name, price in item.modifiers],
            )
            for item in snapshot
        ],
    )


# --- Materialization ---

def _duplicate(order: dict) -> MaterializedOrder:
    return MaterializedOrder(order_id=str(order["_id"]), order_number=order["order_number"], duplicate=True)


async def materialize_order(store: OrderStore, draft: OrderDraft) -> MaterializedOrder:
    for amount in (draft.subtotal, draft.tax, draft.total):
        if not is_valid_amount(amount):
            raise ValidationError("Invalid order amounts")

    extra = {"payment_intent_id": draft.payment_intent_id, "source": draft.source.value}

    try:
        existing = await store.find_by_payment_intent(draft.payment_intent_id)
    except PyMongoError:
        logger.error("Order lookup failed", extra=extra, exc_info=True)
        raise PersistenceFailure()
    if existing:
        logger.info("Order already exists for payment", extra=extra)
        return _duplicate(existing)

    order_number = order_number_for(draft.payment_intent_id)
    order = OrderDB(
        order_number=order_number,
        customer_name=draft.customer_name,
        customer_email=draft.customer_email,
        customer_phone=draft.customer_phone,
        subtotal=draft.subtotal,
        tax=draft.tax,
        total=draft.total,
        platform_fee=draft.platform_fee,
        payment_intent_id=draft.payment_intent_id,
        special_instructions=draft.special_instructions,
        source=draft.source,
    )

    try:
        order_id = await store.insert_order(to_document(order))
    except DuplicateKeyError:
        # The other path inserted between our lookup and insert
        winner = await store.find_by_payment_intent(draft.payment_intent_id)
        if winner is None:
            logger.error("Duplicate key without a matching order", extra=extra, exc_info=True)
            raise PersistenceFailure()
        logger.info("Lost order creation race", extra=extra)
        return _duplicate(winner)
    except PyMongoError:
        logger.error("Order insert failed", extra=extra, exc_info=True)
        raise PersistenceFailure()

    extra["order_number"] = order_number

    if draft.items:
        item_docs = [
            to_document(OrderItemDB(
                order_id=order_id,
                line_total=item.unit_price * item.quantity,
                **item.model_dump(),
            ))
            for item in draft.items
        ]
        try:
            await store.insert_items(item_docs)
        except PyMongoError:
            # Payment already succeeded; an order without lines beats no order
            logger.error("Order items insert failed, order kept", extra=extra, exc_info=True)
    else:
        logger.warning("Order created without line items", extra=extra)

    logger.info("Order created", extra=extra)
    return MaterializedOrder(order_id=order_id, order_number=order_number)


async def materialize_from_payment_intent(store: OrderStore, intent: dict) -> MaterializedOrder:
    return await materialize_order(store, draft_from_payment_intent(intent))


def check_client_amounts(request: CreateOrderRequest, tax_rate: Optional[float] = None):
    """Reported amounts must add up: lines to subtotal, subtotal to tax, both to total."""
    rate = Decimal(str(settings.TAX_RATE if tax_rate is None else tax_rate))
    items_subtotal = sum(
        (round_money(item.unit_price * item.quantity) for item in request.items), Decimal(0)
    )
    if abs(request.subtotal - items_subtotal) > CENT:
        raise ValidationError("Invalid order amounts")
    if request.tax != round_money(request.subtotal * rate):
        raise ValidationError("Invalid order amounts")
    if request.total != request.subtotal + request.tax:
        raise ValidationError("Invalid order amounts")


def check_payment(intent: dict, request: CreateOrderRequest):
    """The intent Stripe holds must be paid, and for the amounts being reported."""
    extra = {"payment_intent_id": request.payment_intent_id}
    if intent.get("status") != "succeeded":
        logger.warning("Order reported for unpaid intent (%s)", intent.get("status"), extra=extra)
        raise ValidationError("Payment has not been completed")
    if intent.get("amount") != to_minor_units(request.total):
        logger.warning("Reported total does not match the charged amount", extra=extra)
        raise ValidationError("Invalid order amounts")

    metadata = intent.get("metadata") or {}
    for key in ("subtotal", "tax"):
        if key in metadata and _metadata_amount(metadata, key) != getattr(request, key):
            logger.warning("Reported %s does not match checkout", key, extra=extra)
            raise ValidationError("Invalid order amounts")


async def materialize_from_client(
    store: OrderStore, gateway: StripePaymentGateway, request: CreateOrderRequest
) -> MaterializedOrder:
    check_client_amounts(request)
    intent = await gateway.retrieve_payment_intent(request.payment_intent_id)
    check_payment(intent, request)

    metadata = intent.get("metadata") or {}
    platform_fee = _metadata_amount(metadata, "platform_fee") if "platform_fee" in metadata else None
    return await materialize_order(store, draft_from_client(request, platform_fee))


# --- Tracking / management ---

def build_order_response(order: dict, items: List[dict]) -> OrderResponse:
    return OrderResponse(
        id=str(order["_id"]),
        items=[OrderItemResponse(**item) for item in items],
        **{k: v for k, v in order.items() if k in OrderResponse.model_fields and k not in ("id", "items")},
    )


async def get_order(store: OrderStore, ref: str) -> OrderResponse:
    order = await store.find_order(ref)
    if not order:
        raise NotFoundException("Order not found")
    items = await store.find_items(str(order["_id"]))
    return build_order_response(order, items)


async def change_order_status(store: OrderStore, order_id: str, requested: OrderStatus) -> OrderResponse:
    if not ObjectId.is_valid(order_id):
        raise NotFoundException("Order not found")
    order = await store.find_order(order_id)
    if not order:
        raise NotFoundException("Order not found")

    current = OrderStatus(order["status"])
    if not can_transition(current, requested):
        raise InvalidStatusTransition(current.value, requested.value)

    now = datetime.utcnow()
    updates = {"status": requested.value, "updated_at": now}
    if requested == OrderStatus.READY:
        updates["ready_at"] = now
    elif requested == OrderStatus.COMPLETED:
        updates["completed_at"] = now

    # Only applies if nobody changed the status since we read it
    if not await store.update_status(order_id, current, updates):
        latest = await store.find_order(order_id)
        raise InvalidStatusTransition(latest["status"], requested.value)

    logger.info(
        "Order status changed to %s", requested.value,
        extra={"order_number": order["order_number"]},
    )
    return await get_order(store, order_id)
