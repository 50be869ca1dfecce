"""
Payment intent issuing and Stripe access.

Turns a reconciled cart into a Stripe PaymentIntent. The intent's metadata
carries a compact snapshot of the verified items so the webhook can rebuild
the order when the browser never reports back.
"""
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional, Tuple

import stripe
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from shared.utils import settings
from app.errors import AmountOutOfRange, SignatureInvalid, UpstreamFailure, ValidationError
from app.pricing import ReconciledCart, VerifiedItem
from app.schemas import CustomerIn, CheckoutResponse

logger = logging.getLogger(__name__)

# Stripe field limits
DESCRIPTION_LIMIT = 500
METADATA_VALUE_LIMIT = 500

SHORT_NAME_LENGTH = 20
CENT = Decimal("0.01")

# Size names not worth repeating in the description
DEFAULT_SIZE_NAMES = {"regular", "standard"}


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class OrderTotals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    platform_fee: Decimal


def compute_totals(subtotal: Decimal, platform_fee: Decimal = Decimal(0), tax_rate: Optional[float] = None) -> OrderTotals:
    rate = Decimal(str(settings.TAX_RATE if tax_rate is None else tax_rate))
    subtotal = round_money(subtotal)
    tax = round_money(subtotal * rate)
    total = subtotal + tax

    if not Decimal(str(settings.MIN_ORDER_TOTAL)) <= total <= Decimal(str(settings.MAX_ORDER_TOTAL)):
        raise AmountOutOfRange()

    return OrderTotals(subtotal=subtotal, tax=tax, total=total, platform_fee=round_money(platform_fee))


# --- Description ---

def describe_item(item: VerifiedItem) -> str:
    desc = f"{item.quantity}x {item.product_name[:50]}"
    if item.size_name and item.size_name.lower() not in DEFAULT_SIZE_NAMES:
        desc += f" ({item.size_name[:20]})"
    if item.modifiers:
        desc += " - " + ", ".join(m.name[:20] for m in item.modifiers)
    return desc


def build_description(items: List[VerifiedItem], store_name: Optional[str] = None) -> str:
    store_name = settings.STORE_NAME if store_name is None else store_name
    body = "; ".join(describe_item(item) for item in items)
    return f"{store_name} order: {body}"[:DESCRIPTION_LIMIT]


# --- Metadata snapshot ---
# Keys: i=product id, n=name, t=type, s=size, q=quantity, p=unit price, m=[[name, price]]

def _price(amount: Decimal) -> float:
    return float(round_money(amount))


def _snapshot_full(items: List[VerifiedItem]):
    return [
        {
            "i": item.product_id,
            "n": item.product_name,
            "t": item.product_type,
            "s": item.size_name,
            "q": item.quantity,
            "p": _price(item.unit_price),
            "m": [[m.name, _price(m.price)] for m in item.modifiers],
        }
        for item in items
    ]


def _snapshot_first_modifier(items: List[VerifiedItem]):
    return [
        {
            "n": item.product_name,
            "t": item.product_type,
            "s": item.size_name,
            "q": item.quantity,
            "p": _price(item.unit_price),
            "m": [[m.name, _price(m.price)] for m in item.modifiers[:1]],
        }
        for item in items
    ]


def _snapshot_short_names(items: List[VerifiedItem]):
    return [
        {
            "n": item.product_name[:SHORT_NAME_LENGTH],
            "s": item.size_name[:SHORT_NAME_LENGTH] if item.size_name else None,
            "q": item.quantity,
            "p": _price(item.unit_price),
        }
        for item in items
    ]


def _snapshot_count_only(items: List[VerifiedItem]):
    return {"truncated": True, "count": len(items)}


SNAPSHOT_ENCODERS: Tuple[Callable, ...] = (
    _snapshot_full,
    _snapshot_first_modifier,
    _snapshot_short_names,
    _snapshot_count_only,
)


def encode_items_snapshot(items: List[VerifiedItem], limit: int = METADATA_VALUE_LIMIT) -> str:
    """Richest encoding that fits in one metadata value."""
    for encoder in SNAPSHOT_ENCODERS:
        encoded = json.dumps(encoder(items), separators=(",", ":"))
        if len(encoded) <= limit:
            return encoded
    return encoded


class SnapshotItem(BaseModel):
    product_id: Optional[str] = None
    product_name: str
    product_type: Optional[str] = None
    size_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    modifiers: List[Tuple[str, Decimal]] = []


def decode_items_snapshot(raw: Optional[str]) -> Tuple[List[SnapshotItem], bool]:
    """
    Inverse of encode_items_snapshot. Returns the items that survived
    encoding and whether item detail was dropped entirely.
    """
    if not raw:
        return [], True
    data = json.loads(raw)
    if isinstance(data, dict):
        return [], bool(data.get("truncated", True))
    items = [
        SnapshotItem(
            product_id=entry.get("i"),
            product_name=entry["n"],
            product_type=entry.get("t"),
            size_name=entry.get("s"),
            quantity=entry["q"],
            unit_price=Decimal(str(entry["p"])),
            modifiers=[(name, Decimal(str(price))) for name, price in entry.get("m", [])],
        )
        for entry in data
    ]
    return items, False


# --- Stripe ---

class IssuedPaymentIntent(BaseModel):
    id: str
    client_secret: str
    amount: int


class StripePaymentGateway:
    """Thin wrapper over the Stripe SDK calls this service makes."""

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.webhook_secret)

    async def create_payment_intent(self, params: dict) -> IssuedPaymentIntent:
        try:
            # The SDK is synchronous
            intent = await run_in_threadpool(stripe.PaymentIntent.create, api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error("PaymentIntent creation failed: %s", type(e).__name__, exc_info=True)
            raise UpstreamFailure()
        return IssuedPaymentIntent(id=intent.id, client_secret=intent.client_secret, amount=intent.amount)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        try:
            return await run_in_threadpool(stripe.PaymentIntent.retrieve, payment_intent_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            logger.warning("PaymentIntent not found", extra={"payment_intent_id": payment_intent_id})
            raise ValidationError("Payment not found")
        except stripe.StripeError as e:
            logger.error(
                "PaymentIntent retrieval failed: %s", type(e).__name__,
                extra={"payment_intent_id": payment_intent_id}, exc_info=True,
            )
            raise UpstreamFailure("Failed to create order")

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Check the Stripe-Signature header, then parse the event body."""
        if not self.webhook_secret:
            logger.error("Webhook secret not configured")
            raise UpstreamFailure("Webhook handler failed")
        if not signature:
            raise SignatureInvalid()

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret)
        except (UnicodeDecodeError, stripe.SignatureVerificationError):
            logger.warning("Webhook signature verification failed")
            raise SignatureInvalid()

        try:
            return json.loads(text)
        except ValueError:
            raise SignatureInvalid("Invalid payload")


def connected_account_id(account_id: Optional[str] = None) -> Optional[str]:
    account_id = settings.STRIPE_CONNECTED_ACCOUNT_ID if account_id is None else account_id
    if account_id and account_id.startswith("acct_") and len(account_id) > 10:
        return account_id
    return None


def build_payment_intent_params(
    cart: ReconciledCart,
    totals: OrderTotals,
    customer: CustomerIn,
    instructions: Optional[str],
    destination: Optional[str] = None,
) -> dict:
    params = {
        "amount": to_minor_units(totals.total),
        "currency": settings.CURRENCY,
        "automatic_payment_methods": {"enabled": True},
        "description": build_description(cart.items),
        "receipt_email": customer.email,
        "metadata": {
            "customer_name": customer.name,
            "customer_email": customer.email,
            "customer_phone": customer.phone or "",
            "instructions": instructions or "",
            "item_count": str(len(cart.items)),
            "subtotal": f"{totals.subtotal:.2f}",
            "tax": f"{totals.tax:.2f}",
            "total": f"{totals.total:.2f}",
            "platform_fee": f"{totals.platform_fee:.2f}",
            "items": encode_items_snapshot(cart.items),
        },
    }

    if destination:
        params["application_fee_amount"] = to_minor_units(totals.platform_fee)
        params["transfer_data"] = {"destination": destination}

    return params


async def issue_payment_intent(
    gateway: StripePaymentGateway,
    cart: ReconciledCart,
    customer: CustomerIn,
    instructions: Optional[str],
) -> CheckoutResponse:
    totals = compute_totals(cart.subtotal, cart.platform_fee)

    destination = connected_account_id()
    if destination:
        logger.info("Using Stripe Connect fee split")
    else:
        logger.info("Running without Stripe Connect (direct payment)")

    params = build_payment_intent_params(cart, totals, customer, instructions, destination)
    intent = await gateway.create_payment_intent(params)

    logger.info(
        "PaymentIntent created",
        extra={"payment_intent_id": intent.id},
    )
    return CheckoutResponse(
        client_secret=intent.client_secret,
        payment_intent_id=intent.id,
        amount=float(totals.total),
    )
