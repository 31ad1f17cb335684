"""Reservation/payment bridge.

Turns an accepted offer into a Stripe PaymentIntent and transfers ownership
once Stripe itself reports the charge as captured. A client claiming the
payment went through is never enough on its own.
"""
import hashlib
import json
import logging
import os
from datetime import timedelta
from typing import Any, Dict, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from errors import (
    Forbidden,
    InvalidAmount,
    InvalidState,
    NotFound,
    PaymentsUnavailable,
    ProviderError,
)
from inventory import commit_car, get_car
from models import (
    ACCEPTED,
    AVAILABLE,
    PENDING,
    REJECTED,
    RESERVED,
    SOLD,
    BillingDetails,
    PaymentSession,
    User,
    as_utc,
    utcnow,
)
from offers import accepted_offer

logger = logging.getLogger(__name__)

# Stripe accepts $0.50 up to $999,999.99 per charge
MIN_CHARGE_CENTS = 50
MAX_CHARGE_CENTS = 99999999

PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_CANCELED = "canceled"


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    """Thin wrapper over the Stripe SDK; the SDK is blocking so calls go to the threadpool."""

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None, currency: str = "usd"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    @classmethod
    def from_env(cls) -> Optional["StripeGateway"]:
        secret_key = os.environ.get("STRIPE_SECRET_KEY")
        if not secret_key:
            return None
        return cls(
            secret_key,
            webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            currency=os.environ.get("PAYMENT_CURRENCY", "usd"),
        )

    @property
    def test_mode(self) -> bool:
        return self.secret_key.startswith("sk_test_")

    async def create_payment_intent(self, amount_cents: int, metadata: Dict[str, str], idempotency_key: str,
                                    receipt_email: Optional[str] = None,
                                    shipping: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params = {
            "amount": amount_cents,
            "currency": self.currency,
            "metadata": metadata,
            "api_key": self.secret_key,
            "idempotency_key": idempotency_key,
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        if shipping:
            params["shipping"] = shipping
        if self.test_mode:
            params["payment_method_types"] = ["card"]
        try:
            intent = await run_in_threadpool(stripe.PaymentIntent.create, **params)
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent create failed: %s", e)
            raise ProviderError(f"Payment provider error: {e.user_message or 'request failed'}")
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            intent = await run_in_threadpool(stripe.PaymentIntent.retrieve, intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent retrieve failed for %s: %s", intent_id, e)
            raise ProviderError(f"Payment provider error: {e.user_message or 'request failed'}")
        return intent

    async def cancel_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        try:
            intent = await run_in_threadpool(stripe.PaymentIntent.cancel, intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent cancel failed for %s: %s", intent_id, e)
            raise ProviderError(f"Payment provider error: {e.user_message or 'request failed'}")
        return intent

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise PaymentsUnavailable("Stripe webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("Rejected Stripe webhook: %s", e)
            raise Forbidden("Invalid webhook signature")
        return event


def _require_buyer(car: Dict[str, Any], requester: User) -> Dict[str, Any]:
    offer = accepted_offer(car)
    if offer is None:
        raise InvalidState("Car has no accepted offer")
    if offer["user_id"] != requester.id:
        raise Forbidden("Only the holder of the accepted offer can pay for this car")
    return offer


def _billing_params(billing_details: Optional[BillingDetails]) -> Dict[str, Any]:
    if billing_details is None:
        return {}
    params = {"receipt_email": billing_details.email}
    address = billing_details.address
    if address is not None:
        params["shipping"] = {
            "name": billing_details.name,
            "address": {
                "line1": address.line1,
                "line2": address.line2 or "",
                "city": address.city,
                "state": address.state,
                "postal_code": address.postal_code,
                "country": address.country,
            },
        }
    return params


def _idempotency_key(car: Dict[str, Any], offer: Dict[str, Any], billing: Dict[str, Any]) -> str:
    key = f"{car['id']}:{offer['id']}"
    if billing:
        digest = hashlib.sha256(json.dumps(billing, sort_keys=True).encode()).hexdigest()
        key = f"{key}:{digest[:16]}"
    return key


async def _cancel_open_intent(gateway: StripeGateway, intent_id: str):
    """Cancel a payment session that must no longer be payable."""
    intent = await gateway.retrieve_payment_intent(intent_id)
    if intent.get("status") == PAYMENT_SUCCEEDED:
        raise InvalidState("Payment for this car was already captured; finalize the sale instead")
    if intent.get("status") != PAYMENT_CANCELED:
        await gateway.cancel_payment_intent(intent_id)
        logger.info("Canceled payment session %s", intent_id)


async def create_payment_session(db, gateway: StripeGateway, car_id: str, requester: User,
                                 billing_details: Optional[BillingDetails] = None) -> PaymentSession:
    car = await get_car(db, car_id)
    holder = accepted_offer(car)
    if holder is not None and holder["user_id"] != requester.id:
        raise Forbidden("Only the holder of the accepted offer can pay for this car")
    if car["status"] != RESERVED:
        raise InvalidState(f"Car is {car['status']}; payment requires a reservation")
    offer = _require_buyer(car, requester)

    # Charge the accepted offer, never the asking price
    amount_cents = to_minor_units(offer["amount"])
    if amount_cents < MIN_CHARGE_CENTS or amount_cents > MAX_CHARGE_CENTS:
        raise InvalidAmount(
            "Payment amount is outside what the card processor accepts; contact us for wire transfer arrangements",
            {"amount": amount_cents, "min_amount": MIN_CHARGE_CENTS, "max_amount": MAX_CHARGE_CENTS},
        )

    previous = car.get("payment_intent_id")
    if previous:
        prior = await gateway.retrieve_payment_intent(previous)
        if prior.get("status") == PAYMENT_SUCCEEDED:
            raise InvalidState("Payment for this car was already captured; finalize the sale instead")

    billing = _billing_params(billing_details)
    intent = await gateway.create_payment_intent(
        amount_cents,
        metadata={
            "car_id": car["id"],
            "offer_id": offer["id"],
            "buyer_id": requester.id,
            "car_name": f"{car['make']} {car['model']}",
        },
        idempotency_key=_idempotency_key(car, offer, billing),
        **billing,
    )

    if previous != intent["id"]:
        result = await db.cars.update_one(
            {"id": car["id"], "status": RESERVED},
            {"$set": {"payment_intent_id": intent["id"]}, "$inc": {"version": 1}},
        )
        if result.matched_count == 0:
            raise InvalidState("Car left the reserved state while the payment session was created")
        # Only the stored session may stay payable
        if previous:
            await _cancel_open_intent(gateway, previous)

    logger.info("Payment session %s created for car %s (%d %s)", intent["id"], car_id, amount_cents, intent["currency"])
    return PaymentSession(
        client_secret=intent["client_secret"],
        payment_intent_id=intent["id"],
        amount=intent["amount"],
        currency=intent["currency"],
    )


async def finalize_sale(db, gateway: StripeGateway, car_id: str, requester: User) -> Dict[str, Any]:
    car = await get_car(db, car_id)

    # Confirmation callbacks can arrive more than once
    if car["status"] == SOLD:
        if car.get("owner_id") == requester.id:
            return car
        raise Forbidden("Car was sold to another buyer")

    offer = _require_buyer(car, requester)
    if car["status"] != RESERVED:
        raise InvalidState(f"Car is {car['status']}; only reserved cars can be sold")
    if not car.get("payment_intent_id"):
        raise InvalidState("No payment session exists for this car")

    intent = await gateway.retrieve_payment_intent(car["payment_intent_id"])
    metadata = intent.get("metadata") or {}
    if intent.get("status") != PAYMENT_SUCCEEDED:
        raise InvalidState(f"Payment has not been captured (status: {intent.get('status')})")
    if metadata.get("car_id") != car["id"] or intent.get("amount") != to_minor_units(offer["amount"]):
        logger.error("Payment intent %s does not match car %s", intent.get("id"), car_id)
        raise InvalidState("Payment does not match the accepted offer")

    offers = [
        {**o, "status": REJECTED} if o["status"] == PENDING else o
        for o in car["offers"]
    ]
    try:
        car = await commit_car(db, car, {
            "offers": offers,
            "owner_id": requester.id,
            "status": SOLD,
            "sold_at": utcnow(),
            "sold_price": offer["amount"],
        })
    except InvalidState:
        # A concurrent confirmation for the same buyer may have finished first.
        current = await get_car(db, car_id)
        if current["status"] == SOLD and current.get("owner_id") == requester.id:
            return current
        raise
    logger.info("Car %s sold to %s for %.2f", car_id, requester.id, offer["amount"])
    return car


async def handle_webhook_event(db, gateway: StripeGateway, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Finalize the sale a succeeded PaymentIntent belongs to.

    Returns None for events that need no action so Stripe stops redelivering them.
    """
    if event.get("type") != "payment_intent.succeeded":
        logger.info("Ignoring Stripe event %s", event.get("type"))
        return None

    intent = event["data"]["object"]
    metadata = intent.get("metadata") or {}
    car_id, buyer_id = metadata.get("car_id"), metadata.get("buyer_id")
    if not car_id or not buyer_id:
        logger.warning("Payment intent %s carries no car metadata", intent.get("id"))
        return None

    car = await db.cars.find_one({"id": car_id})
    if not car or car.get("payment_intent_id") != intent.get("id"):
        logger.error("Payment intent %s succeeded but is not the current session for car %s; refund required",
                     intent.get("id"), car_id)
        return None

    user = await db.users.find_one({"id": buyer_id})
    if not user:
        raise NotFound(f"User {buyer_id} not found")
    return await finalize_sale(db, gateway, car_id, User(**user))


async def release_reservation(db, gateway: Optional[StripeGateway], car_id: str, actor: User,
                              timeout_hours: Optional[float]) -> Dict[str, Any]:
    """Put a reserved car whose payment never arrived back on the market.

    The buyer's open payment session is canceled first; a session that already
    captured funds blocks the release.
    """
    if not actor.is_contractor:
        raise Forbidden("Contractor access required")
    if timeout_hours is None:
        raise InvalidState("Reservation release is disabled")

    car = await get_car(db, car_id)
    if car["status"] != RESERVED:
        raise InvalidState(f"Car is {car['status']}, not RESERVED")
    reserved_at = as_utc(car.get("reserved_at"))
    if reserved_at and utcnow() - reserved_at < timedelta(hours=timeout_hours):
        raise InvalidState("Reservation has not lapsed yet")

    if car.get("payment_intent_id"):
        if gateway is None:
            raise PaymentsUnavailable("Payment service not configured; cannot cancel the open payment session")
        await _cancel_open_intent(gateway, car["payment_intent_id"])

    offers = [
        {**o, "status": REJECTED} if o["status"] == ACCEPTED else o
        for o in car["offers"]
    ]
    car = await commit_car(db, car, {
        "offers": offers,
        "status": AVAILABLE,
        "reserved_at": None,
        "payment_intent_id": None,
    })
    logger.info("Reservation on car %s released by %s", car_id, actor.id)
    return car
