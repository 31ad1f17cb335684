"""Offer workflow.

Offers live inside their car document. Submitting appends with a single
conditional ``$push``; accepting and declining rewrite the offer list through
:func:`inventory.commit_car`, so the whole transition lands in one atomic
write or not at all.
"""
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from errors import Forbidden, InvalidInput, InvalidState, NotFound
from inventory import commit_car, contractor_view, find_offer, get_car
from models import (
    ACCEPTED,
    AVAILABLE,
    ContractorOffer,
    MAX_MESSAGE_LENGTH,
    PENDING,
    REJECTED,
    RESERVED,
    Offer,
    User,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


def _require_contractor(actor: User):
    if not actor.is_contractor:
        raise Forbidden("Contractor access required")


def _validate_offer(amount, alias: Optional[str], message: Optional[str]) -> Tuple[float, str, Optional[str]]:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidInput("Offer amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidInput("Offer amount must be greater than zero")

    alias = (alias or "").strip()
    if not alias:
        raise InvalidInput("Offer alias must not be empty")

    if message is not None:
        message = message.strip() or None
    if message and len(message) > MAX_MESSAGE_LENGTH:
        raise InvalidInput(f"Offer message must be at most {MAX_MESSAGE_LENGTH} characters")

    return float(amount), alias, message


async def submit_offer(db, car_id: str, buyer: User, amount, alias: Optional[str],
                       message: Optional[str] = None) -> Dict[str, Any]:
    amount, alias, message = _validate_offer(amount, alias, message)
    offer = Offer(user_id=buyer.id, alias=alias, amount=amount, message=message)

    result = await db.cars.update_one(
        {"id": car_id, "status": AVAILABLE},
        {"$push": {"offers": offer.model_dump()}, "$inc": {"version": 1}},
    )
    if result.matched_count == 0:
        car = await get_car(db, car_id)
        raise InvalidState(f"Car is {car['status']} and not accepting offers")

    logger.info("Offer %s of %.2f submitted on car %s by %s", offer.id, amount, car_id, buyer.id)
    return offer.model_dump()


def _pending_offer(car: Dict[str, Any], offer_id: str) -> Dict[str, Any]:
    offer = find_offer(car, offer_id)
    if offer is None:
        raise NotFound(f"Offer {offer_id} not found on car {car['id']}")
    if offer["status"] != PENDING:
        raise InvalidState(f"Offer is already {offer['status']}")
    return offer


async def accept_offer(db, car_id: str, offer_id: str, actor: User) -> Dict[str, Any]:
    _require_contractor(actor)
    car = await get_car(db, car_id)
    _pending_offer(car, offer_id)
    if car["status"] != AVAILABLE:
        raise InvalidState(f"Car is {car['status']}; offers can only be accepted while AVAILABLE")

    offers = []
    for offer in car["offers"]:
        offer = dict(offer)
        if offer["id"] == offer_id:
            offer["status"] = ACCEPTED
        elif offer["status"] == PENDING:
            offer["status"] = REJECTED
        offers.append(offer)

    car = await commit_car(db, car, {"offers": offers, "status": RESERVED, "reserved_at": utcnow()})
    logger.info("Offer %s accepted on car %s by %s; car reserved", offer_id, car_id, actor.id)
    return car


async def decline_offer(db, car_id: str, offer_id: str, actor: User) -> Dict[str, Any]:
    _require_contractor(actor)
    car = await get_car(db, car_id)
    _pending_offer(car, offer_id)

    offers = [
        {**offer, "status": REJECTED} if offer["id"] == offer_id else offer
        for offer in car["offers"]
    ]
    car = await commit_car(db, car, {"offers": offers})
    logger.info("Offer %s declined on car %s by %s", offer_id, car_id, actor.id)
    return car


async def list_my_offers(db, user_id: str) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
    cars = await db.cars.find({"offers.user_id": user_id}).to_list(length=None)
    pairs = [
        (car, {**offer, "created_at": as_utc(offer["created_at"])})
        for car in cars
        for offer in car.get("offers", [])
        if offer["user_id"] == user_id
    ]
    pairs.sort(key=lambda pair: pair[1]["created_at"], reverse=True)
    return pairs


async def list_car_offers(db, car_id: str, actor: User) -> List[ContractorOffer]:
    _require_contractor(actor)
    return contractor_view(await get_car(db, car_id)).offers


def accepted_offer(car: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    accepted = [offer for offer in car.get("offers", []) if offer["status"] == ACCEPTED]
    if len(accepted) > 1:
        # Should be unreachable while every transition goes through commit_car.
        logger.error("Car %s has %d accepted offers", car["id"], len(accepted))
        raise InvalidState("Car has more than one accepted offer")
    return accepted[0] if accepted else None
