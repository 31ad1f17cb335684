"""Car documents: lookups, visibility, and the compare-and-set write every
status change goes through."""
import logging
from typing import Any, Dict, List, Optional

from errors import InvalidState, NotFound
from models import AVAILABLE, CarContractor, CarPublic, ContractorOffer, as_utc

logger = logging.getLogger(__name__)


async def get_car(db, car_id: str) -> Dict[str, Any]:
    car = await db.cars.find_one({"id": car_id})
    if not car:
        raise NotFound(f"Car {car_id} not found")
    return car


def find_offer(car: Dict[str, Any], offer_id: str) -> Optional[Dict[str, Any]]:
    for offer in car.get("offers", []):
        if offer["id"] == offer_id:
            return offer
    return None


async def commit_car(db, car: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ``changes`` only if the car is still at the version it was read at.

    Every offer and status transition funnels through here, so two requests
    that raced off the same snapshot cannot both win.
    """
    version = car.get("version")
    match = {"id": car["id"]}
    if version is None:
        match["version"] = {"$exists": False}
    else:
        match["version"] = version

    result = await db.cars.update_one(match, {"$set": changes, "$inc": {"version": 1}})
    if result.matched_count == 0:
        raise InvalidState("Car was modified by another request; reload and try again")

    updated = dict(car)
    updated.update(changes)
    updated["version"] = (version or 0) + 1
    return updated


async def list_marketplace(db) -> List[Dict[str, Any]]:
    return await db.cars.find({"is_listed": True}).sort("asking_price", -1).to_list(length=None)


async def featured_car(db) -> Optional[Dict[str, Any]]:
    cars = await db.cars.find(
        {"is_listed": True, "status": AVAILABLE}
    ).sort("asking_price", -1).limit(1).to_list(length=None)
    return cars[0] if cars else None


async def list_garage(db, user_id: str) -> List[Dict[str, Any]]:
    return await db.cars.find({"owner_id": user_id}).to_list(length=None)


async def list_house_inventory(db) -> List[Dict[str, Any]]:
    return await db.cars.find({"owner_id": None}).sort("asking_price", -1).to_list(length=None)


async def toggle_listing(db, car_id: str) -> Dict[str, Any]:
    car = await get_car(db, car_id)
    car = await commit_car(db, car, {"is_listed": not car.get("is_listed", False)})
    logger.info("Car %s is_listed=%s", car_id, car["is_listed"])
    return car


def public_view(car: Dict[str, Any]) -> CarPublic:
    return CarPublic(
        id=car["id"],
        make=car["make"],
        model=car["model"],
        year=car.get("year"),
        description=car.get("description"),
        image=car.get("image", "/assets/placeholder.jpg"),
        model_path=car.get("model_path", "/assets/sls300.glb"),
        specs=car.get("specs") or {},
        asking_price=car["asking_price"],
        status=car["status"],
        is_listed=car.get("is_listed", False),
        owner_id=car.get("owner_id"),
        offer_count=len(car.get("offers", [])),
    )


def contractor_view(car: Dict[str, Any]) -> CarContractor:
    floor = car["min_price"]
    offers = [
        ContractorOffer(
            **{**offer, "created_at": as_utc(offer["created_at"])},
            meets_min_price=offer["amount"] >= floor,
        )
        for offer in car.get("offers", [])
    ]
    return CarContractor(
        **public_view(car).model_dump(),
        min_price=floor,
        offers=offers,
        reserved_at=as_utc(car.get("reserved_at")),
        sold_at=as_utc(car.get("sold_at")),
        sold_price=car.get("sold_price"),
    )
