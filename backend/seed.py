"""Populate the garage with the house catalogue.

    python seed.py

Clears the ``cars`` collection first. Set SEED_CONTRACTOR_EMAIL and
SEED_CONTRACTOR_PASSWORD to also create (or promote) the contractor account.
"""
import asyncio
import logging
import os

from database import client, db
from models import ROLE_CONTRACTOR, Car, User
from server import pwd_context

logger = logging.getLogger(__name__)

DREAM_CARS = [
    {
        "make": "Porsche",
        "model": "911 GT3 RS (992)",
        "year": 2024,
        "asking_price": 295000,
        "description": "The ultimate track tool. Weissach Package included.",
        "image": "/assets/photo/porsche_911.png",
        "specs": {"engine": "4.0L Flat-6", "hp": "518 hp", "zero_sixty": "3.0s"},
    },
    {
        "make": "Ferrari",
        "model": "F40",
        "year": 1991,
        "asking_price": 2450000,
        "description": "The last Ferrari approved by Enzo himself. Raw, analog perfection.",
        "image": "/assets/photo/Ferrari_F40.png",
        "specs": {"engine": "2.9L Twin-Turbo V8", "hp": "471 hp", "zero_sixty": "4.1s"},
    },
    {
        "make": "McLaren",
        "model": "F1",
        "year": 1994,
        "asking_price": 20000000,
        "description": "The gold standard. Center seat, gold-lined engine bay.",
        "image": "/assets/photo/McLaren_F1.png",
        "specs": {"engine": "6.1L BMW V12", "hp": "618 hp", "zero_sixty": "3.2s"},
    },
    {
        "make": "Lamborghini",
        "model": "Countach LP5000",
        "year": 1988,
        "asking_price": 650000,
        "description": "The poster car of the 80s. Impossible geometry.",
        "image": "/assets/photo/Lamborghini_Countach.png",
        "specs": {"engine": "5.2L V12", "hp": "449 hp", "zero_sixty": "4.9s"},
    },
    {
        "make": "Porsche",
        "model": "Carrera GT",
        "year": 2005,
        "asking_price": 1500000,
        "description": "A Le Mans V10 with a manual gearbox and a wooden shift knob.",
        "image": "/assets/photo/Porsche_Carrera_GT.png",
        "specs": {"engine": "5.7L V10", "hp": "603 hp", "zero_sixty": "3.5s"},
    },
    {
        "make": "Mercedes-Benz",
        "model": "300 SL Gullwing",
        "year": 1955,
        "asking_price": 730000,
        "description": "Fuel injection and gullwing doors, two decades early.",
        "image": "/assets/photo/Mercedes_300SL.png",
        "specs": {"engine": "3.0L Inline-6", "hp": "215 hp", "zero_sixty": "8.8s"},
    },
]


def build_catalogue():
    # Floor sits roughly 10% below asking
    return [
        Car(**entry, min_price=round(entry["asking_price"] * 0.9), is_listed=True).model_dump()
        for entry in DREAM_CARS
    ]


async def seed_contractor(email: str, password: str):
    email = email.lower().strip()
    existing = await db.users.find_one({"email": email})
    if existing:
        await db.users.update_one({"id": existing["id"]}, {"$set": {"role": ROLE_CONTRACTOR}})
        logger.info("Promoted %s to contractor", email)
        return
    user = User(email=email, display_name="The House", role=ROLE_CONTRACTOR)
    await db.users.insert_one({**user.model_dump(), "password_hash": pwd_context.hash(password)})
    logger.info("Created contractor account %s", email)


async def seed():
    await db.cars.delete_many({})
    cars = build_catalogue()
    await db.cars.insert_many(cars)
    logger.info("Garage populated with %d cars", len(cars))

    email = os.environ.get("SEED_CONTRACTOR_EMAIL")
    password = os.environ.get("SEED_CONTRACTOR_PASSWORD")
    if email and password:
        await seed_contractor(email, password)


if __name__ == "__main__":
    try:
        asyncio.run(seed())
    finally:
        client.close()
