import os
from pathlib import Path

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url, tz_aware=True)
db = client[os.environ['DB_NAME']]

SESSION_TTL_DAYS = int(os.environ.get('SESSION_TTL_DAYS', '7'))
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')


def reservation_timeout_hours():
    """Hours a reserved car may wait for payment, or None when reservations never lapse."""
    raw = os.environ.get('RESERVATION_TIMEOUT_HOURS')
    if not raw:
        return None
    return float(raw)


def get_db():
    return db
