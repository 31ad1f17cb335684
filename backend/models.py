from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, EmailStr, Field

# Car lifecycle
AVAILABLE = "AVAILABLE"
RESERVED = "RESERVED"
SOLD = "SOLD"
CAR_STATUSES = (AVAILABLE, RESERVED, SOLD)

# Offer lifecycle
PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"

# Roles
ROLE_USER = "user"
ROLE_CONTRACTOR = "contractor"

MAX_MESSAGE_LENGTH = 1000


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Models
class User(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    display_name: str
    role: str = ROLE_USER
    provider: str = "local"
    picture: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_contractor(self) -> bool:
        return self.role == ROLE_CONTRACTOR


class SessionData(BaseModel):
    session_token: str
    user_id: str
    expires_at: datetime


class Offer(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    alias: str
    amount: float
    status: str = PENDING
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Car(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    make: str
    model: str
    year: Optional[int] = None
    description: Optional[str] = None
    image: str = "/assets/placeholder.jpg"
    model_path: str = "/assets/sls300.glb"
    specs: Dict[str, Any] = Field(default_factory=dict)
    asking_price: float
    min_price: float
    status: str = AVAILABLE
    offers: List[Offer] = Field(default_factory=list)
    is_listed: bool = False
    owner_id: Optional[str] = None
    version: int = 0
    reserved_at: Optional[datetime] = None
    sold_at: Optional[datetime] = None
    sold_price: Optional[float] = None
    payment_intent_id: Optional[str] = None


# Request bodies
class SignupRequest(BaseModel):
    display_name: str
    email: EmailStr
    password: str = Field(..., min_length=8)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class OfferCreate(BaseModel):
    # Checked by offers.submit_offer, which rejects booleans and strings
    amount: Any = None
    alias: Optional[str] = None
    message: Optional[str] = None


class BillingAddress(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "US"


class BillingDetails(BaseModel):
    name: str
    email: Optional[EmailStr] = None
    address: Optional[BillingAddress] = None


class PaymentRequest(BaseModel):
    car_id: str
    billing_details: Optional[BillingDetails] = None


# Responses
class CarPublic(BaseModel):
    """Buyer-facing car. Never carries the seller's floor price or other bidders' offers."""
    id: str
    make: str
    model: str
    year: Optional[int] = None
    description: Optional[str] = None
    image: str
    model_path: str
    specs: Dict[str, Any] = Field(default_factory=dict)
    asking_price: float
    status: str
    is_listed: bool
    owner_id: Optional[str] = None
    offer_count: int = 0


class ContractorOffer(Offer):
    meets_min_price: bool


class CarContractor(CarPublic):
    min_price: float
    offers: List[ContractorOffer] = Field(default_factory=list)
    reserved_at: Optional[datetime] = None
    sold_at: Optional[datetime] = None
    sold_price: Optional[float] = None


class MyOffer(BaseModel):
    car: CarPublic
    offer: Offer


class PaymentSession(BaseModel):
    client_secret: str
    payment_intent_id: str
    amount: int
    currency: str
