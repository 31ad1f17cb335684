from fastapi import FastAPI, APIRouter, HTTPException, Depends, Cookie, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware
from passlib.context import CryptContext
import os
import logging
import secrets
from typing import List, Optional
from datetime import timedelta
import requests

from database import client, get_db, CORS_ORIGINS, SESSION_TTL_DAYS, reservation_timeout_hours
from errors import MarketplaceError, PaymentsUnavailable
from models import (
    CarContractor,
    CarPublic,
    ContractorOffer,
    LoginRequest,
    MyOffer,
    Offer,
    OfferCreate,
    PaymentRequest,
    PaymentSession,
    SessionData,
    SignupRequest,
    User,
    as_utc,
    utcnow,
)
import inventory
import offers
import payments

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app without a prefix
app = FastAPI(title="The Garage API")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Security
security = HTTPBearer(auto_error=False)
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

payment_gateway = payments.StripeGateway.from_env()
if payment_gateway is None:
    logger.warning("STRIPE_SECRET_KEY not set - payment endpoints disabled")


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})


def get_payment_gateway() -> payments.StripeGateway:
    if payment_gateway is None:
        raise PaymentsUnavailable("Payment service not configured. Please set STRIPE_SECRET_KEY in .env file.")
    return payment_gateway


def get_optional_payment_gateway() -> Optional[payments.StripeGateway]:
    return payment_gateway


# Authentication helpers
async def get_current_user(
    response: Response,
    session_token: Optional[str] = Cookie(None, alias="session_token"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
) -> User:
    token = session_token
    if not token and credentials:
        token = credentials.credentials

    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    # Check session in database
    session = await db.sessions.find_one({"session_token": token})
    if not session or as_utc(session["expires_at"]) < utcnow():
        if session:
            await db.sessions.delete_one({"session_token": token})
        response.delete_cookie("session_token")
        raise HTTPException(status_code=401, detail="Session expired")

    user = await db.users.find_one({"id": session["user_id"]})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    return User(**user)


async def require_contractor(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_contractor:
        raise HTTPException(status_code=403, detail="Contractor access required")
    return current_user


async def open_session(db, response: Response, user: User, token: Optional[str] = None) -> str:
    session = SessionData(
        session_token=token or secrets.token_urlsafe(32),
        user_id=user.id,
        expires_at=utcnow() + timedelta(days=SESSION_TTL_DAYS),
    )
    await db.sessions.insert_one(session.model_dump())
    response.set_cookie(
        "session_token",
        session.session_token,
        max_age=SESSION_TTL_DAYS * 24 * 3600,
        httponly=True,
        secure=True,
        samesite="none",
        path="/",
    )
    return session.session_token


# Auth routes
@api_router.post("/auth/signup")
async def signup(payload: SignupRequest, response: Response, db=Depends(get_db)):
    email = payload.email.lower().strip()
    display_name = payload.display_name.strip()
    if not display_name:
        raise HTTPException(status_code=400, detail="Display name is required")
    if await db.users.find_one({"email": email}):
        raise HTTPException(status_code=400, detail="An account with this email already exists")

    user = User(email=email, display_name=display_name, provider="local")
    password_hash = await run_in_threadpool(pwd_context.hash, payload.password)
    await db.users.insert_one({**user.model_dump(), "password_hash": password_hash})
    token = await open_session(db, response, user)
    logger.info("New local account %s", user.id)
    return {"user": user, "session_token": token}


@api_router.post("/auth/login")
async def login(payload: LoginRequest, response: Response, db=Depends(get_db)):
    record = await db.users.find_one({"email": payload.email.lower().strip(), "provider": "local"})
    if not record or not record.get("password_hash"):
        raise HTTPException(status_code=401, detail="Email or password is incorrect")
    if not await run_in_threadpool(pwd_context.verify, payload.password, record["password_hash"]):
        raise HTTPException(status_code=401, detail="Email or password is incorrect")

    user = User(**record)
    token = await open_session(db, response, user)
    return {"user": user, "session_token": token}


@api_router.get("/auth/session")
async def get_session_data(session_id: str, response: Response, db=Depends(get_db)):
    """Exchange an OAuth provider session id for a local session"""
    oauth_url = os.environ.get("OAUTH_SESSION_URL")
    if not oauth_url:
        raise HTTPException(status_code=503, detail="OAuth is not configured")

    try:
        provider_response = await run_in_threadpool(
            requests.get, oauth_url, headers={"X-Session-ID": session_id}, timeout=10
        )
    except requests.RequestException as e:
        logger.error("OAuth session exchange failed: %s", e)
        raise HTTPException(status_code=502, detail="Identity provider unavailable")

    if provider_response.status_code != 200:
        raise HTTPException(status_code=400, detail="Invalid session ID")

    data = provider_response.json()
    existing_user = await db.users.find_one({"email": data["email"].lower()})
    if existing_user:
        user = User(**existing_user)
    else:
        user = User(
            email=data["email"].lower(),
            display_name=data["name"],
            picture=data.get("picture"),
            provider="oauth",
        )
        await db.users.insert_one(user.model_dump())

    token = await open_session(db, response, user, token=data["session_token"])
    return {"user": user, "session_token": token}


@api_router.post("/auth/logout")
async def logout(response: Response, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    await db.sessions.delete_many({"user_id": current_user.id})
    response.delete_cookie("session_token", path="/", secure=True, samesite="none")
    return {"message": "Logged out successfully"}


@api_router.get("/auth/me", response_model=User)
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    return current_user


# Car routes
@api_router.get("/cars", response_model=List[CarPublic])
async def list_cars(db=Depends(get_db)):
    return [inventory.public_view(car) for car in await inventory.list_marketplace(db)]


@api_router.get("/cars/featured", response_model=Optional[CarPublic])
async def get_featured_car(db=Depends(get_db)):
    car = await inventory.featured_car(db)
    return inventory.public_view(car) if car else None


@api_router.get("/cars/{car_id}", response_model=CarPublic)
async def get_car(car_id: str, db=Depends(get_db)):
    return inventory.public_view(await inventory.get_car(db, car_id))


@api_router.post("/cars/{car_id}/listing", response_model=CarContractor)
async def toggle_listing(car_id: str, current_user: User = Depends(require_contractor), db=Depends(get_db)):
    return inventory.contractor_view(await inventory.toggle_listing(db, car_id))


@api_router.get("/house/cars", response_model=List[CarContractor])
async def house_inventory(current_user: User = Depends(require_contractor), db=Depends(get_db)):
    return [inventory.contractor_view(car) for car in await inventory.list_house_inventory(db)]


@api_router.get("/user/garage", response_model=List[CarPublic])
async def get_garage(current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return [inventory.public_view(car) for car in await inventory.list_garage(db, current_user.id)]


# Offer routes
@api_router.post("/cars/{car_id}/offers", response_model=Offer, status_code=201)
async def submit_offer(
    car_id: str,
    payload: OfferCreate,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    alias = payload.alias if payload.alias is not None else current_user.display_name
    return await offers.submit_offer(db, car_id, current_user, payload.amount, alias, payload.message)


@api_router.get("/cars/{car_id}/offers", response_model=List[ContractorOffer])
async def get_car_offers(car_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return await offers.list_car_offers(db, car_id, current_user)


@api_router.post("/cars/{car_id}/offers/{offer_id}/accept", response_model=CarContractor)
async def accept_offer(car_id: str, offer_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return inventory.contractor_view(await offers.accept_offer(db, car_id, offer_id, current_user))


@api_router.post("/cars/{car_id}/offers/{offer_id}/decline", response_model=CarContractor)
async def decline_offer(car_id: str, offer_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return inventory.contractor_view(await offers.decline_offer(db, car_id, offer_id, current_user))


@api_router.get("/user/offers", response_model=List[MyOffer])
async def get_my_offers(current_user: User = Depends(get_current_user), db=Depends(get_db)):
    pairs = await offers.list_my_offers(db, current_user.id)
    return [MyOffer(car=inventory.public_view(car), offer=Offer(**offer)) for car, offer in pairs]


@api_router.post("/cars/{car_id}/release", response_model=CarContractor)
async def release_reservation(
    car_id: str,
    current_user: User = Depends(get_current_user),
    gateway: Optional[payments.StripeGateway] = Depends(get_optional_payment_gateway),
    db=Depends(get_db),
):
    car = await payments.release_reservation(db, gateway, car_id, current_user, reservation_timeout_hours())
    return inventory.contractor_view(car)


# Payment routes
@api_router.get("/payment/config")
async def payment_config():
    publishable_key = os.environ.get("STRIPE_PUBLISHABLE_KEY")
    if not publishable_key:
        raise PaymentsUnavailable("Payment service not configured. Please set STRIPE_PUBLISHABLE_KEY in .env file.")
    return {
        "publishableKey": publishable_key,
        "testMode": publishable_key.startswith("pk_test_"),
    }


@api_router.post("/payment/create-intent", response_model=PaymentSession)
async def create_payment_intent(
    payload: PaymentRequest,
    current_user: User = Depends(get_current_user),
    gateway: payments.StripeGateway = Depends(get_payment_gateway),
    db=Depends(get_db),
):
    return await payments.create_payment_session(db, gateway, payload.car_id, current_user, payload.billing_details)


@api_router.post("/payment/finalize", response_model=CarPublic)
async def finalize_payment(
    payload: PaymentRequest,
    current_user: User = Depends(get_current_user),
    gateway: payments.StripeGateway = Depends(get_payment_gateway),
    db=Depends(get_db),
):
    car = await payments.finalize_sale(db, gateway, payload.car_id, current_user)
    return inventory.public_view(car)


@api_router.post("/payment/webhook")
async def stripe_webhook(
    request: Request,
    gateway: payments.StripeGateway = Depends(get_payment_gateway),
    db=Depends(get_db),
):
    payload = await request.body()
    event = gateway.construct_event(payload, request.headers.get("stripe-signature"))
    car = await payments.handle_webhook_event(db, gateway, event)
    return {"received": True, "car_id": car["id"] if car else None}


# Health check
@api_router.get("/")
async def root():
    return {"message": "The Garage API is running"}


# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
