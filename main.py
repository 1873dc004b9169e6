import os
import base64
import binascii
import logging
from typing import Literal, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, HTTPException, Depends, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field

from auth import AuthError, AuthService, SessionStore
from bookings import DEFAULT_ROWS_PER_PAGE, BookingService, filter_bookings, paginate
from catalog import SORT_KEYS, TABS, filter_drivers, find_driver, load_catalog, locations, seed_drivers
from checkout import (
    DURATION_CHOICES,
    REDIRECT_DELAY_SECONDS,
    BookingSubmissionError,
    CheckoutStep,
    CheckoutWizard,
    WizardUnavailable,
    total_amount,
)
from database import db, ObjectStorage, StoreError, TableStore
from driver_registration import DETAILS_STEP, create_account, initial_step, prefill, submit_driver_details
from errors import FieldError, NotFoundError, TransitionError
from profiles import ProfileResolver, contact_phone, is_driver
from schemas import (
    LICENSE_TYPES,
    VEHICLE_TYPES,
    DriverApplication,
    Identity,
    PaymentDetails,
    TripDetails,
    UploadedDocument,
)

# Environment
SITE_URL = os.getenv("SITE_URL", "http://localhost:5173")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Driver Booking API", description="Book professional drivers by the hour")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

store = TableStore(db)
storage = ObjectStorage(db)
auth_service = AuthService(store)
security = HTTPBearer(auto_error=False)

# Dependencies

def get_store() -> TableStore:
    return store

def get_storage() -> ObjectStorage:
    return storage

def get_auth() -> AuthService:
    return auth_service

def get_session_store(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth: AuthService = Depends(get_auth),
):
    session_store = SessionStore(auth, credentials.credentials if credentials else None)
    session_store.start()
    try:
        yield session_store
    finally:
        session_store.stop()

def get_current_user(session_store: SessionStore = Depends(get_session_store)) -> Identity:
    user = session_store.current_user()
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user

def field_error(e: FieldError, status_code: int = 422) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"field": e.field, "message": e.message})

def auth_error(e: AuthError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)

def store_error(e: StoreError, message: str) -> HTTPException:
    logger.error("%s: %s", message, e)
    return HTTPException(status_code=502, detail=message)

# Models
class SignupBody(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None
    phone: Optional[str] = None

class LoginBody(BaseModel):
    email: EmailStr
    password: str

class OAuthCallbackBody(BaseModel):
    provider: Literal["google"] = "google"
    id_token: str
    redirect_to: str = "/"

class ForgotPasswordBody(BaseModel):
    email: EmailStr

class ResetPasswordBody(BaseModel):
    access_token: str
    password: str
    confirm_password: str

class ProfileUpdateBody(BaseModel):
    full_name: str
    phone: str = ""

class PasswordChangeBody(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str

class QuoteBody(BaseModel):
    driver_id: str
    duration_hours: int = 4

class CheckoutBody(BaseModel):
    driver_id: str
    duration_hours: int = 4
    trip: TripDetails
    payment: PaymentDetails

class ReviewBody(BaseModel):
    rating: int
    review: Optional[str] = None

class DriverAccountBody(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone_number: str = ""
    email: EmailStr
    password: str
    confirm_password: str

class DocumentBody(BaseModel):
    filename: str
    content_type: Optional[str] = None
    data_base64: str

class DriverDetailsBody(DriverApplication):
    license_picture: Optional[DocumentBody] = None

# Seed the driver catalog if empty
@app.on_event("startup")
def seed_catalog():
    if db is None:
        return
    try:
        seed_drivers(store)
    except StoreError as e:
        logger.error("Could not seed driver catalog: %s", e)

@app.get("/")
def root():
    return {"message": "Driver Booking API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"Error: {str(e)[:80]}"
    return response

# Auth
@app.post("/api/auth/signup")
def signup(body: SignupBody, session_store: SessionStore = Depends(get_session_store)):
    metadata = {k: v for k, v in {"full_name": body.full_name, "phone": body.phone}.items() if v}
    try:
        session = session_store.sign_up(body.email, body.password, metadata)
    except AuthError as e:
        raise auth_error(e)
    except StoreError as e:
        raise store_error(e, "An error occurred during registration")
    return session

@app.post("/api/auth/login")
def login(body: LoginBody, session_store: SessionStore = Depends(get_session_store)):
    try:
        session = session_store.sign_in(body.email, body.password)
    except AuthError as e:
        raise auth_error(e)
    except StoreError as e:
        raise store_error(e, "Failed to log in. Please try again.")
    return session

@app.post("/api/auth/logout")
def logout(auth: AuthService = Depends(get_auth), session_store: SessionStore = Depends(get_session_store)):
    try:
        auth.sign_out(session_store.access_token)
    except StoreError as e:
        raise store_error(e, "Failed to sign out")
    return {"status": "signed_out"}

@app.get("/api/auth/oauth/{provider}")
def oauth_url(provider: str, redirect_to: str = "/", auth: AuthService = Depends(get_auth)):
    try:
        url = auth.sign_in_with_oauth(provider, f"{SITE_URL}/auth/callback?{urlencode({'redirectTo': redirect_to})}")
    except AuthError as e:
        raise auth_error(e)
    return {"url": url}

@app.post("/auth/callback")
def oauth_callback(
    body: OAuthCallbackBody,
    auth: AuthService = Depends(get_auth),
    db_store: TableStore = Depends(get_store),
):
    try:
        session = auth.complete_oauth_sign_in(body.provider, body.id_token)
    except AuthError as e:
        raise HTTPException(status_code=e.status_code, detail={"message": e.message, "redirect_to": "/login"})
    except StoreError as e:
        raise store_error(e, "Authentication error. Please try again.")

    metadata = session.user.user_metadata
    try:
        ProfileResolver(db_store).upsert_profile(session.user, {
            "full_name": metadata.get("full_name"),
            "first_name": metadata.get("given_name"),
            "last_name": metadata.get("family_name"),
        })
    except StoreError:
        logger.warning("Profile sync after OAuth sign-in failed for %s", session.user.id)
    return {"session": session, "redirect_to": body.redirect_to or "/"}

@app.post("/api/auth/forgot-password")
def forgot_password(body: ForgotPasswordBody, auth: AuthService = Depends(get_auth)):
    try:
        auth.send_password_reset(body.email, f"{SITE_URL}/reset-password")
    except StoreError as e:
        raise store_error(e, "Failed to send reset password email.")
    return {"message": "If an account exists for this email, a password reset link has been sent."}

@app.post("/api/auth/reset-password")
def reset_password(body: ResetPasswordBody, auth: AuthService = Depends(get_auth)):
    if body.password != body.confirm_password:
        raise HTTPException(status_code=422, detail={"field": "confirm_password", "message": "Passwords do not match"})
    try:
        auth.reset_password(body.access_token, body.password)
    except AuthError as e:
        raise auth_error(e)
    except StoreError as e:
        raise store_error(e, "Failed to reset password")
    return {"status": "password_updated", "redirect_to": "/login"}

# Me
def _profile_response(user: Identity, resolver: ProfileResolver) -> dict:
    profile = resolver.resolve_profile(user)
    return {
        "user": user,
        "profile": profile,
        "is_driver": is_driver(profile),
        "phone": contact_phone(profile),
    }

@app.get("/api/me")
def me(user: Identity = Depends(get_current_user), db_store: TableStore = Depends(get_store)):
    return _profile_response(user, ProfileResolver(db_store))

@app.put("/api/me")
def update_me(
    body: ProfileUpdateBody,
    user: Identity = Depends(get_current_user),
    db_store: TableStore = Depends(get_store),
    auth: AuthService = Depends(get_auth),
    session_store: SessionStore = Depends(get_session_store),
):
    resolver = ProfileResolver(db_store)
    try:
        resolver.upsert_profile(user, {"full_name": body.full_name, "phone": body.phone, "phone_number": body.phone})
        auth.update_current_user(session_store.access_token, data={"full_name": body.full_name, "phone": body.phone})
    except StoreError as e:
        raise store_error(e, "Failed to update profile")
    except AuthError as e:
        raise auth_error(e)
    return _profile_response(session_store.current_user() or user, resolver)

@app.put("/api/me/password")
def change_password(
    body: PasswordChangeBody,
    user: Identity = Depends(get_current_user),
    auth: AuthService = Depends(get_auth),
    session_store: SessionStore = Depends(get_session_store),
):
    if body.new_password != body.confirm_password:
        raise HTTPException(status_code=422, detail={"field": "confirm_password", "message": "New passwords do not match"})
    try:
        current_ok = auth.verify_user_password(user.id, body.current_password)
    except StoreError as e:
        raise store_error(e, "Failed to update password")
    if not current_ok:
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    try:
        auth.update_current_user(session_store.access_token, password=body.new_password)
    except AuthError as e:
        raise auth_error(e)
    except StoreError as e:
        raise store_error(e, "Failed to update password")
    return {"status": "password_updated", "session": session_store.current_session()}

# Drivers
@app.get("/api/drivers")
def list_drivers(
    tab: str = Query("all", description="|".join(TABS)),
    search: str = "",
    location: str = "all",
    sort_by: str = Query("rating", description="|".join(SORT_KEYS)),
    db_store: TableStore = Depends(get_store),
):
    drivers = load_catalog(db_store)
    try:
        items = filter_drivers(drivers, tab=tab, search=search, location=location, sort_by=sort_by)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"items": items, "count": len(items), "locations": locations(drivers)}

@app.get("/api/drivers/{driver_id}")
def get_driver(driver_id: str, db_store: TableStore = Depends(get_store)):
    driver = find_driver(db_store, driver_id)
    if driver is None:
        raise HTTPException(status_code=404, detail="Driver not found")
    return driver

# Checkout
@app.post("/api/checkout/quote")
def checkout_quote(body: QuoteBody, db_store: TableStore = Depends(get_store)):
    driver = find_driver(db_store, body.driver_id)
    if driver is None or not driver.is_valid():
        raise HTTPException(status_code=404, detail={"message": "Driver not found", "redirect_to": WizardUnavailable.redirect_to})
    if body.duration_hours not in DURATION_CHOICES:
        raise HTTPException(status_code=422, detail={"field": "duration_hours", "message": "Unsupported duration"})
    return {
        "driver_id": driver.id,
        "price": driver.price,
        "duration_hours": body.duration_hours,
        "total_amount": total_amount(driver, body.duration_hours),
    }

@app.post("/api/checkout")
def checkout(body: CheckoutBody, user: Identity = Depends(get_current_user), db_store: TableStore = Depends(get_store)):
    try:
        wizard = CheckoutWizard(find_driver(db_store, body.driver_id), user.id, db_store)
    except WizardUnavailable as e:
        raise HTTPException(status_code=404, detail={"message": str(e), "redirect_to": e.redirect_to})
    try:
        wizard.set_duration(body.duration_hours)
    except FieldError as e:
        raise field_error(e)
    wizard.set_trip(body.trip)
    wizard.set_payment(body.payment)

    while wizard.step != CheckoutStep.REVIEW_AND_CONFIRM:
        result = wizard.next()
        if not result.ok:
            raise HTTPException(status_code=422, detail=result.model_dump(mode="json"))

    try:
        booking = wizard.submit()
    except FieldError as e:
        raise field_error(e)
    except BookingSubmissionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "booking": booking,
        "message": "Booking completed successfully!",
        "redirect_to": wizard.redirect_to,
        "redirect_after_seconds": REDIRECT_DELAY_SECONDS,
    }

# Bookings
@app.get("/api/bookings")
def list_bookings(
    search: str = "",
    page: int = Query(0, ge=0),
    rows_per_page: int = Query(DEFAULT_ROWS_PER_PAGE, ge=1, le=100),
    user: Identity = Depends(get_current_user),
    db_store: TableStore = Depends(get_store),
):
    try:
        bookings = BookingService(db_store).list_for_user(user.id)
    except StoreError as e:
        raise store_error(e, "Failed to load bookings. Please try again.")
    items, count = paginate(filter_bookings(bookings, search), page, rows_per_page)
    return {"items": items, "count": count, "page": page, "rows_per_page": rows_per_page}

def _load_booking(service: BookingService, booking_id: str, user: Identity):
    try:
        return service.get_for_user(booking_id, user.id)
    except FieldError as e:
        raise field_error(e, status_code=400)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise store_error(e, "Failed to load booking details. Please try again.")

@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, user: Identity = Depends(get_current_user), db_store: TableStore = Depends(get_store)):
    return _load_booking(BookingService(db_store), booking_id, user)

@app.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, user: Identity = Depends(get_current_user), db_store: TableStore = Depends(get_store)):
    service = BookingService(db_store)
    booking = _load_booking(service, booking_id, user)
    try:
        return service.cancel(booking, user.id)
    except TransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise store_error(e, "Failed to cancel booking. Please try again.")

@app.post("/api/bookings/{booking_id}/review")
def review_booking(
    booking_id: str,
    body: ReviewBody,
    user: Identity = Depends(get_current_user),
    db_store: TableStore = Depends(get_store),
):
    service = BookingService(db_store)
    booking = _load_booking(service, booking_id, user)
    try:
        return service.rate(booking, user.id, body.rating, body.review)
    except FieldError as e:
        raise field_error(e)
    except TransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        raise store_error(e, "Failed to submit review. Please try again.")

# Driver registration
@app.get("/api/driver-registration")
def driver_registration_start(session_store: SessionStore = Depends(get_session_store)):
    user = session_store.current_user()
    return {
        "step": initial_step(user),
        "prefill": prefill(user),
        "license_types": list(LICENSE_TYPES),
        "vehicle_types": list(VEHICLE_TYPES),
    }

@app.post("/api/driver-registration/account")
def driver_registration_account(
    body: DriverAccountBody,
    auth: AuthService = Depends(get_auth),
):
    try:
        session = create_account(auth, body.full_name, body.phone_number, body.email, body.password, body.confirm_password)
    except FieldError as e:
        raise field_error(e)
    except AuthError as e:
        raise auth_error(e)
    except StoreError as e:
        raise store_error(e, "An error occurred during registration")
    return {"session": session, "step": DETAILS_STEP}

@app.post("/api/driver-registration/details")
def driver_registration_details(
    body: DriverDetailsBody,
    user: Identity = Depends(get_current_user),
    db_store: TableStore = Depends(get_store),
    object_storage: ObjectStorage = Depends(get_storage),
    auth: AuthService = Depends(get_auth),
    session_store: SessionStore = Depends(get_session_store),
):
    document = None
    if body.license_picture is not None:
        try:
            data = base64.b64decode(body.license_picture.data_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=422, detail={"field": "license_picture", "message": "Invalid file encoding"})
        document = UploadedDocument(
            filename=body.license_picture.filename,
            content_type=body.license_picture.content_type,
            data=data,
        )
    application = DriverApplication(**body.model_dump(exclude={"license_picture"}))
    try:
        profile = submit_driver_details(
            user, application, db_store, object_storage, auth,
            access_token=session_store.access_token, document=document,
        )
    except AuthError as e:
        raise auth_error(e)
    except TransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        raise store_error(e, "Failed to create driver profile")
    return {
        "profile": profile,
        "message": "Driver registration successful! Your application is pending approval.",
        "redirect_to": "/login",
    }

# Storage
@app.get("/storage/{bucket}/{path:path}")
def public_object(bucket: str, path: str, object_storage: ObjectStorage = Depends(get_storage)):
    try:
        found = object_storage.download(bucket, path)
    except StoreError as e:
        raise store_error(e, "Storage unavailable")
    if found is None:
        raise HTTPException(status_code=404, detail="Object not found")
    content, content_type = found
    return Response(content=content, media_type=content_type)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
