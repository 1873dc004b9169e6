import logging
import uuid
from typing import Optional

from auth import AuthError, AuthService
from catalog import experience_years
from database import ObjectStorage, StoreError, TableStore, isoformat, utcnow
from errors import FieldError, TransitionError
from profiles import DRIVER_TABLE, OAUTH_PROVIDER, ProfileResolver
from schemas import DriverApplication, DriverProfile, Identity, Session, UploadedDocument

logger = logging.getLogger(__name__)

DOCUMENTS_BUCKET = "driver-documents"
LICENSE_FOLDER = "driver-licenses"

ACCOUNT_STEP = 0
DETAILS_STEP = 1


def initial_step(identity: Optional[Identity]) -> int:
    """OAuth identities already have an account and skip straight to details."""
    if identity is not None and identity.provider == OAUTH_PROVIDER:
        return DETAILS_STEP
    return ACCOUNT_STEP


def prefill(identity: Optional[Identity]) -> dict:
    if identity is None or identity.provider != OAUTH_PROVIDER:
        return {"full_name": "", "email": ""}
    return {"full_name": identity.user_metadata.get("full_name") or "", "email": identity.email or ""}


def create_account(
    auth: AuthService,
    full_name: str,
    phone_number: str,
    email: str,
    password: str,
    confirm_password: str,
) -> Session:
    if password != confirm_password:
        raise FieldError("confirm_password", "Passwords do not match")
    return auth.sign_up(email, password, {"full_name": full_name, "phone": phone_number, "is_driver": True})


def upload_license(storage: ObjectStorage, document: UploadedDocument) -> Optional[str]:
    """Store the license picture; None when the upload did not go through."""
    ext = document.filename.rsplit(".", 1)[-1].lower() if "." in document.filename else "bin"
    path = f"{LICENSE_FOLDER}/{uuid.uuid4()}.{ext}"
    try:
        storage.upload(DOCUMENTS_BUCKET, path, document.data, document.content_type)
    except StoreError as e:
        logger.error("Error uploading license picture: %s", e)
        return None
    return storage.get_public_url(DOCUMENTS_BUCKET, path)


def submit_driver_details(
    identity: Optional[Identity],
    application: DriverApplication,
    store: TableStore,
    storage: ObjectStorage,
    auth: AuthService,
    access_token: Optional[str] = None,
    document: Optional[UploadedDocument] = None,
) -> DriverProfile:
    if identity is None:
        raise AuthError("User authentication failed. Please try again.", 401)
    if store.select_one(DRIVER_TABLE, {"user_id": identity.id}):
        raise TransitionError("A driver application already exists for this account")

    picture_url = upload_license(storage, document) if document is not None else None

    now = isoformat(utcnow())
    row = {
        "user_id": identity.id,
        "full_name": application.full_name,
        "phone_number": application.phone_number,
        "license_number": application.license_number,
        "license_type": application.license_type,
        "license_expiry_date": application.license_expiry_date.isoformat() if application.license_expiry_date else None,
        "license_picture_url": picture_url,
        "years_of_experience": max(experience_years(application.experience), 0),
        "vehicle_type": application.vehicle_type,
        "previous_employment": application.previous_employment,
        "languages_spoken": list(dict.fromkeys(application.languages)),
        "email": identity.email or application.email or "",
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    try:
        row = store.insert(DRIVER_TABLE, [row])[0]
    except StoreError as e:
        logger.error("Error creating driver profile: %s", e)
        raise
    logger.info("Driver application %s submitted for identity %s", row["id"], identity.id)

    if identity.provider == OAUTH_PROVIDER:
        try:
            auth.update_current_user(access_token, data={"is_driver": True})
        except (AuthError, StoreError) as e:
            logger.error("Error updating driver metadata for %s: %s", identity.id, e)
        try:
            ProfileResolver(store).mark_rider_as_driver(identity)
        except StoreError as e:
            logger.error("Error flagging rider profile of %s: %s", identity.id, e)

    return DriverProfile(**row)
