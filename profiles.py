import logging
from enum import Enum
from typing import Any, Callable, Dict, NamedTuple, Optional, Type

from pydantic import BaseModel, ValidationError

from database import StoreError, TableStore, isoformat, utcnow
from schemas import DriverProfile, Identity, Profile, RiderProfile

logger = logging.getLogger(__name__)

DRIVER_TABLE = "driver_profiles"
RIDER_TABLE = "user_profiles"
OAUTH_PROVIDER = "google"


class Lookup(NamedTuple):
    row: Optional[dict] = None
    error: Optional[StoreError] = None

    @property
    def found(self) -> bool:
        return self.row is not None


class ProfileWrite(str, Enum):
    DRIVER_UPDATED = "driver_updated"
    RIDER_UPDATED = "rider_updated"
    RIDER_CREATED = "rider_created"


def is_driver(profile: Profile) -> bool:
    if isinstance(profile, DriverProfile):
        return True
    if isinstance(profile, RiderProfile):
        return profile.is_driver
    raise TypeError(f"Unknown profile type: {type(profile).__name__}")


def contact_phone(profile: Profile) -> str:
    if isinstance(profile, DriverProfile):
        return profile.phone_number
    if isinstance(profile, RiderProfile):
        return profile.phone
    raise TypeError(f"Unknown profile type: {type(profile).__name__}")


def _pick(patch: Dict[str, Any], keys, metadata: Dict[str, Any], meta_key: str) -> str:
    for key in keys:
        if patch.get(key):
            return patch[key]
    return metadata.get(meta_key) or ""


class ProfileResolver:
    """Finds the one profile that belongs to an identity.

    Lookups run driver table first, then rider table, then (for OAuth
    identities) a freshly created rider row. Store errors during lookups are
    logged and handled like a missing row, so `resolve_profile` always answers.
    """

    def __init__(self, store: TableStore):
        self.store = store

    def _lookup(self, table: str, filters: Dict[str, Any]) -> Lookup:
        try:
            return Lookup(row=self.store.select_one(table, filters))
        except StoreError as e:
            logger.error("Error fetching %s row: %s", table, e)
            return Lookup(error=e)

    @staticmethod
    def _parse(model: Type[BaseModel], lookup: Lookup):
        if not lookup.found:
            return None
        try:
            return model(**lookup.row)
        except ValidationError as e:
            logger.error("Malformed %s row %s: %s", model.__name__, lookup.row.get("id"), e)
            return None

    def _driver_step(self, identity: Identity) -> Optional[Profile]:
        return self._parse(DriverProfile, self._lookup(DRIVER_TABLE, {"user_id": identity.id}))

    def _rider_step(self, identity: Identity) -> Optional[Profile]:
        return self._parse(RiderProfile, self._lookup(RIDER_TABLE, {"email": identity.email}))

    def _oauth_step(self, identity: Identity) -> Optional[Profile]:
        if identity.provider != OAUTH_PROVIDER:
            return None
        metadata = identity.user_metadata
        try:
            self.upsert_profile(identity, {
                "full_name": metadata.get("full_name"),
                "first_name": metadata.get("given_name"),
                "last_name": metadata.get("family_name"),
            })
        except StoreError:
            return None
        return self._rider_step(identity)

    @staticmethod
    def _default(identity: Identity) -> RiderProfile:
        return RiderProfile(
            email=identity.email,
            full_name=identity.user_metadata.get("full_name") or "",
            persisted=False,
        )

    def resolve_profile(self, identity: Optional[Identity]) -> Optional[Profile]:
        if identity is None:
            return None
        steps = (
            self._driver_step,
            self._rider_step,
            self._oauth_step,
        )
        for step in steps:
            profile = step(identity)
            if profile is not None:
                return profile
        return self._default(identity)

    def _write(self, action: str, fn: Callable[[], Any]):
        try:
            return fn()
        except StoreError as e:
            logger.error("Error during %s: %s", action, e)
            raise

    def upsert_profile(self, identity: Identity, patch: Dict[str, Any]) -> ProfileWrite:
        """Apply `patch` to the identity's profile with exactly one write.

        A failed lookup aborts with StoreError instead of being read as a
        missing row, so an unreadable table never gains a second profile.
        """
        metadata = identity.user_metadata
        now = isoformat(utcnow())
        full_name = _pick(patch, ("full_name",), metadata, "full_name")

        driver = self._lookup(DRIVER_TABLE, {"user_id": identity.id})
        if driver.error is not None:
            raise driver.error
        if driver.found:
            self._write("driver profile update", lambda: self.store.update(DRIVER_TABLE, {
                "full_name": full_name,
                "email": patch.get("email") or identity.email or "",
                "phone_number": _pick(patch, ("phone_number", "phone"), metadata, "phone"),
                "updated_at": now,
            }, {"user_id": identity.id}))
            return ProfileWrite.DRIVER_UPDATED

        rider = self._lookup(RIDER_TABLE, {"email": identity.email})
        if rider.error is not None:
            raise rider.error
        if rider.found:
            rider_patch = {
                "full_name": full_name,
                "phone": _pick(patch, ("phone",), metadata, "phone"),
                "updated_at": now,
            }
            if "is_driver" in patch:
                rider_patch["is_driver"] = bool(patch["is_driver"])
            self._write("rider profile update", lambda: self.store.update(
                RIDER_TABLE, rider_patch, {"id": rider.row["id"]}
            ))
            return ProfileWrite.RIDER_UPDATED

        first_name = _pick(patch, ("first_name",), metadata, "given_name")
        last_name = _pick(patch, ("last_name",), metadata, "family_name")
        row = {
            "email": identity.email,
            "full_name": full_name or " ".join(n for n in (first_name, last_name) if n),
            "first_name": first_name,
            "last_name": last_name,
            "phone": _pick(patch, ("phone",), metadata, "phone"),
            "is_driver": False,
            "avatar_url": metadata.get("avatar_url") or "",
            "created_at": now,
            "updated_at": now,
        }
        self._write("rider profile insert", lambda: self.store.insert(RIDER_TABLE, [row]))
        return ProfileWrite.RIDER_CREATED

    def mark_rider_as_driver(self, identity: Identity) -> bool:
        matched = self._write("rider driver flag", lambda: self.store.update(
            RIDER_TABLE, {"is_driver": True, "updated_at": isoformat(utcnow())}, {"email": identity.email}
        ))
        return matched > 0
