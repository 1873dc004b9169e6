import pytest

from conftest import RecordingStore
from database import StoreError
from profiles import ProfileResolver, ProfileWrite, contact_phone, is_driver
from schemas import DriverProfile, Identity, RiderProfile


def email_identity(**metadata):
    return Identity(id="user-1", email="rider@gmail.com", user_metadata=metadata,
                    app_metadata={"provider": "email"})


def google_identity(**metadata):
    return Identity(id="user-2", email="asha@gmail.com", user_metadata=metadata,
                    app_metadata={"provider": "google"})


def test_no_identity_resolves_to_none(store):
    assert ProfileResolver(store).resolve_profile(None) is None
    assert store.calls == []


def test_driver_row_wins(store, mongo_db):
    mongo_db["driver_profiles"].insert_one({"id": "d1", "user_id": "user-1", "email": "rider@gmail.com",
                                            "full_name": "Rahul", "phone_number": "98200", "status": "pending"})
    mongo_db["user_profiles"].insert_one({"id": "r1", "email": "rider@gmail.com", "full_name": "Rahul R"})

    profile = ProfileResolver(store).resolve_profile(email_identity())
    assert isinstance(profile, DriverProfile)
    assert is_driver(profile)
    assert contact_phone(profile) == "98200"


def test_rider_row_keeps_stored_flag(store, mongo_db):
    mongo_db["user_profiles"].insert_one({"id": "r1", "email": "rider@gmail.com", "full_name": "R", "is_driver": True})
    profile = ProfileResolver(store).resolve_profile(email_identity())
    assert isinstance(profile, RiderProfile)
    assert is_driver(profile) is True


def test_oauth_identity_gets_persisted_rider_profile(store, mongo_db):
    profile = ProfileResolver(store).resolve_profile(google_identity(given_name="Asha", family_name="Rao"))

    assert isinstance(profile, RiderProfile)
    assert profile.persisted
    assert "Asha" in profile.full_name
    assert is_driver(profile) is False
    row = mongo_db["user_profiles"].find_one({"email": "asha@gmail.com"})
    assert "Asha" in row["full_name"]
    assert row["is_driver"] is False


def test_email_identity_without_rows_gets_transient_default(store):
    profile = ProfileResolver(store).resolve_profile(email_identity(full_name="Ravi"))
    assert profile == RiderProfile(email="rider@gmail.com", full_name="Ravi", persisted=False)
    assert store.writes() == []


def test_lookup_errors_fall_through_to_next_step(mongo_db):
    mongo_db["user_profiles"].insert_one({"id": "r1", "email": "rider@gmail.com", "full_name": "R"})
    flaky = RecordingStore(mongo_db, fail_on={"select_one"}, tables={"driver_profiles"})
    profile = ProfileResolver(flaky).resolve_profile(email_identity())
    assert isinstance(profile, RiderProfile)
    assert profile.id == "r1"


def test_resolution_never_raises(mongo_db):
    down = RecordingStore(mongo_db, fail_on={"select_one", "insert", "update"})
    profile = ProfileResolver(down).resolve_profile(google_identity(full_name="Asha Rao"))
    assert profile == RiderProfile(email="asha@gmail.com", full_name="Asha Rao", persisted=False)


def test_malformed_row_is_skipped(store, mongo_db):
    mongo_db["driver_profiles"].insert_one({"id": "d1", "user_id": "user-1", "status": "unknown-state"})
    profile = ProfileResolver(store).resolve_profile(email_identity())
    assert isinstance(profile, RiderProfile)


def test_upsert_updates_driver_row_only(store, mongo_db):
    mongo_db["driver_profiles"].insert_one({"id": "d1", "user_id": "user-1", "full_name": "Old"})
    mongo_db["user_profiles"].insert_one({"id": "r1", "email": "rider@gmail.com", "full_name": "Old"})

    result = ProfileResolver(store).upsert_profile(email_identity(), {"full_name": "New", "phone": "555"})
    assert result == ProfileWrite.DRIVER_UPDATED
    assert store.writes() == [("update", "driver_profiles")]
    row = mongo_db["driver_profiles"].find_one({"user_id": "user-1"})
    assert row["full_name"] == "New"
    assert row["phone_number"] == "555"
    assert mongo_db["user_profiles"].find_one({"id": "r1"})["full_name"] == "Old"


def test_upsert_updates_rider_row(store, mongo_db):
    mongo_db["user_profiles"].insert_one({"id": "r1", "email": "rider@gmail.com", "full_name": "Old"})
    result = ProfileResolver(store).upsert_profile(email_identity(), {"full_name": "New", "is_driver": True})
    assert result == ProfileWrite.RIDER_UPDATED
    assert store.writes() == [("update", "user_profiles")]
    row = mongo_db["user_profiles"].find_one({"id": "r1"})
    assert row["full_name"] == "New"
    assert row["is_driver"] is True


def test_upsert_inserts_rider_with_metadata_fallbacks(store, mongo_db):
    identity = google_identity(full_name="Asha Rao", phone="98765", avatar_url="https://img/a.png")
    result = ProfileResolver(store).upsert_profile(identity, {})
    assert result == ProfileWrite.RIDER_CREATED
    assert store.writes() == [("insert", "user_profiles")]
    row = mongo_db["user_profiles"].find_one({"email": "asha@gmail.com"})
    assert row["full_name"] == "Asha Rao"
    assert row["phone"] == "98765"
    assert row["avatar_url"] == "https://img/a.png"
    assert row["is_driver"] is False


def test_upsert_write_failure_propagates(mongo_db):
    down = RecordingStore(mongo_db, fail_on={"insert"})
    with pytest.raises(StoreError):
        ProfileResolver(down).upsert_profile(email_identity(), {"full_name": "X"})


def test_mark_rider_as_driver(store, mongo_db):
    resolver = ProfileResolver(store)
    assert resolver.mark_rider_as_driver(email_identity()) is False
    mongo_db["user_profiles"].insert_one({"id": "r1", "email": "rider@gmail.com", "is_driver": False})
    assert resolver.mark_rider_as_driver(email_identity()) is True
    assert mongo_db["user_profiles"].find_one({"id": "r1"})["is_driver"] is True


def test_unreadable_rider_table_gets_no_second_row(mongo_db):
    mongo_db["user_profiles"].insert_one({"id": "r1", "email": "asha@gmail.com", "full_name": "Asha"})
    flaky = RecordingStore(mongo_db, fail_on={"select_one"}, tables={"user_profiles"})

    profile = ProfileResolver(flaky).resolve_profile(google_identity(full_name="Asha Rao"))
    assert profile.persisted is False
    assert ("insert", "user_profiles") not in flaky.writes()
    assert mongo_db["user_profiles"].count_documents({"email": "asha@gmail.com"}) == 1


def test_duplicate_rider_rows_do_not_multiply(store, mongo_db):
    mongo_db["user_profiles"].insert_many([
        {"id": "r1", "email": "asha@gmail.com", "full_name": "Asha"},
        {"id": "r2", "email": "asha@gmail.com", "full_name": "Asha R"},
    ])
    resolver = ProfileResolver(store)
    for _ in range(3):
        resolver.resolve_profile(google_identity(full_name="Asha Rao"))
    assert store.writes() == []
    assert mongo_db["user_profiles"].count_documents({"email": "asha@gmail.com"}) == 2


def test_upsert_refuses_to_write_after_failed_lookup(mongo_db):
    flaky = RecordingStore(mongo_db, fail_on={"select_one"}, tables={"driver_profiles"})
    with pytest.raises(StoreError):
        ProfileResolver(flaky).upsert_profile(email_identity(), {"full_name": "X"})
    assert flaky.writes() == []

    duplicated = RecordingStore(mongo_db)
    mongo_db["user_profiles"].insert_many([
        {"id": "r1", "email": "rider@gmail.com"},
        {"id": "r2", "email": "rider@gmail.com"},
    ])
    with pytest.raises(StoreError) as exc:
        ProfileResolver(duplicated).upsert_profile(email_identity(), {"full_name": "X"})
    assert exc.value.code == "multiple_rows"
    assert duplicated.writes() == []
