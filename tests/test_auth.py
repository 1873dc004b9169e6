from datetime import timedelta

import jwt
import pytest

from auth import RECOVERY_TOKEN, SIGNED_IN, SIGNED_OUT, USER_UPDATED, AuthError, SessionStore
from conftest import TEST_SECRET, RecordingStore
from database import utcnow


def recovery_token(link):
    return link.split("access_token=", 1)[1].split("&", 1)[0]


def test_sign_up_then_sign_in(auth, mongo_db):
    session = auth.sign_up("Rider@Example.com", "secret123", {"full_name": "Ravi"})
    assert session.user.email == "rider@example.com"
    assert session.user.provider == "email"
    assert session.user.user_metadata == {"full_name": "Ravi"}

    stored = mongo_db["auth_users"].find_one({"email": "rider@example.com"})
    assert stored["hashed_password"] != "secret123"

    again = auth.sign_in("rider@example.com", "secret123")
    assert again.user.id == session.user.id
    assert auth.get_session(again.access_token).user.id == session.user.id


def test_sign_in_rejects_wrong_password(auth):
    auth.sign_up("rider@example.com", "secret123")
    with pytest.raises(AuthError) as exc:
        auth.sign_in("rider@example.com", "wrong-one")
    assert exc.value.message == "Invalid login credentials"
    with pytest.raises(AuthError):
        auth.sign_in("nobody@example.com", "secret123")


def test_sign_up_rejects_duplicates_and_short_passwords(auth):
    auth.sign_up("rider@example.com", "secret123")
    with pytest.raises(AuthError) as exc:
        auth.sign_up("rider@example.com", "another123")
    assert exc.value.status_code == 400
    with pytest.raises(AuthError) as exc:
        auth.sign_up("new@example.com", "123")
    assert exc.value.status_code == 422


def test_get_session_rejects_bad_tokens(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    assert auth.get_session(None) is None
    assert auth.get_session("not-a-token") is None

    expired = jwt.encode(
        {"sub": session.user.id, "jti": "x", "exp": utcnow() - timedelta(minutes=1)},
        TEST_SECRET,
        algorithm="HS256",
    )
    assert auth.get_session(expired) is None

    foreign = jwt.encode({"sub": session.user.id, "jti": "y", "exp": utcnow() + timedelta(minutes=5)},
                         "some-other-secret-that-is-long-enough", algorithm="HS256")
    assert auth.get_session(foreign) is None


def test_sign_out_revokes_token(auth):
    events = []
    auth.on_session_change(lambda event, session: events.append(event))
    session = auth.sign_up("rider@example.com", "secret123")
    auth.sign_out(session.access_token)
    assert auth.get_session(session.access_token) is None
    assert events == [SIGNED_IN, SIGNED_OUT]


def test_session_store_loads_existing_session(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    store = SessionStore(auth, session.access_token)
    assert store.is_loading()
    assert store.current_user() is None

    store.start()
    assert not store.is_loading()
    assert store.current_user().id == session.user.id


def test_session_store_without_token(auth):
    store = SessionStore(auth)
    store.start()
    assert not store.is_loading()
    assert store.current_user() is None


def test_session_store_survives_store_outage(auth, mongo_db):
    session = auth.sign_up("rider@example.com", "secret123")
    auth.store = RecordingStore(mongo_db, fail_on={"select_one"})
    store = SessionStore(auth, session.access_token)
    store.start()
    assert not store.is_loading()
    assert store.current_user() is None


def test_anonymous_store_ignores_other_callers_signing_in(auth):
    auth.sign_up("victim@example.com", "secret123")
    store = SessionStore(auth)
    store.start()

    auth.sign_in("victim@example.com", "secret123")
    auth.sign_up("someone@example.com", "secret123")
    assert store.current_user() is None
    assert store.current_session() is None


def test_store_adopts_its_own_sign_in(auth):
    auth.sign_up("rider@example.com", "secret123")
    store = SessionStore(auth)
    store.start()

    session = store.sign_in("rider@example.com", "secret123")
    assert store.current_user().id == session.user.id
    assert store.access_token == session.access_token

    fresh = SessionStore(auth)
    fresh.start()
    created = fresh.sign_up("new@example.com", "secret123")
    assert fresh.current_user().id == created.user.id


def test_store_follows_only_its_own_token(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    store = SessionStore(auth, session.access_token)
    store.start()

    second_device = auth.sign_in("rider@example.com", "secret123")
    assert store.current_session().access_token == session.access_token

    auth.sign_out(second_device.access_token)
    assert store.current_user().id == session.user.id

    other = auth.sign_up("other@example.com", "secret123")
    auth.sign_out(other.access_token)
    assert store.current_user().id == session.user.id

    auth.sign_out(session.access_token)
    assert store.current_user() is None


def test_session_store_stop_unsubscribes(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    store = SessionStore(auth, session.access_token)
    store.start()
    store.stop()
    store.stop()
    auth.sign_out(session.access_token)
    assert store.current_user().id == session.user.id


def test_update_current_user_merges_metadata(auth):
    session = auth.sign_up("rider@example.com", "secret123", {"full_name": "Ravi", "phone": "111"})
    store = SessionStore(auth, session.access_token)
    store.start()
    events = []
    auth.on_session_change(lambda event, s: events.append(event))

    user = auth.update_current_user(session.access_token, data={"phone": "222"})
    assert user.user_metadata == {"full_name": "Ravi", "phone": "222"}
    assert events == [USER_UPDATED]
    assert store.current_user().user_metadata["phone"] == "222"
    assert auth.get_session(session.access_token).user.user_metadata["phone"] == "222"


def test_update_current_user_changes_password(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    auth.update_current_user(session.access_token, password="newsecret")
    assert auth.sign_in("rider@example.com", "newsecret").user.id == session.user.id
    with pytest.raises(AuthError):
        auth.sign_in("rider@example.com", "secret123")


def test_update_current_user_requires_session(auth):
    with pytest.raises(AuthError) as exc:
        auth.update_current_user(None, data={"phone": "1"})
    assert exc.value.status_code == 401


def test_oauth_authorize_url(auth):
    url = auth.sign_in_with_oauth("google", "http://localhost:3000/auth/callback")
    assert url.startswith("https://accounts.example.org/auth?")
    assert "client_id=test-client" in url
    with pytest.raises(AuthError):
        auth.sign_in_with_oauth("myspace", "http://localhost:3000/auth/callback")


def test_complete_oauth_sign_in_creates_then_merges(auth, oauth_token):
    token = oauth_token(given_name="Asha", family_name="Rao", name="Asha Rao")
    session = auth.complete_oauth_sign_in("google", token)
    assert session.user.provider == "google"
    assert session.user.user_metadata["given_name"] == "Asha"

    again = auth.complete_oauth_sign_in("google", oauth_token(picture="https://img/a.png"))
    assert again.user.id == session.user.id
    assert again.user.user_metadata["full_name"] == "Asha Rao"
    assert again.user.user_metadata["avatar_url"] == "https://img/a.png"


def test_complete_oauth_sign_in_rejects_bad_token(auth, oauth_token):
    with pytest.raises(AuthError) as exc:
        auth.complete_oauth_sign_in("google", oauth_token(aud="someone-else"))
    assert exc.value.status_code == 401


def test_password_reset_link(auth):
    auth.sign_up("rider@example.com", "secret123")
    link = auth.send_password_reset("rider@example.com", "http://localhost:3000/reset-password")
    assert link.startswith("http://localhost:3000/reset-password#access_token=")
    assert link.endswith("&type=recovery")
    token = recovery_token(link)
    assert auth.get_session(token, token_type=RECOVERY_TOKEN).user.email == "rider@example.com"
    assert auth.send_password_reset("nobody@example.com", "http://localhost:3000/reset-password") is None


def test_recovery_token_is_not_a_session(auth):
    auth.sign_up("rider@example.com", "secret123")
    token = recovery_token(auth.send_password_reset("rider@example.com", "http://localhost:3000/reset-password"))
    assert auth.get_session(token) is None
    with pytest.raises(AuthError) as exc:
        auth.update_current_user(token, data={"phone": "1"})
    assert exc.value.status_code == 401


def test_reset_password_works_once(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    token = recovery_token(auth.send_password_reset("rider@example.com", "http://localhost:3000/reset-password"))

    user = auth.reset_password(token, "brandnew1")
    assert user.id == session.user.id
    assert auth.sign_in("rider@example.com", "brandnew1").user.id == session.user.id
    with pytest.raises(AuthError):
        auth.sign_in("rider@example.com", "secret123")

    with pytest.raises(AuthError) as exc:
        auth.reset_password(token, "another12")
    assert exc.value.status_code == 401


def test_reset_password_rejects_access_tokens(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    with pytest.raises(AuthError):
        auth.reset_password(session.access_token, "brandnew1")
    assert auth.sign_in("rider@example.com", "secret123").user.id == session.user.id


def test_verify_user_password_opens_no_session(auth):
    session = auth.sign_up("rider@example.com", "secret123")
    events = []
    auth.on_session_change(lambda event, s: events.append(event))

    assert auth.verify_user_password(session.user.id, "secret123") is True
    assert auth.verify_user_password(session.user.id, "wrong-one") is False
    assert auth.verify_user_password("missing", "secret123") is False
    assert events == []
