import os
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import jwt
from passlib.context import CryptContext

from database import StoreError, TableStore, isoformat, utcnow
from schemas import Identity, Session

logger = logging.getLogger(__name__)

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me-before-deploying")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
RECOVERY_EXPIRES_MIN = int(os.getenv("RECOVERY_EXPIRES_MIN", "60"))
OAUTH_AUTHORIZE_URL = os.getenv("OAUTH_AUTHORIZE_URL", "https://accounts.google.com/o/oauth2/v2/auth")
OAUTH_CLIENT_ID = os.getenv("OAUTH_CLIENT_ID")
OAUTH_CLIENT_SECRET = os.getenv("OAUTH_CLIENT_SECRET")

SUPPORTED_OAUTH_PROVIDERS = ("google",)
MIN_PASSWORD_LENGTH = 6

ACCESS_TOKEN = "access"
RECOVERY_TOKEN = "recovery"

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
USER_UPDATED = "USER_UPDATED"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SessionHandler = Callable[[str, Optional[Session]], None]


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


class AuthError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthService:
    """Email/password and OAuth identities with JWT sessions.

    Identities live in the `auth_users` table; signed-out tokens are recorded in
    `revoked_tokens` until they expire. Every sign-in, sign-out and identity
    update is announced to the handlers registered with `on_session_change`.
    """

    def __init__(
        self,
        store: TableStore,
        secret: str = JWT_SECRET,
        expires_min: int = JWT_EXPIRES_MIN,
        oauth_client_id: Optional[str] = OAUTH_CLIENT_ID,
        oauth_client_secret: Optional[str] = OAUTH_CLIENT_SECRET,
        oauth_authorize_url: str = OAUTH_AUTHORIZE_URL,
    ):
        self.store = store
        self.secret = secret
        self.expires_min = expires_min
        self.oauth_client_id = oauth_client_id
        self.oauth_client_secret = oauth_client_secret
        self.oauth_authorize_url = oauth_authorize_url
        self._handlers: List[SessionHandler] = []

    # Notifications

    def on_session_change(self, handler: SessionHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _emit(self, event: str, session: Optional[Session]):
        for handler in list(self._handlers):
            handler(event, session)

    # Helpers

    @staticmethod
    def _identity(row: dict) -> Identity:
        return Identity(
            id=row["id"],
            email=row["email"],
            user_metadata=row.get("user_metadata") or {},
            app_metadata=row.get("app_metadata") or {},
        )

    def _issue_session(self, row: dict, minutes: Optional[int] = None, token_type: str = ACCESS_TOKEN) -> Session:
        now = utcnow()
        expires_at = now + timedelta(minutes=minutes or self.expires_min)
        payload = {
            "sub": row["id"],
            "email": row["email"],
            "jti": str(uuid.uuid4()),
            "type": token_type,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.secret, algorithm="HS256")
        return Session(access_token=token, expires_at=expires_at, user=self._identity(row))

    def _find_by_email(self, email: str) -> Optional[dict]:
        return self.store.select_one("auth_users", {"email": email.strip().lower()})

    @staticmethod
    def _check_password(password: str):
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters", 422)

    # Capabilities

    def _decode(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, self.secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired session token")
        except jwt.InvalidTokenError:
            logger.warning("Rejected malformed session token")
        return None

    def get_session(self, access_token: Optional[str], token_type: str = ACCESS_TOKEN) -> Optional[Session]:
        """Session for a token of the given type; recovery tokens only open recovery."""
        if not access_token:
            return None
        payload = self._decode(access_token)
        if payload is None:
            return None
        if payload.get("type") != token_type:
            logger.warning("Rejected %s token where %s was expected", payload.get("type"), token_type)
            return None
        if self.store.select_one("revoked_tokens", {"jti": payload.get("jti")}):
            return None
        row = self.store.select_one("auth_users", {"id": payload.get("sub")})
        if row is None:
            return None
        return Session(
            access_token=access_token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            user=self._identity(row),
        )

    def sign_up(self, email: str, password: str, user_metadata: Optional[Dict[str, Any]] = None) -> Session:
        self._check_password(password)
        if self._find_by_email(email):
            raise AuthError("User already registered", 400)
        now = isoformat(utcnow())
        row = {
            "email": email.strip().lower(),
            "hashed_password": hash_password(password),
            "user_metadata": dict(user_metadata or {}),
            "app_metadata": {"provider": "email", "providers": ["email"]},
            "created_at": now,
            "updated_at": now,
        }
        row = self.store.insert("auth_users", [row])[0]
        session = self._issue_session(row)
        logger.info("Registered identity %s", row["id"])
        self._emit(SIGNED_IN, session)
        return session

    def sign_in(self, email: str, password: str) -> Session:
        row = self._find_by_email(email)
        if not row or not row.get("hashed_password") or not verify_password(password, row["hashed_password"]):
            raise AuthError("Invalid login credentials", 400)
        session = self._issue_session(row)
        self._emit(SIGNED_IN, session)
        return session

    def sign_in_with_oauth(self, provider: str, redirect_to: str) -> str:
        """Return the provider URL the caller should be sent to."""
        if provider not in SUPPORTED_OAUTH_PROVIDERS:
            raise AuthError(f"Unsupported provider: {provider}", 400)
        if not self.oauth_client_id:
            raise AuthError("OAuth provider is not configured", 503)
        query = urlencode({
            "client_id": self.oauth_client_id,
            "redirect_uri": redirect_to,
            "response_type": "id_token",
            "scope": "openid email profile",
            "access_type": "offline",
            "prompt": "consent",
        })
        return f"{self.oauth_authorize_url}?{query}"

    def complete_oauth_sign_in(self, provider: str, id_token: str) -> Session:
        """Exchange a broker-signed id token for a session."""
        if provider not in SUPPORTED_OAUTH_PROVIDERS:
            raise AuthError(f"Unsupported provider: {provider}", 400)
        if not self.oauth_client_secret:
            raise AuthError("OAuth provider is not configured", 503)
        try:
            claims = jwt.decode(
                id_token,
                self.oauth_client_secret,
                algorithms=["HS256"],
                audience=self.oauth_client_id,
            )
        except jwt.InvalidTokenError as e:
            raise AuthError(f"Invalid id token: {e}", 401)
        email = (claims.get("email") or "").strip().lower()
        if not email:
            raise AuthError("Provider did not return an email address", 400)

        metadata = {
            "full_name": claims.get("name") or "",
            "given_name": claims.get("given_name") or "",
            "family_name": claims.get("family_name") or "",
            "avatar_url": claims.get("picture") or "",
        }
        metadata = {k: v for k, v in metadata.items() if v}
        row = self._find_by_email(email)
        now = isoformat(utcnow())
        if row is None:
            row = self.store.insert("auth_users", [{
                "email": email,
                "hashed_password": None,
                "user_metadata": metadata,
                "app_metadata": {"provider": provider, "providers": [provider]},
                "created_at": now,
                "updated_at": now,
            }])[0]
            logger.info("Registered %s identity %s", provider, row["id"])
        else:
            providers = list((row.get("app_metadata") or {}).get("providers") or [])
            if provider not in providers:
                providers.append(provider)
            row["user_metadata"] = {**(row.get("user_metadata") or {}), **metadata}
            row["app_metadata"] = {"provider": provider, "providers": providers}
            self.store.update(
                "auth_users",
                {"user_metadata": row["user_metadata"], "app_metadata": row["app_metadata"], "updated_at": now},
                {"id": row["id"]},
            )
        session = self._issue_session(row)
        self._emit(SIGNED_IN, session)
        return session

    def _revoke(self, access_token: str, session: Session):
        payload = jwt.decode(access_token, self.secret, algorithms=["HS256"])
        self.store.insert("revoked_tokens", [{
            "jti": payload["jti"],
            "user_id": session.user.id,
            "expires_at": isoformat(session.expires_at),
        }])

    def sign_out(self, access_token: Optional[str]):
        session = self.get_session(access_token)
        if session is None:
            return
        self._revoke(access_token, session)
        self._emit(SIGNED_OUT, session)

    def verify_user_password(self, user_id: str, password: str) -> bool:
        """Check a password against the stored hash without opening a session."""
        row = self.store.select_one("auth_users", {"id": user_id})
        if not row or not row.get("hashed_password"):
            return False
        return verify_password(password, row["hashed_password"])

    def send_password_reset(self, email: str, redirect_to: str) -> Optional[str]:
        """Issue a short-lived recovery link; None when the email is unknown."""
        row = self._find_by_email(email)
        if row is None:
            logger.info("Password reset requested for unknown email")
            return None
        session = self._issue_session(row, minutes=RECOVERY_EXPIRES_MIN, token_type=RECOVERY_TOKEN)
        logger.info("Password reset link issued for identity %s", row["id"])
        return f"{redirect_to}#access_token={session.access_token}&type={RECOVERY_TOKEN}"

    def reset_password(self, recovery_token: Optional[str], password: str) -> Identity:
        """Set a new password with a recovery token; the token works once."""
        session = self.get_session(recovery_token, token_type=RECOVERY_TOKEN)
        if session is None:
            raise AuthError("Password reset link is invalid or has expired", 401)
        user = self._update(session, password=password)
        self._revoke(recovery_token, session)
        logger.info("Password reset completed for identity %s", session.user.id)
        return user

    def _update(
        self,
        session: Session,
        password: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Identity:
        patch: Dict[str, Any] = {"updated_at": isoformat(utcnow())}
        if password is not None:
            self._check_password(password)
            patch["hashed_password"] = hash_password(password)
        if data:
            patch["user_metadata"] = {**session.user.user_metadata, **data}
        self.store.update("auth_users", patch, {"id": session.user.id})
        user = session.user.model_copy(update={"user_metadata": patch.get("user_metadata", session.user.user_metadata)})
        self._emit(USER_UPDATED, session.model_copy(update={"user": user}))
        return user

    def update_current_user(
        self,
        access_token: Optional[str],
        password: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Identity:
        session = self.get_session(access_token)
        if session is None:
            raise AuthError("Not authenticated", 401)
        return self._update(session, password=password, data=data)


class SessionStore:
    """Current identity for one caller, kept in step with auth notifications.

    The store only follows notifications about its own access token. Sign-ins
    made through the store are adopted directly; sign-ins by other callers are
    never picked up.
    """

    def __init__(self, auth: AuthService, access_token: Optional[str] = None):
        self.auth = auth
        self.access_token = access_token
        self._session: Optional[Session] = None
        self._loading = True
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self):
        try:
            self._session = self.auth.get_session(self.access_token)
        except StoreError as e:
            logger.error("Session check failed: %s", e)
            self._session = None
        self._loading = False
        self._unsubscribe = self.auth.on_session_change(self._on_change)

    def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _adopt(self, session: Session) -> Session:
        self.access_token = session.access_token
        self._session = session
        self._loading = False
        return session

    def sign_up(self, email: str, password: str, user_metadata: Optional[Dict[str, Any]] = None) -> Session:
        return self._adopt(self.auth.sign_up(email, password, user_metadata))

    def sign_in(self, email: str, password: str) -> Session:
        return self._adopt(self.auth.sign_in(email, password))

    def _on_change(self, event: str, session: Optional[Session]):
        if session is None or self._session is None:
            return
        if session.access_token != self._session.access_token:
            return
        if event == SIGNED_OUT:
            self._session = None
        else:
            self._session = session
        self._loading = False

    def current_user(self) -> Optional[Identity]:
        return self._session.user if self._session else None

    def current_session(self) -> Optional[Session]:
        return self._session

    def is_loading(self) -> bool:
        return self._loading
