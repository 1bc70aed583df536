import json
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import jwt
import requests
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from cafe_pos.errors import AuthError, RateLimitedError, Result
from cafe_pos.schemas import Role, UserProfile
from cafe_pos.users import ensure_profile, load_profile

logger = logging.getLogger(__name__)

# bcrypt is not always usable (missing backend, incompatible release)
try:
    pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
    pwd_context.hash("test")
except Exception as e:
    logger.warning(f"bcrypt unavailable ({e}), falling back to pbkdf2_sha256")
    pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 12 * 60

TOO_MANY_ATTEMPTS = "Trop de tentatives. Veuillez patienter quelques instants."
BAD_CREDENTIALS = "Identifiants incorrects"
DEMO_SIGNUP_DISABLED = "Inscription désactivée en mode démo. Utilisez les comptes de démonstration."

DEMO_USERS = {
    "admin": {
        "id": "demo-admin-1",
        "email": "admin@demo.com",
        "password": "admin123",
        "username": "Admin Demo",
        "role": Role.ADMIN,
    },
    "serveur": {
        "id": "demo-serveur-1",
        "email": "serveur@demo.com",
        "password": "serveur123",
        "username": "Serveur Demo",
        "role": Role.SERVER,
    },
}


def get_secret_key(key_file: str = ".secret_key") -> str:
    env_key = os.getenv("SECRET_KEY")
    if env_key:
        return env_key

    if os.path.exists(key_file):
        try:
            with open(key_file, "r", encoding="utf-8") as f:
                return f.read().strip()
        except UnicodeDecodeError:
            logger.warning("Unreadable secret key file, generating a new one")
            os.remove(key_file)

    new_key = secrets.token_urlsafe(32)
    with open(key_file, "w", encoding="utf-8") as f:
        f.write(new_key)
    if os.name != "nt":
        os.chmod(key_file, 0o600)
    logger.info("Generated a new SECRET_KEY")
    return new_key


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, secret_key: str, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def verify_token(token: str, secret_key: str):
    try:
        return jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def token_expiry(token: str) -> Optional[datetime]:
    """Reads `exp` from a token issued by someone else, without verifying it."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    if "exp" not in claims:
        return None
    return datetime.fromtimestamp(claims["exp"], tz=timezone.utc)


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


class AuthSession(BaseModel):
    user_id: str
    email: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(timezone.utc))


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class SessionFile:
    """Session persisted on the terminal's disk between restarts."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (ValueError, OSError) as e:
            logger.warning(f"Discarding unreadable session file {self.path}: {e}")
            self.clear()
            return None

    def save(self, data: dict):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, default=_json_default))
        if os.name != "nt":
            os.chmod(self.path, 0o600)

    def clear(self):
        if self.path.exists():
            self.path.unlink()


AuthListener = Callable[[AuthEvent, Optional[AuthSession]], None]


class IdentityProvider:
    """
    What the application needs from an identity service. Every call returns
    a Result; state changes are also announced to subscribers.
    """

    demo_mode = False

    def __init__(self):
        self._listeners: List[AuthListener] = []

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: AuthEvent, session: Optional[AuthSession]):
        for listener in list(self._listeners):
            listener(event, session)

    def sign_in(self, email: str, password: str) -> Result:
        raise NotImplementedError

    def sign_up(self, email: str, password: str, username: str) -> Result:
        raise NotImplementedError

    def sign_out(self) -> Result:
        raise NotImplementedError

    def get_session(self) -> Result:
        raise NotImplementedError

    def fetch_profile(self, user_id: str) -> Result:
        raise NotImplementedError

    def current_profile(self) -> Result:
        result = self.get_session()
        if not result.ok or result.value is None:
            return result
        return self.fetch_profile(result.value.user_id)


class DemoIdentityProvider(IdentityProvider):
    """Two fixed accounts, no backend required."""

    demo_mode = True

    def __init__(self, session_file: SessionFile, secret_key: str):
        super().__init__()
        self.session_file = session_file
        self.secret_key = secret_key
        self._password_hashes: Dict[str, str] = {
            account["email"]: get_password_hash(account["password"])
            for account in DEMO_USERS.values()
        }

    @staticmethod
    def _account(key: str, value: str) -> Optional[dict]:
        return next((a for a in DEMO_USERS.values() if a[key] == value), None)

    def sign_in(self, email: str, password: str) -> Result:
        account = self._account("email", email)
        if not account or not verify_password(password, self._password_hashes[email]):
            return Result.failure(AuthError(BAD_CREDENTIALS))

        lifetime = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        expires_at = datetime.now(timezone.utc) + lifetime
        token = create_access_token(
            {"sub": account["id"], "email": email, "role": account["role"].value},
            self.secret_key,
            expires_delta=lifetime,
        )
        session = AuthSession(user_id=account["id"], email=email, access_token=token, expires_at=expires_at)
        self.session_file.save({"session": session.dict()})
        logger.info(f"Demo sign-in: {email}")
        self._emit(AuthEvent.SIGNED_IN, session)
        return Result.success(value=session)

    def sign_up(self, email: str, password: str, username: str) -> Result:
        return Result.failure(AuthError(DEMO_SIGNUP_DISABLED))

    def sign_out(self) -> Result:
        self.session_file.clear()
        self._emit(AuthEvent.SIGNED_OUT, None)
        return Result.success()

    def get_session(self) -> Result:
        stored = self.session_file.load()
        if not stored:
            return Result.success(value=None)
        try:
            session = AuthSession(**stored["session"])
        except (KeyError, TypeError, ValidationError) as e:
            logger.warning(f"Discarding malformed demo session: {e}")
            self.session_file.clear()
            return Result.success(value=None)

        if verify_token(session.access_token, self.secret_key) is None:
            self.session_file.clear()
            return Result.success(value=None)
        return Result.success(value=session)

    def fetch_profile(self, user_id: str) -> Result:
        account = self._account("id", user_id)
        if account is None:
            return Result.success(value=None)
        return Result.success(value=UserProfile(
            id=account["id"],
            username=account["username"],
            role=account["role"],
            created_at=datetime.now(timezone.utc),
        ))


def seed_demo_profiles(session_factory):
    """Demo accounts get real profile rows so their orders show a name."""
    db = session_factory()
    try:
        for account in DEMO_USERS.values():
            ensure_profile(db, account["id"], account["username"], account["role"])
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not seed demo profiles: {e}")
    finally:
        db.close()


class RemoteIdentityProvider(IdentityProvider):
    """Client for the hosted auth REST API (`/auth/v1`)."""

    def __init__(self, url: str, api_key: str, session_factory, session_file: SessionFile,
                 http: Optional[requests.Session] = None, timeout: float = 10.0):
        super().__init__()
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.session_factory = session_factory
        self.session_file = session_file
        self.http = http or requests.Session()
        self.timeout = timeout
        self._session: Optional[AuthSession] = None

    # ========== HTTP ==========

    @staticmethod
    def _error_message(resp) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text or f"HTTP {resp.status_code}"
        for key in ("error_description", "msg", "message", "error"):
            if isinstance(body, dict) and body.get(key):
                return str(body[key])
        return f"HTTP {resp.status_code}"

    def _post(self, path: str, payload: Optional[dict] = None, params: Optional[dict] = None,
              token: Optional[str] = None) -> dict:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token or self.api_key}",
        }
        try:
            resp = self.http.post(
                f"{self.url}/auth/v1/{path}",
                json=payload or {},
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"Service d'authentification injoignable ({e})")

        if resp.status_code == 429:
            raise RateLimitedError(TOO_MANY_ATTEMPTS)
        if not resp.ok:
            raise AuthError(self._error_message(resp))
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            raise AuthError("Réponse inattendue du service d'authentification")

    def _session_from_payload(self, data: dict) -> AuthSession:
        try:
            user = data["user"]
            user_id = user["id"]
            access_token = data["access_token"]
        except (KeyError, TypeError):
            raise AuthError("Réponse inattendue du service d'authentification")

        try:
            if data.get("expires_at"):
                expires_at = datetime.fromtimestamp(int(data["expires_at"]), tz=timezone.utc)
            elif data.get("expires_in"):
                expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(data["expires_in"]))
            else:
                expires_at = token_expiry(access_token)
        except (TypeError, ValueError, OverflowError, OSError):
            raise AuthError("Réponse inattendue du service d'authentification")

        try:
            return AuthSession(
                user_id=user_id,
                email=user.get("email"),
                access_token=access_token,
                refresh_token=data.get("refresh_token"),
                expires_at=expires_at,
            )
        except ValidationError:
            raise AuthError("Réponse inattendue du service d'authentification")

    def _store(self, session: Optional[AuthSession]):
        self._session = session
        if session is None:
            self.session_file.clear()
        else:
            self.session_file.save({"session": session.dict()})

    # ========== Capability ==========

    def sign_in(self, email: str, password: str) -> Result:
        try:
            data = self._post("token", {"email": email, "password": password}, params={"grant_type": "password"})
            session = self._session_from_payload(data)
        except RateLimitedError as e:
            logger.warning(f"Sign-in rate limited for {email}")
            return Result.failure(e)
        except AuthError as e:
            return Result.failure(e)

        self._store(session)
        self._emit(AuthEvent.SIGNED_IN, session)
        return Result.success(value=session)

    def sign_up(self, email: str, password: str, username: str) -> Result:
        try:
            data = self._post("signup", {"email": email, "password": password, "data": {"username": username}})
        except AuthError as e:
            return Result.failure(e)

        user = data.get("user") or data
        user_id = user.get("id")
        if not user_id:
            return Result.failure(AuthError("Réponse inattendue du service d'authentification"))

        db = self.session_factory()
        try:
            ensure_profile(db, user_id, username)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not create profile for {user_id}: {e}")
            return Result.failure(AuthError("Erreur lors de la création du profil"))
        finally:
            db.close()

        if data.get("access_token"):
            try:
                session = self._session_from_payload(data)
            except AuthError as e:
                return Result.failure(e)
            self._store(session)
            self._emit(AuthEvent.SIGNED_IN, session)
        return Result.success("Compte créé", value=user_id)

    def sign_out(self) -> Result:
        session = self._session
        if session is not None:
            try:
                self._post("logout", token=session.access_token)
            except AuthError as e:
                return Result.failure(e)
        self._store(None)
        self._emit(AuthEvent.SIGNED_OUT, None)
        return Result.success()

    def get_session(self) -> Result:
        session = self._session
        if session is None:
            stored = self.session_file.load()
            if stored:
                try:
                    session = AuthSession(**stored["session"])
                except (KeyError, TypeError, ValidationError) as e:
                    logger.warning(f"Discarding malformed session: {e}")
                    self.session_file.clear()
        if session is None:
            return Result.success(value=None)
        if not session.is_expired():
            self._session = session
            return Result.success(value=session)

        if not session.refresh_token:
            self._store(None)
            self._emit(AuthEvent.SIGNED_OUT, None)
            return Result.success(value=None)
        try:
            data = self._post("token", {"refresh_token": session.refresh_token},
                              params={"grant_type": "refresh_token"})
            refreshed = self._session_from_payload(data)
        except RateLimitedError as e:
            logger.warning("Session refresh rate limited")
            return Result.failure(e)
        except AuthError as e:
            logger.info(f"Session refresh refused: {e.message}")
            self._store(None)
            self._emit(AuthEvent.SIGNED_OUT, None)
            return Result.success(value=None)

        self._store(refreshed)
        self._emit(AuthEvent.TOKEN_REFRESHED, refreshed)
        return Result.success(value=refreshed)

    def fetch_profile(self, user_id: str) -> Result:
        db = self.session_factory()
        try:
            profile = load_profile(db, user_id)
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Error fetching profile {user_id}: {e}")
            return Result.failure(AuthError("Erreur lors du chargement du profil"))
        finally:
            db.close()
        return Result.success(value=profile)


def select_identity_provider(settings, session_factory) -> IdentityProvider:
    session_file = SessionFile(settings.session_file)
    if settings.remote_auth_configured:
        logger.info(f"Using hosted auth at {settings.supabase_url}")
        return RemoteIdentityProvider(
            settings.supabase_url,
            settings.supabase_anon_key,
            session_factory,
            session_file,
            timeout=settings.http_timeout,
        )
    logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set, running with demo accounts")
    return DemoIdentityProvider(session_file, settings.secret_key or get_secret_key())
