"""
Process-wide session state for the terminal.

The context subscribes to the identity provider when started and keeps the
current session and profile up to date. Profile lookups after an auth event
are deferred slightly so a burst of events only triggers one fetch.
"""
import logging
import threading
import time
from typing import Callable, Optional

from cafe_pos.auth import AuthEvent, AuthSession, IdentityProvider
from cafe_pos.errors import ErrorKind, Result
from cafe_pos.schemas import Role, UserProfile

logger = logging.getLogger(__name__)


class SessionContext:

    def __init__(
        self,
        provider: IdentityProvider,
        profile_fetch_delay: float = 0.1,
        retry_backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.profile_fetch_delay = profile_fetch_delay
        self.retry_backoff = retry_backoff
        self._sleep = sleep

        self.session: Optional[AuthSession] = None
        self.profile: Optional[UserProfile] = None
        self.loading = True

        self._active = False
        self._lock = threading.RLock()
        self._generation = 0
        self._pending_fetch: Optional[threading.Timer] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ========== Lifecycle ==========

    def start(self):
        if self._active:
            return
        self._active = True
        self._unsubscribe = self.provider.on_auth_state_change(self._on_auth_event)
        self._bootstrap()

    def close(self):
        with self._lock:
            self._active = False
            self._cancel_pending()
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None

    @property
    def active(self) -> bool:
        return self._active

    def _bootstrap(self):
        result = self.provider.get_session()
        if not result.ok and result.error.kind == ErrorKind.RATE_LIMITED:
            logger.warning(f"Rate limit hit while restoring the session, retrying in {self.retry_backoff}s")
            self._sleep(self.retry_backoff)
            if not self._active:
                return
            result = self.provider.get_session()

        if not self._active:
            return
        if not result.ok:
            logger.error(f"Could not restore session: {result.message}")
            self.loading = False
            return

        session = result.value
        with self._lock:
            self.session = session
            generation = self._generation
        if session is not None:
            self._load_profile(session.user_id, generation)
        self.loading = False

    # ========== Auth events ==========

    def _on_auth_event(self, event: AuthEvent, session: Optional[AuthSession]):
        with self._lock:
            if not self._active:
                return
            self.session = session
            if event == AuthEvent.TOKEN_REFRESHED:
                return

            self._cancel_pending()
            if self.profile is not None and (session is None or self.profile.id != session.user_id):
                self.profile = None
            if session is not None:
                self._generation += 1
                timer = threading.Timer(
                    self.profile_fetch_delay,
                    self._load_profile,
                    args=(session.user_id, self._generation),
                )
                timer.daemon = True
                self._pending_fetch = timer
                timer.start()
            self.loading = False

    def _cancel_pending(self):
        if self._pending_fetch is not None:
            self._pending_fetch.cancel()
            self._pending_fetch = None
        self._generation += 1

    @property
    def pending_fetch(self) -> Optional[threading.Timer]:
        return self._pending_fetch

    def _load_profile(self, user_id: str, generation: int):
        with self._lock:
            if not self._active or generation != self._generation:
                return
        result = self.provider.fetch_profile(user_id)
        with self._lock:
            # a newer event or teardown happened while fetching
            if not self._active or generation != self._generation:
                return
            if not result.ok:
                logger.error(f"Error fetching profile {user_id}: {result.message}")
                self.profile = None
                return
            self.profile = result.value

    # ========== Identity ==========

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    @property
    def role(self) -> Optional[Role]:
        return self.profile.role if self.profile else None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def demo_mode(self) -> bool:
        return self.provider.demo_mode

    def sign_in(self, email: str, password: str) -> Result:
        return self.provider.sign_in(email, password)

    def sign_up(self, email: str, password: str, username: str) -> Result:
        return self.provider.sign_up(email, password, username)

    def sign_out(self) -> Result:
        result = self.provider.sign_out()
        if result.ok:
            with self._lock:
                self._cancel_pending()
                self.session = None
                self.profile = None
        return result
