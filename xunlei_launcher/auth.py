"""
Authentication module for the Xunlei panel.

Supports:
  - A single configured user whose name and password are kept only as
    SHA3-512 digests
  - Browser-side hashing: the login page submits digests, never plaintext
    that the server has to store
  - Server-side sessions keyed by the XUNLEI_SID cookie, with idle expiry

When no user or no password is configured, authentication is disabled
entirely and every request counts as logged in.
"""

import hashlib
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .config import SESSION_TTL_SECONDS

logger = logging.getLogger(__name__)


def hash_auth_message(message: str) -> str:
    """Lowercase hex SHA3-512 digest, identical to the login page's sha3_512()."""
    return hashlib.sha3_512(message.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Credentials:
    """Expected digests of the configured user name and password."""
    user_hash: Optional[str] = None
    password_hash: Optional[str] = None

    @classmethod
    def from_plain(cls, user: Optional[str], password: Optional[str]) -> "Credentials":
        return cls(
            user_hash=hash_auth_message(user) if user is not None else None,
            password_hash=hash_auth_message(password) if password is not None else None,
        )

    @property
    def enabled(self) -> bool:
        return self.user_hash is not None and self.password_hash is not None


class AuthGate:
    """Decides whether submitted credential digests match the configured ones."""

    def __init__(self, credentials: Credentials):
        self._credentials = credentials
        if credentials.enabled:
            logger.info("Authentication enabled")
        else:
            logger.warning("Authentication disabled: no user/password configured")

    @property
    def enabled(self) -> bool:
        return self._credentials.enabled

    def decide(self, submitted_user_hash: str, submitted_password_hash: str) -> bool:
        """
        Return True iff both digests equal the configured ones.

        Always True when authentication is disabled. The comparison is
        constant-time; there is no lockout or rate limiting.
        """
        if not self.enabled:
            return True
        user_ok = hmac.compare_digest(
            submitted_user_hash.encode("utf-8"),
            self._credentials.user_hash.encode("utf-8"),
        )
        password_ok = hmac.compare_digest(
            submitted_password_hash.encode("utf-8"),
            self._credentials.password_hash.encode("utf-8"),
        )
        return user_ok and password_ok


# ------------------------------------------------------------------
# Sessions
# ------------------------------------------------------------------

def new_session_id() -> str:
    """Random 256-bit cookie value."""
    return secrets.token_urlsafe(32)


@dataclass
class Session:
    """A browser that has logged in (or any browser, with auth disabled)."""
    session_id: str
    created_at: datetime = field(default_factory=datetime.now)
    last_seen: datetime = field(default_factory=datetime.now)

    def touch(self) -> None:
        self.last_seen = datetime.now()

    def is_expired(self, ttl: timedelta, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now()) - self.last_seen > ttl


class SessionStore:
    """
    In-memory session table guarded by one lock.

    The lock is held only for the duration of a single call. Nothing is
    persisted: restarting the launcher logs everyone out.
    """

    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._ttl = timedelta(seconds=ttl_seconds)

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self, session_id: str) -> Optional[Session]:
        """
        Look up a session.

        Sessions idle for longer than the TTL are dropped and reported
        as missing.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(self._ttl):
                del self._sessions[session_id]
                logger.debug("Session %s... expired", session_id[:8])
                return None
            return session

    def put(self, session_id: str, session: Session) -> None:
        with self._lock:
            self._sessions[session_id] = session

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def cleanup_expired(self) -> int:
        """Remove all expired sessions. Returns count removed."""
        now = datetime.now()
        with self._lock:
            expired = [
                sid for sid, sess in self._sessions.items()
                if sess.is_expired(self._ttl, now)
            ]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
