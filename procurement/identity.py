"""
Identity provider: email/password sign-in, sign-out and auth-change events.

The panel only relies on the IdentityProvider interface.  LocalIdentityProvider
keeps credentials in config/identities.json with Argon2 password hashes
(pwdlib) and throttles repeated failures per email address.

Signing in proves who someone is, nothing more: access is granted only by a
profile in the store (see procurement.role_gate).
"""
import asyncio
import json
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from pwdlib import PasswordHash

from models.user import SessionUser
from .errors import (
    AUTH_INVALID_EMAIL,
    AUTH_RATE_LIMITED,
    AUTH_USER_NOT_FOUND,
    AUTH_WRONG_PASSWORD,
    AuthError,
)

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[SessionUser]], None]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

password_hash = PasswordHash.recommended()


def normalise_email(email: str) -> str:
    return (email or "").strip().lower()


class IdentityProvider:
    """Interface plus auth-change fan-out shared by all providers."""

    def __init__(self) -> None:
        self.current_user: Optional[SessionUser] = None
        self._listeners: list[AuthListener] = []

    async def sign_in(self, email: str, password: str) -> SessionUser:
        raise NotImplementedError

    async def sign_out(self) -> None:
        if self.current_user is not None:
            logger.info("Signed out: %s", self.current_user.email)
        self.current_user = None
        self._emit(None)

    def on_auth_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register a listener; it is called at once with the current user."""
        self._listeners.append(listener)
        listener(self.current_user)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, user: Optional[SessionUser]) -> None:
        for listener in list(self._listeners):
            listener(user)


class LocalIdentityProvider(IdentityProvider):
    """
    Identities stored in a JSON file:

        { "<uid>": {"email": ..., "password_hash": ..., "display_name": ...,
                    "created_at": ...}, ... }
    """

    def __init__(
        self,
        identities_file: Path,
        max_failed_attempts: int = 5,
        lockout_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self.identities_file = identities_file
        self.max_failed_attempts = max_failed_attempts
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._failures: dict[str, list[float]] = {}

    # ------------------------------------------------------------------
    # Credential file
    # ------------------------------------------------------------------

    def _load(self) -> dict:
        if not self.identities_file.exists():
            return {}
        with open(self.identities_file, encoding="utf-8") as f:
            return json.load(f)

    def _save(self, identities: dict) -> None:
        self.identities_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.identities_file.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(identities, f, indent=2)
        tmp.replace(self.identities_file)

    def find_by_email(self, email: str) -> Optional[tuple[str, dict]]:
        wanted = normalise_email(email)
        for uid, record in self._load().items():
            if normalise_email(record.get("email", "")) == wanted:
                return uid, record
        return None

    def register(self, email: str, password: str, display_name: Optional[str] = None) -> SessionUser:
        """Create an identity and return it.  Raises ValueError on a bad or taken email."""
        email = normalise_email(email)
        if not _EMAIL_RE.match(email):
            raise ValueError(f"Invalid email: {email!r}")
        if not password:
            raise ValueError("Password must not be empty")
        if self.find_by_email(email) is not None:
            raise ValueError(f"An identity already exists for {email}")

        identities = self._load()
        uid = secrets.token_urlsafe(21)
        identities[uid] = {
            "email": email,
            "password_hash": password_hash.hash(password),
            "display_name": display_name,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save(identities)
        logger.info("Registered identity %s (%s)", email, uid)
        return SessionUser(uid=uid, email=email, display_name=display_name)

    # ------------------------------------------------------------------
    # Throttling
    # ------------------------------------------------------------------

    def _recent_failures(self, email: str) -> list[float]:
        cutoff = self._clock() - self.lockout_seconds
        recent = [t for t in self._failures.get(email, []) if t >= cutoff]
        self._failures[email] = recent
        return recent

    def _record_failure(self, email: str) -> None:
        self._recent_failures(email).append(self._clock())

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> SessionUser:
        email = normalise_email(email)
        if not _EMAIL_RE.match(email):
            raise AuthError(AUTH_INVALID_EMAIL)
        if len(self._recent_failures(email)) >= self.max_failed_attempts:
            logger.info("Sign-in throttled for %s", email)
            raise AuthError(AUTH_RATE_LIMITED)

        found = self.find_by_email(email)
        if found is None:
            self._record_failure(email)
            logger.info("Sign-in failed for %s: unknown user", email)
            raise AuthError(AUTH_USER_NOT_FOUND)

        uid, record = found
        stored = record.get("password_hash") or ""
        verified = bool(stored) and await asyncio.to_thread(
            password_hash.verify, password or "", stored
        )
        if not verified:
            self._record_failure(email)
            logger.info("Sign-in failed for %s: wrong password", email)
            raise AuthError(AUTH_WRONG_PASSWORD)

        self._failures.pop(email, None)
        user = SessionUser(uid=uid, email=record["email"], display_name=record.get("display_name"))
        self.current_user = user
        logger.info("Signed in: %s", email)
        self._emit(user)
        return user
