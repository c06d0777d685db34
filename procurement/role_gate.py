"""
Role gate: turns an authenticated identity into a panel session.

A profile under users/{uid} is what grants access.  Missing profiles and
inactive profiles both end the identity session.  The resolved role is
advisory state for the UI; privileged operations call require_admin at the
point of use instead of trusting it.
"""
import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from models.user import ROLE_ADMIN, ResolvedSession, SessionUser, UserProfile
from .errors import ACCESS_INACTIVE, ACCESS_UNREGISTERED, AccessDenied, PermissionDenied
from .identity import IdentityProvider
from .store import Store, join_path

logger = logging.getLogger(__name__)


def require_admin(session: Optional[ResolvedSession], action: str) -> ResolvedSession:
    """Fail closed: anything but a resolved admin session is refused."""
    if session is None or session.role != ROLE_ADMIN:
        who = session.user.email if session is not None else "anonymous"
        logger.warning("Permission denied: %s tried to %s", who, action)
        raise PermissionDenied(action)
    return session


class RoleGate:
    def __init__(self, store: Store, identity: IdentityProvider, users_path: str) -> None:
        self.store = store
        self.identity = identity
        self.users_path = users_path

    async def load_profile(self, uid: str) -> Optional[UserProfile]:
        """Read users/{uid}.  A record that is not a valid profile counts as missing."""
        doc = await self.store.get(join_path(self.users_path, uid))
        if not isinstance(doc, dict):
            return None
        try:
            return UserProfile.model_validate(doc)
        except PydanticValidationError as exc:
            logger.warning("Unreadable profile for %s: %s", uid, exc)
            return None

    async def resolve_session(self, user: SessionUser) -> ResolvedSession:
        """
        Resolve the profile and role for a signed-in identity.

        Raises AccessDenied (after signing the identity out) when no profile
        exists or the profile is inactive, whatever role it carries.
        """
        profile = await self.load_profile(user.uid)
        if profile is None:
            logger.warning("Access denied for %s: no profile", user.email)
            await self.identity.sign_out()
            raise AccessDenied(ACCESS_UNREGISTERED)

        if not profile.is_active:
            logger.warning("Access denied for %s: profile inactive", user.email)
            await self.identity.sign_out()
            raise AccessDenied(ACCESS_INACTIVE)

        if profile.uid is None:
            profile.uid = user.uid
        session = ResolvedSession(user=user, profile=profile, role=profile.effective_role)
        logger.info("Session resolved: %s (%s)", user.email, session.role)
        return session
