"""
User administration: listing panel profiles and toggling role / activation.

Every method re-checks that the caller is an admin.  Role and status
changes stamp modified_by / modified_at on the profile.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from models.order import EPOCH, parse_timestamp, utc_now_iso
from models.user import ALL_ROLES, ROLE_ADMIN, ROLE_USER, ResolvedSession, SessionUser, UserProfile
from .errors import NotFound, PermissionDenied
from .role_gate import require_admin
from .store import Store, join_path

logger = logging.getLogger(__name__)

Confirm = Callable[[UserProfile], bool]


@dataclass(frozen=True)
class UserCounts:
    total: int
    active: int
    admins: int


def _always(_profile: UserProfile) -> bool:
    return True


class UserAdministration:
    def __init__(self, store: Store, users_path: str) -> None:
        self.store = store
        self.users_path = users_path

    def _path(self, uid: str) -> str:
        return join_path(self.users_path, uid)

    async def _all_profiles(self) -> list[UserProfile]:
        raw = await self.store.get(self.users_path)
        profiles = []
        for uid, doc in (raw or {}).items():
            if not isinstance(doc, dict):
                continue
            try:
                profile = UserProfile.model_validate(doc)
            except PydanticValidationError as exc:
                logger.warning("Skipping unreadable profile %s: %s", uid, exc)
                continue
            profile.uid = profile.uid or uid
            profiles.append(profile)
        return profiles

    async def list_profiles(self, session: Optional[ResolvedSession]) -> list[UserProfile]:
        """All profiles, most recently registered first."""
        require_admin(session, "list users")
        profiles = await self._all_profiles()
        return sorted(
            profiles,
            key=lambda p: parse_timestamp(p.registered_at) or EPOCH,
            reverse=True,
        )

    @staticmethod
    def counts(profiles: list[UserProfile]) -> UserCounts:
        return UserCounts(
            total=len(profiles),
            active=sum(1 for p in profiles if p.is_active),
            admins=sum(1 for p in profiles if p.role == ROLE_ADMIN),
        )

    @staticmethod
    def manageable(profiles: list[UserProfile], session: ResolvedSession) -> list[UserProfile]:
        """Profiles the signed-in admin may change: everyone but themselves."""
        return [p for p in profiles if p.uid != session.user.uid]

    async def has_admin(self) -> bool:
        return any(p.role == ROLE_ADMIN and p.is_active for p in await self._all_profiles())

    async def _existing(self, uid: str) -> UserProfile:
        doc = await self.store.get(self._path(uid))
        if not isinstance(doc, dict):
            raise NotFound(f"User not found: {uid}")
        return UserProfile.model_validate(doc)

    def _guard_self(self, session: ResolvedSession, uid: str) -> None:
        if session.user.uid == uid:
            raise PermissionDenied("change your own role or status")

    async def change_role(
        self,
        session: Optional[ResolvedSession],
        uid: str,
        role: str,
        confirm: Confirm = _always,
    ) -> bool:
        session = require_admin(session, "change user roles")
        if role not in ALL_ROLES:
            raise ValueError(f"Unknown role {role!r}. Must be one of {sorted(ALL_ROLES)}")
        self._guard_self(session, uid)
        profile = await self._existing(uid)
        if not confirm(profile):
            return False
        await self.store.update(self._path(uid), {
            "rol": role,
            "modificadoPor": session.user.uid,
            "fechaModificacion": utc_now_iso(),
        })
        logger.info("%s set role of %s to %s", session.user.email, profile.email or uid, role)
        return True

    async def set_active(
        self,
        session: Optional[ResolvedSession],
        uid: str,
        active: bool,
        confirm: Confirm = _always,
    ) -> bool:
        session = require_admin(session, "activate or deactivate users")
        self._guard_self(session, uid)
        profile = await self._existing(uid)
        if not confirm(profile):
            return False
        await self.store.update(self._path(uid), {
            "activo": bool(active),
            "modificadoPor": session.user.uid,
            "fechaModificacion": utc_now_iso(),
        })
        logger.info(
            "%s %s user %s",
            session.user.email, "activated" if active else "deactivated", profile.email or uid,
        )
        return True

    async def create_profile(
        self,
        session: Optional[ResolvedSession],
        user: SessionUser,
        role: str = ROLE_USER,
        department: Optional[str] = None,
    ) -> UserProfile:
        """
        Register a profile for an identity.

        Admin only, except for the very first admin: while no active admin
        profile exists anyone may create one.
        """
        if role not in ALL_ROLES:
            raise ValueError(f"Unknown role {role!r}. Must be one of {sorted(ALL_ROLES)}")
        bootstrap = role == ROLE_ADMIN and not await self.has_admin()
        if not bootstrap:
            require_admin(session, "register users")

        profile = UserProfile(
            uid=user.uid,
            email=user.email,
            display_name=user.display_name,
            role=role,
            active=True,
            department=department,
            registered_at=utc_now_iso(),
        )
        await self.store.set(self._path(user.uid), profile.to_document())
        logger.info("Registered profile %s (%s)%s", user.email, role, " [bootstrap]" if bootstrap else "")
        return profile
