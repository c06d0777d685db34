from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


ROLE_USER  = "user"
ROLE_ADMIN = "admin"
ALL_ROLES  = {ROLE_USER, ROLE_ADMIN}


class UserProfile(BaseModel):
    """
    Panel profile stored under users/{uid}.

    Profiles are what grant access: an identity without one is refused.
    `active` is tri-state as stored; only an explicit False deactivates.
    """
    model_config = ConfigDict(populate_by_name=True)

    uid:           Optional[str] = None
    email:         str = ""
    display_name:  Optional[str] = Field(default=None, alias="nombre")
    role:          Optional[str] = Field(default=None, alias="rol")
    active:        Optional[bool] = Field(default=None, alias="activo")
    department:    Optional[str] = Field(default=None, alias="area")
    registered_at: Optional[str] = Field(default=None, alias="fechaRegistro")
    modified_by:   Optional[str] = Field(default=None, alias="modificadoPor")
    modified_at:   Optional[str] = Field(default=None, alias="fechaModificacion")

    @property
    def is_active(self) -> bool:
        return self.active is not False

    @property
    def effective_role(self) -> str:
        """Anything other than an explicit admin role resolves to user."""
        return ROLE_ADMIN if self.role == ROLE_ADMIN else ROLE_USER

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SessionUser(BaseModel):
    """The signed-in identity as reported by the identity provider."""
    uid: str
    email: str
    display_name: Optional[str] = None


class ResolvedSession(BaseModel):
    """A session whose identity has been matched to an active profile."""
    user: SessionUser
    profile: UserProfile
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def display_name(self) -> str:
        return self.profile.display_name or self.user.email
