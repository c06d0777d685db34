"""
Exception types raised by the purchase order panel.

  AuthError            identity provider rejected the credentials
  AccessDenied         identity has no profile, or the profile is inactive
  PermissionDenied     non-admin attempted a privileged operation
  ValidationError      malformed order input, raised before any write
  FetchTimeout         snapshot load exceeded its time bound
  TransactionConflict  atomic transaction exhausted its retries
  StoreError           any other failure reported by the store
  NotFound             (StoreError) the targeted order or user does not exist
"""
from typing import Optional


class PanelError(Exception):
    """Base class for all panel errors."""


AUTH_USER_NOT_FOUND  = "user_not_found"
AUTH_WRONG_PASSWORD  = "wrong_password"
AUTH_INVALID_EMAIL   = "invalid_email"
AUTH_RATE_LIMITED    = "rate_limited"
AUTH_OTHER           = "other"

_AUTH_MESSAGES = {
    AUTH_USER_NOT_FOUND: "User not found",
    AUTH_WRONG_PASSWORD: "Wrong password",
    AUTH_INVALID_EMAIL:  "Invalid email",
    AUTH_RATE_LIMITED:   "Too many attempts. Try again later",
}


class AuthError(PanelError):
    def __init__(self, kind: str, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.detail = detail
        message = _AUTH_MESSAGES.get(kind) or detail or "Sign-in failed"
        super().__init__(f"Error: {message}")


ACCESS_UNREGISTERED = "unregistered"
ACCESS_INACTIVE     = "inactive"


class AccessDenied(PanelError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        if reason == ACCESS_INACTIVE:
            message = "Access denied. User is inactive. Contact the administrator."
        else:
            message = ("Access denied. This user is not registered in the system. "
                       "Contact the administrator.")
        super().__init__(message)


class PermissionDenied(PanelError):
    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"You do not have permission to {action}")


class ValidationError(PanelError):
    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid order")


class FetchTimeout(PanelError):
    def __init__(self, path: str, timeout: float) -> None:
        self.path = path
        self.timeout = timeout
        super().__init__(f"Timed out loading {path!r} after {timeout:g}s")


class TransactionConflict(PanelError):
    def __init__(self, path: str, attempts: int) -> None:
        self.path = path
        self.attempts = attempts
        super().__init__(f"Transaction on {path!r} did not commit after {attempts} attempts")


class StoreError(PanelError):
    pass


class NotFound(StoreError):
    """The order or user a write targets does not exist."""
