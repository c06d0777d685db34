"""
Pydantic models for dashboard API requests.
"""
from pydantic import BaseModel
from typing import Optional


class SignInRequest(BaseModel):
    email: str
    password: str


class RoleUpdate(BaseModel):
    role: str   # "admin" | "user"


class ActiveUpdate(BaseModel):
    active: bool


class UserCreate(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = None
    role: str = "user"
    department: Optional[str] = None
