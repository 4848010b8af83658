from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from esygrab_common.roles import Role, parse_role


# --- Stored records -----------------------------------------------------------

class SessionUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str = ""
    role: Role
    is_verified: bool = Field(default=True, alias="isVerified")

    @field_validator("role", mode="before")
    @classmethod
    def _strict_role(cls, v: Any) -> Role:
        return parse_role(v)


class RoleSession(BaseModel):
    """
    Cached proof of authentication kept in device storage.

    Timestamps are epoch milliseconds. Field aliases keep the stored JSON
    readable by older storefront builds.
    """
    model_config = ConfigDict(populate_by_name=True)

    user: SessionUser
    role: Role
    expires_at: int = Field(alias="expiresAt")
    last_activity: int = Field(alias="lastActivity")
    token: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def _strict_role(cls, v: Any) -> Role:
        return parse_role(v)

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# --- Identity provider payloads -----------------------------------------------

class AuthUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    expires_at: Optional[int] = None  # epoch seconds
    user: AuthUser


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


# --- HTTP payloads ------------------------------------------------------------

class PasswordSignIn(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class SignUpRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)
    data: Dict[str, Any] = Field(default_factory=dict)


class OtpRequest(BaseModel):
    email: str = Field(min_length=3)


class OtpVerify(BaseModel):
    email: str = Field(min_length=3)
    token: str = Field(min_length=4, max_length=10)


class PasswordResetRequest(BaseModel):
    email: str = Field(min_length=3)


class ActivityBatch(BaseModel):
    events: List[str] = Field(default_factory=list)


class SessionOut(BaseModel):
    authenticated: bool
    user: Optional[Dict[str, Any]] = None
    role: Optional[Role] = None
    expires_at: Optional[int] = None
    last_activity: Optional[int] = None

    @classmethod
    def from_session(cls, session: Optional[RoleSession]) -> "SessionOut":
        if session is None:
            return cls(authenticated=False)
        return cls(
            authenticated=True,
            user=session.user.model_dump(mode="json"),
            role=session.role,
            expires_at=session.expires_at,
            last_activity=session.last_activity,
        )
