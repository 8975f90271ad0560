import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from carelink.errors import CareLinkError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_str_id(v: Any) -> Any:
    # Backend ids arrive as ints or UUID strings.
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(int(v))
    return v


class ApiEnvelope(BaseModel):
    """Every REST response body: `{success, data?, message?}`."""

    success: bool
    data: Any = None
    message: str | None = None


class LoginCredentials(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class UserProfile(BaseModel):
    id: str = Field(..., min_length=1)
    full_name: str = Field(default="", alias="fullName")
    role: str = ""

    model_config = {"populate_by_name": True, "extra": "allow"}

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return _as_str_id(v)

    @field_validator("role", mode="before")
    @classmethod
    def role_to_str(cls, v: Any) -> str:
        return "" if v is None else str(v)


class LoginPayload(BaseModel):
    """`data` of a successful `POST /auth/login` or `POST /auth/refresh`."""

    token: str = Field(..., min_length=1)
    user: UserProfile
    session_id: str | None = Field(default=None, alias="sessionId")

    model_config = {"populate_by_name": True}


class RefreshPayload(BaseModel):
    token: str = Field(..., min_length=1)
    user: UserProfile | None = None
    session_id: str | None = Field(default=None, alias="sessionId")

    model_config = {"populate_by_name": True}


class Session(BaseModel):
    token: str = Field(..., min_length=1)
    user: UserProfile
    session_id: str | None = Field(default=None, alias="sessionId")
    expires_at: datetime = Field(alias="expiresAt")
    remember_me: bool = Field(default=False, alias="rememberMe")
    issued_at: datetime | None = Field(default=None, alias="issuedAt")

    model_config = {"populate_by_name": True}

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class Notification(BaseModel):
    id: str = Field(..., min_length=1)
    type: str = "system"
    title: str = "Notification"
    message: str = ""
    created_at: datetime = Field(alias="createdAt")
    read: bool = False
    read_at: datetime | None = Field(default=None, alias="readAt")
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return _as_str_id(v)

    @field_validator("type", mode="before")
    @classmethod
    def default_type(cls, v: Any) -> str:
        return str(v) if v else "system"

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v: Any) -> str:
        return str(v) if v else "Notification"

    @field_validator("message", mode="before")
    @classmethod
    def default_message(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def parse_metadata(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, str):
            try:
                decoded = json.loads(v)
            except json.JSONDecodeError:
                return {"raw": v}
            return decoded if isinstance(decoded, dict) else {"raw": decoded}
        return v

    @model_validator(mode="after")
    def read_at_implies_read(self) -> "Notification":
        if self.read_at is not None and not self.read:
            self.read = True
        return self


@dataclass
class LoginResult:
    """Outcome of `SessionLifecycleManager.login`. Exactly one of session/error is set."""

    session: Session | None = None
    route: str | None = None
    error: CareLinkError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.session is not None

    @property
    def message(self) -> str | None:
        return self.error.message if self.error else None
