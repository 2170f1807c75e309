from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from uniupdates.storage.models import UNIADMIN

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error half of the response envelope."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")
_OTP_PATTERN = re.compile(r"^[0-9]{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    value = value.strip()
    if not 3 <= len(value) <= 64:
        raise ValueError("username must be between 3 and 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may contain only letters, digits, dots, underscores and hyphens")
    return value


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    cleaned = re.sub(r"[\s()-]", "", value)
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("invalid phone number")
    return cleaned


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)


class SignupRequest(BaseModel):
    username: str
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=128)
    college: Optional[str] = Field(default=None, max_length=256)
    passout_year: Optional[int] = Field(default=None, ge=1950, le=2100)

    @field_validator("username")
    @classmethod
    def _validate_signup_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SendOTPRequest(BaseModel):
    email: str
    type: Optional[Literal["verification", "forgot-password"]] = None

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOTPRequest(BaseModel):
    email: str
    otp: str = Field(..., max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp", mode="before")
    @classmethod
    def _coerce_otp(cls, value: Any) -> Any:
        # clients send the code as either a number or a string
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ForgotPasswordRequest(VerifyOTPRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class OAuthCallbackRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=8192)


class AdminCreateRequest(BaseModel):
    username: str
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=128)
    role: Literal["superadmin", "uniadmin"] = UNIADMIN
    college_id: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = None
    passout_year: Optional[int] = Field(default=None, ge=1950, le=2100)
    img_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("username")
    @classmethod
    def _validate_admin_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_admin_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class AdminUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    role: Optional[Literal["superadmin", "uniadmin"]] = None
    college_id: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = None
    passout_year: Optional[int] = Field(default=None, ge=1950, le=2100)
    img_url: Optional[str] = Field(default=None, max_length=2048)
    terminated: Optional[bool] = None
    termination_reason: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("username")
    @classmethod
    def _validate_admin_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None

    @field_validator("phone")
    @classmethod
    def _validate_admin_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _require_some_change(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self
