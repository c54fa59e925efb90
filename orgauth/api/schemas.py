from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from orgauth.logging import get_correlation_id

MAX_NAME_LENGTH = 128
# Email codes are short; provider codes for phones are at most 10 digits
MAX_CODE_LENGTH = 10


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after removing spoofing characters.

    Handles:
    - Zero-width characters
    - Bidi override characters
    - Compatibility characters
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PHONE_DIGITS = re.compile(r"^\+?[0-9]{1,15}$")


def _validate_phone_part(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = re.sub(r"[\s\-()]", "", value)
    if not cleaned:
        return None
    if not _PHONE_DIGITS.match(cleaned):
        raise ValueError("phone fields must contain digits only")
    return cleaned.lstrip("+")


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _normalize_unicode(value).strip()


class _ContactFields(BaseModel):
    phone_country_code: Optional[str] = Field(default=None, max_length=8)
    phone_number: Optional[str] = Field(default=None, max_length=20)

    @field_validator("phone_country_code", "phone_number")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone_part(value)


class SignupRequest(_ContactFields):
    # Older clients send "lastname"
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    last_name: str = Field(
        ..., min_length=1, max_length=MAX_NAME_LENGTH, alias="lastname"
    )
    email: str
    title: Optional[str] = Field(default=None, max_length=32)
    reference_key: Optional[str] = Field(default=None, max_length=64)
    platform: str = Field(..., max_length=16)
    webauthn: bool = False

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name", "last_name", "title", "reference_key")
    @classmethod
    def _normalize_text(cls, value: Optional[str]) -> Optional[str]:
        return _clean_text(value)

    @field_validator("platform")
    @classmethod
    def _normalize_platform(cls, value: str) -> str:
        return value.strip().lower()


class OrganizationSignupRequest(_ContactFields):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    last_name: str = Field(
        ..., min_length=1, max_length=MAX_NAME_LENGTH, alias="lastname"
    )
    email: str
    title: Optional[str] = Field(default=None, max_length=32)
    reference_key: str = Field(..., max_length=64)
    organisation_name: str = Field(..., max_length=MAX_NAME_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_org_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name", "last_name", "title", "reference_key", "organisation_name")
    @classmethod
    def _normalize_text(cls, value: Optional[str]) -> Optional[str]:
        return _clean_text(value)


class SigninRequest(_ContactFields):
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return _validate_email(value)


class SendCodeRequest(BaseModel):
    uuid: str = Field(..., min_length=1, max_length=64)
    type: Literal["email", "phone"]

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class VerifyCodeRequest(SendCodeRequest):
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)

    @model_validator(mode="after")
    def _strip_code(self):
        self.code = self.code.strip()
        if not self.code:
            raise ValueError("code must not be blank")
        return self


class UserIdResponse(BaseModel):
    uuid: str


class SignupResponse(UserIdResponse):
    options: Optional[dict] = None


class JwtResponse(BaseModel):
    jwt: str
    status: str = "finished"


class WebAuthnNeededResponse(BaseModel):
    status: str = "Web Authn"
    options: dict


class SendCodeResponse(BaseModel):
    code: str


class InfoResponse(BaseModel):
    user_id: str
    role: str
    organisation_id: str = ""
    organisation_role: str = ""
    email: str = ""


class MembershipResponse(BaseModel):
    user_id: str
    organisation_id: str
    role: str
    status: str
    is_home: bool
