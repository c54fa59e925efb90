from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

USER_ROLE_ADMIN = "admin"
USER_ROLE_REGULAR = "regular"
USER_ROLES = {USER_ROLE_ADMIN, USER_ROLE_REGULAR}

USER_STATUS_UNVERIFIED = "unverified"
USER_STATUS_VERIFIED = "verified"
USER_STATUSES = {USER_STATUS_UNVERIFIED, USER_STATUS_VERIFIED}

ORG_STATUS_UNVERIFIED = "unverified"
ORG_STATUS_VERIFIED = "verified"

MEMBERSHIP_ROLE_ADMIN = "admin"
MEMBERSHIP_ROLE_REGULAR = "regular"
MEMBERSHIP_ROLES = {MEMBERSHIP_ROLE_ADMIN, MEMBERSHIP_ROLE_REGULAR}

MEMBERSHIP_STATUS_INVITED = "invited"
MEMBERSHIP_STATUS_UNVERIFIED = "unverified"
MEMBERSHIP_STATUS_ACTIVE = "active"
MEMBERSHIP_STATUSES = {
    MEMBERSHIP_STATUS_INVITED,
    MEMBERSHIP_STATUS_UNVERIFIED,
    MEMBERSHIP_STATUS_ACTIVE,
}

# Activity owner for calls made without a valid session
UNKNOWN_USER = "00000000-0000-0000-0000-000000000000"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    name: str
    last_name: str
    email: Optional[str] = None
    title: Optional[str] = None
    role: str = USER_ROLE_REGULAR
    status: str = USER_STATUS_UNVERIFIED
    phone_country_code: Optional[str] = None
    phone_number: Optional[str] = None
    # JSON document describing the registered public-key credential
    public_key_credential: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_phone(self) -> bool:
        return bool(self.phone_country_code and self.phone_number)

    @property
    def has_public_key(self) -> bool:
        return bool(self.public_key_credential)

    @property
    def is_verified(self) -> bool:
        return self.status == USER_STATUS_VERIFIED

    @property
    def is_platform_admin(self) -> bool:
        return self.role == USER_ROLE_ADMIN

    def credential(self) -> Optional[Dict[str, Any]]:
        if not self.public_key_credential:
            return None
        return json.loads(self.public_key_credential)


@dataclass
class Organization:
    id: str
    name: str
    reference_key: str
    status: str = ORG_STATUS_UNVERIFIED
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_verified(self) -> bool:
        return self.status == ORG_STATUS_VERIFIED


@dataclass
class Membership:
    user_id: str
    organization_id: str
    role: str = MEMBERSHIP_ROLE_REGULAR
    status: str = MEMBERSHIP_STATUS_UNVERIFIED
    is_home: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Activity:
    id: str
    user_id: str
    type: str
    remote_addr: str = ""
    info: Optional[Dict[str, Any]] = None
    session: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


def _changes(update: Any) -> Dict[str, Any]:
    return {
        f.name: getattr(update, f.name)
        for f in fields(update)
        if getattr(update, f.name) is not None
    }


@dataclass
class UserUpdate:
    """Explicit set of user fields the auth flows may change.

    ``None`` means "leave unchanged".
    """

    status: Optional[str] = None
    role: Optional[str] = None
    public_key_credential: Optional[str] = None

    def validate(self) -> None:
        if self.status is not None and self.status not in USER_STATUSES:
            raise ValueError(f"invalid user status: {self.status}")
        if self.role is not None and self.role not in USER_ROLES:
            raise ValueError(f"invalid user role: {self.role}")
        if self.public_key_credential is not None:
            try:
                parsed = json.loads(self.public_key_credential)
            except ValueError as exc:
                raise ValueError("public_key_credential must be JSON") from exc
            if not isinstance(parsed, dict) or not parsed.get("id"):
                raise ValueError("public_key_credential must carry a credential id")

    def changes(self) -> Dict[str, Any]:
        self.validate()
        return _changes(self)


@dataclass
class MembershipUpdate:
    role: Optional[str] = None
    status: Optional[str] = None
    is_home: Optional[bool] = None

    def validate(self) -> None:
        if self.role is not None and self.role not in MEMBERSHIP_ROLES:
            raise ValueError(f"invalid membership role: {self.role}")
        if self.status is not None and self.status not in MEMBERSHIP_STATUSES:
            raise ValueError(f"invalid membership status: {self.status}")

    def changes(self) -> Dict[str, Any]:
        self.validate()
        return _changes(self)
