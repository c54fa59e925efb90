from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from orgauth.logging import get_logger
from orgauth.storage.errors import ConstraintViolation
from orgauth.storage.models import (
    MEMBERSHIP_ROLE_ADMIN,
    MEMBERSHIP_ROLE_REGULAR,
    MEMBERSHIP_STATUS_ACTIVE,
    MEMBERSHIP_STATUS_INVITED,
    MEMBERSHIP_STATUS_UNVERIFIED,
    ORG_STATUS_UNVERIFIED,
    USER_ROLE_REGULAR,
    USER_STATUS_UNVERIFIED,
    Activity,
    Membership,
    MembershipUpdate,
    Organization,
    User,
    UserUpdate,
    new_id,
    utcnow,
)

SESSION_ACTIVITY = "user_session"


class MemoryDirectory:
    """In-process identity directory for tests and local development.

    Records are copied on the way in and out so callers only change state
    through the explicit update operations.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.organizations: Dict[str, Organization] = {}
        self.memberships: Dict[Tuple[str, str], Membership] = {}
        self.activities: Dict[str, Activity] = {}
        # RLock so nested helpers can re-acquire within the same thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        name: str,
        last_name: str,
        *,
        email: Optional[str] = None,
        title: Optional[str] = None,
        phone_country_code: Optional[str] = None,
        phone_number: Optional[str] = None,
        role: str = USER_ROLE_REGULAR,
        status: str = USER_STATUS_UNVERIFIED,
    ) -> User:
        with self._data_lock:
            if email and any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                name=name,
                last_name=last_name,
                email=email,
                title=title,
                role=role,
                status=status,
                phone_country_code=phone_country_code,
                phone_number=phone_number,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_phone(self, country_code: str, number: str) -> Optional[User]:
        """Return the oldest user holding the phone number; phones are not unique."""
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if u.phone_country_code == country_code and u.phone_number == number
            ]
            if not matches:
                return None
            return replace(min(matches, key=lambda u: u.created_at))

    def update_user(self, user_id: str, update: UserUpdate) -> Optional[User]:
        changes = update.changes()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **changes, updated_at=utcnow())
            self.users[user_id] = updated
            return replace(updated)

    def delete_unverified_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.status != USER_STATUS_UNVERIFIED:
                return False
            self.users.pop(user_id, None)
            for key in [k for k in self.memberships if k[0] == user_id]:
                self.memberships.pop(key, None)
            return True

    def list_users(self) -> List[User]:
        with self._data_lock:
            return [replace(u) for u in sorted(self.users.values(), key=lambda u: u.created_at)]

    # organizations
    def create_organization(
        self, name: str, reference_key: str, *, status: str = ORG_STATUS_UNVERIFIED
    ) -> Organization:
        with self._data_lock:
            if any(o.reference_key == reference_key for o in self.organizations.values()):
                raise ConstraintViolation(
                    "reference key already exists", {"field": "reference_key"}
                )
            org = Organization(
                id=new_id(), name=name, reference_key=reference_key, status=status
            )
            self.organizations[org.id] = org
            return replace(org)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            return replace(org) if org else None

    def get_organization_by_reference_key(
        self, reference_key: str
    ) -> Optional[Organization]:
        with self._data_lock:
            org = next(
                (o for o in self.organizations.values() if o.reference_key == reference_key),
                None,
            )
            return replace(org) if org else None

    def get_organization_by_name(self, name: str) -> Optional[Organization]:
        with self._data_lock:
            org = next((o for o in self.organizations.values() if o.name == name), None)
            return replace(org) if org else None

    def set_organization_status(
        self, organization_id: str, status: str
    ) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            if not org:
                return None
            org.status = status
            return replace(org)

    # memberships
    def create_membership(
        self,
        user_id: str,
        organization_id: str,
        *,
        role: str = MEMBERSHIP_ROLE_REGULAR,
        status: str = MEMBERSHIP_STATUS_UNVERIFIED,
        is_home: bool = False,
    ) -> Membership:
        MembershipUpdate(role=role, status=status).validate()
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            if organization_id not in self.organizations:
                raise ConstraintViolation(
                    "organization not found", {"field": "organization_id"}
                )
            key = (user_id, organization_id)
            if key in self.memberships:
                raise ConstraintViolation(
                    "membership already exists", {"field": "organization_id"}
                )
            membership = Membership(
                user_id=user_id,
                organization_id=organization_id,
                role=role,
                status=status,
                is_home=is_home,
            )
            self.memberships[key] = membership
            return replace(membership)

    def get_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get((user_id, organization_id))
            return replace(membership) if membership else None

    def list_memberships(self, user_id: str) -> List[Membership]:
        with self._data_lock:
            owned = [m for m in self.memberships.values() if m.user_id == user_id]
            return [replace(m) for m in sorted(owned, key=lambda m: m.created_at)]

    def update_membership(
        self, user_id: str, organization_id: str, update: MembershipUpdate
    ) -> Optional[Membership]:
        changes = update.changes()
        with self._data_lock:
            key = (user_id, organization_id)
            membership = self.memberships.get(key)
            if not membership:
                return None
            updated = replace(membership, **changes, updated_at=utcnow())
            self.memberships[key] = updated
            return replace(updated)

    def set_home_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[Membership]:
        """Flag one membership as home and clear the flag on all others."""
        with self._data_lock:
            if (user_id, organization_id) not in self.memberships:
                return None
            now = utcnow()
            chosen: Optional[Membership] = None
            for key, membership in list(self.memberships.items()):
                if membership.user_id != user_id:
                    continue
                is_home = membership.organization_id == organization_id
                if membership.is_home != is_home:
                    membership = replace(membership, is_home=is_home, updated_at=now)
                    self.memberships[key] = membership
                if is_home:
                    chosen = membership
            return replace(chosen) if chosen else None

    def has_active_admin(self, organization_id: str) -> bool:
        with self._data_lock:
            return any(
                m.organization_id == organization_id
                and m.role == MEMBERSHIP_ROLE_ADMIN
                and m.status == MEMBERSHIP_STATUS_ACTIVE
                for m in self.memberships.values()
            )

    def delete_stale_invitations(self, older_than: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, m in self.memberships.items()
                if m.status == MEMBERSHIP_STATUS_INVITED and m.created_at < older_than
            ]
            for key in stale:
                self.memberships.pop(key, None)
            return len(stale)

    # activity
    def create_activity(
        self,
        user_id: str,
        type: str,
        *,
        remote_addr: str = "",
        info: Optional[Dict[str, Any]] = None,
        session: Optional[Dict[str, Any]] = None,
    ) -> Activity:
        with self._data_lock:
            activity = Activity(
                id=new_id(),
                user_id=user_id,
                type=type,
                remote_addr=remote_addr,
                info=dict(info) if info else None,
                session=dict(session) if session else None,
            )
            self.activities[activity.id] = activity
            return replace(activity)

    def touch_session_activity(
        self,
        user_id: str,
        organization_id: str,
        *,
        remote_addr: str = "",
        session: Optional[Dict[str, Any]] = None,
    ) -> Activity:
        """Refresh the latest session activity of the pair, creating one if absent."""
        with self._data_lock:
            candidates = [
                a
                for a in self.activities.values()
                if a.user_id == user_id
                and a.type == SESSION_ACTIVITY
                and (a.session or {}).get("organization_id") == organization_id
            ]
            if not candidates:
                return self.create_activity(
                    user_id,
                    SESSION_ACTIVITY,
                    remote_addr=remote_addr,
                    session=session or {"organization_id": organization_id},
                )
            latest = max(candidates, key=lambda a: a.created_at)
            latest.updated_at = utcnow()
            if remote_addr:
                latest.remote_addr = remote_addr
            return replace(latest)

    def list_activities(
        self,
        user_id: Optional[str] = None,
        *,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Activity]:
        with self._data_lock:
            results = [
                a
                for a in self.activities.values()
                if (user_id is None or a.user_id == user_id)
                and (type is None or a.type == type)
            ]
            ordered = sorted(results, key=lambda a: a.created_at, reverse=True)
            return [replace(a) for a in ordered[:limit]]
