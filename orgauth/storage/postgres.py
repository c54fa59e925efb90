from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from orgauth.logging import get_logger
from orgauth.storage.errors import ConstraintViolation
from orgauth.storage.memory import SESSION_ACTIVITY
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
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        title TEXT,
        role TEXT NOT NULL DEFAULT 'regular',
        status TEXT NOT NULL DEFAULT 'unverified',
        email TEXT UNIQUE,
        phone_country_code TEXT,
        phone_number TEXT,
        public_key_credential TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        reference_key TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'unverified',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organization_id UUID NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        role TEXT NOT NULL DEFAULT 'regular',
        status TEXT NOT NULL DEFAULT 'unverified',
        is_home BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, organization_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL,
        type TEXT NOT NULL,
        info JSONB,
        session JSONB,
        remote_addr TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS activity_user_type_idx ON activity (user_id, type, created_at DESC)",
]


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        name=row["name"],
        last_name=row["last_name"],
        email=row.get("email"),
        title=row.get("title"),
        role=row.get("role", USER_ROLE_REGULAR),
        status=row.get("status", USER_STATUS_UNVERIFIED),
        phone_country_code=row.get("phone_country_code"),
        phone_number=row.get("phone_number"),
        public_key_credential=row.get("public_key_credential"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_organization(row: Dict[str, Any]) -> Organization:
    return Organization(
        id=str(row["id"]),
        name=row["name"],
        reference_key=row["reference_key"],
        status=row.get("status", ORG_STATUS_UNVERIFIED),
        created_at=row["created_at"],
    )


def _row_to_membership(row: Dict[str, Any]) -> Membership:
    return Membership(
        user_id=str(row["user_id"]),
        organization_id=str(row["organization_id"]),
        role=row["role"],
        status=row["status"],
        is_home=bool(row["is_home"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_activity(row: Dict[str, Any]) -> Activity:
    return Activity(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        type=row["type"],
        remote_addr=row.get("remote_addr") or "",
        info=row.get("info"),
        session=row.get("session"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _is_uuid(value: str) -> bool:
    # Ids arrive from request paths and bodies; the columns are UUID typed
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value else None


class PostgresDirectory:
    """Postgres-backed identity directory: users, organizations, memberships, activity."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, last_name, title, role, status, email,
                                          phone_country_code, phone_number)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        name,
                        last_name,
                        title,
                        role,
                        status,
                        email,
                        phone_country_code,
                        phone_number,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_phone(self, country_code: str, number: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE phone_country_code = %s AND phone_number = %s
                ORDER BY created_at ASC LIMIT 1
                """,
                (country_code, number),
            ).fetchone()
        return _row_to_user(row) if row else None

    def update_user(self, user_id: str, update: UserUpdate) -> Optional[User]:
        changes = update.changes()
        if not changes:
            return self.get_user(user_id)
        # Column names come from the UserUpdate dataclass, never from callers
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*changes.values(), user_id),
            ).fetchone()
        return _row_to_user(row) if row else None

    def delete_unverified_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM membership WHERE user_id = %s AND EXISTS (
                    SELECT 1 FROM app_user WHERE id = %s AND status = %s
                )
                """,
                (user_id, user_id, USER_STATUS_UNVERIFIED),
            )
            deleted = conn.execute(
                "DELETE FROM app_user WHERE id = %s AND status = %s RETURNING id",
                (user_id, USER_STATUS_UNVERIFIED),
            ).fetchone()
        return deleted is not None

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at ASC"
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    # organizations
    def create_organization(
        self, name: str, reference_key: str, *, status: str = ORG_STATUS_UNVERIFIED
    ) -> Organization:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO organization (id, name, reference_key, status)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, reference_key, status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "reference key already exists", {"field": "reference_key"}
            )
        return _row_to_organization(row)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        if not _is_uuid(organization_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (organization_id,)
            ).fetchone()
        return _row_to_organization(row) if row else None

    def get_organization_by_reference_key(
        self, reference_key: str
    ) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE reference_key = %s", (reference_key,)
            ).fetchone()
        return _row_to_organization(row) if row else None

    def get_organization_by_name(self, name: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE name = %s ORDER BY created_at LIMIT 1",
                (name,),
            ).fetchone()
        return _row_to_organization(row) if row else None

    def set_organization_status(
        self, organization_id: str, status: str
    ) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE organization SET status = %s WHERE id = %s RETURNING *",
                (status, organization_id),
            ).fetchone()
        return _row_to_organization(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO membership (user_id, organization_id, role, status, is_home)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, organization_id, role, status, is_home),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists", {"field": "organization_id"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or organization not found", {"field": "organization_id"}
            )
        return _row_to_membership(row)

    def get_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[Membership]:
        if not (_is_uuid(user_id) and _is_uuid(organization_id)):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM membership WHERE user_id = %s AND organization_id = %s",
                (user_id, organization_id),
            ).fetchone()
        return _row_to_membership(row) if row else None

    def list_memberships(self, user_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM membership WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [_row_to_membership(row) for row in rows]

    def update_membership(
        self, user_id: str, organization_id: str, update: MembershipUpdate
    ) -> Optional[Membership]:
        changes = update.changes()
        if not changes:
            return self.get_membership(user_id, organization_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE membership SET {assignments}, updated_at = now()
                WHERE user_id = %s AND organization_id = %s
                RETURNING *
                """,
                (*changes.values(), user_id, organization_id),
            ).fetchone()
        return _row_to_membership(row) if row else None

    def set_home_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[Membership]:
        """Flag one membership as home and clear the flag on all others.

        A single UPDATE touches every membership of the user, so no reader
        ever sees two home memberships.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE membership
                SET is_home = (organization_id = %s), updated_at = now()
                WHERE user_id = %s
                  AND EXISTS (
                      SELECT 1 FROM membership
                      WHERE user_id = %s AND organization_id = %s
                  )
                RETURNING *
                """,
                (organization_id, user_id, user_id, organization_id),
            ).fetchall()
        for row in rows:
            if str(row["organization_id"]) == str(organization_id):
                return _row_to_membership(row)
        return None

    def has_active_admin(self, organization_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM membership
                WHERE organization_id = %s AND role = %s AND status = %s
                LIMIT 1
                """,
                (organization_id, MEMBERSHIP_ROLE_ADMIN, MEMBERSHIP_STATUS_ACTIVE),
            ).fetchone()
        return row is not None

    def delete_stale_invitations(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM membership WHERE status = %s AND created_at < %s",
                (MEMBERSHIP_STATUS_INVITED, older_than),
            )
            return cursor.rowcount or 0

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO activity (id, user_id, type, info, session, remote_addr)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), user_id, type, _dumps(info), _dumps(session), remote_addr),
            ).fetchone()
        return _row_to_activity(row)

    def touch_session_activity(
        self,
        user_id: str,
        organization_id: str,
        *,
        remote_addr: str = "",
        session: Optional[Dict[str, Any]] = None,
    ) -> Activity:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE activity SET updated_at = now(),
                    remote_addr = COALESCE(NULLIF(%s, ''), remote_addr)
                WHERE id = (
                    SELECT id FROM activity
                    WHERE user_id = %s AND type = %s
                      AND session ->> 'organization_id' = %s
                    ORDER BY created_at DESC LIMIT 1
                )
                RETURNING *
                """,
                (remote_addr, user_id, SESSION_ACTIVITY, organization_id),
            ).fetchone()
        if row:
            return _row_to_activity(row)
        return self.create_activity(
            user_id,
            SESSION_ACTIVITY,
            remote_addr=remote_addr,
            session=session or {"organization_id": organization_id},
        )

    def list_activities(
        self,
        user_id: Optional[str] = None,
        *,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Activity]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if type is not None:
            clauses.append("type = %s")
            params.append(type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM activity {where} ORDER BY created_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [_row_to_activity(row) for row in rows]
