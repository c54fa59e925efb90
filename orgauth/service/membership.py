from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional, Tuple

from orgauth.config import Settings
from orgauth.logging import get_logger
from orgauth.service.errors import NotAMember, NotFoundError, ValidationError
from orgauth.service.tokens import SessionClaims, SessionTokenService
from orgauth.storage.models import (
    MEMBERSHIP_ROLE_ADMIN,
    MEMBERSHIP_ROLE_REGULAR,
    MEMBERSHIP_STATUS_ACTIVE,
    MEMBERSHIP_STATUS_INVITED,
    MEMBERSHIP_STATUS_UNVERIFIED,
    USER_STATUS_VERIFIED,
    Membership,
    MembershipUpdate,
    User,
    UserUpdate,
    utcnow,
)

logger = get_logger(__name__)


class MembershipResolver:
    """Membership state machine and organization scope of sessions.

    States per membership: ``invited``, ``unverified``, ``active``.
    ``unverified`` memberships activate automatically when their user
    completes a second factor; ``invited`` ones only through
    :meth:`accept_invitation`.
    """

    def __init__(
        self,
        directory,
        tokens: SessionTokenService,
        settings: Settings,
        *,
        now: Callable = utcnow,
    ) -> None:
        self.directory = directory
        self.tokens = tokens
        self.settings = settings
        self._now = now

    def _role_for_activation(self, organization_id: str) -> str:
        # First member to activate in an admin-less organization becomes its admin
        if self.directory.has_active_admin(organization_id):
            return MEMBERSHIP_ROLE_REGULAR
        return MEMBERSHIP_ROLE_ADMIN

    def resolve_home(self, user: User) -> Optional[Membership]:
        """Run after a successful second factor.

        Picks a home membership if the user has none, activates unverified
        memberships (granting admin where the organization has no active
        admin yet) and marks the user verified. Returns the home membership,
        or None for users without memberships.
        """
        memberships = self.directory.list_memberships(user.id)
        home = next((m for m in memberships if m.is_home), None)
        if home is None and memberships:
            home = self.directory.set_home_membership(
                user.id, memberships[0].organization_id
            )
            logger.info(
                "home_membership_selected",
                user_id=user.id,
                organization_id=memberships[0].organization_id,
            )

        for membership in memberships:
            if membership.status != MEMBERSHIP_STATUS_UNVERIFIED:
                continue
            role = self._role_for_activation(membership.organization_id)
            activated = self.directory.update_membership(
                user.id,
                membership.organization_id,
                MembershipUpdate(status=MEMBERSHIP_STATUS_ACTIVE, role=role),
            )
            logger.info(
                "membership_activated",
                user_id=user.id,
                organization_id=membership.organization_id,
                role=role,
            )
            if activated and home and activated.organization_id == home.organization_id:
                home = activated

        if user.status != USER_STATUS_VERIFIED:
            self.directory.update_user(user.id, UserUpdate(status=USER_STATUS_VERIFIED))
            logger.info("user_verified", user_id=user.id)
        return home

    async def change_organization(
        self,
        user: User,
        claims: SessionClaims,
        presented_token: str,
        organization_id: str,
    ) -> Tuple[str, SessionClaims]:
        """Re-scope a session to another organization.

        Switching to the organization the token is already scoped to returns
        the presented token unchanged. Otherwise the caller must be a
        platform admin or hold a membership in the target; the new token is
        issued first and the old pair revoked after. ``is_home`` is never
        touched.
        """
        if not organization_id:
            raise ValidationError("organization id is required", detail={"field": "organization_id"})
        if claims.organization_id == organization_id:
            return presented_token, claims

        if not user.is_platform_admin:
            if self.directory.get_membership(user.id, organization_id) is None:
                logger.warning(
                    "switch_not_a_member", user_id=user.id, organization_id=organization_id
                )
                raise NotAMember(organization_id)
        elif self.directory.get_organization(organization_id) is None:
            raise NotFoundError("organization not found", detail={"organization_id": organization_id})

        token, new_claims = await self.tokens.issue(user.id, organization_id)
        await self.tokens.revoke(user.id, claims.organization_id)
        logger.info(
            "organization_switched",
            user_id=user.id,
            from_organization_id=claims.organization_id,
            to_organization_id=organization_id,
        )
        return token, new_claims

    def accept_invitation(self, user_id: str, organization_id: str) -> Membership:
        membership = self.directory.get_membership(user_id, organization_id)
        if membership is None:
            raise NotAMember(organization_id)
        if membership.status == MEMBERSHIP_STATUS_ACTIVE:
            return membership
        if membership.status != MEMBERSHIP_STATUS_INVITED:
            raise ValidationError(
                "membership is not an open invitation",
                detail={"organization_id": organization_id, "status": membership.status},
            )
        accepted = self.directory.update_membership(
            user_id, organization_id, MembershipUpdate(status=MEMBERSHIP_STATUS_ACTIVE)
        )
        if accepted is None:
            raise NotAMember(organization_id)
        logger.info("invitation_accepted", user_id=user_id, organization_id=organization_id)
        return accepted

    def sweep_invitations(self) -> int:
        """Delete invitations older than the configured maximum age."""
        cutoff = self._now() - timedelta(days=self.settings.invitation_max_age_days)
        removed = self.directory.delete_stale_invitations(cutoff)
        if removed:
            logger.info("stale_invitations_removed", count=removed)
        return removed
