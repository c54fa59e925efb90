from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from orgauth.logging import get_logger
from orgauth.service.delivery import WELCOME_EMAIL, DeliveryWorker
from orgauth.service.errors import (
    ForbiddenError,
    UserAlreadyExists,
    UserNotFound,
    ValidationError,
)
from orgauth.service.public_key import PublicKeyChallengeManager
from orgauth.storage.errors import ConstraintViolation
from orgauth.storage.models import (
    MEMBERSHIP_ROLE_REGULAR,
    MEMBERSHIP_STATUS_UNVERIFIED,
    Organization,
    User,
)

logger = get_logger(__name__)

PLATFORM_P2P = "p2p"
PLATFORM_TRADING = "trading"
PLATFORMS = {PLATFORM_P2P, PLATFORM_TRADING}


class AccountService:
    """Signup of users and organizations, and user lookup for sign-in."""

    def __init__(
        self,
        directory,
        delivery: DeliveryWorker,
        public_keys: PublicKeyChallengeManager,
    ) -> None:
        self.directory = directory
        self.delivery = delivery
        self.public_keys = public_keys

    def get_user(self, user_id: str) -> User:
        user = self.directory.get_user(user_id.strip()) if user_id else None
        if user is None:
            raise UserNotFound()
        return user

    def find_user(
        self,
        *,
        email: Optional[str] = None,
        phone_country_code: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> User:
        if email:
            user = self.directory.get_user_by_email(email)
        elif phone_country_code and phone_number:
            user = self.directory.get_user_by_phone(phone_country_code, phone_number)
        else:
            raise ValidationError(
                "email or phone is required",
                detail={"fields": ["email", "phone_number", "phone_country_code"]},
            )
        if user is None:
            raise UserNotFound()
        return user

    def _replace_unverified(self, email: str) -> Optional[User]:
        """Return a verified owner of ``email``; drop an unverified one."""
        existing = self.directory.get_user_by_email(email)
        if existing is None:
            return None
        if existing.is_verified:
            return existing
        self.directory.delete_unverified_user(existing.id)
        logger.info("unverified_user_replaced", user_id=existing.id)
        return None

    def _create_user(self, **fields: Any) -> User:
        try:
            return self.directory.create_user(**fields)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same email
            raise UserAlreadyExists() from exc

    def _ensure_membership(self, user: User, org: Organization) -> None:
        if self.directory.get_membership(user.id, org.id) is not None:
            return
        self.directory.create_membership(
            user.id,
            org.id,
            role=MEMBERSHIP_ROLE_REGULAR,
            status=MEMBERSHIP_STATUS_UNVERIFIED,
            is_home=False,
        )

    async def signup(
        self,
        *,
        name: str,
        last_name: str,
        email: str,
        platform: str,
        title: Optional[str] = None,
        phone_country_code: Optional[str] = None,
        phone_number: Optional[str] = None,
        reference_key: Optional[str] = None,
        webauthn: bool = False,
    ) -> Tuple[User, Optional[Dict[str, Any]]]:
        """Create an unverified user, optionally joining an organization.

        Returns the user and, when ``webauthn`` is requested, the public-key
        registration options to hand to the browser.
        """
        if platform not in PLATFORMS:
            raise ValidationError("invalid platform parameter", detail={"field": "platform"})
        if platform == PLATFORM_P2P and not reference_key:
            raise ValidationError(
                "reference key is required", detail={"field": "reference_key"}
            )

        org: Optional[Organization] = None
        if reference_key:
            org = self.directory.get_organization_by_reference_key(reference_key)
            if org is None:
                raise ValidationError(
                    "organization reference key is invalid",
                    detail={"field": "reference_key"},
                )

        if self._replace_unverified(email) is not None:
            raise UserAlreadyExists()

        user = self._create_user(
            name=name,
            last_name=last_name,
            email=email,
            title=title,
            phone_country_code=phone_country_code,
            phone_number=phone_number,
        )
        if org is not None:
            self._ensure_membership(user, org)
        logger.info(
            "user_signed_up",
            user_id=user.id,
            platform=platform,
            organization_id=org.id if org else None,
        )
        self.delivery.submit(WELCOME_EMAIL, email, name=name)

        options = None
        if webauthn:
            options = await self.public_keys.begin_registration(user)
        return user, options

    def signup_organization(
        self,
        *,
        name: str,
        last_name: str,
        email: str,
        organization_name: str,
        reference_key: str,
        title: Optional[str] = None,
        phone_country_code: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> User:
        """Register a new organization together with its first (prospective) member.

        The caller only becomes admin once they complete verification and
        the organization still has no active admin.
        """
        if not reference_key:
            raise ValidationError(
                "organization reference key is invalid", detail={"field": "reference_key"}
            )
        if not organization_name:
            raise ValidationError(
                "organization name is invalid", detail={"field": "organisation_name"}
            )

        existing = self.directory.get_user_by_email(email)

        by_key = self.directory.get_organization_by_reference_key(reference_key)
        if by_key is not None and by_key.name != organization_name:
            raise ValidationError(
                "organization reference key already in use",
                detail={"field": "reference_key"},
            )

        org = self.directory.get_organization_by_name(organization_name)
        if org is not None:
            if org.is_verified:
                if existing is not None and not existing.is_verified:
                    raise ForbiddenError(
                        "Organization already exists. Please use the organization "
                        "reference key for registration."
                    )
                raise ForbiddenError(
                    "Organization already exists. Please ask admin of the "
                    "organization to invite you"
                )
            if self.directory.has_active_admin(org.id):
                raise ForbiddenError(
                    "Organization already exists. Please ask admin of the "
                    "organization to invite you"
                )
        else:
            org = self.directory.create_organization(organization_name, reference_key)
            logger.info("organization_created", organization_id=org.id)

        user = existing or self._create_user(
            name=name,
            last_name=last_name,
            email=email,
            title=title,
            phone_country_code=phone_country_code,
            phone_number=phone_number,
        )
        self._ensure_membership(user, org)
        logger.info("organization_signed_up", user_id=user.id, organization_id=org.id)
        self.delivery.submit(WELCOME_EMAIL, email, name=name)
        return user
