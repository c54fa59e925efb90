from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import PublicKeyCredentialDescriptor

from orgauth.config import Settings
from orgauth.logging import get_logger
from orgauth.service.errors import (
    ChallengeExpiredOrUnknown,
    ChallengeVerificationFailed,
    StoreError,
)
from orgauth.storage.errors import CacheUnavailable
from orgauth.storage.models import User, UserUpdate

logger = get_logger(__name__)

REGISTER_KEY_SUFFIX = "_webauthn_register"
LOGIN_KEY_SUFFIX = "_webauthn_login"


def register_key(user_id: str) -> str:
    return f"{user_id}{REGISTER_KEY_SUFFIX}"


def login_key(user_id: str) -> str:
    return f"{user_id}{LOGIN_KEY_SUFFIX}"


class CeremonyError(Exception):
    """The public-key protocol rejected a registration or assertion."""


class PublicKeyCeremony(Protocol):
    def begin_registration(self, user: User) -> Tuple[Dict[str, Any], Dict[str, Any]]: ...

    def finish_registration(
        self, user: User, state: Dict[str, Any], proof: Dict[str, Any]
    ) -> Dict[str, Any]: ...

    def begin_login(
        self, user: User, credential: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]: ...

    def finish_login(
        self,
        user: User,
        credential: Dict[str, Any],
        state: Dict[str, Any],
        proof: Dict[str, Any],
    ) -> int: ...


class WebAuthnCeremony:
    """WebAuthn relying party backed by the ``webauthn`` library.

    Options are returned as browser-ready JSON dicts; the session state is
    just the base64url challenge the browser must sign.
    """

    def __init__(self, *, rp_id: str, rp_name: str, origin: str) -> None:
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin

    def begin_registration(self, user: User) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        display_name = " ".join(part for part in (user.name, user.last_name) if part)
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user.id.encode(),
            user_name=user.email or user.id,
            user_display_name=display_name or user.id,
        )
        state = {"challenge": bytes_to_base64url(options.challenge)}
        return json.loads(options_to_json(options)), state

    def finish_registration(
        self, user: User, state: Dict[str, Any], proof: Dict[str, Any]
    ) -> Dict[str, Any]:
        try:
            verified = verify_registration_response(
                credential=proof,
                expected_challenge=base64url_to_bytes(state["challenge"]),
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
            )
        except (WebAuthnException, KeyError, TypeError, ValueError) as exc:
            raise CeremonyError(str(exc)) from exc
        return {
            "id": bytes_to_base64url(verified.credential_id),
            "public_key": bytes_to_base64url(verified.credential_public_key),
            "sign_count": verified.sign_count,
        }

    def begin_login(
        self, user: User, credential: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(credential["id"]))
            ],
        )
        state = {"challenge": bytes_to_base64url(options.challenge)}
        return json.loads(options_to_json(options)), state

    def finish_login(
        self,
        user: User,
        credential: Dict[str, Any],
        state: Dict[str, Any],
        proof: Dict[str, Any],
    ) -> int:
        try:
            verified = verify_authentication_response(
                credential=proof,
                expected_challenge=base64url_to_bytes(state["challenge"]),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(credential["public_key"]),
                credential_current_sign_count=int(credential.get("sign_count", 0)),
                require_user_verification=False,
            )
        except (WebAuthnException, KeyError, TypeError, ValueError) as exc:
            raise CeremonyError(str(exc)) from exc
        return verified.new_sign_count


class PublicKeyChallengeManager:
    """Runs registration and login ceremonies, parking state in the ephemeral store.

    Each begun ceremony may be finished once: the parked state is removed
    before the proof is checked.
    """

    def __init__(self, cache, directory, ceremony: PublicKeyCeremony, settings: Settings) -> None:
        self.cache = cache
        self.directory = directory
        self.ceremony = ceremony
        self.settings = settings

    async def _park(self, key: str, state: Dict[str, Any]) -> None:
        try:
            await self.cache.set(key, json.dumps(state), self.settings.challenge_ttl_seconds)
        except CacheUnavailable as exc:
            raise StoreError("unable to store public-key challenge") from exc

    async def _take(self, key: str) -> Dict[str, Any]:
        try:
            raw = await self.cache.get(key)
            if raw is None:
                raise ChallengeExpiredOrUnknown()
            await self.cache.delete(key)
        except CacheUnavailable as exc:
            raise StoreError("unable to read public-key challenge") from exc
        try:
            state = json.loads(raw)
        except ValueError:
            logger.warning("webauthn_state_corrupt", key_suffix=key.rsplit("_", 1)[-1])
            raise ChallengeExpiredOrUnknown()
        if not isinstance(state, dict):
            raise ChallengeExpiredOrUnknown()
        return state

    async def begin_registration(self, user: User) -> Dict[str, Any]:
        options, state = self.ceremony.begin_registration(user)
        await self._park(register_key(user.id), state)
        logger.info("webauthn_registration_started", user_id=user.id)
        return options

    async def finish_registration(
        self, user: User, proof: Dict[str, Any]
    ) -> Dict[str, Any]:
        state = await self._take(register_key(user.id))
        try:
            credential = self.ceremony.finish_registration(user, state, proof)
        except CeremonyError as exc:
            logger.info("webauthn_registration_rejected", user_id=user.id, error=str(exc))
            raise ChallengeVerificationFailed()
        self.directory.update_user(
            user.id, UserUpdate(public_key_credential=json.dumps(credential))
        )
        logger.info("webauthn_registration_finished", user_id=user.id)
        return credential

    async def begin_login(self, user: User) -> Dict[str, Any]:
        credential = user.credential()
        if not credential:
            raise ChallengeVerificationFailed("no_credential")
        options, state = self.ceremony.begin_login(user, credential)
        await self._park(login_key(user.id), state)
        logger.info("webauthn_login_started", user_id=user.id)
        return options

    async def finish_login(self, user: User, proof: Dict[str, Any]) -> None:
        state = await self._take(login_key(user.id))
        credential: Optional[Dict[str, Any]] = user.credential()
        if not credential:
            raise ChallengeVerificationFailed("no_credential")
        try:
            sign_count = self.ceremony.finish_login(user, credential, state, proof)
        except CeremonyError as exc:
            logger.info("webauthn_login_rejected", user_id=user.id, error=str(exc))
            raise ChallengeVerificationFailed()
        if sign_count != credential.get("sign_count"):
            credential["sign_count"] = sign_count
            self.directory.update_user(
                user.id, UserUpdate(public_key_credential=json.dumps(credential))
            )
        logger.info("webauthn_login_finished", user_id=user.id)
