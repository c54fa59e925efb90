from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Body, Depends, Header, Path, Request, Response

from orgauth.api.schemas import (
    Envelope,
    InfoResponse,
    JwtResponse,
    MembershipResponse,
    OrganizationSignupRequest,
    SendCodeRequest,
    SendCodeResponse,
    SigninRequest,
    SignupRequest,
    SignupResponse,
    UserIdResponse,
    VerifyCodeRequest,
    WebAuthnNeededResponse,
)
from orgauth.logging import get_logger
from orgauth.service.activity import (
    ACCEPT_INVITATION,
    ORG_SIGN_UP,
    SEND_OTP,
    SIGN_IN,
    SIGN_UP,
    SIGN_UP_WEBAUTHN,
    SWITCH,
    USER_INFO,
    VERIFY_OTP,
    AuditContext,
)
from orgauth.service.errors import (
    ChallengeFailed,
    RevokedOrUnknownToken,
    ServiceError,
    UserNotFound,
    should_silence,
)
from orgauth.service.runtime import Runtime, get_runtime
from orgauth.service.tokens import SessionClaims
from orgauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter()


def _client_addr(request: Request) -> str:
    if request.client is None:
        return ""
    return request.client.host or ""


def _decoy_user_id() -> UserIdResponse:
    # Same shape as a real answer; nothing happened server side
    return UserIdResponse(uuid=str(uuid4()))


async def get_session_claims(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> SessionClaims:
    """Validation gate for every token-gated route."""
    runtime = get_runtime()
    try:
        claims = await runtime.tokens.validate(authorization)
    except ServiceError as exc:
        logger.warning(
            "session_token_rejected",
            path=request.url.path,
            reason=getattr(exc, "reason", None),
        )
        raise
    request.state.session_token = authorization.split(" ", 1)[1]
    return claims


async def get_current_user(
    claims: SessionClaims = Depends(get_session_claims),
) -> User:
    runtime = get_runtime()
    try:
        return runtime.accounts.get_user(claims.user_id)
    except UserNotFound:
        raise RevokedOrUnknownToken("unknown_user")


async def _open_session(
    runtime: Runtime, user: User, audit: AuditContext
) -> JwtResponse:
    """Resolve memberships after a passed second factor and mint the first token."""
    home = runtime.memberships.resolve_home(user)
    token, claims = await runtime.tokens.issue(
        user.id, home.organization_id if home else ""
    )
    audit.claims = claims
    runtime.activity.record_session(claims, audit.remote_addr)
    return JwtResponse(jwt=token, status="finished")


@router.post("/signup", response_model=Envelope, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Create an unverified user.

    With ``webauthn`` set, the response also carries the public-key
    registration options to complete at ``/signup/{user_id}/webauthn``.
    """
    runtime = get_runtime()
    with runtime.activity.audit(SIGN_UP, _client_addr(request)) as audit:
        try:
            user, options = await runtime.accounts.signup(
                name=body.name,
                last_name=body.last_name,
                email=body.email,
                platform=body.platform,
                title=body.title,
                phone_country_code=body.phone_country_code,
                phone_number=body.phone_number,
                reference_key=body.reference_key,
                webauthn=body.webauthn,
            )
        except ServiceError as exc:
            if not should_silence(exc):
                raise
            audit.fail(exc)
            return Envelope(status="ok", data=_decoy_user_id())
        return Envelope(
            status="ok",
            data=SignupResponse(uuid=user.id, options=options).model_dump(exclude_none=True),
        )


@router.post("/signup/{user_id}/webauthn", status_code=204, tags=["auth"])
async def finish_signup_webauthn(
    request: Request,
    user_id: str = Path(..., max_length=64),
    proof: Dict[str, Any] = Body(...),
):
    runtime = get_runtime()
    with runtime.activity.audit(SIGN_UP_WEBAUTHN, _client_addr(request)):
        user = runtime.accounts.get_user(user_id)
        await runtime.public_keys.finish_registration(user, proof)
    return Response(status_code=204)


@router.post("/signup/pingdom", response_model=Envelope, tags=["monitoring"])
async def signup_pingdom(body: SignupRequest, request: Request):
    """Uptime check: run a real signup, then delete the user it created."""
    envelope = await signup(body, request)
    runtime = get_runtime()
    user = runtime.directory.get_user_by_email(body.email)
    if user is None or user.is_verified:
        logger.warning("pingdom_signup_unexpected_user", found=user is not None)
        return envelope
    runtime.directory.delete_unverified_user(user.id)
    logger.info("pingdom_signup_cleaned_up", user_id=user.id)
    return envelope


@router.post("/organisations/signup", response_model=Envelope, tags=["auth"])
async def signup_organization(body: OrganizationSignupRequest, request: Request):
    """Register an organization together with its first prospective member."""
    runtime = get_runtime()
    with runtime.activity.audit(ORG_SIGN_UP, _client_addr(request)) as audit:
        try:
            user = runtime.accounts.signup_organization(
                name=body.name,
                last_name=body.last_name,
                email=body.email,
                organization_name=body.organisation_name,
                reference_key=body.reference_key,
                title=body.title,
                phone_country_code=body.phone_country_code,
                phone_number=body.phone_number,
            )
        except ServiceError as exc:
            if not should_silence(exc):
                raise
            audit.fail(exc)
            return Envelope(status="ok", data=_decoy_user_id())
        return Envelope(status="ok", data=UserIdResponse(uuid=user.id))


@router.post("/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, request: Request):
    """Resolve the user id to run a second factor against.

    Unknown emails and phones are answered with a random id.
    """
    runtime = get_runtime()
    with runtime.activity.audit(SIGN_IN, _client_addr(request)) as audit:
        try:
            user = runtime.accounts.find_user(
                email=body.email,
                phone_country_code=body.phone_country_code,
                phone_number=body.phone_number,
            )
        except ServiceError as exc:
            if not should_silence(exc):
                raise
            audit.fail(exc)
            return Envelope(status="ok", data=_decoy_user_id())
        return Envelope(status="ok", data=UserIdResponse(uuid=user.id))


@router.post("/signin/{user_id}/webauthn", response_model=Envelope, tags=["auth"])
async def finish_signin_webauthn(
    request: Request,
    user_id: str = Path(..., max_length=64),
    proof: Dict[str, Any] = Body(...),
):
    runtime = get_runtime()
    with runtime.activity.audit(SIGN_UP_WEBAUTHN, _client_addr(request)) as audit:
        user = runtime.accounts.get_user(user_id)
        await runtime.public_keys.finish_login(user, proof)
        return Envelope(status="ok", data=await _open_session(runtime, user, audit))


@router.post("/send_otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendCodeRequest, request: Request):
    """Send a one-time code by email or phone.

    Answers before the code is delivered. Delivery is best effort and not
    guaranteed; clients retry by calling this endpoint again. Outside the
    ``dev`` environment the response has no body.
    """
    runtime = get_runtime()
    with runtime.activity.audit(SEND_OTP, _client_addr(request)) as audit:
        try:
            user = runtime.accounts.get_user(body.uuid)
        except ServiceError as exc:
            if not should_silence(exc):
                raise
            audit.fail(exc)
            return Response(status_code=204)
        code = await runtime.otp.send(user, body.type)
    if code and runtime.settings.is_dev_env:
        return Envelope(status="ok", data=SendCodeResponse(code=code))
    return Response(status_code=204)


@router.post("/verify_otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyCodeRequest, request: Request):
    """Check a one-time code.

    Users with a registered public key get login options back and finish
    at ``/signin/{user_id}/webauthn``; everyone else gets a session token.
    """
    runtime = get_runtime()
    with runtime.activity.audit(VERIFY_OTP, _client_addr(request)) as audit:
        try:
            user = runtime.accounts.get_user(body.uuid)
        except UserNotFound as exc:
            raise ChallengeFailed("unknown_user") from exc
        await runtime.otp.verify(user, body.type, body.code)
        if user.has_public_key:
            options = await runtime.public_keys.begin_login(user)
            return Envelope(status="ok", data=WebAuthnNeededResponse(options=options))
        return Envelope(status="ok", data=await _open_session(runtime, user, audit))


@router.post("/switch/{organization_id}", response_model=Envelope, tags=["auth"])
async def switch_organization(
    request: Request,
    organization_id: str = Path(..., max_length=64),
    claims: SessionClaims = Depends(get_session_claims),
    user: User = Depends(get_current_user),
):
    """Re-scope the session to another organization; the old token stops working."""
    runtime = get_runtime()
    with runtime.activity.audit(SWITCH, _client_addr(request)) as audit:
        audit.claims = claims
        token, new_claims = await runtime.memberships.change_organization(
            user, claims, request.state.session_token, organization_id
        )
        if new_claims != claims:
            audit.claims = new_claims
            runtime.activity.record_session(new_claims, audit.remote_addr)
        return Envelope(status="ok", data=JwtResponse(jwt=token, status="finished"))


@router.post(
    "/invitations/{organization_id}/accept", response_model=Envelope, tags=["auth"]
)
async def accept_invitation(
    request: Request,
    organization_id: str = Path(..., max_length=64),
    claims: SessionClaims = Depends(get_session_claims),
):
    runtime = get_runtime()
    with runtime.activity.audit(ACCEPT_INVITATION, _client_addr(request)) as audit:
        audit.claims = claims
        membership = runtime.memberships.accept_invitation(
            claims.user_id, organization_id
        )
        return Envelope(
            status="ok",
            data=MembershipResponse(
                user_id=membership.user_id,
                organisation_id=membership.organization_id,
                role=membership.role,
                status=membership.status,
                is_home=membership.is_home,
            ),
        )


@router.get("/me/info", response_model=Envelope, tags=["me"])
async def get_info(
    request: Request,
    claims: SessionClaims = Depends(get_session_claims),
    user: User = Depends(get_current_user),
):
    """Identity and organization scope of the presented token.

    Organization fields are empty for tokens not scoped to a membership.
    """
    runtime = get_runtime()
    with runtime.activity.audit(USER_INFO, _client_addr(request)) as audit:
        audit.claims = claims
        membership = (
            runtime.directory.get_membership(user.id, claims.organization_id)
            if claims.organization_id
            else None
        )
        return Envelope(
            status="ok",
            data=InfoResponse(
                user_id=user.id,
                role=user.role,
                organisation_id=claims.organization_id,
                organisation_role=membership.role if membership else "",
                email=user.email or "",
            ),
        )


@router.get("/ping", status_code=204, tags=["me"])
async def ping(
    request: Request,
    claims: SessionClaims = Depends(get_session_claims),
):
    """Heartbeat that extends the session activity of the presented token."""
    runtime = get_runtime()
    runtime.activity.touch_session(claims, _client_addr(request))
    return Response(status_code=204)
