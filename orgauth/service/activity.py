from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Any, Dict, Iterator, Optional

from orgauth.logging import get_logger, sanitize_error_message
from orgauth.service.errors import ServiceError, StoreError
from orgauth.service.tokens import SessionClaims
from orgauth.storage.models import UNKNOWN_USER, Activity

logger = get_logger(__name__)

SIGN_UP = "sign_up"
SIGN_UP_WEBAUTHN = "sign_up_webauthn"
ORG_SIGN_UP = "org_sign_up"
SIGN_IN = "sign_in"
SEND_OTP = "send_otp"
VERIFY_OTP = "verify_otp"
SWITCH = "switch"
USER_INFO = "user_info"
USER_SESSION = "user_session"
ACCEPT_INVITATION = "accept_invitation"


def remote_ip(addr: Optional[str]) -> str:
    """Strip any port from a peer address: ``1.2.3.4:80`` and ``[::1]:80`` become bare IPs."""
    if not addr:
        return ""
    value = addr.strip()
    if value.startswith("["):
        return value[1:].split("]", 1)[0]
    try:
        return str(ip_address(value))
    except ValueError:
        pass
    host, sep, port = value.rpartition(":")
    if sep and port.isdigit():
        return host
    return value


@dataclass
class AuditContext:
    type: str
    remote_addr: str = ""
    claims: Optional[SessionClaims] = None
    error: Optional[Dict[str, Any]] = None

    def fail(self, exc: BaseException) -> None:
        if isinstance(exc, ServiceError):
            self.error = {
                "code": exc.error_code,
                "status": exc.status_code,
                "message": sanitize_error_message(exc.message),
                "reason": getattr(exc, "reason", None),
            }
        else:
            self.error = {
                "code": "server_error",
                "status": 500,
                "message": sanitize_error_message(str(exc)),
            }


class ActivityRecorder:
    """Audit trail of auth endpoint calls; never fails the call it records."""

    def __init__(self, directory) -> None:
        self.directory = directory

    def record(self, context: AuditContext) -> Optional[Activity]:
        user_id = context.claims.user_id if context.claims else UNKNOWN_USER
        try:
            return self.directory.create_activity(
                user_id,
                context.type,
                remote_addr=context.remote_addr,
                info=context.error,
                session=context.claims.to_dict() if context.claims else None,
            )
        except Exception as exc:
            logger.error(
                "activity_write_failed",
                activity_type=context.type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    @contextmanager
    def audit(self, activity_type: str, remote_addr: str = "") -> Iterator[AuditContext]:
        """Record one activity for the wrapped block, including its failure if any."""
        context = AuditContext(type=activity_type, remote_addr=remote_ip(remote_addr))
        try:
            yield context
        except Exception as exc:
            context.fail(exc)
            raise
        finally:
            self.record(context)

    def record_session(self, claims: SessionClaims, remote_addr: str = "") -> Optional[Activity]:
        return self.record(
            AuditContext(type=USER_SESSION, remote_addr=remote_ip(remote_addr), claims=claims)
        )

    def touch_session(self, claims: SessionClaims, remote_addr: str = "") -> Activity:
        """Refresh the latest session activity of the claims' pair."""
        try:
            return self.directory.touch_session_activity(
                claims.user_id,
                claims.organization_id,
                remote_addr=remote_ip(remote_addr),
                session=claims.to_dict(),
            )
        except Exception as exc:
            logger.error("session_activity_touch_failed", error=str(exc))
            raise StoreError("unable to refresh session activity") from exc
