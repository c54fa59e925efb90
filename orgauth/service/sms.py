from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from orgauth.logging import get_logger
from orgauth.service.errors import ProviderError

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.authy.com/protected/json/phones/verification"


class AuthyVerifyClient:
    """Phone verification through the Authy / Twilio Verify API.

    The provider generates, sends and checks the short code itself, so this
    client never sees the code it asks the provider to deliver.

    Without an API key the client runs in dev mode: ``start`` only logs and
    ``check`` rejects every code.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    @staticmethod
    def _parse(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("phone verification provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError("phone verification provider returned invalid JSON")
        return payload

    async def start(self, country_code: str, phone_number: str) -> bool:
        """Ask the provider to text a code to the number."""
        if not self.is_configured:
            logger.info("sms_dev_mode", phone=phone_number)
            return True
        form = {
            "api_key": self.api_key,
            "via": "sms",
            "phone_number": phone_number,
            "country_code": country_code,
        }
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/start", data=form)
        except httpx.HTTPError as exc:
            logger.error("sms_start_transport_error", error=str(exc))
            raise ProviderError("phone verification provider unreachable") from exc
        payload = self._parse(response)
        if response.status_code >= 400 or not payload.get("success"):
            logger.error(
                "sms_start_rejected",
                status_code=response.status_code,
                provider_message=payload.get("message"),
            )
            raise ProviderError("phone verification could not be started")
        logger.info("sms_start_sent", phone=phone_number)
        return True

    async def check(self, country_code: str, phone_number: str, code: str) -> bool:
        """Return True when the provider accepts ``code`` for the number."""
        if not self.is_configured:
            logger.warning("sms_dev_mode_check_rejected", phone=phone_number)
            return False
        params = {
            "api_key": self.api_key,
            "verification_code": code,
            "phone_number": phone_number,
            "country_code": country_code,
        }
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/check", params=params)
        except httpx.HTTPError as exc:
            logger.error("sms_check_transport_error", error=str(exc))
            raise ProviderError("phone verification provider unreachable") from exc
        if response.status_code >= 500:
            logger.error("sms_check_server_error", status_code=response.status_code)
            raise ProviderError("phone verification provider failed")
        payload = self._parse(response)
        if response.status_code >= 400 or not payload.get("success"):
            logger.info(
                "sms_check_rejected",
                status_code=response.status_code,
                provider_message=payload.get("message"),
            )
            return False
        return True
