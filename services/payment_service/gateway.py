"""Paystack gateway client and provider metadata."""
import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

import httpx
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .models import PAYSTACK

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


class GatewayError(Exception):
    """A gateway call failed.

    ``transport`` is True when the gateway could not be reached or answered
    with a server error, False when it rejected the request.
    """

    def __init__(self, message: str, transport: bool = False, raw: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.transport = transport
        self.raw = raw or {}


class PaystackMetadata(BaseModel):
    """Paystack details stored on a payment."""
    provider: Literal["Paystack"] = PAYSTACK
    reference: Optional[str] = None
    access_code: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)


PROVIDER_METADATA: Dict[str, type[BaseModel]] = {
    PAYSTACK: PaystackMetadata,
}


def parse_provider_metadata(provider: str, data: Optional[dict]) -> BaseModel:
    """Load the metadata variant of ``provider``."""
    model = PROVIDER_METADATA.get(provider)
    if model is None:
        raise ValueError(f"Unsupported payment provider: {provider}")
    return model(**(data or {}))


def to_minor_units(amount: Decimal) -> int:
    """Naira to kobo."""
    return int((Decimal(str(amount)) * 100).to_integral_value())


class ChargeInitialization(BaseModel):
    reference: str
    redirect_url: str
    access_code: Optional[str] = None


class ChargeVerification(BaseModel):
    success: bool
    message: str = ""
    raw: Dict[str, Any] = Field(default_factory=dict)


class RefundInitiation(BaseModel):
    accepted: bool
    reference: Optional[str] = None
    message: str = ""
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaystackClient:
    """Thin async client over the Paystack REST API."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool((self.secret_key or "").strip())

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=self._headers(), **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TransportError as e:
            raise GatewayError(f"Paystack unreachable: {str(e)}", transport=True) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 500:
            raise GatewayError(
                f"Paystack error ({response.status_code}): {response.text}",
                transport=True,
                raw=body,
            )
        if response.status_code >= 400 or not body.get("status"):
            raise GatewayError(body.get("message") or f"Paystack rejected request ({response.status_code})", raw=body)

        return body

    async def initialize_charge(
        self,
        email: str,
        amount: Decimal,
        reference: str,
        callback_url: Optional[str] = None,
    ) -> ChargeInitialization:
        payload = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
        }
        if callback_url:
            payload["callback_url"] = callback_url

        body = await self._request("POST", "/transaction/initialize", json=payload)
        data = body.get("data") or {}

        if not data.get("authorization_url"):
            raise GatewayError("Paystack did not return an authorization URL", raw=body)

        logger.info(f"Paystack charge initialized: {reference}")
        return ChargeInitialization(
            reference=data.get("reference") or reference,
            redirect_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _get_verification(self, reference: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(
                f"{self.base_url}/transaction/verify/{reference}", headers=self._headers()
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(
                f"{self.base_url}/transaction/verify/{reference}", headers=self._headers()
            )

    async def verify_charge(self, reference: str) -> ChargeVerification:
        """
        Ask Paystack whether a charge succeeded.

        A charge that exists but did not succeed is reported with
        ``success=False``; only an unreachable gateway raises.
        """
        try:
            response = await self._get_verification(reference)
        except httpx.TransportError as e:
            raise GatewayError(f"Paystack unreachable: {str(e)}", transport=True) from e

        if response.status_code >= 500:
            raise GatewayError(f"Paystack error ({response.status_code}): {response.text}", transport=True)

        try:
            body = response.json()
        except ValueError:
            body = {}

        data = body.get("data") or {}
        success = bool(body.get("status")) and data.get("status") == "success"
        message = data.get("gateway_response") or body.get("message") or ""

        return ChargeVerification(success=success, message=message, raw=body)

    async def initiate_refund(self, reference: str, amount: Decimal) -> RefundInitiation:
        """Request a refund of ``amount`` against the charge ``reference``."""
        try:
            body = await self._request(
                "POST",
                "/refund",
                json={"transaction": reference, "amount": to_minor_units(amount)},
            )
        except GatewayError as e:
            if e.transport:
                raise
            return RefundInitiation(accepted=False, message=e.message, raw=e.raw)

        data = body.get("data") or {}
        refund_id = data.get("id")
        return RefundInitiation(
            accepted=True,
            reference=str(refund_id) if refund_id is not None else None,
            message=body.get("message") or "",
            raw=body,
        )

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 of the raw request body, keyed with the secret key."""
        if not signature or not self.configured:
            return False
        digest = hmac.new(self.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(digest, signature)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
