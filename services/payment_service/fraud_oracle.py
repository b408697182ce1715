"""Client for the external anomaly-detection model."""
import logging
from datetime import datetime
from typing import Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class FraudOracleError(Exception):
    """The oracle was unreachable or answered with something unusable."""


class FraudFeatures(BaseModel):
    """Feature vector sent to the oracle."""
    fee_amount_due: float = 0.0
    amount_paid: float = 0.0
    payment_method: str = "Bank"
    student_type: str = "middle"
    is_new_device: bool = True
    student_name_match: bool = True
    time_since_last_payment_days: int = 30
    timestamp: str = Field(default_factory=lambda: datetime.utcnow().isoformat())


class OracleVerdict(BaseModel):
    reconstruction_error: float
    threshold: float
    anomaly_scale: str


class FraudOracleClient:
    """Posts feature vectors to the oracle's predict endpoint."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def predict(self, features: FraudFeatures) -> OracleVerdict:
        payload = features.model_dump()
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
            verdict = OracleVerdict(**response.json())
        except (httpx.HTTPError, ValueError, TypeError, ValidationError) as e:
            raise FraudOracleError(f"Fraud oracle call failed: {str(e)}") from e

        if verdict.threshold <= 0:
            raise FraudOracleError(f"Fraud oracle returned invalid threshold {verdict.threshold}")

        return verdict

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
