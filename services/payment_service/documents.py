"""Client for the document service that renders receipts and invoices."""
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class DocumentError(Exception):
    """Receipt or invoice generation failed."""


class DocumentClient:
    """Asks the document service for a PDF and returns its URL."""

    def __init__(self, base_url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _render(self, kind: str, payload: Dict[str, Any]) -> str:
        url = f"{self.base_url}/{kind}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
            document_url = response.json().get("url")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise DocumentError(f"{kind} generation failed: {str(e)}") from e

        if not document_url:
            raise DocumentError(f"{kind} generation returned no URL")
        return document_url

    async def generate_receipt(self, payload: Dict[str, Any]) -> str:
        return await self._render("receipts", payload)

    async def generate_invoice(self, payload: Dict[str, Any]) -> str:
        return await self._render("invoices", payload)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
