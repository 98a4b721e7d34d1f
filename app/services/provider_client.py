"""
HTTP plumbing shared by the payment-provider API clients (Safaricom Daraja,
Equity Jenga, KCB Buni).

An httpx.AsyncClient can be injected (tests use httpx.MockTransport);
otherwise one is created per call.
"""
import base64
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.exceptions import ProviderUnavailableError


def basic_auth(username: str, password: str) -> str:
    """HTTP Basic Authorization header value."""
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


class ProviderClient:
    """Base for provider clients; transport failures become ProviderUnavailableError."""

    provider_name = "Provider"

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.http_client = http_client
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self.http_client is not None:
                response = await self.http_client.request(method, url, timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"{self.provider_name} request to {url} failed: {e}")

        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"{self.provider_name} returned HTTP {response.status_code}", status_code=response.status_code
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
