"""OAuth helper endpoints.

Plain request/response calls against the OAuth cloud functions.  These must
only run server-side because they carry the app's client secret.

Endpoints used:
    GET  {base}/createOAuthURL  — consent URL for a registered app
    GET  {base}/getOAuthToken   — custom token for a user who granted access
"""

from __future__ import annotations

import logging

import httpx

from neurostream.config import ClientSettings, get_settings
from neurostream.models import OAuthConfig, OAuthQuery, OAuthQueryResult

logger = logging.getLogger("neurostream.transports.oauth")

_TIMEOUT_S = 10.0


class OAuthClient:
    """Thin httpx wrapper around the OAuth endpoints.

    Args:
        settings:    Client settings (``oauth_base_url``).
        http_client: Optional pre-configured httpx client (for testing).
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (settings or get_settings()).oauth_base_url.rstrip("/")
        self._http_client = http_client

    async def create_oauth_url(self, config: OAuthConfig) -> str:
        """Return the consent URL users are redirected to."""
        params = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "redirect_uri": config.redirect_uri,
            "response_type": config.response_type,
            "state": config.state,
            "scope": ",".join(config.scope),
        }
        data = await self._get(f"{self._base_url}/createOAuthURL", params)
        url = data.get("url") if isinstance(data, dict) else data
        if not url:
            raise ValueError("OAuth endpoint returned no URL")
        logger.info("Created OAuth URL for client %s", config.client_id)
        return str(url)

    async def get_oauth_token(self, query: OAuthQuery) -> OAuthQueryResult:
        """Exchange a client id/secret and user id for a custom token."""
        params = {
            "client_id": query.client_id,
            "client_secret": query.client_secret,
            "userId": query.user_id,
        }
        data = await self._get(f"{self._base_url}/getOAuthToken", params)
        return OAuthQueryResult.model_validate(data)

    async def _get(self, url: str, params: dict) -> dict:
        if self._http_client is not None:
            response = await self._http_client.get(url, params=params, timeout=_TIMEOUT_S)
            response.raise_for_status()
            return response.json()

        async with httpx.AsyncClient(timeout=_TIMEOUT_S) as client:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()
