import httpx
from typing import Optional

from common.errors import ConfigurationError

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


async def get_access_token(
    client_id: Optional[str],
    client_secret: Optional[str],
    refresh_token: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Exchanges the refresh token for a new access token.
    """
    if not all([client_id, client_secret, refresh_token]):
        raise ConfigurationError("Missing Google OAuth credentials in environment variables.")

    async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
        response = await client.post(GOOGLE_TOKEN_URL, data={
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })
        # invalid_client / invalid_grant will not fix themselves on retry
        if response.status_code in (400, 401):
            raise ConfigurationError(f"Google rejected the OAuth credentials: {response.text[:200]}")
        response.raise_for_status()
        data = response.json()
        return data["access_token"]
