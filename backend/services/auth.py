import asyncio
import logging
from typing import Callable, Optional

import google.auth
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from services.config import Settings, is_placeholder, require_credential

logger = logging.getLogger(__name__)

# cloud-platform covers Vertex AI predict calls.
SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _default_credentials_factory(settings: Settings):
    """
    Refreshable credentials: an OAuth2 refresh token (GOOGLE_REFRESH_TOKEN + client id/secret)
    when configured, otherwise Application Default Credentials when VERTEX_USE_ADC is on.
    Returns None when neither is configured.
    """
    if not any(is_placeholder(v) for v in (
        settings.google_refresh_token, settings.google_client_id, settings.google_client_secret
    )):
        return Credentials(
            token=None,
            refresh_token=settings.google_refresh_token,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            token_uri=TOKEN_URI,
            scopes=SCOPES,
        )
    if settings.vertex_use_adc:
        credentials, _project = google.auth.default(scopes=SCOPES)
        return credentials
    return None


class AccessTokenProvider:
    """
    Bearer tokens for the native cloud backend.

    Prefers a short-lived token from refreshable credentials (refreshed when expired,
    roughly hourly); if that is unavailable or the refresh fails, falls back to the
    statically configured VERTEX_ACCESS_TOKEN. A missing or placeholder static token
    at that point is a ConfigurationError.
    """

    def __init__(self, settings: Settings, credentials_factory: Optional[Callable] = None):
        self.settings = settings
        self._credentials_factory = credentials_factory or _default_credentials_factory
        self._credentials = None
        self._refresh_lock = asyncio.Lock()

    def _refresh_sync(self) -> Optional[str]:
        if self._credentials is None:
            self._credentials = self._credentials_factory(self.settings)
        if self._credentials is None:
            return None
        if not self._credentials.valid:
            logger.info("Refreshing Google Cloud access token")
            self._credentials.refresh(Request())
        return self._credentials.token

    async def get_token(self) -> str:
        # One refresh at a time; later callers reuse the token it produced.
        async with self._refresh_lock:
            try:
                # google-auth refresh is blocking (requests); keep it off the event loop.
                token = await asyncio.to_thread(self._refresh_sync)
            except GoogleAuthError as e:
                logger.warning(f"Access token refresh failed, falling back to static token: {e}")
                self._credentials = None
                token = None
        if token:
            return token
        return require_credential(self.settings.vertex_access_token, "VERTEX_ACCESS_TOKEN", backend="vertex")
