import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests
from pydantic import ValidationError

from abmate.config import SCOPE, TOKEN_URL
from abmate.errors import AuthenticationFailed, TransportError
from abmate.models import AccessToken, AuthErrorResponse, TokenResponse

logger = logging.getLogger("abmate.token")

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenProvider:
    """
    Exchanges a client assertion for a bearer token and holds on to it until it expires.
    One instance per session; the cache starts empty.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        token_url: str = TOKEN_URL,
        clock: Callable[[], datetime] = _utc_now,
        timeout: Optional[float] = None,
    ):
        self.session = session or requests.Session()
        self.token_url = token_url
        self.clock = clock
        self.timeout = timeout
        self._token: Optional[AccessToken] = None
        self._lock = threading.Lock()

    @property
    def cached_token(self) -> Optional[AccessToken]:
        token = self._token
        if token and token.is_valid(self.clock()):
            return token
        return None

    def invalidate(self) -> None:
        self._token = None

    def get_access_token(self, assertion: str, client_id: str) -> str:
        token = self.cached_token
        if token:
            return token.value

        with self._lock:
            # Another caller may have refreshed while we waited.
            token = self.cached_token
            if token:
                return token.value
            self._token = self._request_token(assertion, client_id)
            return self._token.value

    def _request_token(self, assertion: str, client_id: str) -> AccessToken:
        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": assertion,
            "scope": SCOPE,
        }
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        logger.info(f"🔑 Requesting ABM access token for {client_id}...")
        try:
            resp = self.session.post(self.token_url, data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"❌ ABM token request failed: {e}")
            raise TransportError(f"Token request failed: {e}") from e

        if resp.status_code != 200:
            raise self._auth_error(resp)

        try:
            parsed = TokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"❌ ABM token response could not be parsed: {e}")
            raise AuthenticationFailed(200, description="Malformed token response", body=resp.text) from e

        expires_at = self.clock() + timedelta(seconds=parsed.expires_in)
        logger.info(f"✅ ABM access token acquired (expires in {parsed.expires_in}s).")
        return AccessToken(value=parsed.access_token, expires_at=expires_at)

    @staticmethod
    def _auth_error(resp) -> AuthenticationFailed:
        body = resp.text or ""
        logger.error(f"❌ ABM Auth Failed {resp.status_code}: {body}")
        try:
            parsed = AuthErrorResponse.model_validate(resp.json())
        except (ValueError, ValidationError):
            return AuthenticationFailed(resp.status_code, body=body)
        return AuthenticationFailed(
            resp.status_code,
            error_code=parsed.error,
            description=parsed.error_description,
            body=body,
        )
