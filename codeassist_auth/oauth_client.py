"""
Google OAuth2 client for Cloud Code Assist: authorization URL with PKCE, code
exchange, refresh grant, user info and project discovery.
Every network call goes through OAuthClient._request, which enforces FETCH_TIMEOUT_SECONDS
on the whole exchange. Failures come back as result objects, never as exceptions.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlencode

import httpx

from codeassist_auth.config import (
    CLIENT_ID,
    CLIENT_METADATA,
    CLIENT_SECRET,
    DISCOVERY_USER_AGENT,
    ENDPOINT_FALLBACKS,
    FETCH_TIMEOUT_SECONDS,
    GOOG_API_CLIENT,
    GOOGLE_AUTH_URL,
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    LOAD_ENDPOINTS,
    REDIRECT_URI,
    SCOPES,
)
from codeassist_auth.errors import MalformedState, MissingRefreshToken
from codeassist_auth.pkce import decode_state, encode_state, generate_pkce

logger = logging.getLogger(__name__)

# Used when the token endpoint omits or garbles expires_in
DEFAULT_EXPIRES_IN = 3600


def now_ms() -> int:
    return int(time.time() * 1000)


def token_expiry(start_ms: int, expires_in_seconds: int) -> int:
    """Absolute expiry measured from when the request was sent, not when it returned."""
    return start_ms + expires_in_seconds * 1000


def _parse_expires_in(value) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN


def discovery_endpoints() -> list[str]:
    """Load endpoints first, then the general fallbacks; duplicates dropped, order kept."""
    return list(dict.fromkeys([*LOAD_ENDPOINTS, *ENDPOINT_FALLBACKS]))


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    verifier: str
    state: str


@dataclass(frozen=True)
class TokenExchangeSuccess:
    access_token: str
    refresh_token: str
    expires_at: int
    project_id: str
    email: str | None = None
    type: str = "success"


@dataclass(frozen=True)
class TokenExchangeFailure:
    error: str
    type: str = "failed"


TokenExchangeResult = TokenExchangeSuccess | TokenExchangeFailure


@dataclass(frozen=True)
class RefreshSuccess:
    access_token: str
    expires_at: int
    # Google does not rotate refresh tokens on refresh; set only if one was returned
    refresh_token: str | None = None
    type: str = "success"


@dataclass(frozen=True)
class RefreshFailure:
    error: str
    type: str = "failed"


RefreshResult = RefreshSuccess | RefreshFailure


def _extract_project_id(data) -> str:
    """loadCodeAssist returns cloudaicompanionProject as a string or as {"id": ...}."""
    if not isinstance(data, dict):
        return ""
    project = data.get("cloudaicompanionProject")
    if isinstance(project, str) and project:
        return project
    if isinstance(project, dict) and isinstance(project.get("id"), str) and project["id"]:
        return project["id"]
    return ""


class OAuthClient:
    def __init__(
        self,
        *,
        client_id: str = CLIENT_ID,
        client_secret: str = CLIENT_SECRET,
        redirect_uri: str = REDIRECT_URI,
        scopes: tuple[str, ...] = SCOPES,
        auth_url: str = GOOGLE_AUTH_URL,
        token_url: str = GOOGLE_TOKEN_URL,
        userinfo_url: str = GOOGLE_USERINFO_URL,
        endpoints: list[str] | None = None,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.auth_url = auth_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.endpoints = endpoints if endpoints is not None else discovery_endpoints()
        self.timeout = timeout
        self._transport = transport
        self._clock = clock

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send one request, aborting it once self.timeout has elapsed in total.
        Raises httpx.HTTPError (httpx.TimeoutException on deadline).
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                return await asyncio.wait_for(client.request(method, url, **kwargs), self.timeout)
            except asyncio.TimeoutError:
                raise httpx.TimeoutException(f"Request to {url} timed out after {self.timeout}s")

    def build_authorization_url(self, project_id: str = "") -> AuthorizationRequest:
        """
        Authorization URL for a fresh PKCE pair. access_type=offline with prompt=consent
        so Google issues a refresh token even to a user who consented before.
        """
        pkce = generate_pkce()
        state = encode_state(pkce.verifier, project_id)
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return AuthorizationRequest(
            url=f"{self.auth_url}?{urlencode(params)}",
            verifier=pkce.verifier,
            state=state,
        )

    async def exchange_code_for_tokens(self, code: str, state: str) -> TokenExchangeResult:
        """
        Redeem an authorization code. The verifier comes back out of state.
        User info is best-effort; a missing refresh token fails the exchange.
        """
        try:
            flow_state = decode_state(state)
        except MalformedState as e:
            return TokenExchangeFailure(error=str(e))

        start = self._clock()
        try:
            r = await self._request(
                "POST",
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.redirect_uri,
                    "code_verifier": flow_state.verifier,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("Token exchange request failed: %s", e)
            return TokenExchangeFailure(error=f"Token exchange request failed: {e}")

        if not r.is_success:
            logger.error("Token exchange failed (%s)", r.status_code)
            return TokenExchangeFailure(error=r.text or f"Token exchange failed ({r.status_code})")

        try:
            payload = r.json()
        except ValueError:
            return TokenExchangeFailure(error="Invalid token response")
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            return TokenExchangeFailure(error="Missing access token in response")

        email = await self.fetch_user_email(access_token)

        refresh_token = payload.get("refresh_token")
        if not refresh_token:
            return TokenExchangeFailure(error=str(MissingRefreshToken()))

        project_id = flow_state.project_id
        if not project_id:
            project_id = await self.discover_project_id(access_token)

        return TokenExchangeSuccess(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=token_expiry(start, _parse_expires_in(payload.get("expires_in"))),
            project_id=project_id,
            email=email,
        )

    async def refresh_access_token(self, refresh_token: str) -> RefreshResult:
        start = self._clock()
        try:
            r = await self._request(
                "POST",
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            return RefreshFailure(error=f"Refresh request failed: {e}")

        if not r.is_success:
            return RefreshFailure(error=r.text or f"Refresh failed ({r.status_code})")

        try:
            payload = r.json()
        except ValueError:
            return RefreshFailure(error="Invalid refresh response")
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            return RefreshFailure(error="Missing access token in refresh response")

        return RefreshSuccess(
            access_token=access_token,
            expires_at=token_expiry(start, _parse_expires_in(payload.get("expires_in"))),
            refresh_token=payload.get("refresh_token") or None,
        )

    async def fetch_user_email(self, access_token: str) -> str | None:
        """Email from the userinfo endpoint, or None if the lookup fails."""
        try:
            r = await self._request(
                "GET",
                self.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("User info lookup failed: %s", e)
            return None
        if not r.is_success:
            logger.warning("User info lookup failed (%s)", r.status_code)
            return None
        try:
            data = r.json()
        except ValueError:
            logger.warning("User info response is not JSON")
            return None
        email = data.get("email") if isinstance(data, dict) else None
        return email if isinstance(email, str) and email else None

    async def discover_project_id(self, access_token: str) -> str:
        """
        Ask each Cloud Code Assist endpoint in turn for the caller's project.
        Returns "" when none answers; callers fall back to DEFAULT_PROJECT_ID.
        """
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "User-Agent": DISCOVERY_USER_AGENT,
            "X-Goog-Api-Client": GOOG_API_CLIENT,
            "Client-Metadata": json.dumps(CLIENT_METADATA, separators=(",", ":")),
        }
        errors: list[str] = []

        for base in self.endpoints:
            url = f"{base}/v1internal:loadCodeAssist"
            try:
                r = await self._request("POST", url, headers=headers, json={"metadata": CLIENT_METADATA})
            except httpx.HTTPError as e:
                errors.append(f"loadCodeAssist error at {base}: {e}")
                continue

            if not r.is_success:
                detail = f": {r.text}" if r.text else ""
                errors.append(f"loadCodeAssist {r.status_code} at {base}{detail}")
                continue

            try:
                project_id = _extract_project_id(r.json())
            except ValueError:
                project_id = ""
            if project_id:
                return project_id
            errors.append(f"loadCodeAssist missing project id at {base}")

        if errors:
            logger.warning("Failed to resolve project via loadCodeAssist: %s", "; ".join(errors))
        return ""
