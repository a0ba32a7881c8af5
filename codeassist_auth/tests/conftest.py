"""
Pytest configuration for codeassist_auth. Point every on-disk setting at a temp dir
before the package is imported so tests never touch the user's real files.
"""
import os
import tempfile
from urllib.parse import parse_qs

_tmp = tempfile.mkdtemp(prefix="codeassist-auth-tests-")
os.environ["CODEASSIST_DATA_DIR"] = _tmp
os.environ["CODEASSIST_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["CODEASSIST_KEY_PATH"] = os.path.join(_tmp, "token.key")
os.environ["CODEASSIST_SNAPSHOT_PATH"] = os.path.join(_tmp, "antigravity-accounts.json")

import httpx  # noqa: E402
import pytest  # noqa: E402

from codeassist_auth.config import ENDPOINT_PROD  # noqa: E402
from codeassist_auth.oauth_client import OAuthClient  # noqa: E402
from codeassist_auth.token_store import AccountCredentialStore  # noqa: E402

NOW_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeGoogle:
    """
    Stands in for Google's token, userinfo and loadCodeAssist endpoints.
    Responses are (status, body) pairs; body is JSON-encoded unless it is a str.
    """

    def __init__(self):
        self.exchange = (
            200,
            {"access_token": "at-1", "expires_in": 3600, "refresh_token": "rt-1", "token_type": "Bearer"},
        )
        self.refresh = (200, {"access_token": "at-2", "expires_in": 3600, "token_type": "Bearer"})
        # refresh_token value -> (status, body); overrides self.refresh
        self.refresh_by_token: dict[str, tuple] = {}
        self.userinfo = (200, {"email": "user@example.com"})
        # API root -> (status, body); roots not listed answer 503
        self.discovery = {ENDPOINT_PROD: (200, {"cloudaicompanionProject": "proj-123"})}
        self.requests: list[httpx.Request] = []

    @staticmethod
    def _respond(status: int, body) -> httpx.Response:
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    @staticmethod
    def form(request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def token_requests(self, grant_type: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path == "/token" and self.form(r).get("grant_type") == grant_type
        ]

    def discovery_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(":loadCodeAssist")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com" and request.url.path == "/token":
            form = self.form(request)
            if form.get("grant_type") == "refresh_token":
                return self._respond(*self.refresh_by_token.get(form.get("refresh_token"), self.refresh))
            return self._respond(*self.exchange)
        if request.url.path == "/oauth2/v1/userinfo":
            return self._respond(*self.userinfo)
        if request.url.path.endswith(":loadCodeAssist"):
            root = f"{request.url.scheme}://{request.url.host}"
            return self._respond(*self.discovery.get(root, (503, "unavailable")))
        return httpx.Response(404, text="not found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def oauth_client(google, clock):
    return OAuthClient(client_id="test-client", client_secret="test-secret", transport=google.transport(), clock=clock)


@pytest.fixture
def snapshot_file(tmp_path):
    return tmp_path / "opencode" / "antigravity-accounts.json"


@pytest.fixture
def store(tmp_path, snapshot_file):
    return AccountCredentialStore.open(
        "sqlite:///:memory:",
        key_path=str(tmp_path / "token.key"),
        snapshot_path=snapshot_file,
    )
