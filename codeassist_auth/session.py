"""
Session manager: the operations the desktop app calls.

Drives login (listener -> browser -> redirect -> code exchange -> store), hands out
access tokens refreshed when they are within the refresh buffer of expiry, and
rotates across stored accounts to find one that still works.
"""
import asyncio
import enum
import logging
import secrets
import string
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from codeassist_auth.callback_server import CallbackListener
from codeassist_auth.config import CALLBACK_TIMEOUT_SECONDS, DEFAULT_PROJECT_ID, TOKEN_REFRESH_BUFFER_MS
from codeassist_auth.errors import ExchangeFailure, ListenerBindFailure, OAuthFlowError
from codeassist_auth.oauth_client import OAuthClient, RefreshFailure, TokenExchangeFailure, now_ms
from codeassist_auth.token_store import AccountCredentialStore, TokenRecord

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


class LoginState(enum.Enum):
    IDLE = "idle"
    LISTENER_STARTING = "listener_starting"
    AWAITING_REDIRECT = "awaiting_redirect"
    EXCHANGING = "exchanging"
    STORED = "stored"


@dataclass(frozen=True)
class Account:
    """Public view of a stored account; never carries tokens."""

    id: str
    email: str
    project_id: str
    created_at: datetime
    last_used_at: datetime | None = None

    @classmethod
    def from_record(cls, record: TokenRecord) -> "Account":
        return cls(
            id=record.account_id,
            email=record.email or "Unknown",
            project_id=record.project_id,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "projectId": self.project_id,
            "createdAt": self.created_at.isoformat(),
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass(frozen=True)
class LoginResult:
    success: bool
    account: Account | None = None
    error: str | None = None


@dataclass(frozen=True)
class AccessToken:
    account_id: str
    token: str
    project_id: str


def generate_account_id(timestamp_ms: int) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"account_{timestamp_ms}_{suffix}"


class SessionManager:
    """
    Owns the callback listener for the lifetime of the app; call shutdown() on exit.

    Concurrent token requests for the same account share one refresh call.
    """

    def __init__(
        self,
        store: AccountCredentialStore,
        oauth_client: OAuthClient | None = None,
        listener: CallbackListener | None = None,
        open_browser: Callable[[str], object] = webbrowser.open,
        refresh_buffer_ms: int = TOKEN_REFRESH_BUFFER_MS,
        callback_timeout: float = CALLBACK_TIMEOUT_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.oauth_client = oauth_client or OAuthClient(clock=clock)
        self.listener = listener or CallbackListener()
        self.refresh_buffer_ms = refresh_buffer_ms
        self.callback_timeout = callback_timeout
        self.state = LoginState.IDLE
        self._attempt = 0
        self._open_browser = open_browser
        self._clock = clock
        self._refreshing: dict[str, asyncio.Task] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000, timezone.utc)

    async def login(self) -> LoginResult:
        """Run one interactive login. Every failure comes back as LoginResult(success=False)."""
        self._attempt += 1
        attempt = self._attempt
        try:
            return await self._login(attempt)
        except OAuthFlowError as e:
            logger.error("Login failed: %s", e)
            return LoginResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("Login failed")
            return LoginResult(success=False, error=str(e) or "Unknown error")
        finally:
            self._enter(attempt, LoginState.IDLE)

    def _enter(self, attempt: int, state: LoginState) -> None:
        # Only the newest attempt drives state; a superseded one finishes silently
        if attempt == self._attempt:
            self.state = state

    async def _login(self, attempt: int) -> LoginResult:
        self._enter(attempt, LoginState.LISTENER_STARTING)
        if not await self.listener.start():
            raise ListenerBindFailure("Failed to start OAuth callback server. Port may be in use.")

        auth = self.oauth_client.build_authorization_url()

        self._enter(attempt, LoginState.AWAITING_REDIRECT)
        if not self._open_browser(auth.url):
            logger.warning("Could not open the browser automatically for login")
        callback = await self.listener.wait_for_callback(auth.state, timeout=self.callback_timeout)

        self._enter(attempt, LoginState.EXCHANGING)
        result = await self.oauth_client.exchange_code_for_tokens(callback.code, callback.state)
        if isinstance(result, TokenExchangeFailure):
            raise ExchangeFailure(result.error)

        now = self._now()
        record = TokenRecord(
            account_id=generate_account_id(self._clock()),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            project_id=result.project_id or DEFAULT_PROJECT_ID,
            email=result.email,
            created_at=now,
            last_used_at=now,
        )
        self.store.put(record)
        self._enter(attempt, LoginState.STORED)

        account = Account.from_record(record)
        logger.info("Logged in as %s", account.email)
        return LoginResult(success=True, account=account)

    async def logout(self, account_id: str) -> bool:
        deleted = self.store.delete(account_id)
        if deleted:
            logger.info("Logged out account %s", account_id)
        return deleted

    async def logout_all(self) -> int:
        count = self.store.delete_all()
        logger.info("Logged out %d accounts", count)
        return count

    def list_accounts(self) -> list[Account]:
        return [Account.from_record(r) for r in self.store.records()]

    def is_authenticated(self) -> bool:
        return bool(self.store.list_ids())

    async def get_valid_access_token(self, account_id: str) -> AccessToken | None:
        """
        Access token for account_id with at least refresh_buffer_ms of life left,
        refreshing first if needed. None if the account is unknown or refresh fails.
        """
        record = self.store.get(account_id)
        if record is None:
            return None

        if record.expires_within(self.refresh_buffer_ms, self._clock()):
            return await self._refresh(account_id)

        record.last_used_at = self._now()
        self.store.put(record)
        return AccessToken(account_id=account_id, token=record.access_token, project_id=record.project_id)

    async def get_any_valid_access_token(self) -> AccessToken | None:
        """First account, in store order, that yields a valid token."""
        for account_id in self.store.list_ids():
            token = await self.get_valid_access_token(account_id)
            if token is not None:
                return token
        return None

    async def _refresh(self, account_id: str) -> AccessToken | None:
        task = self._refreshing.get(account_id)
        if task is None:
            task = asyncio.create_task(self._do_refresh(account_id))
            self._refreshing[account_id] = task
            task.add_done_callback(lambda _: self._refreshing.pop(account_id, None))
        return await asyncio.shield(task)

    async def _do_refresh(self, account_id: str) -> AccessToken | None:
        record = self.store.get(account_id)
        if record is None:
            return None

        logger.info("Refreshing token for account %s", account_id)
        result = await self.oauth_client.refresh_access_token(record.refresh_token)
        if isinstance(result, RefreshFailure):
            logger.error("Token refresh failed for %s: %s", account_id, result.error)
            return None

        # Logged out while the refresh was in flight
        if self.store.get(account_id) is None:
            return None

        record.access_token = result.access_token
        record.expires_at = result.expires_at
        if result.refresh_token:
            record.refresh_token = result.refresh_token
        record.last_used_at = self._now()
        self.store.put(record)
        return AccessToken(account_id=account_id, token=record.access_token, project_id=record.project_id)

    async def shutdown(self) -> None:
        """Stop the callback listener; a login still waiting fails with ListenerStopped."""
        await self.listener.stop()
