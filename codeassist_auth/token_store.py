"""
Account credential store: one token record per account, persisted via SQLAlchemy
with token values encrypted. Every put/delete regenerates the plugin snapshot.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from codeassist_auth.config import DATABASE_URL, ENCRYPTION_KEY_PATH
from codeassist_auth.database import create_db_engine, create_session_factory
from codeassist_auth.keys import TokenCipher
from codeassist_auth.models import StoredAccount
from codeassist_auth.snapshot import write_snapshot

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class TokenRecord:
    account_id: str
    access_token: str
    refresh_token: str
    # Epoch milliseconds
    expires_at: int
    project_id: str
    email: str | None = None
    created_at: datetime = field(default_factory=_utc_now)
    last_used_at: datetime | None = None

    def expires_within(self, buffer_ms: int, now_ms: int) -> bool:
        """True if the access token has buffer_ms or less left (or is already expired)."""
        return self.expires_at - now_ms <= buffer_ms


class AccountCredentialStore:
    def __init__(self, session_factory: sessionmaker, cipher: TokenCipher, snapshot_path: Path | None = None):
        self._session_factory = session_factory
        self._cipher = cipher
        self.snapshot_path = snapshot_path

    @classmethod
    def open(
        cls,
        database_url: str = DATABASE_URL,
        key_path: str = ENCRYPTION_KEY_PATH,
        snapshot_path: Path | None = None,
    ) -> "AccountCredentialStore":
        engine = create_db_engine(database_url)
        return cls(create_session_factory(engine), TokenCipher.from_path(key_path), snapshot_path)

    def _to_record(self, row: StoredAccount) -> TokenRecord | None:
        access_token = self._cipher.decrypt(row.access_token_enc)
        refresh_token = self._cipher.decrypt(row.refresh_token_enc)
        if access_token is None or refresh_token is None:
            logger.warning("Stored tokens for account %s cannot be decrypted", row.account_id)
            return None
        return TokenRecord(
            account_id=row.account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=row.expires_at,
            project_id=row.project_id,
            email=row.email,
            created_at=_as_utc(row.created_at),
            last_used_at=_as_utc(row.last_used_at),
        )

    def put(self, record: TokenRecord) -> None:
        """Insert or replace the record stored under record.account_id."""
        with self._session_factory() as db:
            row = db.get(StoredAccount, record.account_id)
            if row is None:
                row = StoredAccount(account_id=record.account_id)
                db.add(row)
            row.email = record.email
            row.project_id = record.project_id
            row.access_token_enc = self._cipher.encrypt(record.access_token)
            row.refresh_token_enc = self._cipher.encrypt(record.refresh_token)
            row.expires_at = record.expires_at
            row.created_at = record.created_at
            row.last_used_at = record.last_used_at
            db.commit()
        self.sync_snapshot()

    def get(self, account_id: str) -> TokenRecord | None:
        with self._session_factory() as db:
            row = db.get(StoredAccount, account_id)
            return self._to_record(row) if row is not None else None

    def list_ids(self) -> list[str]:
        """Account ids, oldest first. This is the rotation order."""
        with self._session_factory() as db:
            stmt = select(StoredAccount.account_id).order_by(StoredAccount.created_at, StoredAccount.account_id)
            return list(db.scalars(stmt))

    def _load_all(self) -> list[TokenRecord | None]:
        """Every row in list_ids() order; None where the tokens cannot be decrypted."""
        with self._session_factory() as db:
            rows = db.scalars(select(StoredAccount).order_by(StoredAccount.created_at, StoredAccount.account_id))
            return [self._to_record(row) for row in rows]

    def records(self) -> list[TokenRecord]:
        """All readable records in list_ids() order."""
        return [r for r in self._load_all() if r is not None]

    def delete(self, account_id: str) -> bool:
        """Remove one record. Returns False if there was none."""
        with self._session_factory() as db:
            row = db.get(StoredAccount, account_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        self.sync_snapshot()
        return True

    def delete_all(self) -> int:
        with self._session_factory() as db:
            rows = list(db.scalars(select(StoredAccount)))
            for row in rows:
                db.delete(row)
            db.commit()
        if rows:
            self.sync_snapshot()
        return len(rows)

    def sync_snapshot(self) -> bool:
        """
        Rewrite the plugin snapshot from the store. Skipped, leaving the existing file
        as it is, while any stored account cannot be decrypted: the file may be the
        only readable copy of that account's refresh token.
        """
        records = self._load_all()
        unreadable = sum(1 for r in records if r is None)
        if unreadable:
            logger.warning("Not syncing snapshot: %d stored account(s) cannot be decrypted", unreadable)
            return False
        return write_snapshot(records, self.snapshot_path)
