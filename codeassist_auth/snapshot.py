"""
Export of stored accounts for the opencode-antigravity-auth plugin.

The plugin owns this format (version 3); field names and the version number must
not change without a matching plugin release. The file is derived from the
credential store and rewritten in full after every store mutation.
"""
import json
import logging
import os
from datetime import datetime
from pathlib import Path

from codeassist_auth.config import IS_WINDOWS, SNAPSHOT_PATH

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 3
SNAPSHOT_FILENAME = "antigravity-accounts.json"


def snapshot_path() -> Path:
    """Configured override, else %APPDATA%/opencode on Windows or $XDG_CONFIG_HOME/opencode elsewhere."""
    if SNAPSHOT_PATH:
        return Path(SNAPSHOT_PATH)
    if IS_WINDOWS:
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
    else:
        base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "opencode" / SNAPSHOT_FILENAME


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def build_snapshot(records) -> dict:
    """Plugin document for the given TokenRecords. Records without a refresh token are left out."""
    accounts = []
    for record in records:
        if not record.refresh_token:
            continue
        entry = {}
        if record.email:
            entry["email"] = record.email
        entry["refreshToken"] = record.refresh_token
        entry["projectId"] = record.project_id
        entry["addedAt"] = _epoch_ms(record.created_at)
        entry["lastUsed"] = _epoch_ms(record.last_used_at or record.created_at)
        accounts.append(entry)
    return {"version": SNAPSHOT_VERSION, "accounts": accounts, "activeIndex": 0}


def write_snapshot(records, path: Path | None = None) -> bool:
    """
    Rewrite the plugin file from records, or remove it when there are no accounts.
    Errors are logged, not raised. Returns True if the file now reflects records.
    """
    path = Path(path) if path is not None else snapshot_path()
    document = build_snapshot(records)
    try:
        if not document["accounts"]:
            path.unlink(missing_ok=True)
            return True
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        logger.error("Failed to sync accounts to %s: %s", path, e)
        return False
    logger.info("Synced %d account(s) to %s", len(document["accounts"]), path)
    return True
