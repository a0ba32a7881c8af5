"""
Configuration for the Cloud Code Assist account login.
No secrets in this file; the client secret comes from env.
"""
import os
import sys
from pathlib import Path

# Installed-app OAuth client registered with Google for Cloud Code Assist
CLIENT_ID = os.environ.get(
    "OAUTH_CLIENT_ID",
    "1071006060591-tmhssin2h21lcre235vtolojh4g403ep.apps.googleusercontent.com",
)
CLIENT_SECRET = os.environ.get("OAUTH_CLIENT_SECRET", "")

# Local redirect listener. The redirect URI must match the one registered for CLIENT_ID.
CALLBACK_HOST = "localhost"
CALLBACK_PORT = int(os.environ.get("OAUTH_CALLBACK_PORT", "51121"))
CALLBACK_PATH = "/oauth-callback"
REDIRECT_URI = f"http://{CALLBACK_HOST}:{CALLBACK_PORT}{CALLBACK_PATH}"

SCOPES = (
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/cclog",
    "https://www.googleapis.com/auth/experimentsandconfigs",
)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"

# Cloud Code Assist API roots
ENDPOINT_DAILY = "https://daily-cloudcode-pa.sandbox.googleapis.com"
ENDPOINT_AUTOPUSH = "https://autopush-cloudcode-pa.sandbox.googleapis.com"
ENDPOINT_PROD = "https://cloudcode-pa.googleapis.com"

# General fallback order (daily -> autopush -> prod)
ENDPOINT_FALLBACKS = (ENDPOINT_DAILY, ENDPOINT_AUTOPUSH, ENDPOINT_PROD)

# Project discovery prefers prod, then the sandboxes
LOAD_ENDPOINTS = (ENDPOINT_PROD, ENDPOINT_DAILY, ENDPOINT_AUTOPUSH)

# Used when discovery does not return a project
DEFAULT_PROJECT_ID = os.environ.get("CODEASSIST_DEFAULT_PROJECT_ID", "rising-fact-p41fc")

CLIENT_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}
DISCOVERY_USER_AGENT = "google-api-nodejs-client/9.15.1"
GOOG_API_CLIENT = "google-cloud-sdk vscode_cloudshelleditor/0.1"

# Refresh access tokens 5 minutes before they expire
TOKEN_REFRESH_BUFFER_MS = 5 * 60 * 1000

# Per-request network timeout (seconds)
FETCH_TIMEOUT_SECONDS = 10.0

# How long login waits for the browser redirect (seconds)
CALLBACK_TIMEOUT_SECONDS = 5 * 60

DATA_DIR = Path(os.environ.get("CODEASSIST_DATA_DIR", str(Path.home() / ".codeassist_auth")))

# SQLite DB holding one encrypted token record per account
DATABASE_URL = os.environ.get("CODEASSIST_DATABASE_URL", f"sqlite:///{DATA_DIR / 'accounts.db'}")

# Fernet key for token columns. Generated and saved on first use if missing.
ENCRYPTION_KEY_PATH = os.environ.get("CODEASSIST_KEY_PATH", str(DATA_DIR / "token.key"))

# Optional override for the external accounts file (see snapshot.snapshot_path)
SNAPSHOT_PATH = os.environ.get("CODEASSIST_SNAPSHOT_PATH", "").strip() or None

IS_WINDOWS = sys.platform == "win32"
