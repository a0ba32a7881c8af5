"""
PKCE (RFC 7636) verifier/challenge generation and the opaque flow state
carried through the authorization redirect. S256 only.
"""
import binascii
import hashlib
import json
import secrets
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass

from codeassist_auth.errors import MalformedState

# RFC 7636 allows 43-128 characters
VERIFIER_LENGTH = 64


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str


@dataclass(frozen=True)
class FlowState:
    verifier: str
    project_id: str = ""


def _b64url(data: bytes) -> str:
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def compute_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce() -> PkcePair:
    """
    Generate a verifier of VERIFIER_LENGTH URL-safe characters from the OS CSPRNG
    and its S256 challenge.
    """
    verifier = secrets.token_urlsafe(VERIFIER_LENGTH)[:VERIFIER_LENGTH]
    return PkcePair(verifier=verifier, challenge=compute_challenge(verifier))


def encode_state(verifier: str, project_id: str = "") -> str:
    """JSON, then base64url without padding."""
    payload = json.dumps({"verifier": verifier, "projectId": project_id})
    return _b64url(payload.encode("utf-8"))


def decode_state(state: str) -> FlowState:
    """
    Reverse encode_state. Raises MalformedState if the token is not base64, not a
    JSON object, or has no verifier. A missing or non-string projectId becomes "".
    """
    padded = state + "=" * (-len(state) % 4)
    try:
        raw = urlsafe_b64decode(padded.encode("ascii"))
        parsed = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise MalformedState(f"Malformed OAuth state: {e}") from e

    if not isinstance(parsed, dict) or not isinstance(parsed.get("verifier"), str):
        raise MalformedState("Missing PKCE verifier in state")

    project_id = parsed.get("projectId")
    return FlowState(
        verifier=parsed["verifier"],
        project_id=project_id if isinstance(project_id, str) else "",
    )
