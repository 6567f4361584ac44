"""
Identity, delegated proof verification and credential management.

Proof format (NIP-98 shaped, kind 27235), sent as
``Authorization: Nostr <base64(json event)>``:

    {id, pubkey, created_at, kind, tags: [["u", url], ["method", M]], content, sig}

- id  = sha256 of the canonical JSON array [0, pubkey, created_at, kind, tags, content]
- pubkey = 32-byte x-only secp256k1 public key (hex)
- sig = BIP-340 Schnorr signature over the id bytes (hex), as produced by
  any Nostr client (nostr-tools finalizeEvent)

Credentials are opaque 64-hex tokens, one per principal.
SECURITY: tokens and the admin key are never logged; principals are logged by
an 8 character pubkey prefix.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from coincurve import PrivateKey, PublicKeyXOnly

from app.core.errors import AuthError
from app.db.models import Credential

logger = logging.getLogger(__name__)

PROOF_KIND = 27235
PROOF_SCHEME = "Nostr"
DEFAULT_MAX_SKEW_S = 60

REQUIRED_EVENT_FIELDS = ("id", "pubkey", "created_at", "kind", "tags", "sig")


# =============================================================================
# Identity
# =============================================================================

@dataclass(frozen=True)
class Identity:
    """Caller identity: the admin singleton or a principal public key."""
    pubkey: Optional[str] = None
    is_admin: bool = False

    @property
    def key(self) -> str:
        """Owner key stored on build records."""
        return "admin" if self.is_admin else self.pubkey

    @property
    def short(self) -> str:
        """Log-safe label."""
        return "admin" if self.is_admin else f"{self.pubkey[:8]}"

    def can_access(self, owner: str) -> bool:
        return self.is_admin or owner == self.key


ADMIN = Identity(is_admin=True)


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode(), b.encode())


# =============================================================================
# Delegated Proof
# =============================================================================

def compute_event_id(event: dict[str, Any]) -> str:
    """sha256 hex of the canonical event serialization."""
    payload = [
        0,
        event["pubkey"],
        event["created_at"],
        event["kind"],
        event["tags"],
        event.get("content", ""),
    ]
    serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _normalize_url(url: str) -> str:
    return url.rstrip("/").lower()


def _tag_value(tags: list, name: str) -> Optional[str]:
    for tag in tags:
        if isinstance(tag, list) and len(tag) >= 2 and tag[0] == name and isinstance(tag[1], str):
            return tag[1]
    return None


def verify_proof(
    auth_header: Optional[str],
    expected_url: str,
    expected_method: str,
    now: Optional[float] = None,
    max_skew: int = DEFAULT_MAX_SKEW_S,
) -> str:
    """
    Verify a delegated proof header and return the proven public key.

    Raises:
        AuthError: With a message naming the first failed check
    """
    if not auth_header:
        raise AuthError("Missing Authorization header")

    scheme, _, encoded = auth_header.partition(" ")
    if scheme != PROOF_SCHEME or not encoded.strip():
        raise AuthError('Invalid authorization scheme (expected "Nostr")')

    try:
        event = json.loads(base64.b64decode(encoded.strip(), validate=True).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        raise AuthError("Invalid base64-encoded event")

    if not isinstance(event, dict) or any(f not in event for f in REQUIRED_EVENT_FIELDS):
        raise AuthError("Invalid event structure")
    if not isinstance(event["tags"], list) or not isinstance(event["pubkey"], str):
        raise AuthError("Invalid event structure")
    if not isinstance(event["created_at"], int) or isinstance(event["created_at"], bool):
        raise AuthError("Invalid event structure")

    if event["kind"] != PROOF_KIND:
        raise AuthError(f"Invalid event kind: {event['kind']} (expected {PROOF_KIND})")

    now = time.time() if now is None else now
    skew = abs(int(now) - event["created_at"])
    if skew > max_skew:
        raise AuthError(f"Event timestamp too old/new: {skew}s difference")

    url = _tag_value(event["tags"], "u")
    if url is None:
        raise AuthError('Missing "u" tag')
    method = _tag_value(event["tags"], "method")
    if method is None:
        raise AuthError('Missing "method" tag')

    if _normalize_url(url) != _normalize_url(expected_url):
        raise AuthError(f'URL mismatch: got "{url}", expected "{expected_url}"')
    if method.upper() != expected_method.upper():
        raise AuthError(f'Method mismatch: got "{method}", expected "{expected_method}"')

    if compute_event_id(event) != event["id"]:
        raise AuthError("Invalid event id")

    try:
        public_key = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        valid = public_key.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (ValueError, TypeError) as e:
        raise AuthError(f"Signature verification failed: {e}")
    if not valid:
        raise AuthError("Invalid event signature")

    return event["pubkey"].lower()


def public_key_hex(private_key: PrivateKey) -> str:
    """x-only public key (64 hex chars) used as the Nostr pubkey."""
    return PublicKeyXOnly.from_secret(private_key.secret).format().hex()


def build_proof_header(
    private_key: PrivateKey,
    url: str,
    method: str,
    created_at: Optional[int] = None,
    content: str = "",
) -> str:
    """Create a signed proof header for a request (client helper)."""
    event: dict[str, Any] = {
        "pubkey": public_key_hex(private_key),
        "created_at": int(time.time()) if created_at is None else created_at,
        "kind": PROOF_KIND,
        "tags": [["u", url], ["method", method]],
        "content": content,
    }
    event["id"] = compute_event_id(event)
    event["sig"] = private_key.sign_schnorr(bytes.fromhex(event["id"])).hex()
    encoded = base64.b64encode(json.dumps(event).encode("utf-8")).decode("ascii")
    return f"{PROOF_SCHEME} {encoded}"


# =============================================================================
# Credential Store
# =============================================================================

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CredentialStore:
    """Durable principal -> token mapping in SQLite."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        # Serializes get-or-create so one principal never gets two tokens
        self._lock = threading.Lock()

    def get_or_create(self, pubkey: str) -> tuple[str, bool]:
        """
        Return (token, is_new) for a principal.
        Repeated calls return the same token and refresh last_used_at.
        """
        with self._lock:
            db = self._session_factory()
            try:
                credential = db.query(Credential).filter(Credential.pubkey == pubkey).first()
                if credential:
                    credential.last_used_at = _now_iso()
                    db.commit()
                    logger.info(f"auth_token_reused pubkey={pubkey[:8]}")
                    return credential.token, False

                now = _now_iso()
                credential = Credential(
                    pubkey=pubkey,
                    token=secrets.token_hex(32),
                    created_at=now,
                    last_used_at=now,
                )
                db.add(credential)
                db.commit()
                logger.info(f"auth_token_issued pubkey={pubkey[:8]}")
                return credential.token, True
            finally:
                db.close()

    def authenticate(self, token: str) -> Optional[str]:
        """
        Return the principal for a token, or None.

        Tokens are 256-bit random values looked up through the unique index.
        """
        if not token:
            return None

        db = self._session_factory()
        try:
            credential = db.query(Credential).filter(Credential.token == token).first()
            if not credential:
                return None
            credential.last_used_at = _now_iso()
            db.commit()
            return credential.pubkey
        finally:
            db.close()

    def revoke(self, pubkey: str) -> bool:
        """Delete a principal's credential. Returns False if none existed."""
        with self._lock:
            db = self._session_factory()
            try:
                deleted = db.query(Credential).filter(Credential.pubkey == pubkey).delete()
                db.commit()
            finally:
                db.close()

        if deleted:
            logger.info(f"auth_token_revoked pubkey={pubkey[:8]}")
        return bool(deleted)

    def stats(self) -> dict[str, Any]:
        """Masked listing of issued credentials."""
        db = self._session_factory()
        try:
            credentials = db.query(Credential).order_by(Credential.created_at).all()
            return {
                "totalUsers": len(credentials),
                "keys": [
                    {
                        "pubkey": f"{c.pubkey[:8]}...",
                        "createdAt": c.created_at,
                        "lastUsed": c.last_used_at,
                    }
                    for c in credentials
                ],
            }
        finally:
            db.close()
