"""Provider webhook signature verification and media stream tokens."""
import base64
import binascii
import hmac
import logging
import secrets
import time
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "telnyx-signature-ed25519"
TIMESTAMP_HEADER = "telnyx-timestamp"
MAX_TIMESTAMP_SKEW_SECONDS = 300
STREAM_TOKEN_BYTES = 32


def load_public_key(public_key: str) -> Ed25519PublicKey:
    """
    Load an Ed25519 public key.

    Args:
        public_key: Either a PEM document or the raw 32-byte key in base64,
            as shown in the provider portal.

    Returns:
        Ed25519 public key

    Raises:
        ValueError: If the key cannot be parsed as Ed25519
    """
    key_text = public_key.strip()
    if key_text.startswith("-----BEGIN"):
        key = load_pem_public_key(key_text.encode())
        if not isinstance(key, Ed25519PublicKey):
            raise ValueError("PEM key is not an Ed25519 public key")
        return key

    try:
        raw = base64.b64decode(key_text, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Public key is not valid base64: {e}") from e
    return Ed25519PublicKey.from_public_bytes(raw)


def verify_webhook_signature(
    public_key: Union[str, Ed25519PublicKey],
    signature: Optional[str],
    timestamp: Optional[str],
    body: bytes,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a provider webhook.

    The signed message is ``timestamp|body`` where body is the raw request
    bytes. Requests older or newer than five minutes are rejected to limit
    replay.

    Args:
        public_key: Provider public key (base64 or PEM) or a loaded key
        signature: Base64 signature header value
        timestamp: Unix timestamp header value
        body: Raw request body
        now: Current unix time, for tests

    Returns:
        True if the signature is valid and fresh
    """
    if not signature or not timestamp:
        logger.warning("[WEBHOOK AUTH] Missing signature or timestamp header")
        return False

    try:
        sent_at = int(timestamp)
    except ValueError:
        logger.warning(f"[WEBHOOK AUTH] Non-numeric timestamp: {timestamp!r}")
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > MAX_TIMESTAMP_SKEW_SECONDS:
        logger.warning(f"[WEBHOOK AUTH] Timestamp outside tolerance: {sent_at} (now {int(current)})")
        return False

    try:
        key = load_public_key(public_key) if isinstance(public_key, str) else public_key
        signature_bytes = base64.b64decode(signature, validate=True)
    except (ValueError, binascii.Error) as e:
        logger.error(f"[WEBHOOK AUTH] Could not decode key or signature: {e}")
        return False

    message = f"{timestamp}|".encode() + body
    try:
        key.verify(signature_bytes, message)
    except InvalidSignature:
        logger.warning("[WEBHOOK AUTH] Signature mismatch")
        return False
    return True


def generate_stream_token() -> str:
    """Generate an unguessable per-call media stream token."""
    return secrets.token_urlsafe(STREAM_TOKEN_BYTES)


def validate_stream_token(expected: Optional[str], received: Optional[str]) -> bool:
    """Constant-time token comparison. Missing tokens never match."""
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())
