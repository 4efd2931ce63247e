"""Ed25519 request signing for operator credentials (PyNaCl)."""

import hashlib
import secrets
from datetime import UTC, datetime

from nacl.encoding import HexEncoder
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey


def generate_keypair() -> tuple[str, str]:
    """Returns (private_key_hex, public_key_hex)."""
    signing_key = SigningKey.generate()
    return (
        signing_key.encode(encoder=HexEncoder).decode(),
        signing_key.verify_key.encode(encoder=HexEncoder).decode(),
    )


def canonical_request(timestamp: str, method: str, target: str, body: bytes) -> bytes:
    """timestamp, method and target (path plus query) joined by newlines, then the body digest."""
    digest = hashlib.sha256(body).hexdigest()
    return "\n".join((timestamp, method.upper(), target, digest)).encode()


def sign_request(private_key_hex: str, timestamp: str, method: str, target: str, body: bytes) -> str:
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    signed = signing_key.sign(canonical_request(timestamp, method, target, body), encoder=HexEncoder)
    return signed.signature.decode()


def verify_signature(
    public_key_hex: str,
    signature_hex: str,
    timestamp: str,
    method: str,
    target: str,
    body: bytes,
) -> bool:
    try:
        verify_key = VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
        verify_key.verify(
            canonical_request(timestamp, method, target, body),
            HexEncoder.decode(signature_hex.encode()),
        )
    except (CryptoError, ValueError, TypeError):
        return False
    return True


def generate_nonce() -> str:
    return secrets.token_hex(16)


def is_timestamp_fresh(timestamp: str, max_age_seconds: int) -> bool:
    """Timestamps must be timezone-aware ISO-8601 and within max_age of now, either side."""
    try:
        ts = datetime.fromisoformat(timestamp)
    except (ValueError, TypeError):
        return False
    if ts.tzinfo is None:
        return False
    return abs((datetime.now(UTC) - ts).total_seconds()) <= max_age_seconds
