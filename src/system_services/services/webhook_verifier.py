from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "x-render-signature"
SIGNATURE_PREFIX = "sha256="


def normalize_signature(header_value: str) -> str:
    sig = header_value.strip()
    if sig.startswith(SIGNATURE_PREFIX):
        sig = sig[len(SIGNATURE_PREFIX):].strip()
    return sig


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, raw_body: bytes, header_value: str | None) -> bool:
    """
    Check a Render webhook signature.

    No secret means verification is switched off and every request passes; the caller
    is expected to warn about that once at startup. A missing header always fails.
    The header may be the bare hex digest or ``sha256=<hex>``.
    """

    if not secret:
        return True
    if not header_value:
        return False
    sig = normalize_signature(header_value)
    try:
        expected = compute_signature(secret, raw_body)
    except Exception:  # noqa: BLE001
        return False
    # Digest length is fixed by SHA-256, so the early exit only reveals malformed input.
    if len(sig) != len(expected):
        return False
    return hmac.compare_digest(sig.encode("ascii", "replace"), expected.encode("ascii"))
