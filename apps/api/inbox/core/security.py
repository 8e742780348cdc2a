from __future__ import annotations

import base64
import hashlib
import hmac
import os


def new_random_token(*, nbytes: int = 32) -> str:
    raw = os.urandom(nbytes)
    # URL-safe base64 without padding to keep headers compact.
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def tokens_match(expected: str, provided: str | None) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def compute_meta_signature(body: bytes, *, app_secret: str) -> str:
    digest = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_meta_signature(body: bytes, signature_header: str | None, *, app_secret: str) -> bool:
    """Validate an ``X-Hub-Signature-256`` header against the raw request body.

    With no app secret configured, signatures are not enforced.
    """
    if not app_secret:
        return True
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = compute_meta_signature(body, app_secret=app_secret)
    return hmac.compare_digest(expected, signature_header.strip())
