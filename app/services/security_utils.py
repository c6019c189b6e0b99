from __future__ import annotations

import hashlib
import hmac


def is_valid_hmac_signature(payload: bytes, signature: str, secret: str) -> bool:
    provided_signature = signature.strip()
    if not provided_signature:
        return False
    if provided_signature.startswith("sha256="):
        provided_signature = provided_signature.split("=", maxsplit=1)[1].strip()

    computed_signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(computed_signature, provided_signature)


def is_authorized_webhook(
    *,
    expected_secret: str,
    raw_body: bytes | None,
    signature: str | None,
    shared_secret: str | None,
) -> bool:
    if not expected_secret:
        return True
    if raw_body and signature and is_valid_hmac_signature(raw_body, signature, expected_secret):
        return True
    if shared_secret is None:
        return False
    return hmac.compare_digest(shared_secret.encode("utf-8"), expected_secret.encode("utf-8"))
