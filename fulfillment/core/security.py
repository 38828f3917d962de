import hashlib
import hmac


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def check_admin_key(provided: str | None, expected: str) -> bool:
    """Constant-time compare of the X-Admin-Key header; an unset key denies everything."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.strip(), expected)
