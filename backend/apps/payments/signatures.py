# apps/payments/signatures.py
import hmac
import hashlib


def compute_signature(message: bytes, secret: str) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_webhook_signature(body: bytes, signature, secret) -> bool:
    """
    Secure HMAC verification (Constant Time) over the exact bytes received.
    No secret or no signature means reject.
    """
    if not (secret and signature) or body is None:
        return False

    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected, str(signature))

