import hashlib
import hmac


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign(order_id: str, payment_id: str, secret: str) -> str:
    return _hmac_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))


def verify(order_id, payment_id, signature, secret) -> bool:
    if not all(isinstance(v, str) and v for v in (order_id, payment_id, signature, secret)):
        return False
    try:
        expected = sign(order_id, payment_id, secret)
        # compare_digest only accepts ASCII str
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii"))
    except (UnicodeError, TypeError):
        return False


def verify_webhook(payload, signature, secret) -> bool:
    if not isinstance(payload, (bytes, bytearray)):
        return False
    if not (isinstance(signature, str) and signature and isinstance(secret, str) and secret):
        return False
    try:
        expected = _hmac_hex(secret, bytes(payload))
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii"))
    except (UnicodeError, TypeError):
        return False
