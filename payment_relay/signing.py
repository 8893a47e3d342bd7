import hashlib
import hmac
import json
import threading
import time


def canonical_json(obj: dict) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def sha256_json(obj: dict) -> str:
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def merchant_trade_no(idempotency_key: str) -> str:
    """32 hex chars of SHA-256 over the key.

    The provider accepts at most 32 alphanumeric characters, and the same key
    always maps to the same trade number.
    """
    return hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:32]


def sign_payload(secret: str, serialized_payload: str, nonce: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        (serialized_payload + nonce).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


class NonceSource:
    """Millisecond timestamps, bumped by one when the clock has not moved."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            now = int(self._clock() * 1000)
            self._last = max(now, self._last + 1)
            return str(self._last)
