"""Payment Verifier.

HMAC-SHA256 verification of payment proofs:

- checkout callback: ``hmac(key_secret, f"{gateway_order_id}|{payment_id}")``
- webhook: ``hmac(webhook_secret, <raw request body>)``

Both compare hex digests with ``hmac.compare_digest``.  An empty secret
never verifies anything.  The webhook must be checked against the exact
bytes received; parsing and re-serializing the JSON changes them.
"""

from __future__ import annotations

import hashlib
import hmac

from django.conf import settings


class PaymentVerifier:
    def __init__(self, key_secret: str | None = None, webhook_secret: str | None = None):
        self._key_secret = (
            key_secret if key_secret is not None else settings.PAYMENT_GATEWAY_KEY_SECRET
        )
        self._webhook_secret = (
            webhook_secret
            if webhook_secret is not None
            else settings.PAYMENT_GATEWAY_WEBHOOK_SECRET
        )

    @staticmethod
    def sign(secret: str, payload: bytes) -> str:
        return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

    def _matches(self, secret: str, payload: bytes, signature: str | None) -> bool:
        if not secret or not signature or not isinstance(signature, str):
            return False
        expected = self.sign(secret, payload)
        return hmac.compare_digest(expected, signature.strip().lower())

    def verify_checkout(
        self, gateway_order_id: str, payment_id: str, signature: str | None
    ) -> bool:
        payload = f"{gateway_order_id}|{payment_id}".encode()
        return self._matches(self._key_secret, payload, signature)

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> bool:
        return self._matches(self._webhook_secret, raw_body, signature)
