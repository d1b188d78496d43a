"""Payment domain exceptions.

Raised by the verifier, the gateway client and the confirmation
service.  Views translate them into HTTP responses; signature errors
are additionally reported to the abuse engine.
"""

from __future__ import annotations


class InvalidPaymentSignature(Exception):
    """The client-submitted payment proof failed HMAC verification."""


class InvalidWebhookSignature(Exception):
    """The webhook body does not match its signature header."""


class MalformedWebhook(Exception):
    """A correctly signed webhook lacks the fields needed to act on it."""


class PaymentProofMismatch(Exception):
    """The proof names a gateway order other than the one on file."""


class PaymentNotCaptured(Exception):
    """The gateway reports the payment as not captured."""


class PaymentAmountMismatch(Exception):
    """The captured amount differs from the order total."""


class GatewayError(Exception):
    """The payment gateway could not be reached or answered with an error."""
