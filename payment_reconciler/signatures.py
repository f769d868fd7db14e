"""
HMAC-SHA256 signature checks for inbound confirmations.

The checkout (verify) path signs ``"{gateway_order_id}|{gateway_payment_id}"``
with the gateway key secret. Webhooks sign the raw request body with the
webhook secret; always pass the bytes exactly as received.
"""
import hashlib
import hmac
from typing import Union

from payment_reconciler.exceptions import ConfigurationError

Payload = Union[bytes, str]


def _as_bytes(value: Payload) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def checkout_payload(gateway_order_id: str, gateway_payment_id: str) -> bytes:
    return f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")


def compute_signature(payload: Payload, secret: str) -> str:
    if not secret:
        raise ConfigurationError("Signature secret is not configured")
    return hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()


def verify_signature(payload: Payload, provided_signature: str, secret: str) -> bool:
    """
    Return True only if ``provided_signature`` is the hex HMAC-SHA256 of
    ``payload`` under ``secret``.

    Malformed input yields False. A missing secret raises
    ConfigurationError instead of letting the message through.
    """
    if not secret:
        raise ConfigurationError("Signature secret is not configured")
    if not isinstance(payload, (bytes, str)):
        return False
    if not isinstance(provided_signature, str) or not provided_signature:
        return False

    try:
        expected = compute_signature(payload, secret)
        return hmac.compare_digest(expected, provided_signature)
    except UnicodeEncodeError:
        # lone surrogates cannot be signed as UTF-8
        return False
    except TypeError:
        # compare_digest refuses non-ASCII str input
        return False
