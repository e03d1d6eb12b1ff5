"""
Signed notification verification for App Store Server Notifications V2.

The verifier adapter is chosen once per process from APPLE_VERIFIER_ADAPTER:

- signed-data-v1: Apple's SignedDataVerifier verifies both the outer
  notification and the embedded signedTransactionInfo.
- signed-data-v1-structural: the outer notification is verified, the
  embedded transaction is decoded structurally without re-verification.

Decoded payloads are normalised to plain dicts keyed the way Apple's JSON
is keyed (camelCase), so backfill and webhook paths share one shape.
"""

import base64
import json
import logging
from enum import Enum
from typing import Any, Optional

from appstoreserverlibrary.signed_data_verifier import SignedDataVerifier, VerificationException

from shared.apple_config import AppleSettings, load_apple_settings

logger = logging.getLogger(__name__)

TRANSACTION_FIELDS = (
    "transactionId",
    "originalTransactionId",
    "appAccountToken",
    "productId",
    "purchaseDate",
    "expiresDate",
    "currency",
    "price",
    "bundleId",
)

_verifier = None

__all__ = [
    "VerificationException",
    "SignedDataAdapter",
    "StructuralTransactionAdapter",
    "build_verifier",
    "get_verifier",
    "reset_verifier",
    "decode_jws_payload_unverified",
]


def _raw(obj: Any, name: str) -> Optional[str]:
    """Prefer the library's raw string field, fall back to the enum value."""
    raw_value = getattr(obj, "raw" + name[0].upper() + name[1:], None)
    if raw_value is not None:
        return raw_value
    value = getattr(obj, name, None)
    if isinstance(value, Enum):
        return value.value
    return value


def transaction_to_dict(transaction: Any) -> dict:
    """Normalise a JWSTransactionDecodedPayload into Apple's JSON shape."""
    result = {name: getattr(transaction, name, None) for name in TRANSACTION_FIELDS}
    result["transactionReason"] = _raw(transaction, "transactionReason")
    result["environment"] = _raw(transaction, "environment")
    return result


def notification_to_dict(notification: Any) -> dict:
    """Normalise a ResponseBodyV2DecodedPayload into Apple's JSON shape."""
    data = getattr(notification, "data", None)
    return {
        "notificationType": _raw(notification, "notificationType"),
        "subtype": _raw(notification, "subtype"),
        "notificationUUID": getattr(notification, "notificationUUID", None),
        "data": {
            "signedTransactionInfo": getattr(data, "signedTransactionInfo", None),
            "bundleId": getattr(data, "bundleId", None),
            "environment": _raw(data, "environment") if data is not None else None,
        },
    }


def decode_jws_payload_unverified(signed_data: str) -> Optional[dict]:
    """Decode the payload segment of a compact JWS without checking the signature.

    Raises:
        ValueError: if the payload segment is not base64url JSON
    """
    if not signed_data or not isinstance(signed_data, str):
        return None
    parts = signed_data.split(".")
    if len(parts) < 2:
        return None

    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(padded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Malformed JWS payload: {e}") from e


class SignedDataAdapter:
    """Verifies and decodes with Apple's typed SignedDataVerifier API."""

    name = "signed-data-v1"

    def __init__(self, verifier: SignedDataVerifier):
        self._verifier = verifier

    def decode_notification(self, signed_payload: str) -> dict:
        """Verify the outer notification.

        Raises:
            VerificationException: signature, chain, app identity or environment mismatch
        """
        return notification_to_dict(self._verifier.verify_and_decode_notification(signed_payload))

    def decode_transaction(self, signed_transaction: Any) -> Optional[dict]:
        if not signed_transaction:
            return None
        if isinstance(signed_transaction, dict):
            return signed_transaction
        return transaction_to_dict(self._verifier.verify_and_decode_signed_transaction(signed_transaction))


class StructuralTransactionAdapter(SignedDataAdapter):
    """Compatibility adapter: embedded transactions are decoded structurally."""

    name = "signed-data-v1-structural"

    def decode_transaction(self, signed_transaction: Any) -> Optional[dict]:
        if not signed_transaction:
            return None
        if isinstance(signed_transaction, dict):
            return signed_transaction
        return decode_jws_payload_unverified(signed_transaction)


ADAPTERS = {adapter.name: adapter for adapter in (SignedDataAdapter, StructuralTransactionAdapter)}


def build_verifier(settings: Optional[AppleSettings] = None) -> SignedDataAdapter:
    """Construct the configured adapter around a SignedDataVerifier.

    Raises:
        ValueError: unknown adapter name, or production without an app id
    """
    settings = settings or load_apple_settings()

    adapter_cls = ADAPTERS.get(settings.verifier_adapter)
    if adapter_cls is None:
        raise ValueError(f"Unknown APPLE_VERIFIER_ADAPTER: {settings.verifier_adapter}")

    if not settings.root_certificates:
        logger.warning("No trusted Apple root certificates configured")

    verifier = SignedDataVerifier(
        root_certificates=settings.root_certificates,
        enable_online_checks=settings.enable_online_checks,
        environment=settings.environment,
        bundle_id=settings.bundle_id,
        app_apple_id=settings.app_apple_id,
    )
    return adapter_cls(verifier)


def get_verifier() -> SignedDataAdapter:
    """Get the process-wide verifier adapter, building it on first use."""
    global _verifier
    if _verifier is None:
        _verifier = build_verifier()
    return _verifier


def reset_verifier():
    """Drop the cached adapter. Used in tests for clean state."""
    global _verifier
    _verifier = None
