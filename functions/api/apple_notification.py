"""
App Store Server Notifications V2 Webhook - POST /webhooks/apple

Unauthenticated endpoint called by Apple. Trust comes from the JWS
signature chain, checked against the configured Apple root certificates,
environment and app identity.

Responses:
- 405 for anything but POST
- 400 for a missing signedPayload or an undecodable embedded transaction
- 403 when verification fails (Apple's own retry schedule redelivers)
- 200 with ignored=true for notifications that carry no transaction
- 500 for store failures after verification, so Apple redelivers
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import ClientError

from shared.apple_verifier import VerificationException, get_verifier
from shared.auth import parse_json_body
from shared.aws_clients import get_dynamodb
from shared.billing_ledger import (
    SummaryContentionError,
    build_transaction_from_notification,
    resolve_user_id,
    upsert_transaction,
)
from shared.constants import BILLING_EVENT_TTL_DAYS, BILLING_EVENTS_TABLE
from shared.errors import InvalidArgumentError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.metrics import emit_metric
from shared.response_utils import error_response, success_response
from shared.subscription_links import discover_link_from_notification

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _record_notification_event(
    notification: dict,
    status: str,
    transaction_id: Optional[str] = None,
    error: Optional[str] = None,
):
    """Record a processed notification for the audit trail (best-effort).

    Failures are logged but do not affect the webhook response.
    """
    notification_uuid = notification.get("notificationUUID")
    if not notification_uuid:
        return

    try:
        table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        now = datetime.now(timezone.utc)
        table.put_item(
            Item={
                "pk": notification_uuid,
                "sk": notification.get("notificationType") or "UNKNOWN",
                "subtype": notification.get("subtype"),
                "transaction_id": transaction_id,
                "status": status,
                "error": error,
                "processed_at": now.isoformat(),
                "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
            }
        )
    except Exception as e:
        logger.error(f"Failed to record notification event {notification_uuid}: {e}")


def _http_method(event: dict) -> str:
    method = event.get("httpMethod") or (event.get("requestContext") or {}).get("http", {}).get("method")
    return (method or "").upper()


def _signed_payload(event: dict) -> Optional[str]:
    try:
        data = parse_json_body(event)
    except InvalidArgumentError:
        return None
    signed_payload = data.get("signedPayload")
    if not isinstance(signed_payload, str) or not signed_payload.strip():
        return None
    return signed_payload


def _ignored(reason: str) -> dict:
    logger.info(f"Notification ignored: {reason}")
    emit_metric("AppleNotifications", dimensions={"Outcome": "ignored"})
    return success_response({"ok": True, "ignored": True, "reason": reason})


def handler(event, context):
    """Lambda handler for Apple App Store Server Notifications V2."""
    configure_structured_logging()
    set_request_id(event, context)

    if _http_method(event) != "POST":
        return error_response(405, "method_not_allowed", "Method Not Allowed", headers={"Allow": "POST"})

    signed_payload = _signed_payload(event)
    if not signed_payload:
        logger.warning("Notification without signedPayload")
        return error_response(400, "missing_signed_payload", "signedPayload is required")

    try:
        verifier = get_verifier()
    except ValueError as e:
        logger.error(f"Apple verifier misconfigured: {e}")
        return error_response(500, "verifier_not_configured", "Notification verification not configured")

    try:
        notification = verifier.decode_notification(signed_payload)
    except VerificationException as e:
        logger.warning(f"Apple notification verification failed: {e}")
        emit_metric("AppleNotifications", dimensions={"Outcome": "rejected"})
        return error_response(403, "invalid_signed_payload", "Invalid signedPayload")

    notification_type = notification.get("notificationType")
    logger.info(
        f"Processing Apple notification: {notification_type} (id={notification.get('notificationUUID')})",
        extra={"notification_type": notification_type, "subtype": notification.get("subtype")},
    )

    signed_transaction_info = (notification.get("data") or {}).get("signedTransactionInfo")
    if not signed_transaction_info:
        _record_notification_event(notification, "ignored")
        return _ignored("No signedTransactionInfo")

    try:
        transaction = verifier.decode_transaction(signed_transaction_info)
    except (VerificationException, ValueError) as e:
        logger.error(f"Failed to decode signedTransactionInfo: {e}")
        _record_notification_event(notification, "failed", error=str(e))
        return error_response(400, "invalid_transaction_info", "Failed to decode signedTransactionInfo")

    record = build_transaction_from_notification(notification, transaction or {})
    if not record["transaction_id"]:
        _record_notification_event(notification, "ignored")
        return _ignored("Missing transactionId")

    try:
        user_id = resolve_user_id(record["app_account_token"], record["original_transaction_id"])
        if user_id and record["app_account_token"]:
            discover_link_from_notification(
                user_id,
                record["app_account_token"],
                record["original_transaction_id"],
                record["transaction_id"],
                record["product_id"],
            )

        accepted = upsert_transaction(record, user_id, notification.get("notificationUUID"))
    except (ClientError, SummaryContentionError) as e:
        logger.error(f"Transient error storing transaction {record['transaction_id']}: {e}")
        _record_notification_event(notification, "failed", record["transaction_id"], str(e))
        return error_response(500, "temporary_error", "Temporary error, please retry")

    _record_notification_event(notification, "success" if accepted else "duplicate", record["transaction_id"])
    emit_metric("AppleNotifications", dimensions={"Outcome": "linked" if user_id else "unlinked"})

    return success_response(
        {
            "ok": True,
            "linked": bool(user_id),
            "duplicate": not accepted,
            "transactionId": record["transaction_id"],
            "originalTransactionId": record["original_transaction_id"],
        }
    )
