"""
Billing transaction ledger.

Maps decoded Apple transactions onto canonical ledger records and upserts
them idempotently. Records land in the linked table when a user can be
resolved, otherwise in the unlinked table.

Idempotency: a write is a no-op when the stored record carries the same
notification UUID as the incoming one (two missing UUIDs compare equal).
Any other write is a content update that keeps the original created_at.

For linked records the ledger write and the billing summary write commit
in one TransactWriteItems call, so an accepted ledger write is counted in
the summary exactly once.
"""

import logging
import random
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb, get_dynamodb_client
from shared.billing_summary import (
    SummaryContentionError,
    apply_charge,
    get_billing_summary,
    summary_put_transact_item,
)
from shared.constants import (
    BACKFILL_NOTIFICATION_TYPE,
    BILLING_TRANSACTIONS_TABLE,
    BILLING_UNLINKED_TABLE,
    PRICE_SCALE,
    RENEWAL_NOTIFICATION_TYPE,
    RENEWAL_TRANSACTION_REASON,
    SOURCE_BACKFILL,
    SOURCE_NOTIFICATION,
    SUMMARY_MAX_ATTEMPTS,
    THROTTLING_ERRORS,
    TRANSACTION_SK,
)
from shared.subscription_links import find_user_id_by_app_account_token, get_subscription_link

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()

RECORD_FIELDS = (
    "user_id",
    "app_account_token",
    "original_transaction_id",
    "transaction_id",
    "product_id",
    "purchase_date_ms",
    "expires_date_ms",
    "currency",
    "amount_minor",
    "amount_decimal",
    "source",
    "notification_type",
    "subtype",
    "is_renewal",
)

AMOUNT_QUANTUM = Decimal("0.000001")


def parse_amount(price: Any) -> tuple[Optional[int], Optional[Decimal]]:
    """
    Split Apple's price field into (amount_minor, amount_decimal).

    Apple reports price as an integer in milliunits of the currency, so
    amount_minor keeps that raw integer and amount_decimal is price / 1000.
    """
    if price is None or isinstance(price, bool) or not isinstance(price, (int, float, Decimal)):
        return None, None

    amount_minor = int(round(price))
    amount_decimal = (Decimal(str(price)) / PRICE_SCALE).quantize(AMOUNT_QUANTUM)
    return amount_minor, amount_decimal


def _transaction_id(transaction: dict) -> str:
    value = transaction.get("transactionId") or transaction.get("transactionID") or ""
    return str(value)


def build_transaction_from_notification(notification: dict, transaction: dict) -> dict:
    """Canonical ledger record for a transaction embedded in a notification."""
    transaction_id = _transaction_id(transaction)
    original_transaction_id = str(
        transaction.get("originalTransactionId") or transaction.get("originalTransactionID") or transaction_id
    )
    amount_minor, amount_decimal = parse_amount(transaction.get("price"))
    notification_type = notification.get("notificationType") or "UNKNOWN"

    return {
        "transaction_id": transaction_id,
        "original_transaction_id": original_transaction_id,
        "app_account_token": transaction.get("appAccountToken") or None,
        "product_id": transaction.get("productId") or "",
        "purchase_date_ms": transaction.get("purchaseDate") or None,
        "expires_date_ms": transaction.get("expiresDate") or None,
        "currency": transaction.get("currency") or None,
        "amount_minor": amount_minor,
        "amount_decimal": amount_decimal,
        "source": SOURCE_NOTIFICATION,
        "notification_type": notification_type,
        "subtype": notification.get("subtype") or None,
        "is_renewal": notification_type == RENEWAL_NOTIFICATION_TYPE,
    }


def build_transaction_from_history(
    original_transaction_id: str,
    transaction: dict,
    app_account_token: Optional[str] = None,
) -> dict:
    """Canonical ledger record for a transaction replayed from history.

    The renewal flag comes from the transaction's own reason code.
    """
    amount_minor, amount_decimal = parse_amount(transaction.get("price"))

    return {
        "transaction_id": _transaction_id(transaction),
        "original_transaction_id": str(original_transaction_id),
        "app_account_token": app_account_token or None,
        "product_id": transaction.get("productId") or "",
        "purchase_date_ms": transaction.get("purchaseDate") or None,
        "expires_date_ms": transaction.get("expiresDate") or None,
        "currency": transaction.get("currency") or None,
        "amount_minor": amount_minor,
        "amount_decimal": amount_decimal,
        "source": SOURCE_BACKFILL,
        "notification_type": BACKFILL_NOTIFICATION_TYPE,
        "subtype": None,
        "is_renewal": transaction.get("transactionReason") == RENEWAL_TRANSACTION_REASON,
    }


def resolve_user_id(app_account_token: Optional[str], original_transaction_id: Optional[str]) -> Optional[str]:
    """Purchase token lookup first, then the link for the original transaction id."""
    user_id = find_user_id_by_app_account_token(app_account_token)
    if user_id:
        return user_id

    link = get_subscription_link(original_transaction_id)
    if link:
        return link.get("user_id") or None
    return None


def _ledger_update(record: dict, user_id: Optional[str], notification_uuid: Optional[str], now: str) -> dict:
    """UpdateItem arguments (plain Python values) for one ledger record."""
    values = {**{field: record.get(field) for field in RECORD_FIELDS}, "user_id": user_id or None}

    names = {f"#{field}": field for field in RECORD_FIELDS}
    names.update({"#updated_at": "updated_at", "#created_at": "created_at", "#nid": "notification_uuid"})

    expression_values = {f":{field}": values[field] for field in RECORD_FIELDS}
    expression_values[":now"] = now

    set_parts = [f"#{field} = :{field}" for field in RECORD_FIELDS]
    set_parts.append("#updated_at = :now")
    set_parts.append("#created_at = if_not_exists(#created_at, :now)")

    if notification_uuid:
        set_parts.append("#nid = :nid")
        expression_values[":nid"] = notification_uuid
        update_expression = "SET " + ", ".join(set_parts)
        condition = "attribute_not_exists(pk) OR attribute_not_exists(#nid) OR #nid <> :nid"
    else:
        update_expression = "SET " + ", ".join(set_parts) + " REMOVE #nid"
        condition = "attribute_not_exists(pk) OR attribute_exists(#nid)"

    return {
        "Key": {"pk": record["transaction_id"], "sk": TRANSACTION_SK},
        "UpdateExpression": update_expression,
        "ConditionExpression": condition,
        "ExpressionAttributeNames": names,
        "ExpressionAttributeValues": expression_values,
    }


def _serialize_update(table_name: str, update: dict) -> dict:
    return {
        "Update": {
            "TableName": table_name,
            "Key": {k: _serializer.serialize(v) for k, v in update["Key"].items()},
            "UpdateExpression": update["UpdateExpression"],
            "ConditionExpression": update["ConditionExpression"],
            "ExpressionAttributeNames": update["ExpressionAttributeNames"],
            "ExpressionAttributeValues": {
                k: _serializer.serialize(v) for k, v in update["ExpressionAttributeValues"].items()
            },
        }
    }


def _stored_notification_matches(table_name: str, transaction_id: str, notification_uuid: Optional[str]) -> bool:
    table = get_dynamodb().Table(table_name)
    response = table.get_item(Key={"pk": transaction_id, "sk": TRANSACTION_SK}, ConsistentRead=True)
    item = response.get("Item")
    if not item:
        return False
    return (item.get("notification_uuid") or None) == (notification_uuid or None)


def _upsert_unlinked(record: dict, notification_uuid: Optional[str], now: str) -> bool:
    table = get_dynamodb().Table(BILLING_UNLINKED_TABLE)
    try:
        table.update_item(**_ledger_update(record, None, notification_uuid, now))
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.info(f"Duplicate unlinked transaction {record['transaction_id']} skipped")
            return False
        raise
    return True


def _upsert_linked(record: dict, user_id: str, notification_uuid: Optional[str], now: str) -> bool:
    client = get_dynamodb_client()
    transaction_id = record["transaction_id"]
    ledger_item = _serialize_update(
        BILLING_TRANSACTIONS_TABLE, _ledger_update(record, user_id, notification_uuid, now)
    )

    for attempt in range(SUMMARY_MAX_ATTEMPTS):
        current = get_billing_summary(user_id, consistent=True)
        next_summary = apply_charge(
            current, record.get("currency"), record.get("amount_minor"), record.get("is_renewal"), now
        )

        try:
            client.transact_write_items(
                TransactItems=[ledger_item, summary_put_transact_item(user_id, current, next_summary)]
            )
            return True
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "TransactionCanceledException":
                reasons = e.response.get("CancellationReasons") or []
                ledger_reason = reasons[0].get("Code") if reasons else None
                if ledger_reason == "ConditionalCheckFailed":
                    logger.info(f"Duplicate transaction {transaction_id} skipped")
                    return False
                if not reasons and _stored_notification_matches(
                    BILLING_TRANSACTIONS_TABLE, transaction_id, notification_uuid
                ):
                    logger.info(f"Duplicate transaction {transaction_id} skipped")
                    return False
            elif error_code not in THROTTLING_ERRORS:
                raise

        if attempt < SUMMARY_MAX_ATTEMPTS - 1:
            # Exponential backoff with jitter
            base_delay = min(0.05 * (2 ** attempt), 1.0)
            delay = base_delay + random.uniform(0, base_delay * 0.5)
            logger.warning(
                f"Summary contention for {user_id}, retry {attempt + 1}/{SUMMARY_MAX_ATTEMPTS} in {delay:.2f}s"
            )
            time.sleep(delay)

    raise SummaryContentionError(f"Could not commit transaction {transaction_id} for {user_id}")


def upsert_transaction(record: dict, user_id: Optional[str], notification_uuid: Optional[str]) -> bool:
    """
    Idempotently write a canonical record into the linked or unlinked ledger.

    Args:
        record: Canonical record from one of the build_* helpers
        user_id: Resolved owner, or None for the unlinked partition
        notification_uuid: Originating notification id, None for backfill

    Returns:
        True if the write was accepted, False if it was a duplicate no-op
    """
    now = datetime.now(timezone.utc).isoformat()
    notification_uuid = notification_uuid or None

    if user_id:
        accepted = _upsert_linked(record, user_id, notification_uuid, now)
    else:
        accepted = _upsert_unlinked(record, notification_uuid, now)

    if accepted:
        logger.info(
            f"Stored transaction {record['transaction_id']} ({'linked' if user_id else 'unlinked'})",
            extra={
                "transaction_id": record["transaction_id"],
                "original_transaction_id": record.get("original_transaction_id"),
                "source": record.get("source"),
                "linked": bool(user_id),
            },
        )
    return accepted
