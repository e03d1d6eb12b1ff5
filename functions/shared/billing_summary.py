"""
Per-user billing summary.

The summary is derived state: running purchase/renewal counts and amount
totals per currency, folded from accepted linked ledger writes. Every
summary write is guarded by a version counter, both inside the ledger's
TransactWriteItems and in the admin rebuild.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import (
    BILLING_SUMMARY_TABLE,
    BILLING_TRANSACTIONS_TABLE,
    SUMMARY_MAX_ATTEMPTS,
    SUMMARY_SK,
    UNKNOWN_CURRENCY,
    USER_INDEX,
)

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()


class SummaryContentionError(Exception):
    """The summary version kept moving under a write that depends on it."""


def empty_summary() -> dict:
    return {
        "subscription_purchase_count": 0,
        "renewal_count": 0,
        "total_paid_by_currency": {},
        "last_transaction_at": None,
        "updated_at": None,
        "version": 0,
    }


def apply_charge(
    current: Optional[dict],
    currency: Optional[str],
    amount_minor: Optional[int],
    is_renewal: bool,
    now: Optional[str] = None,
) -> dict:
    """
    Fold one accepted transaction into a summary.

    A positive amount is a charge: it bumps the purchase count, or the
    renewal count for renewals. The amount is always added to its currency
    total. Callers are responsible for only passing non-duplicate writes.
    """
    current = current or {}
    now = now or datetime.now(timezone.utc).isoformat()

    currency = currency or UNKNOWN_CURRENCY
    amount = int(amount_minor or 0)
    is_charge = amount > 0
    is_renewal = is_renewal is True

    totals = {k: int(v) for k, v in (current.get("total_paid_by_currency") or {}).items()}
    totals[currency] = totals.get(currency, 0) + amount

    return {
        "subscription_purchase_count": int(current.get("subscription_purchase_count", 0))
        + (1 if is_charge and not is_renewal else 0),
        "renewal_count": int(current.get("renewal_count", 0)) + (1 if is_charge and is_renewal else 0),
        "total_paid_by_currency": totals,
        "last_transaction_at": now,
        "updated_at": now,
        "version": int(current.get("version", 0)) + 1,
    }


def get_billing_summary(user_id: str, consistent: bool = False) -> Optional[dict]:
    """Fetch a user's summary, or None if nothing has been aggregated."""
    table = get_dynamodb().Table(BILLING_SUMMARY_TABLE)
    response = table.get_item(Key={"pk": user_id, "sk": SUMMARY_SK}, ConsistentRead=consistent)
    return response.get("Item")


def _version_condition(current: Optional[dict]) -> dict:
    """Condition arguments (plain values) pinning the summary version `current` was read at."""
    if current is None:
        return {"ConditionExpression": "attribute_not_exists(pk)"}
    if "version" not in current:
        return {
            "ConditionExpression": "attribute_exists(pk) AND attribute_not_exists(#v)",
            "ExpressionAttributeNames": {"#v": "version"},
        }
    return {
        "ConditionExpression": "#v = :expected",
        "ExpressionAttributeNames": {"#v": "version"},
        "ExpressionAttributeValues": {":expected": current["version"]},
    }


def summary_put_transact_item(user_id: str, current: Optional[dict], next_summary: dict) -> dict:
    """
    Build the TransactWriteItems Put for a summary.

    The condition pins the version that `next_summary` was computed from, so
    a concurrent writer makes the whole transaction cancel.
    """
    item = {"pk": user_id, "sk": SUMMARY_SK, **next_summary}
    put = {
        "TableName": BILLING_SUMMARY_TABLE,
        "Item": {k: _serializer.serialize(v) for k, v in item.items()},
    }

    condition = _version_condition(current)
    put["ConditionExpression"] = condition["ConditionExpression"]
    if "ExpressionAttributeNames" in condition:
        put["ExpressionAttributeNames"] = condition["ExpressionAttributeNames"]
    if "ExpressionAttributeValues" in condition:
        put["ExpressionAttributeValues"] = {
            k: _serializer.serialize(v) for k, v in condition["ExpressionAttributeValues"].items()
        }

    return {"Put": put}


def _iter_linked_transactions(user_id: str):
    table = get_dynamodb().Table(BILLING_TRANSACTIONS_TABLE)
    query_kwargs = {
        "IndexName": USER_INDEX,
        "KeyConditionExpression": Key("user_id").eq(user_id),
    }
    while True:
        response = table.query(**query_kwargs)
        yield from response.get("Items", [])
        if "LastEvaluatedKey" not in response:
            break
        query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]


def _fold_linked_transactions(user_id: str) -> tuple[dict, int]:
    rebuilt = empty_summary()
    transaction_count = 0
    for record in _iter_linked_transactions(user_id):
        rebuilt = apply_charge(
            rebuilt,
            record.get("currency"),
            record.get("amount_minor"),
            record.get("is_renewal") is True,
        )
        transaction_count += 1
    return rebuilt, transaction_count


def rebuild_billing_summary(user_id: str, dry_run: bool = False) -> dict:
    """
    Recompute a user's summary from every linked ledger record.

    Counts each stored transaction once, so it also clears any drift from
    content updates. Stale unlinked copies are not consulted.

    The current summary is read before the ledger is folded and the rewrite
    is conditioned on that version. A linked write landing in between bumps
    the version, the rewrite fails its condition and the fold starts over.

    Raises:
        SummaryContentionError: the summary kept changing on every attempt
    """
    table = get_dynamodb().Table(BILLING_SUMMARY_TABLE)

    for attempt in range(SUMMARY_MAX_ATTEMPTS):
        current = get_billing_summary(user_id, consistent=True)
        rebuilt, transaction_count = _fold_linked_transactions(user_id)
        rebuilt["version"] = int((current or {}).get("version", 0)) + 1

        result = {"user_id": user_id, "transactions": transaction_count, "summary": rebuilt, "dry_run": dry_run}
        if dry_run:
            return result

        try:
            table.put_item(Item={"pk": user_id, "sk": SUMMARY_SK, **rebuilt}, **_version_condition(current))
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise
            logger.warning(
                f"Summary for {user_id} changed during rebuild, retry {attempt + 1}/{SUMMARY_MAX_ATTEMPTS}"
            )
            continue

        logger.info(f"Rebuilt billing summary for {user_id} from {transaction_count} transactions")
        return result

    raise SummaryContentionError(f"Could not rebuild billing summary for {user_id}")
