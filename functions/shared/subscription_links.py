"""
Subscription identity links.

A link binds an anonymous purchase token (appAccountToken) and an Apple
original transaction id to an authenticated user. Links are keyed by the
original transaction id and are never deleted here.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import (
    APP_ACCOUNT_TOKEN_INDEX,
    LINK_SK,
    LINK_SOURCE_IOS,
    LINK_SOURCE_NOTIFICATION,
    SUBSCRIPTION_LINKS_TABLE,
)

logger = logging.getLogger(__name__)


def _links_table():
    return get_dynamodb().Table(SUBSCRIPTION_LINKS_TABLE)


def link_subscription_identity(
    user_id: str,
    app_account_token: str,
    original_transaction_id: str,
    transaction_id: str,
    product_id: Optional[str] = None,
    source: Optional[str] = None,
) -> dict:
    """
    Merge-write the link for an original transaction id.

    Concurrent calls for the same key resolve last-writer-wins per field.
    created_at is only stamped when the link is new.

    Returns:
        {"ok": True, "userId": ..., "originalTransactionId": ...}
    """
    now = datetime.now(timezone.utc).isoformat()
    original_transaction_id = str(original_transaction_id)

    _links_table().update_item(
        Key={"pk": original_transaction_id, "sk": LINK_SK},
        UpdateExpression=(
            "SET user_id = :uid, app_account_token = :token, "
            "original_transaction_id = :otid, latest_transaction_id = :txid, "
            "product_id = :product, #src = :source, updated_at = :now, "
            "created_at = if_not_exists(created_at, :now)"
        ),
        ExpressionAttributeNames={"#src": "source"},
        ExpressionAttributeValues={
            ":uid": user_id,
            ":token": str(app_account_token),
            ":otid": original_transaction_id,
            ":txid": str(transaction_id),
            ":product": product_id or None,
            ":source": source or LINK_SOURCE_IOS,
            ":now": now,
        },
    )

    logger.info(
        f"Linked subscription {original_transaction_id} to user {user_id}",
        extra={"original_transaction_id": original_transaction_id, "user_id": user_id},
    )
    return {"ok": True, "userId": user_id, "originalTransactionId": original_transaction_id}


def get_subscription_link(original_transaction_id: str) -> Optional[dict]:
    """Fetch the link for an original transaction id, or None."""
    if not original_transaction_id:
        return None
    response = _links_table().get_item(Key={"pk": str(original_transaction_id), "sk": LINK_SK})
    return response.get("Item")


def find_user_id_by_app_account_token(app_account_token: Optional[str]) -> Optional[str]:
    """Resolve a user through the app-account-token GSI (first match wins)."""
    if not app_account_token:
        return None

    response = _links_table().query(
        IndexName=APP_ACCOUNT_TOKEN_INDEX,
        KeyConditionExpression=Key("app_account_token").eq(str(app_account_token)),
        Limit=1,
    )
    items = response.get("Items", [])
    if not items:
        return None
    return items[0].get("user_id") or None


def discover_link_from_notification(
    user_id: str,
    app_account_token: str,
    original_transaction_id: str,
    transaction_id: str,
    product_id: Optional[str] = None,
) -> bool:
    """
    Create a link for a subscription first seen through a webhook.

    Only writes when no link exists yet, so a client-registered link is
    never overwritten. Returns True if a link was created.
    """
    now = datetime.now(timezone.utc).isoformat()
    item = {
        "pk": str(original_transaction_id),
        "sk": LINK_SK,
        "user_id": user_id,
        "original_transaction_id": str(original_transaction_id),
        "latest_transaction_id": str(transaction_id),
        "product_id": product_id or None,
        "source": LINK_SOURCE_NOTIFICATION,
        "created_at": now,
        "updated_at": now,
    }
    # GSI key attributes must not be null
    if app_account_token:
        item["app_account_token"] = str(app_account_token)

    try:
        _links_table().put_item(Item=item, ConditionExpression="attribute_not_exists(pk)")
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False
        raise

    logger.info(f"Discovered subscription link {original_transaction_id} for user {user_id}")
    return True


def mark_backfilled(original_transaction_id: str) -> None:
    """Stamp the last backfill time on a link."""
    now = datetime.now(timezone.utc).isoformat()
    _links_table().update_item(
        Key={"pk": str(original_transaction_id), "sk": LINK_SK},
        UpdateExpression="SET backfill_at = :now, updated_at = :now",
        ExpressionAttributeValues={":now": now},
    )


def list_subscription_links(limit: int) -> list[dict]:
    """Return one bounded page of links.

    Deliberately not paginated: the sweep covers at most `limit` links per run.
    """
    response = _links_table().scan(Limit=limit)
    return response.get("Items", [])
