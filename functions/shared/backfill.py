"""
Transaction history backfill.

Replays a subscription's full history from the App Store Server API and
feeds every transaction through the same idempotent ledger upsert as the
webhook. Used on demand and by the daily retry sweep to recover from
missed notifications.
"""

import logging
import time
from typing import Optional

from appstoreserverlibrary.api_client import AppStoreServerAPIClient, GetTransactionHistoryVersion
from appstoreserverlibrary.models.HistoryResponse import HistoryResponse
from appstoreserverlibrary.models.TransactionHistoryRequest import (
    Order,
    ProductType,
    TransactionHistoryRequest,
)

from shared.apple_config import create_server_api_client
from shared.apple_verifier import get_verifier
from shared.billing_ledger import build_transaction_from_history, upsert_transaction
from shared.logging_utils import log_external_call
from shared.subscription_links import get_subscription_link, mark_backfilled

logger = logging.getLogger(__name__)


def fetch_history_page(
    client: AppStoreServerAPIClient,
    original_transaction_id: str,
    revision: Optional[str],
) -> HistoryResponse:
    """Request one page of history: ascending, unrevoked, auto-renewable only."""
    request = TransactionHistoryRequest(
        sort=Order.ASCENDING,
        revoked=False,
        productTypes=[ProductType.AUTO_RENEWABLE],
    )

    start = time.time()
    try:
        page = client.get_transaction_history(
            original_transaction_id,
            revision,
            request,
            GetTransactionHistoryVersion.V2,
        )
    except Exception as e:
        log_external_call(
            logger, "app_store_server_api", "get_transaction_history", False,
            (time.time() - start) * 1000, error=str(e),
        )
        raise

    log_external_call(
        logger, "app_store_server_api", "get_transaction_history", True, (time.time() - start) * 1000
    )
    return page


def fetch_full_history(client: AppStoreServerAPIClient, original_transaction_id: str) -> list:
    """Walk revision tokens until a page reports no further pages.

    Pages are requested strictly one after another. Nothing is persisted
    here, so a failure part-way loses only this target's fetched pages.
    """
    pages = []
    revision = None
    has_more = True

    while has_more:
        page = fetch_history_page(client, original_transaction_id, revision)
        pages.append(page)
        revision = page.revision or None
        has_more = page.hasMore is True

    return pages


def _upsert_history_pages(original_transaction_id: str, user_id: str, app_account_token: Optional[str], pages):
    verifier = get_verifier()
    accepted = 0
    duplicates = 0

    for page in pages:
        for signed_transaction in page.signedTransactions or []:
            transaction = verifier.decode_transaction(signed_transaction)
            if not transaction:
                continue

            record = build_transaction_from_history(original_transaction_id, transaction, app_account_token)
            if not record["transaction_id"]:
                continue

            if upsert_transaction(record, user_id, notification_uuid=None):
                accepted += 1
            else:
                duplicates += 1

    return accepted, duplicates


def run_backfill(original_transaction_id: str) -> dict:
    """
    Backfill one subscription by original transaction id.

    A missing link or a link without a user is reported as a structured
    failure so batch callers can keep going.

    Raises:
        CredentialsMissingError: App Store Server API credentials are not configured
    """
    original_transaction_id = str(original_transaction_id)

    link = get_subscription_link(original_transaction_id)
    if not link:
        return {"ok": False, "reason": "No subscription link", "originalTransactionId": original_transaction_id}

    user_id = link.get("user_id") or None
    if not user_id:
        return {"ok": False, "reason": "No uid linked", "originalTransactionId": original_transaction_id}

    client = create_server_api_client()
    pages = fetch_full_history(client, original_transaction_id)

    accepted, duplicates = _upsert_history_pages(
        original_transaction_id, user_id, link.get("app_account_token"), pages
    )

    mark_backfilled(original_transaction_id)

    logger.info(
        f"Backfilled {original_transaction_id}: {len(pages)} pages, {accepted} stored, {duplicates} duplicates",
        extra={
            "original_transaction_id": original_transaction_id,
            "user_id": user_id,
            "page_count": len(pages),
            "accepted": accepted,
            "duplicates": duplicates,
        },
    )

    return {"ok": True, "originalTransactionId": original_transaction_id, "pageCount": len(pages)}
