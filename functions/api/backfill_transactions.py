"""
Backfill Transactions - POST /billing/backfill

Replays App Store transaction history for a list of original transaction
ids. Each id is processed independently; one failure never aborts the rest.
"""

import logging

from shared.auth import parse_json_body, require_user_id
from shared.backfill import run_backfill
from shared.errors import APIError, InvalidArgumentError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import success_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _original_transaction_ids(data: dict) -> list[str]:
    raw_ids = data.get("originalTransactionIds")
    if not isinstance(raw_ids, list):
        return []
    return [str(value) for value in raw_ids if value is not None and str(value)]


def backfill_many(original_transaction_ids: list[str]) -> list[dict]:
    """Run backfill per id, capturing each failure as a result entry."""
    results = []
    for original_transaction_id in original_transaction_ids:
        try:
            results.append(run_backfill(original_transaction_id))
        except Exception as e:
            logger.error(
                f"backfillTransactions failed for {original_transaction_id}: {e}",
                extra={"original_transaction_id": original_transaction_id},
                exc_info=True,
            )
            results.append({"ok": False, "originalTransactionId": original_transaction_id, "reason": str(e)})
    return results


def handler(event, context):
    """
    Lambda handler for POST /billing/backfill.

    Body: {originalTransactionIds: [...]}
    """
    configure_structured_logging()
    set_request_id(event, context)

    try:
        user_id = require_user_id(event)
        original_transaction_ids = _original_transaction_ids(parse_json_body(event))
        if not original_transaction_ids:
            raise InvalidArgumentError("originalTransactionIds is required")
    except APIError as e:
        return e.to_response()

    logger.info(f"User {user_id} requested backfill for {len(original_transaction_ids)} subscriptions")

    results = backfill_many(original_transaction_ids)
    return success_response({"ok": True, "results": results})
