"""
Daily Backfill Retry - safety net for missed Apple notifications.

Triggered by EventBridge every day at 03:00 UTC. Re-runs the history
backfill for one page of known subscription links. The page is not
resumed across days, so at most BACKFILL_SWEEP_LIMIT links are covered.
"""

import json
import logging

from shared.backfill import run_backfill
from shared.constants import BACKFILL_SWEEP_LIMIT
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.metrics import emit_batch_metrics
from shared.subscription_links import list_subscription_links

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Stop before the Lambda timeout rather than be killed mid-backfill
MIN_REMAINING_MS = 15000


def handler(event, context):
    """Backfill every link in one bounded page; per-link failures are logged and counted."""
    configure_structured_logging()
    set_request_id(event or {}, context)

    try:
        links = list_subscription_links(BACKFILL_SWEEP_LIMIT)
    except Exception as e:
        logger.error(f"Failed to load subscription links: {e}")
        links = []

    logger.info(f"Found {len(links)} subscription links to backfill")

    succeeded = 0
    skipped = 0
    failed = 0

    for link in links:
        if context and hasattr(context, "get_remaining_time_in_millis"):
            remaining_ms = context.get_remaining_time_in_millis()
            if remaining_ms < MIN_REMAINING_MS:
                logger.warning(f"Approaching timeout ({remaining_ms}ms remaining), stopping early")
                break

        original_transaction_id = link.get("pk")
        try:
            result = run_backfill(original_transaction_id)
        except Exception as e:
            logger.error(
                f"dailyBackfillRetry failed for {original_transaction_id}: {e}",
                extra={"original_transaction_id": original_transaction_id},
            )
            failed += 1
            continue

        if result.get("ok"):
            succeeded += 1
        else:
            logger.info(f"Skipped {original_transaction_id}: {result.get('reason')}")
            skipped += 1

    emit_batch_metrics(
        [
            {"metric_name": "BackfillSweepFound", "value": len(links)},
            {"metric_name": "BackfillSweepSucceeded", "value": succeeded},
            {"metric_name": "BackfillSweepSkipped", "value": skipped},
            {"metric_name": "BackfillSweepFailed", "value": failed},
        ]
    )

    logger.info(f"Backfill sweep complete: {succeeded} succeeded, {skipped} skipped, {failed} failed")

    return {
        "statusCode": 200,
        "body": json.dumps(
            {
                "found": len(links),
                "succeeded": succeeded,
                "skipped": skipped,
                "failed": failed,
            }
        ),
    }
