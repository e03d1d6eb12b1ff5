"""
Rebuild Billing Summary - recompute users' summaries from the linked ledger.

The summary is maintained incrementally. This script replaces it with a
fresh fold over every linked transaction for each given user, e.g. after a
manual ledger correction.

Usage (run locally -- no Lambda needed):
    PYTHONPATH=functions:. python3 functions/admin/rebuild_billing_summary.py --dry-run user_a user_b
    PYTHONPATH=functions:. python3 functions/admin/rebuild_billing_summary.py user_a
"""

import argparse
import json
import logging

from shared.billing_summary import rebuild_billing_summary
from shared.response_utils import decimal_default

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def rebuild(user_ids: list[str], dry_run: bool = True) -> dict:
    """Rebuild each user's summary; failures are counted, not raised."""
    results = []
    failed = 0

    for user_id in user_ids:
        try:
            result = rebuild_billing_summary(user_id, dry_run=dry_run)
            prefix = "[DRY RUN] " if dry_run else ""
            logger.info(f"{prefix}{user_id}: {result['transactions']} transactions")
            results.append(result)
        except Exception as e:
            failed += 1
            logger.error(f"Failed {user_id}: {e}")

    return {"rebuilt": len(results), "failed": failed, "dry_run": dry_run, "results": results}


def main():
    parser = argparse.ArgumentParser(description="Rebuild billing summaries from the linked ledger")
    parser.add_argument("user_ids", nargs="+", help="User ids to rebuild")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()

    result = rebuild(args.user_ids, dry_run=args.dry_run)
    print(json.dumps(result, indent=2, default=decimal_default))


if __name__ == "__main__":
    main()
