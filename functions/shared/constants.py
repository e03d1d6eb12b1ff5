"""
Shared constants for Apple billing reconciliation.
"""

import os

# DynamoDB tables
SUBSCRIPTION_LINKS_TABLE = os.environ.get("SUBSCRIPTION_LINKS_TABLE", "heartrate-subscription-links")
BILLING_TRANSACTIONS_TABLE = os.environ.get("BILLING_TRANSACTIONS_TABLE", "heartrate-billing-transactions")
BILLING_UNLINKED_TABLE = os.environ.get("BILLING_UNLINKED_TABLE", "heartrate-billing-unlinked")
BILLING_SUMMARY_TABLE = os.environ.get("BILLING_SUMMARY_TABLE", "heartrate-billing-summary")
BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "heartrate-billing-events")

# Sort keys for single-item-per-pk tables
LINK_SK = "LINK"
TRANSACTION_SK = "TXN"
SUMMARY_SK = "CURRENT"

APP_ACCOUNT_TOKEN_INDEX = "app-account-token-index"
USER_INDEX = "user-index"

# Ledger record sources
SOURCE_NOTIFICATION = "apple_notification_v2"
SOURCE_BACKFILL = "apple_history_backfill"
BACKFILL_NOTIFICATION_TYPE = "BACKFILL"

# Link origins
LINK_SOURCE_IOS = "ios"
LINK_SOURCE_NOTIFICATION = "apple_notification"

RENEWAL_NOTIFICATION_TYPE = "DID_RENEW"
RENEWAL_TRANSACTION_REASON = "RENEWAL"

UNKNOWN_CURRENCY = "UNKNOWN"

# Apple reports price in milliunits of the currency
PRICE_SCALE = 1000

# Optimistic retries for the summary version guard
SUMMARY_MAX_ATTEMPTS = 5

# Daily sweep reads a single page of links (not resumed across runs)
BACKFILL_SWEEP_LIMIT = int(os.environ.get("BACKFILL_SWEEP_LIMIT", "200"))

# Audit trail retention
BILLING_EVENT_TTL_DAYS = 90

# DynamoDB throttling error codes
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
