"""
Link Subscription Identity - POST /billing/link

Called by the iOS app right after a purchase to bind the purchase's
appAccountToken and original transaction id to the signed-in user, so a
webhook landing later resolves straight to the linked ledger.
"""

import logging

from botocore.exceptions import ClientError

from shared.auth import parse_json_body, require_user_id
from shared.errors import APIError, InvalidArgumentError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, success_response
from shared.subscription_links import link_subscription_identity

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Lambda handler for POST /billing/link.

    Body: {purchaseToken|appAccountToken, originalTransactionId, transactionId,
    productId?, source?}
    """
    configure_structured_logging()
    set_request_id(event, context)

    try:
        user_id = require_user_id(event)
        data = parse_json_body(event)

        app_account_token = data.get("purchaseToken") or data.get("appAccountToken")
        original_transaction_id = data.get("originalTransactionId")
        transaction_id = data.get("transactionId")

        if not app_account_token or not original_transaction_id or not transaction_id:
            raise InvalidArgumentError("Missing required fields")

        result = link_subscription_identity(
            user_id=user_id,
            app_account_token=str(app_account_token),
            original_transaction_id=str(original_transaction_id),
            transaction_id=str(transaction_id),
            product_id=data.get("productId"),
            source=data.get("source"),
        )
    except APIError as e:
        return e.to_response()
    except ClientError as e:
        logger.error(f"Failed to store subscription link: {e}")
        return error_response(500, "internal_error", "Failed to link subscription")

    return success_response(result)
