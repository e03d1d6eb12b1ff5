# Shared utilities package
from .billing_ledger import upsert_transaction
from .billing_summary import get_billing_summary
from .errors import APIError, CredentialsMissingError
from .response_utils import error_response, success_response
from .subscription_links import get_subscription_link, link_subscription_identity

__all__ = [
    "link_subscription_identity",
    "get_subscription_link",
    "upsert_transaction",
    "get_billing_summary",
    "error_response",
    "success_response",
    "APIError",
    "CredentialsMissingError",
]
