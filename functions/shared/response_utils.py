"""
API Gateway response helpers for the billing handlers.

Every body is JSON. Errors share one envelope:
{"ok": false, "error": {"code": ..., "message": ...}}
"""

import json
from decimal import Decimal
from typing import Any, Dict, Optional


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal values read back from DynamoDB."""
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _json_response(status_code: int, body: Any, headers: Optional[Dict[str, str]] = None) -> dict:
    response_headers = {"Content-Type": "application/json"}
    if headers:
        response_headers.update(headers)

    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
) -> dict:
    """
    Build an error response.

    Args:
        status_code: HTTP status code
        code: Machine-readable error code (snake_case)
        message: Human-readable error message
        headers: Extra headers, e.g. Allow on a 405
        details: Optional structured context for the caller
    """
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return _json_response(status_code, {"ok": False, "error": error}, headers)


def success_response(data: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> dict:
    """Build a success response around an already-shaped body."""
    return _json_response(status_code, data, headers)
