"""
Caller identity for authenticated endpoints.

API Gateway validates the client's identity token before the Lambda runs
and passes the verified claims in requestContext.authorizer. Only that
verified context is trusted; headers and body fields never are.
"""

import base64
import json
import logging
from typing import Optional

from shared.errors import InvalidArgumentError, UnauthenticatedError

logger = logging.getLogger(__name__)


def get_authenticated_user_id(event: dict) -> Optional[str]:
    """
    Extract the verified user id from the authorizer context.

    Supports REST API Cognito/JWT authorizers (claims.sub), HTTP API JWT
    authorizers (jwt.claims.sub) and Lambda authorizers (principalId).
    """
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}

    claims = authorizer.get("claims") or (authorizer.get("jwt") or {}).get("claims") or {}
    user_id = claims.get("sub") or claims.get("user_id") or authorizer.get("principalId")

    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return None


def require_user_id(event: dict) -> str:
    """
    Raises:
        UnauthenticatedError: no verified caller identity on the request
    """
    user_id = get_authenticated_user_id(event)
    if not user_id:
        logger.warning("Rejected unauthenticated request")
        raise UnauthenticatedError()
    return user_id


def parse_json_body(event: dict) -> dict:
    """
    Parse the request body as a JSON object. An empty body is an empty object.

    Raises:
        InvalidArgumentError: body is not a JSON object
    """
    body = event.get("body")
    if not body:
        return {}
    try:
        if event.get("isBase64Encoded"):
            body = base64.b64decode(body).decode("utf-8")
        data = json.loads(body)
    except ValueError:
        raise InvalidArgumentError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise InvalidArgumentError("Request body must be a JSON object")
    return data
