"""
Apple App Store configuration.

Resolves bundle/app identity, environment, trusted root certificates and
App Store Server API credentials from the Lambda environment and Secrets
Manager, and builds the server API client used by backfill.
"""

import base64
import binascii
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional

from appstoreserverlibrary.api_client import AppStoreServerAPIClient
from appstoreserverlibrary.models.Environment import Environment
from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.errors import CredentialsMissingError

logger = logging.getLogger(__name__)

DEFAULT_BUNDLE_ID = "com.heartrateios.senior"
DEFAULT_APP_ID = "6757157988"

ENVIRONMENTS = {
    "PRODUCTION": Environment.PRODUCTION,
    "SANDBOX": Environment.SANDBOX,
    "XCODE": Environment.XCODE,
    "LOCAL_TESTING": Environment.LOCAL_TESTING,
}

# Cached server API credentials with TTL
_credentials_cache: Optional[dict] = None
_credentials_cache_time = 0.0
CREDENTIALS_CACHE_TTL = 300  # 5 minutes


@dataclass(frozen=True)
class AppleSettings:
    bundle_id: str
    app_apple_id: Optional[int]
    environment: Environment
    root_certificates: list = field(default_factory=list)
    verifier_adapter: str = "signed-data-v1"
    enable_online_checks: bool = True


def resolve_environment(name: Optional[str]) -> Environment:
    """Map APPLE_ENV to the library enum. Anything unrecognised is production."""
    return ENVIRONMENTS.get((name or "PRODUCTION").strip().upper(), Environment.PRODUCTION)


def parse_root_certificates(raw: Optional[str]) -> list[bytes]:
    """Decode a JSON array of base64 DER certificates.

    A malformed value is logged and yields no roots, which makes every
    signed payload fail verification.
    """
    if not raw:
        return []

    try:
        items = json.loads(raw)
        if not isinstance(items, list):
            return []
        return [base64.b64decode(item) for item in items]
    except (json.JSONDecodeError, TypeError, binascii.Error) as e:
        logger.error(f"Failed to parse APPLE_ROOT_CA_BASE64_JSON: {e}")
        return []


def load_apple_settings() -> AppleSettings:
    """Read Apple settings from the environment."""
    raw_app_id = os.environ.get("APPLE_APP_ID", DEFAULT_APP_ID)
    try:
        app_apple_id = int(raw_app_id) if raw_app_id else None
    except ValueError:
        logger.error(f"APPLE_APP_ID is not numeric: {raw_app_id}")
        app_apple_id = None

    return AppleSettings(
        bundle_id=os.environ.get("APPLE_BUNDLE_ID") or DEFAULT_BUNDLE_ID,
        app_apple_id=app_apple_id,
        environment=resolve_environment(os.environ.get("APPLE_ENV")),
        root_certificates=parse_root_certificates(os.environ.get("APPLE_ROOT_CA_BASE64_JSON")),
        verifier_adapter=os.environ.get("APPLE_VERIFIER_ADAPTER") or "signed-data-v1",
        enable_online_checks=os.environ.get("APPLE_ENABLE_ONLINE_CHECKS", "true").strip().lower() != "false",
    )


def get_server_api_credentials() -> dict:
    """Retrieve App Store Server API credentials (cached with TTL).

    Direct environment variables win over the Secrets Manager secret, whose
    value is JSON with private_key, key_id and issuer_id.
    """
    global _credentials_cache, _credentials_cache_time

    if _credentials_cache and (time.time() - _credentials_cache_time) < CREDENTIALS_CACHE_TTL:
        return _credentials_cache

    credentials = {}
    secret_arn = os.environ.get("APPLE_SERVER_API_SECRET_ARN")
    if secret_arn:
        try:
            response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
            secret_json = json.loads(response.get("SecretString", "") or "{}")
            if isinstance(secret_json, dict):
                credentials = secret_json
        except ClientError as e:
            logger.error(f"Failed to retrieve App Store Server API secret: {e}")
        except json.JSONDecodeError:
            logger.error("App Store Server API secret is not valid JSON")

    resolved = {
        "private_key": os.environ.get("APPLE_SERVER_API_PRIVATE_KEY") or credentials.get("private_key"),
        "key_id": os.environ.get("APPLE_SERVER_API_KEY_ID") or credentials.get("key_id"),
        "issuer_id": os.environ.get("APPLE_SERVER_API_ISSUER_ID") or credentials.get("issuer_id"),
    }

    if all(resolved.values()):
        _credentials_cache = resolved
        _credentials_cache_time = time.time()
    return resolved


def reset_credentials_cache():
    """Drop cached credentials. Used in tests for clean state."""
    global _credentials_cache, _credentials_cache_time
    _credentials_cache = None
    _credentials_cache_time = 0.0


def create_server_api_client(settings: Optional[AppleSettings] = None) -> AppStoreServerAPIClient:
    """Build an App Store Server API client.

    Raises:
        CredentialsMissingError: if the signing key, key id or issuer id is absent
    """
    settings = settings or load_apple_settings()
    credentials = get_server_api_credentials()

    if not all(credentials.values()):
        raise CredentialsMissingError("Missing App Store Server API credentials")

    return AppStoreServerAPIClient(
        signing_key=credentials["private_key"].encode("utf-8"),
        key_id=credentials["key_id"],
        issuer_id=credentials["issuer_id"],
        bundle_id=settings.bundle_id,
        environment=settings.environment,
    )
