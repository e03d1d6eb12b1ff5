"""
Shared pytest fixtures for billing reconciliation tests.
"""

import base64
import datetime
import json
import os
import sys
import uuid

import boto3
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

BUNDLE_ID = "com.heartrateios.senior"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    Ensures boto3 client creation never fails with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def apple_environment(monkeypatch):
    """Xcode environment: the library skips the chain check and still
    enforces bundle id and environment, so tests can build payloads."""
    monkeypatch.setenv("APPLE_ENV", "XCODE")
    monkeypatch.setenv("APPLE_BUNDLE_ID", BUNDLE_ID)
    monkeypatch.setenv("APPLE_APP_ID", "6757157988")
    monkeypatch.delenv("APPLE_ROOT_CA_BASE64_JSON", raising=False)
    monkeypatch.delenv("APPLE_VERIFIER_ADAPTER", raising=False)
    monkeypatch.delenv("APPLE_ENABLE_ONLINE_CHECKS", raising=False)
    for name in (
        "APPLE_SERVER_API_SECRET_ARN",
        "APPLE_SERVER_API_PRIVATE_KEY",
        "APPLE_SERVER_API_KEY_ID",
        "APPLE_SERVER_API_ISSUER_ID",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_cached_clients():
    """Reset process-wide singletons between tests."""
    yield
    from shared.apple_config import reset_credentials_cache
    from shared.apple_verifier import reset_verifier
    from shared.aws_clients import reset_clients

    reset_clients()
    reset_verifier()
    reset_credentials_cache()


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    dynamodb.create_table(
        TableName="heartrate-subscription-links",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # original_transaction_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # LINK
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "app_account_token", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "app-account-token-index",
                "KeySchema": [{"AttributeName": "app_account_token", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="heartrate-billing-transactions",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # transaction_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # TXN
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "user-index",
                "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    for table_name in ("heartrate-billing-unlinked", "heartrate-billing-summary", "heartrate-billing-events"):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked AWS with all billing tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-test",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


@pytest.fixture
def authed_event(api_gateway_event):
    """API Gateway event carrying verified authorizer claims for user_test123."""
    api_gateway_event["requestContext"]["authorizer"] = {"claims": {"sub": "user_test123"}}
    return api_gateway_event


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def make_jws(payload: dict, header: dict = None) -> str:
    """Compact JWS with an arbitrary signature segment.

    Only usable where the verifier skips the signature check (Xcode), or to
    exercise rejection of an untrusted chain.
    """
    header = header or {"alg": "ES256", "typ": "JWT"}
    return ".".join(
        [
            _b64url(json.dumps(header).encode()),
            _b64url(json.dumps(payload).encode()),
            _b64url(b"not-a-real-signature"),
        ]
    )


LEAF_MARKER_OID = "1.2.840.113635.100.6.11.1"
INTERMEDIATE_MARKER_OID = "1.2.840.113635.100.6.2.1"


class SigningChain:
    """Root -> intermediate -> leaf ES256 chain shaped like Apple's.

    sign() produces a compact JWS whose x5c header carries the chain, so
    the library's strict chain check runs against whatever roots the
    verifier trusts.
    """

    def __init__(self, common_name: str):
        root_key = ec.generate_private_key(ec.SECP256R1())
        intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())

        root_name = _name(f"{common_name} Root CA")
        intermediate_name = _name(f"{common_name} Intermediate CA")

        self.root = _certificate(root_name, root_name, root_key, root_key, ca=True)
        self.intermediate = _certificate(
            intermediate_name, root_name, intermediate_key, root_key, ca=True, marker_oid=INTERMEDIATE_MARKER_OID
        )
        self.leaf = _certificate(
            _name(f"{common_name} Signing"), intermediate_name, self.leaf_key, intermediate_key,
            ca=False, marker_oid=LEAF_MARKER_OID,
        )

    @property
    def root_der(self) -> bytes:
        return self.root.public_bytes(serialization.Encoding.DER)

    @property
    def x5c(self) -> list:
        return [
            base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
            for cert in (self.leaf, self.intermediate, self.root)
        ]

    def sign(self, payload: dict) -> str:
        return jwt.encode(payload, self.leaf_key, algorithm="ES256", headers={"x5c": self.x5c})


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(subject, issuer, key, issuer_key, ca, marker_oid=None):
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.datetime(2020, 1, 1, tzinfo=datetime.timezone.utc))
        .not_valid_after(datetime.datetime(2040, 1, 1, tzinfo=datetime.timezone.utc))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=not ca,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()), critical=False
        )
    )
    if marker_oid:
        # Apple marks its intermediate and leaf with a NULL-valued extension
        builder = builder.add_extension(
            x509.UnrecognizedExtension(x509.ObjectIdentifier(marker_oid), b"\x05\x00"), critical=False
        )
    return builder.sign(issuer_key, hashes.SHA256())


@pytest.fixture(scope="session")
def trusted_chain():
    """Chain whose root the verifier is configured to trust."""
    return SigningChain("Test Billing")


@pytest.fixture(scope="session")
def foreign_chain():
    """Well-formed chain under a root nobody configured."""
    return SigningChain("Foreign Billing")


def make_transaction(
    transaction_id="2000000000000001",
    original_transaction_id="1000000000000001",
    app_account_token="6f1c2a52-8f4e-4bc8-9f7a-1c1f1c1f1c1f",
    price=12990,
    currency="USD",
    transaction_reason="PURCHASE",
    environment="Xcode",
    bundle_id=BUNDLE_ID,
):
    """Decoded JWSTransaction payload in Apple's JSON shape."""
    transaction = {
        "transactionId": transaction_id,
        "originalTransactionId": original_transaction_id,
        "bundleId": bundle_id,
        "productId": "com.heartrateios.senior.premium.yearly",
        "purchaseDate": 1760000000000,
        "expiresDate": 1791536000000,
        "type": "Auto-Renewable Subscription",
        "inAppOwnershipType": "PURCHASED",
        "signedDate": 1760000000500,
        "environment": environment,
        "transactionReason": transaction_reason,
        "storefront": "USA",
        "price": price,
        "currency": currency,
    }
    if app_account_token:
        transaction["appAccountToken"] = app_account_token
    return transaction


def make_notification(
    transaction=None,
    notification_type="SUBSCRIBED",
    subtype="INITIAL_BUY",
    notification_uuid=None,
    environment="Xcode",
    bundle_id=BUNDLE_ID,
    sign=make_jws,
):
    """Signed notification payload wrapping an optional signed transaction.

    sign signs both the embedded transaction and the outer payload.
    """
    data = {
        "bundleId": bundle_id,
        "appAppleId": 6757157988,
        "environment": environment,
    }
    if transaction is not None:
        data["signedTransactionInfo"] = sign(transaction)

    payload = {
        "notificationType": notification_type,
        "notificationUUID": notification_uuid or str(uuid.uuid4()),
        "data": data,
        "version": "2.0",
        "signedDate": 1760000001000,
    }
    if subtype:
        payload["subtype"] = subtype
    return sign(payload)


def webhook_event(signed_payload, method="POST"):
    """API Gateway event as Apple delivers it."""
    return {
        "httpMethod": method,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"signedPayload": signed_payload}) if signed_payload is not None else None,
        "requestContext": {"requestId": "req-apple"},
    }


def seed_link(dynamodb, original_transaction_id, user_id, app_account_token=None):
    """Store a subscription link directly."""
    item = {
        "pk": original_transaction_id,
        "sk": "LINK",
        "original_transaction_id": original_transaction_id,
        "latest_transaction_id": original_transaction_id,
        "source": "ios",
        "created_at": "2025-01-01T00:00:00+00:00",
        "updated_at": "2025-01-01T00:00:00+00:00",
    }
    if user_id:
        item["user_id"] = user_id
    if app_account_token:
        item["app_account_token"] = app_account_token
    dynamodb.Table("heartrate-subscription-links").put_item(Item=item)
