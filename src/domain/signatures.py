"""Signature and freshness checks for inbound email-provider webhooks.

Every verifier returns a ``VerificationResult`` and never raises, so a broken
or hostile request can only ever produce a 401, not a crashed handler.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import urlparse

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding
from pydantic import BaseModel

from src.config import Settings
from src.models.webhooks import VerificationResult


DEFAULT_TIMESTAMP_TOLERANCE_SECONDS = 300
SNS_CERT_HOST_PATTERN = re.compile(r"sns\.[a-z0-9-]+\.amazonaws\.com(\.cn)?")
SNS_NOTIFICATION_TYPE = "Notification"
SNS_CONFIRMATION_TYPES = {"SubscriptionConfirmation", "UnsubscribeConfirmation"}

_SNS_NOTIFICATION_SIGNED_FIELDS = ("Message", "MessageId", "Subject", "Timestamp", "TopicArn", "Type")
_SNS_SUBSCRIPTION_SIGNED_FIELDS = (
    "Message",
    "MessageId",
    "SubscribeURL",
    "Timestamp",
    "Token",
    "TopicArn",
    "Type",
)
_SNS_OPTIONAL_SIGNED_FIELDS = {"Subject", "SubscribeURL", "Token", "TopicArn"}

CertificateFetcher = Callable[[str], bytes]


class WebhookSecrets(BaseModel):
    """Provider secrets handed to the verification layer.

    A provider whose secret is absent runs in verification-skipped mode.
    """

    sendgrid_public_key: str | None = None
    mailgun_signing_key: str | None = None
    postmark_token: str | None = None
    timestamp_tolerance_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE_SECONDS

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookSecrets":
        return cls(
            sendgrid_public_key=settings.sendgrid_webhook_public_key or None,
            mailgun_signing_key=settings.mailgun_webhook_signing_key or None,
            postmark_token=settings.postmark_webhook_token or None,
            timestamp_tolerance_seconds=settings.webhook_timestamp_tolerance_seconds,
        )

    def verification_status(self) -> dict[str, bool]:
        return {
            "sendgrid": bool(self.sendgrid_public_key),
            "mailgun": bool(self.mailgun_signing_key),
            "postmark": bool(self.postmark_token),
            # SNS carries its own certificate URL, so there is nothing to configure.
            "ses": True,
        }


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _load_sendgrid_public_key(public_key: str):
    text = public_key.strip()
    if text.startswith("-----BEGIN"):
        return serialization.load_pem_public_key(text.encode("utf-8"))
    # The SendGrid console shows the key as bare base64 DER.
    return serialization.load_der_public_key(base64.b64decode(text, validate=True))


def verify_sendgrid_signature(
    public_key: str | None,
    payload: str | bytes | None,
    signature: str | None,
    timestamp: str | None,
) -> VerificationResult:
    if not public_key or not payload or not signature or not timestamp:
        return VerificationResult(valid=False, error="Missing required parameters")
    try:
        key = _load_sendgrid_public_key(public_key)
        if not isinstance(key, ec.EllipticCurvePublicKey):
            return VerificationResult(valid=False, error="SendGrid public key is not an ECDSA key")
        signed = _to_bytes(timestamp) + _to_bytes(payload)
        key.verify(base64.b64decode(signature, validate=True), signed, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return VerificationResult(valid=False)
    except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm) as exc:
        return VerificationResult(valid=False, error=f"SendGrid signature verification failed: {exc}")
    return VerificationResult(valid=True)


def verify_mailgun_signature(
    signing_key: str | None,
    timestamp: str | int | None,
    token: str | None,
    signature: str | None,
) -> VerificationResult:
    if not signing_key or not timestamp or not token or not signature:
        return VerificationResult(valid=False, error="Missing required parameters")
    data = f"{timestamp}{token}".encode("utf-8")
    expected = hmac.new(signing_key.encode("utf-8"), data, hashlib.sha256).hexdigest()
    valid = hmac.compare_digest(str(signature).encode("utf-8"), expected.encode("utf-8"))
    return VerificationResult(valid=valid)


def verify_postmark_signature(
    webhook_token: str | None,
    payload: str | bytes | None,
    signature: str | None,
) -> VerificationResult:
    if not webhook_token or not payload or not signature:
        return VerificationResult(valid=False, error="Missing required parameters")
    digest = hmac.new(webhook_token.encode("utf-8"), _to_bytes(payload), hashlib.sha256).digest()
    expected = base64.b64encode(digest)
    # compare_digest tolerates unequal lengths and simply returns False.
    valid = hmac.compare_digest(signature.encode("utf-8"), expected)
    return VerificationResult(valid=valid)


def parse_webhook_timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except ValueError:
        pass
    except (OverflowError, OSError):
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_webhook_timestamp(
    timestamp: str | int | float | None,
    max_age_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE_SECONDS,
    *,
    now: datetime | None = None,
) -> VerificationResult:
    """Accept Unix seconds or ISO-8601 and reject anything older (or newer) than the window."""
    webhook_time = parse_webhook_timestamp(timestamp)
    if webhook_time is None:
        return VerificationResult(valid=False, error="Could not parse timestamp")
    current = now or datetime.now(timezone.utc)
    age_seconds = abs((current - webhook_time).total_seconds())
    if age_seconds > max_age_seconds:
        return VerificationResult(
            valid=False,
            error=f"Webhook timestamp is too old: {age_seconds:.0f} seconds (max: {max_age_seconds})",
        )
    return VerificationResult(valid=True)


def validate_sns_certificate_url(url: str | None) -> VerificationResult:
    if not url:
        return VerificationResult(valid=False, error="Missing signature or certificate URL")
    try:
        parsed = urlparse(str(url))
        host = (parsed.hostname or "").lower()
    except ValueError:
        return VerificationResult(valid=False, error="Invalid certificate URL")
    if not SNS_CERT_HOST_PATTERN.fullmatch(host):
        return VerificationResult(valid=False, error="Invalid certificate URL domain")
    if parsed.scheme != "https":
        return VerificationResult(valid=False, error="Certificate URL must use HTTPS")
    return VerificationResult(valid=True)


def build_sns_string_to_sign(message: dict[str, Any]) -> str | None:
    message_type = message.get("Type")
    if message_type == SNS_NOTIFICATION_TYPE:
        fields = _SNS_NOTIFICATION_SIGNED_FIELDS
    elif message_type in SNS_CONFIRMATION_TYPES:
        fields = _SNS_SUBSCRIPTION_SIGNED_FIELDS
    else:
        return None

    parts: list[str] = []
    for key in fields:
        value = message.get(key)
        if key in _SNS_OPTIONAL_SIGNED_FIELDS and not value:
            continue
        parts.append(f"{key}\n{'' if value is None else value}\n")
    return "".join(parts)


def verify_sns_signature(message: Any, fetch_certificate: CertificateFetcher) -> VerificationResult:
    if not isinstance(message, dict):
        return VerificationResult(valid=False, error="SNS message must be a JSON object")
    if not message.get("Signature") or not message.get("SigningCertURL"):
        return VerificationResult(valid=False, error="Missing signature or certificate URL")

    # Checked on every call, including cached certificates.
    url_check = validate_sns_certificate_url(message["SigningCertURL"])
    if not url_check.valid:
        return url_check

    string_to_sign = build_sns_string_to_sign(message)
    if string_to_sign is None:
        return VerificationResult(valid=False, error=f"Unknown message type: {message.get('Type')}")

    try:
        certificate_pem = fetch_certificate(message["SigningCertURL"])
    except Exception as exc:
        return VerificationResult(valid=False, error=f"Failed to fetch signing certificate: {exc}")

    algorithm = hashes.SHA256() if str(message.get("SignatureVersion")) == "2" else hashes.SHA1()
    try:
        certificate = x509.load_pem_x509_certificate(certificate_pem)
        signature = base64.b64decode(message["Signature"], validate=True)
        certificate.public_key().verify(
            signature,
            string_to_sign.encode("utf-8"),
            padding.PKCS1v15(),
            algorithm,
        )
    except InvalidSignature:
        return VerificationResult(valid=False)
    except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm) as exc:
        return VerificationResult(valid=False, error=f"SNS signature verification failed: {exc}")
    return VerificationResult(valid=True)
