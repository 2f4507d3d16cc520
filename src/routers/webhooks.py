from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.config import settings
from src.db import get_supabase
from src.domain.bounce_processing import (
    parse_sns_message,
    process_mailgun_webhook,
    process_postmark_webhook,
    process_sendgrid_webhook,
    process_ses_webhook,
)
from src.domain.bounce_store import BounceRecorder, SupabaseBounceStore
from src.domain.normalization import detect_provider
from src.domain.signatures import (
    SNS_CONFIRMATION_TYPES,
    CertificateFetcher,
    WebhookSecrets,
    validate_webhook_timestamp,
    verify_mailgun_signature,
    verify_postmark_signature,
    verify_sendgrid_signature,
    verify_sns_signature,
)
from src.models.webhooks import (
    GenericWebhookResponse,
    ProcessingResult,
    SignatureVerificationStatus,
    WebhookHealthResponse,
)
from src.observability import incr_metric, log_event
from src.providers.sns.certificates import SigningCertificateFetcher


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

WEBHOOK_ENDPOINTS = [
    "/api/webhooks/sendgrid",
    "/api/webhooks/ses",
    "/api/webhooks/mailgun",
    "/api/webhooks/postmark",
    "/api/webhooks/email-bounce",
]

_SENDGRID_SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
_SENDGRID_TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"
_POSTMARK_SIGNATURE_HEADER = "X-Postmark-Signature"


def get_webhook_secrets() -> WebhookSecrets:
    return WebhookSecrets.from_settings(settings)


def get_bounce_recorder() -> BounceRecorder:
    return SupabaseBounceStore(
        client_factory=get_supabase,
        table=settings.email_bounces_table,
        redact_emails=settings.webhook_log_redact_emails,
    )


@lru_cache(maxsize=1)
def get_certificate_fetcher() -> CertificateFetcher:
    return SigningCertificateFetcher(
        timeout_seconds=settings.sns_cert_fetch_timeout_seconds,
        cache_ttl_seconds=settings.sns_cert_cache_ttl_seconds,
    )


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _parse_json_or_raise(raw_body: bytes, *, provider: str, request_id: str | None) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise _shape_error(
            provider=provider,
            request_id=request_id,
            message="Invalid JSON payload",
        ) from exc


def _shape_error(*, provider: str, request_id: str | None, message: str) -> HTTPException:
    incr_metric("webhook.events.rejected", provider_slug=provider, reason="invalid_shape")
    log_event(
        "webhook_shape_rejected",
        level=logging.WARNING,
        request_id=request_id,
        provider_slug=provider,
        message=message,
    )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def _signature_error(
    *,
    provider: str,
    reason: str,
    message: str,
    request_id: str | None,
    error: str | None = None,
) -> HTTPException:
    incr_metric("webhook.signature.rejected", provider_slug=provider, reason=reason)
    incr_metric("webhook.events.rejected", provider_slug=provider, reason=reason)
    log_event(
        "webhook_signature_rejected",
        level=logging.WARNING,
        request_id=request_id,
        provider_slug=provider,
        reason=reason,
        message=message,
        error=error,
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "type": "webhook_signature_invalid",
            "provider": provider,
            "reason": reason,
            "message": message,
        },
    )


def _skip_verification(*, provider: str, request_id: str | None, message: str) -> None:
    incr_metric("webhook.signature.skipped", provider_slug=provider)
    log_event(
        "webhook_signature_verification_skipped",
        level=logging.WARNING,
        request_id=request_id,
        provider_slug=provider,
        message=message,
    )


def _mark_verified(provider: str) -> None:
    incr_metric("webhook.signature.verified", provider_slug=provider)


def _internal_error(*, provider: str, request_id: str | None, exc: Exception) -> HTTPException:
    incr_metric("webhook.events.failed", provider_slug=provider)
    log_event(
        "webhook_failed",
        level=logging.ERROR,
        request_id=request_id,
        provider_slug=provider,
        error=str(exc),
    )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


def _log_result(*, provider: str, result: ProcessingResult, request_id: str | None) -> None:
    incr_metric("webhook.events.processed", provider_slug=provider)
    log_event(
        "webhook_processed",
        request_id=request_id,
        provider_slug=provider,
        processed=result.processed,
        error_count=len(result.errors),
    )
    if result.errors:
        incr_metric("webhook.events.partial_failure", provider_slug=provider)
        log_event(
            "webhook_event_failed",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug=provider,
            error_count=len(result.errors),
            # Error strings embed recipient addresses.
            errors=None if settings.webhook_log_redact_emails else result.errors,
        )


def _processed_response(*, provider: str, result: ProcessingResult, request_id: str | None) -> dict[str, Any]:
    _log_result(provider=provider, result=result, request_id=request_id)
    return {"success": True, "processed": result.processed, "errors": len(result.errors)}


def _verify_sendgrid_request_or_raise(
    *,
    raw_body: bytes,
    request: Request,
    secrets: WebhookSecrets,
    request_id: str | None,
) -> None:
    if not secrets.sendgrid_public_key:
        _skip_verification(
            provider="sendgrid",
            request_id=request_id,
            message="SendGrid webhook signature verification skipped: no public key configured",
        )
        return

    signature = request.headers.get(_SENDGRID_SIGNATURE_HEADER)
    timestamp = request.headers.get(_SENDGRID_TIMESTAMP_HEADER)
    if not signature or not timestamp:
        raise _signature_error(
            provider="sendgrid",
            reason="missing_signature",
            message="Missing signature headers",
            request_id=request_id,
        )

    timestamp_result = validate_webhook_timestamp(timestamp, secrets.timestamp_tolerance_seconds)
    if not timestamp_result.valid:
        raise _signature_error(
            provider="sendgrid",
            reason="invalid_timestamp",
            message="Invalid timestamp",
            request_id=request_id,
            error=timestamp_result.error,
        )

    result = verify_sendgrid_signature(secrets.sendgrid_public_key, raw_body, signature, timestamp)
    if not result.valid:
        raise _signature_error(
            provider="sendgrid",
            reason="invalid_signature",
            message="Invalid signature",
            request_id=request_id,
            error=result.error,
        )
    _mark_verified("sendgrid")


def _verify_mailgun_payload_or_raise(
    *,
    payload: dict[str, Any],
    secrets: WebhookSecrets,
    request_id: str | None,
) -> None:
    if not secrets.mailgun_signing_key:
        _skip_verification(
            provider="mailgun",
            request_id=request_id,
            message="Mailgun webhook signature verification skipped: no signing key configured",
        )
        return

    signature_data = payload.get("signature")
    if not isinstance(signature_data, dict):
        signature_data = {}
    timestamp = signature_data.get("timestamp")
    token = signature_data.get("token")
    signature = signature_data.get("signature")
    if not timestamp or not token or not signature:
        raise _signature_error(
            provider="mailgun",
            reason="missing_signature",
            message="Missing signature data",
            request_id=request_id,
        )

    timestamp_result = validate_webhook_timestamp(timestamp, secrets.timestamp_tolerance_seconds)
    if not timestamp_result.valid:
        raise _signature_error(
            provider="mailgun",
            reason="invalid_timestamp",
            message="Invalid timestamp",
            request_id=request_id,
            error=timestamp_result.error,
        )

    result = verify_mailgun_signature(secrets.mailgun_signing_key, timestamp, token, signature)
    if not result.valid:
        raise _signature_error(
            provider="mailgun",
            reason="invalid_signature",
            message="Invalid signature",
            request_id=request_id,
            error=result.error,
        )
    _mark_verified("mailgun")


def _verify_postmark_request_or_raise(
    *,
    raw_body: bytes,
    request: Request,
    secrets: WebhookSecrets,
    request_id: str | None,
) -> None:
    if not secrets.postmark_token:
        _skip_verification(
            provider="postmark",
            request_id=request_id,
            message="Postmark webhook signature verification skipped: no webhook token configured",
        )
        return

    signature = request.headers.get(_POSTMARK_SIGNATURE_HEADER)
    if not signature:
        raise _signature_error(
            provider="postmark",
            reason="missing_signature",
            message="Missing signature header",
            request_id=request_id,
        )

    result = verify_postmark_signature(secrets.postmark_token, raw_body, signature)
    if not result.valid:
        raise _signature_error(
            provider="postmark",
            reason="invalid_signature",
            message="Invalid signature",
            request_id=request_id,
            error=result.error,
        )
    _mark_verified("postmark")


def _verify_sns_envelope_or_raise(
    *,
    envelope: Any,
    fetch_certificate: CertificateFetcher,
    request_id: str | None,
) -> None:
    if not isinstance(envelope, dict):
        # parse_sns_message acknowledges malformed bodies without processing them.
        return
    if envelope.get("Type") in SNS_CONFIRMATION_TYPES:
        return
    if not envelope.get("Signature") or not envelope.get("SigningCertURL"):
        raise _signature_error(
            provider="ses",
            reason="missing_signature",
            message="Missing signature or certificate URL",
            request_id=request_id,
        )

    result = verify_sns_signature(envelope, fetch_certificate)
    if not result.valid:
        raise _signature_error(
            provider="ses",
            reason="invalid_signature",
            message="Invalid signature",
            request_id=request_id,
            error=result.error,
        )
    _mark_verified("ses")


@router.post("/sendgrid")
async def ingest_sendgrid_webhook(
    request: Request,
    webhook_secrets: WebhookSecrets = Depends(get_webhook_secrets),
    recorder: BounceRecorder = Depends(get_bounce_recorder),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="sendgrid")
    _verify_sendgrid_request_or_raise(
        raw_body=raw_body,
        request=request,
        secrets=webhook_secrets,
        request_id=req_id,
    )

    events = _parse_json_or_raise(raw_body, provider="sendgrid", request_id=req_id)
    if not isinstance(events, list):
        raise _shape_error(provider="sendgrid", request_id=req_id, message="Expected array of events")

    log_event("webhook_received", request_id=req_id, provider_slug="sendgrid", event_count=len(events))
    try:
        result = process_sendgrid_webhook(events, recorder.record_bounce)
    except Exception as exc:
        raise _internal_error(provider="sendgrid", request_id=req_id, exc=exc) from exc
    return _processed_response(provider="sendgrid", result=result, request_id=req_id)


@router.post("/ses")
async def ingest_ses_webhook(
    request: Request,
    fetch_certificate: CertificateFetcher = Depends(get_certificate_fetcher),
    recorder: BounceRecorder = Depends(get_bounce_recorder),
):
    req_id = _request_id(request)
    # SNS posts with Content-Type: text/plain, so the body is always decoded by hand.
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="ses")
    try:
        envelope = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        envelope = None

    _verify_sns_envelope_or_raise(envelope=envelope, fetch_certificate=fetch_certificate, request_id=req_id)

    notification = parse_sns_message(raw_body, request_id=req_id)
    if notification is None:
        log_event(
            "webhook_acknowledged",
            request_id=req_id,
            provider_slug="ses",
            message_type=envelope.get("Type") if isinstance(envelope, dict) else None,
        )
        return {"success": True, "message": "Acknowledged"}

    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug="ses",
        notification_type=notification.get("notificationType"),
    )
    try:
        result = process_ses_webhook(notification, recorder.record_bounce)
    except Exception as exc:
        raise _internal_error(provider="ses", request_id=req_id, exc=exc) from exc
    return _processed_response(provider="ses", result=result, request_id=req_id)


@router.post("/mailgun")
async def ingest_mailgun_webhook(
    request: Request,
    webhook_secrets: WebhookSecrets = Depends(get_webhook_secrets),
    recorder: BounceRecorder = Depends(get_bounce_recorder),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="mailgun")

    payload = _parse_json_or_raise(raw_body, provider="mailgun", request_id=req_id)
    if not isinstance(payload, dict):
        raise _shape_error(provider="mailgun", request_id=req_id, message="Invalid event data")
    # Mailgun signs with fields inside the body, so the body is parsed first.
    _verify_mailgun_payload_or_raise(payload=payload, secrets=webhook_secrets, request_id=req_id)

    event_data = payload.get("event-data") or payload
    if not isinstance(event_data, dict) or not event_data.get("event"):
        raise _shape_error(provider="mailgun", request_id=req_id, message="Invalid event data")

    log_event("webhook_received", request_id=req_id, provider_slug="mailgun", event_type=event_data.get("event"))
    try:
        result = process_mailgun_webhook(event_data, recorder.record_bounce)
    except Exception as exc:
        raise _internal_error(provider="mailgun", request_id=req_id, exc=exc) from exc
    return _processed_response(provider="mailgun", result=result, request_id=req_id)


@router.post("/postmark")
async def ingest_postmark_webhook(
    request: Request,
    webhook_secrets: WebhookSecrets = Depends(get_webhook_secrets),
    recorder: BounceRecorder = Depends(get_bounce_recorder),
):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="postmark")
    _verify_postmark_request_or_raise(
        raw_body=raw_body,
        request=request,
        secrets=webhook_secrets,
        request_id=req_id,
    )

    bounce = _parse_json_or_raise(raw_body, provider="postmark", request_id=req_id)
    if not isinstance(bounce, dict) or not bounce.get("Email"):
        raise _shape_error(provider="postmark", request_id=req_id, message="Invalid bounce data")

    log_event("webhook_received", request_id=req_id, provider_slug="postmark", type_code=bounce.get("TypeCode"))
    try:
        result = process_postmark_webhook(bounce, recorder.record_bounce)
    except Exception as exc:
        raise _internal_error(provider="postmark", request_id=req_id, exc=exc) from exc
    return _processed_response(provider="postmark", result=result, request_id=req_id)


@router.post("/email-bounce", response_model=GenericWebhookResponse)
async def ingest_generic_bounce_webhook(
    request: Request,
    recorder: BounceRecorder = Depends(get_bounce_recorder),
):
    """Compatibility fallback that guesses the provider from the payload shape.

    No signature is checked here because the provider is only known after
    parsing. Treat this path as lower trust than the dedicated endpoints.
    """
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="generic")
    body = _parse_json_or_raise(raw_body, provider="generic", request_id=req_id)

    provider = detect_provider(body)
    notification = None
    if provider == "ses":
        notification = parse_sns_message(body, request_id=req_id) if body.get("Message") else body
        if notification is None:
            # An unreadable SNS message still gets the remaining shape checks.
            provider = detect_provider(body, skip={"ses"})
    log_event(
        "generic_webhook_provider_detected",
        level=logging.WARNING,
        request_id=req_id,
        provider_slug=provider,
        signature_verified=False,
    )
    try:
        if provider == "sendgrid":
            result = process_sendgrid_webhook(body, recorder.record_bounce)
        elif provider == "ses":
            result = process_ses_webhook(notification, recorder.record_bounce)
        elif provider == "mailgun":
            event_data = body.get("event-data") or body
            if not isinstance(event_data, dict):
                provider = None
            else:
                result = process_mailgun_webhook(event_data, recorder.record_bounce)
        elif provider == "postmark":
            result = process_postmark_webhook(body, recorder.record_bounce)
    except Exception as exc:
        raise _internal_error(provider=provider or "generic", request_id=req_id, exc=exc) from exc

    if provider is None:
        raise _shape_error(provider="generic", request_id=req_id, message="Unknown provider format")

    _log_result(provider=provider, result=result, request_id=req_id)
    return GenericWebhookResponse(provider=provider, processed=result.processed, errors=result.errors)


@router.get("/health", response_model=WebhookHealthResponse)
async def webhook_health(webhook_secrets: WebhookSecrets = Depends(get_webhook_secrets)):
    return WebhookHealthResponse(
        status="ok",
        endpoints=WEBHOOK_ENDPOINTS,
        signature_verification=SignatureVerificationStatus(**webhook_secrets.verification_status()),
    )
