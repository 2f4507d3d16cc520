"""Provider payload normalizers.

Each ``process_*`` function turns one provider's native payload into zero or
more ``BounceEvent`` records and hands each one to ``record_bounce`` straight
away. A failure on one event is collected into ``errors`` and the remaining
events are still processed.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from src.domain.normalization import (
    classify_mailgun_event,
    classify_postmark_bounce,
    classify_sendgrid_event,
    classify_ses_bounce,
)
from src.domain.signatures import SNS_CONFIRMATION_TYPES, SNS_NOTIFICATION_TYPE
from src.models.webhooks import BounceEvent, ProcessingResult
from src.observability import log_event


RecordBounce = Callable[[BounceEvent], None]


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _first_present(*values: Any) -> str | None:
    for value in values:
        text = _optional_str(value)
        if text is not None:
            return text
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def process_sendgrid_webhook(events: list[Any], record_bounce: RecordBounce) -> ProcessingResult:
    result = ProcessingResult()
    for event in events:
        if not isinstance(event, dict):
            result.errors.append(f"Failed to process event: expected an object, got {type(event).__name__}")
            continue
        bounce_type = classify_sendgrid_event(event.get("event"), event.get("type"))
        if bounce_type is None:
            continue
        try:
            record_bounce(
                BounceEvent(
                    email=event.get("email"),
                    bounce_type=bounce_type,
                    bounce_sub_type=_first_present(event.get("type"), event.get("event")),
                    diagnostic_code=_first_present(event.get("reason"), event.get("status")),
                    notification_id=_first_present(event.get("sg_event_id"), event.get("sg_message_id")),
                    provider="sendgrid",
                )
            )
        except Exception as exc:
            result.errors.append(f"Failed to process event for {event.get('email')}: {exc}")
            continue
        result.processed += 1
    return result


def _recipient_list(container: dict[str, Any], key: str) -> list[Any]:
    recipients = container.get(key)
    if recipients is None:
        return []
    if not isinstance(recipients, list):
        raise ValueError(f"{key} is not a list")
    return recipients


def process_ses_webhook(notification: dict[str, Any], record_bounce: RecordBounce) -> ProcessingResult:
    result = ProcessingResult()
    notification_type = notification.get("notificationType")
    bounce = notification.get("bounce")
    complaint = notification.get("complaint")

    try:
        if notification_type == "Bounce" and isinstance(bounce, dict):
            bounce_type = classify_ses_bounce(bounce.get("bounceType"))
            for recipient in _recipient_list(bounce, "bouncedRecipients"):
                recipient = _as_dict(recipient)
                email = recipient.get("emailAddress")
                try:
                    record_bounce(
                        BounceEvent(
                            email=email,
                            bounce_type=bounce_type,
                            bounce_sub_type=_optional_str(bounce.get("bounceSubType")),
                            diagnostic_code=_optional_str(recipient.get("diagnosticCode")),
                            notification_id=_optional_str(bounce.get("feedbackId")),
                            provider="ses",
                        )
                    )
                except Exception as exc:
                    result.errors.append(f"Failed to process bounce for {email}: {exc}")
                    continue
                result.processed += 1
        elif notification_type == "Complaint" and isinstance(complaint, dict):
            for recipient in _recipient_list(complaint, "complainedRecipients"):
                email = _as_dict(recipient).get("emailAddress")
                try:
                    record_bounce(
                        BounceEvent(
                            email=email,
                            bounce_type="complaint",
                            bounce_sub_type=_optional_str(complaint.get("complaintFeedbackType")) or "complaint",
                            notification_id=_optional_str(complaint.get("feedbackId")),
                            provider="ses",
                        )
                    )
                except Exception as exc:
                    result.errors.append(f"Failed to process complaint for {email}: {exc}")
                    continue
                result.processed += 1
        # Delivery and any other notification types carry no bounce signal.
    except ValueError as exc:
        result.errors.append(f"Failed to process SES notification: {exc}")

    return result


def process_mailgun_webhook(event: dict[str, Any], record_bounce: RecordBounce) -> ProcessingResult:
    bounce_type = classify_mailgun_event(event.get("event"), event.get("severity"))
    if bounce_type is None:
        return ProcessingResult(processed=0, errors=["Unknown event type"])

    delivery_status = _as_dict(event.get("delivery-status"))
    headers = _as_dict(_as_dict(event.get("message")).get("headers"))
    try:
        record_bounce(
            BounceEvent(
                email=event.get("recipient"),
                bounce_type=bounce_type,
                bounce_sub_type=_first_present(event.get("severity"), event.get("event")),
                diagnostic_code=_first_present(
                    delivery_status.get("message"),
                    delivery_status.get("description"),
                    event.get("reason"),
                ),
                notification_id=_optional_str(headers.get("message-id")),
                provider="mailgun",
            )
        )
    except Exception as exc:
        return ProcessingResult(
            processed=0,
            errors=[f"Failed to process Mailgun event for {event.get('recipient')}: {exc}"],
        )
    return ProcessingResult(processed=1)


def process_postmark_webhook(bounce: dict[str, Any], record_bounce: RecordBounce) -> ProcessingResult:
    bounce_type = classify_postmark_bounce(bounce.get("TypeCode"), bounce.get("Type"))
    try:
        record_bounce(
            BounceEvent(
                email=bounce.get("Email"),
                bounce_type=bounce_type,
                bounce_sub_type=_first_present(bounce.get("Name"), bounce.get("Type")),
                diagnostic_code=_first_present(bounce.get("Description"), bounce.get("Details")),
                notification_id=_optional_str(bounce.get("MessageID")),
                provider="postmark",
            )
        )
    except Exception as exc:
        return ProcessingResult(
            processed=0,
            errors=[f"Failed to process Postmark bounce for {bounce.get('Email')}: {exc}"],
        )
    return ProcessingResult(processed=1)


def parse_sns_message(body: str | bytes | dict[str, Any], *, request_id: str | None = None) -> dict[str, Any] | None:
    """Unwrap an SNS envelope into the SES notification it carries.

    Returns ``None`` for subscription confirmations, malformed bodies and any
    envelope type that does not carry a notification.
    """
    try:
        sns_message = body if isinstance(body, dict) else json.loads(body)
        if not isinstance(sns_message, dict):
            return None

        message_type = sns_message.get("Type")
        if message_type in SNS_CONFIRMATION_TYPES:
            # Logged for manual confirmation; the URL is never fetched from here.
            log_event(
                "sns_subscription_confirmation",
                request_id=request_id,
                message_type=message_type,
                topic_arn=sns_message.get("TopicArn"),
                subscribe_url=sns_message.get("SubscribeURL"),
            )
            return None

        if message_type == SNS_NOTIFICATION_TYPE:
            notification = json.loads(sns_message.get("Message") or "")
            return notification if isinstance(notification, dict) else None
    except (TypeError, ValueError) as exc:
        log_event(
            "sns_message_parse_failed",
            level=logging.WARNING,
            request_id=request_id,
            error=str(exc),
        )
    return None
