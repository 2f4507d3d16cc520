from __future__ import annotations

from typing import Any, Collection

from src.models.webhooks import BounceProvider, BounceType


SENDGRID_UNSUBSCRIBE_EVENTS = {"unsubscribe", "group_unsubscribe"}
POSTMARK_SPAM_COMPLAINT_TYPE_CODE = 512
POSTMARK_HARD_BOUNCE_TYPE_CODE = 1


def classify_sendgrid_event(event: str | None, bounce_kind: str | None = None) -> BounceType | None:
    if event == "bounce":
        return "soft" if bounce_kind == "blocked" else "hard"
    if event == "dropped":
        return "hard"
    if event == "spamreport":
        return "complaint"
    if event in SENDGRID_UNSUBSCRIBE_EVENTS:
        return "unsubscribe"
    return None


def classify_ses_bounce(bounce_type: str | None) -> BounceType:
    return "hard" if bounce_type == "Permanent" else "soft"


def classify_mailgun_event(event: str | None, severity: str | None = None) -> BounceType | None:
    if event == "failed":
        return "hard" if severity == "permanent" else "soft"
    if event == "complained":
        return "complaint"
    if event == "unsubscribed":
        return "unsubscribe"
    return None


def classify_postmark_bounce(type_code: Any, type_name: str | None = None) -> BounceType:
    # Postmark TypeCodes: 1 = HardBounce, 2 = Transient, 512 = SpamComplaint
    if isinstance(type_code, bool):  # JSON true is not TypeCode 1
        type_code = None
    if type_code == POSTMARK_SPAM_COMPLAINT_TYPE_CODE:
        return "complaint"
    if type_code == POSTMARK_HARD_BOUNCE_TYPE_CODE or type_name == "HardBounce":
        return "hard"
    return "soft"


def detect_provider(body: Any, *, skip: Collection[str] = ()) -> BounceProvider | None:
    """Best-effort provider sniffing for the unauthenticated fallback endpoint.

    The shapes are not formally disjoint, so the checks run in a fixed priority
    order and the first match wins. Providers named in ``skip`` are passed over.
    """
    if isinstance(body, list):
        first = body[0] if body else None
        if isinstance(first, dict) and first.get("sg_event_id"):
            return "sendgrid"
        return None
    if not isinstance(body, dict):
        return None
    if "ses" not in skip and (body.get("Type") == "Notification" or body.get("notificationType")):
        return "ses"
    if "mailgun" not in skip and (body.get("event-data") or body.get("event") in {"failed", "complained"}):
        return "mailgun"
    if "postmark" not in skip and ("TypeCode" in body or body.get("BouncedAt")):
        return "postmark"
    return None
