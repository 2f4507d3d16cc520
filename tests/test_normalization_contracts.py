from src.domain.normalization import (
    classify_mailgun_event,
    classify_postmark_bounce,
    classify_sendgrid_event,
    classify_ses_bounce,
    detect_provider,
)


def test_sendgrid_event_classification_contract():
    assert classify_sendgrid_event("bounce", "bounce") == "hard"
    assert classify_sendgrid_event("bounce", None) == "hard"
    assert classify_sendgrid_event("bounce", "blocked") == "soft"
    assert classify_sendgrid_event("dropped") == "hard"
    assert classify_sendgrid_event("spamreport") == "complaint"
    assert classify_sendgrid_event("unsubscribe") == "unsubscribe"
    assert classify_sendgrid_event("group_unsubscribe") == "unsubscribe"
    assert classify_sendgrid_event("delivered") is None
    assert classify_sendgrid_event("open") is None
    assert classify_sendgrid_event(None) is None


def test_ses_bounce_classification_contract():
    assert classify_ses_bounce("Permanent") == "hard"
    assert classify_ses_bounce("Transient") == "soft"
    assert classify_ses_bounce("Undetermined") == "soft"
    assert classify_ses_bounce(None) == "soft"


def test_mailgun_event_classification_contract():
    assert classify_mailgun_event("failed", "permanent") == "hard"
    assert classify_mailgun_event("failed", "temporary") == "soft"
    assert classify_mailgun_event("failed", None) == "soft"
    assert classify_mailgun_event("complained") == "complaint"
    assert classify_mailgun_event("unsubscribed") == "unsubscribe"
    assert classify_mailgun_event("delivered") is None


def test_postmark_bounce_classification_contract():
    assert classify_postmark_bounce(512, "SpamComplaint") == "complaint"
    assert classify_postmark_bounce(1, "HardBounce") == "hard"
    assert classify_postmark_bounce(1, None) == "hard"
    assert classify_postmark_bounce(None, "HardBounce") == "hard"
    assert classify_postmark_bounce(2, "Transient") == "soft"
    assert classify_postmark_bounce(4096, "SoftBounce") == "soft"
    assert classify_postmark_bounce(None, None) == "soft"
    assert classify_postmark_bounce(True, None) == "soft"
    assert classify_postmark_bounce(True, "HardBounce") == "hard"


def test_detect_provider_priority_order():
    assert detect_provider([{"sg_event_id": "1", "event": "bounce"}]) == "sendgrid"
    assert detect_provider({"Type": "Notification", "Message": "{}"}) == "ses"
    assert detect_provider({"notificationType": "Bounce"}) == "ses"
    assert detect_provider({"event-data": {"event": "failed"}}) == "mailgun"
    assert detect_provider({"event": "failed", "recipient": "a@x.com"}) == "mailgun"
    assert detect_provider({"event": "complained"}) == "mailgun"
    assert detect_provider({"TypeCode": 1, "Email": "a@x.com"}) == "postmark"
    assert detect_provider({"BouncedAt": "2024-01-01T00:00:00Z"}) == "postmark"
    # SES wins over Postmark when both heuristics match.
    assert detect_provider({"notificationType": "Bounce", "TypeCode": 1}) == "ses"
    assert detect_provider({"notificationType": "Bounce", "TypeCode": 1}, skip={"ses"}) == "postmark"
    assert detect_provider({"Type": "Notification", "Message": "{broken"}, skip={"ses"}) is None


def test_detect_provider_unknown_shapes():
    assert detect_provider([]) is None
    assert detect_provider([{"event": "bounce"}]) is None
    assert detect_provider({"event": "unsubscribed"}) is None
    assert detect_provider({"hello": "world"}) is None
    assert detect_provider("plain string") is None
