from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


BounceType = Literal["soft", "hard", "complaint", "unsubscribe"]
BounceProvider = Literal["sendgrid", "ses", "mailgun", "postmark"]


class BounceEvent(BaseModel):
    email: str
    bounce_type: BounceType
    bounce_sub_type: str | None = None
    diagnostic_code: str | None = None
    notification_id: str | None = None
    provider: BounceProvider


class ProcessingResult(BaseModel):
    processed: int = 0
    errors: list[str] = Field(default_factory=list)


class VerificationResult(BaseModel):
    valid: bool
    error: str | None = None


class GenericWebhookResponse(BaseModel):
    provider: BounceProvider
    processed: int
    errors: list[str]


class SignatureVerificationStatus(BaseModel):
    sendgrid: bool
    mailgun: bool
    postmark: bool
    ses: bool


class WebhookHealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["ok"]
    endpoints: list[str]
    signature_verification: SignatureVerificationStatus = Field(alias="signatureVerification")
