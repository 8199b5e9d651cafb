"""
schemas/outreach.py — Pydantic models for campaign, email log and SMTP inputs

Validated inbound payloads for the outreach core. A transport layer builds
these from request bodies; services accept them directly.

Business Rules:
- Campaign name ≤ 255 chars, subject ≤ 500 chars, template non-blank
- min_match_score in [0, 1]
- SMTP port in [1, 65535]; STARTTLS on and implicit SSL off by default
- Plaintext SMTP password only exists on this model, never on a row

Called by: services/campaign_service.py, services/smtp_account_service.py
Depends on: pydantic
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class CampaignCreate(BaseModel):
    cv_id: int
    name: str = Field(max_length=255)
    subject: str = Field(max_length=500)
    body_template: str
    min_match_score: float = Field(default=0.5, ge=0, le=1)
    match_ids: list[int] | None = None
    smtp_account_id: int | None = None

    @field_validator("name", "subject")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field is required")
        return v

    @field_validator("body_template")
    @classmethod
    def template_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Body template is required")
        return v


class CampaignSchedule(BaseModel):
    scheduled_at: datetime


class EmailLogBodyUpdate(BaseModel):
    body: str

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Email body is required")
        return v


class SmtpAccountConfig(BaseModel):
    email: str = Field(max_length=255)
    host: str = Field(max_length=255)
    port: int = Field(ge=1, le=65535)
    username: str = Field(max_length=255)
    password: str
    use_tls: bool = True
    use_ssl: bool = False
    from_name: str | None = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def email_shape(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v

    @field_validator("host", "username", "password")
    @classmethod
    def required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Field is required")
        return v
