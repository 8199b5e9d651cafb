"""SMTP accounts, outreach campaigns, per-recipient email logs, blacklist."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ..constants import (
    ALTERNATE_BODY_SEPARATOR,
    CampaignStatus,
    EmailStatus,
    SmtpStatus,
)
from ..database import UTCDateTime
from .base import Base


class SmtpAccount(Base):
    """One outbound SMTP server per tenant. Password stored as AES-GCM ciphertext."""

    __tablename__ = "smtp_accounts"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, unique=True)
    email = Column(String(255), nullable=False)
    smtp_host = Column(String(255), nullable=False)
    smtp_port = Column(Integer, nullable=False)
    username = Column(String(255), nullable=False)
    encrypted_password = Column(Text, nullable=False)
    use_tls = Column(Boolean, default=True)
    use_ssl = Column(Boolean, default=False)
    from_name = Column(String(255))
    status = Column(String(20), default=SmtpStatus.ACTIVE)  # ACTIVE | INACTIVE
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class EmailCampaign(Base):
    __tablename__ = "email_campaigns"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    cv_id = Column(Integer, ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False)
    smtp_account_id = Column(Integer, ForeignKey("smtp_accounts.id"))
    name = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    body_template = Column(Text, nullable=False)
    min_match_score = Column(Numeric(5, 4), default=0.5)
    status = Column(
        String(20), default=CampaignStatus.DRAFT, nullable=False
    )  # DRAFT | SCHEDULED | IN_PROGRESS | COMPLETED | FAILED | CANCELLED
    total_recipients = Column(Integer, default=0)
    sent_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    scheduled_at = Column(UTCDateTime)
    started_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    cv = relationship("CV", back_populates="campaigns")
    smtp_account = relationship("SmtpAccount")
    logs = relationship(
        "EmailLog",
        back_populates="campaign",
        cascade="all, delete-orphan",
        order_by="EmailLog.id",
    )

    __table_args__ = (
        Index("ix_email_campaigns_tenant", "tenant_id"),
        Index("ix_email_campaigns_status_sched", "status", "scheduled_at"),
        Index("ix_email_campaigns_cv", "cv_id"),
    )


class EmailLog(Base):
    __tablename__ = "email_logs"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    campaign_id = Column(
        Integer, ForeignKey("email_campaigns.id", ondelete="CASCADE"), nullable=False
    )
    professor_id = Column(Integer, ForeignKey("professors.id"), nullable=False)
    match_result_id = Column(
        Integer, ForeignKey("match_results.id", ondelete="SET NULL")
    )
    recipient_email = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    body = Column(Text)
    alternate_bodies = Column(Text)  # extra drafts joined by ###SPLIT###
    status = Column(
        String(20), default=EmailStatus.PENDING, nullable=False
    )  # PENDING | SENDING | SENT | FAILED | BLACKLISTED
    error_message = Column(Text)
    retry_count = Column(Integer, default=0)
    sent_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    campaign = relationship("EmailCampaign", back_populates="logs")
    professor = relationship("Professor")
    match_result = relationship("MatchResult")

    __table_args__ = (
        Index("ix_email_logs_campaign_prof", "campaign_id", "professor_id", unique=True),
        Index("ix_email_logs_campaign_status", "campaign_id", "status"),
        Index("ix_email_logs_tenant", "tenant_id"),
    )

    @property
    def alternates(self) -> list[str]:
        if not self.alternate_bodies:
            return []
        return self.alternate_bodies.split(ALTERNATE_BODY_SEPARATOR)


class EmailBlacklist(Base):
    """Opt-out list. tenant_id NULL means the entry applies to every tenant."""

    __tablename__ = "email_blacklist"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"))
    email = Column(String(255), nullable=False)
    reason = Column(String(500))
    blacklisted_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (Index("ix_email_blacklist_email", "email"),)
