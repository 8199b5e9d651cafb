"""Uploaded CVs and the keywords extracted from them."""

from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship

from ..constants import CVStatus
from ..database import UTCDateTime
from .base import Base


class CV(Base):
    __tablename__ = "cvs"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    uploaded_by_id = Column(Integer, ForeignKey("users.id"))
    original_filename = Column(String(255), nullable=False)
    stored_filename = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)  # {tenant_id}/{uuid}{ext}, relative to storage root
    file_size_bytes = Column(Integer, nullable=False)
    mime_type = Column(String(150), nullable=False)
    parsing_status = Column(
        String(20), default=CVStatus.PENDING, nullable=False
    )  # PENDING | IN_PROGRESS | COMPLETED | FAILED
    parsed_at = Column(UTCDateTime)  # set iff parsing_status == COMPLETED
    uploaded_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    uploaded_by = relationship("User", foreign_keys=[uploaded_by_id])
    keywords = relationship(
        "CvKeyword",
        back_populates="cv",
        cascade="all, delete-orphan",
        order_by="(CvKeyword.weight.desc(), CvKeyword.id)",
    )
    matches = relationship(
        "MatchResult", back_populates="cv", cascade="all, delete-orphan"
    )
    campaigns = relationship(
        "EmailCampaign", back_populates="cv", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_cvs_tenant", "tenant_id"),
        Index("ix_cvs_tenant_status", "tenant_id", "parsing_status"),
    )


class CvKeyword(Base):
    __tablename__ = "cv_keywords"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    cv_id = Column(Integer, ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False)
    keyword = Column(String(255), nullable=False)
    normalized_keyword = Column(String(255), nullable=False)
    weight = Column(Numeric(5, 4), nullable=False)  # rank weight, 1.0000 → 0.1000
    frequency = Column(Integer, default=1)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    cv = relationship("CV", back_populates="keywords")

    __table_args__ = (
        Index("ix_cv_keywords_cv_norm", "cv_id", "normalized_keyword", unique=True),
        Index("ix_cv_keywords_tenant", "tenant_id"),
    )
