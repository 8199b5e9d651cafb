"""CV ↔ professor match results."""

from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Index, Integer, Numeric, Text
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


class MatchResult(Base):
    __tablename__ = "match_results"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    cv_id = Column(Integer, ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False)
    professor_id = Column(Integer, ForeignKey("professors.id"), nullable=False)
    match_score = Column(Numeric(8, 6), nullable=False)  # 0..1, 6dp half-up
    matched_keywords = Column(Text)  # "a, b, c" in CV rank order
    total_cv_keywords = Column(Integer, default=0)
    total_professor_keywords = Column(Integer, default=0)
    total_matched_keywords = Column(Integer, default=0)
    computed_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    cv = relationship("CV", back_populates="matches")
    professor = relationship("Professor")

    __table_args__ = (
        Index("ix_match_results_cv_prof", "cv_id", "professor_id", unique=True),
        Index("ix_match_results_cv_score", "cv_id", match_score.desc()),
        Index("ix_match_results_tenant", "tenant_id"),
    )
