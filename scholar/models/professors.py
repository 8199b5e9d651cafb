"""Global professor catalog: universities, professors and their keywords.

Not tenant-scoped. Populated by an external import; the core only reads it.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from ..constants import KeywordSource, ProfessorStatus
from ..database import UTCDateTime
from .base import Base


class University(Base):
    __tablename__ = "universities"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    country = Column(String(100))
    website = Column(String(500))
    rank_global = Column(Integer)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    professors = relationship("Professor", back_populates="university")


class Professor(Base):
    __tablename__ = "professors"
    id = Column(Integer, primary_key=True)
    university_id = Column(Integer, ForeignKey("universities.id"))
    email = Column(String(255), unique=True, nullable=False)
    first_name = Column(String(100))
    last_name = Column(String(100))
    department = Column(String(255))
    research_area = Column(Text)
    publications = Column(Text)
    profile_url = Column(String(500))
    status = Column(String(20), default=ProfessorStatus.ACTIVE)  # ACTIVE | INACTIVE | DELETED
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    university = relationship("University", back_populates="professors")
    keywords = relationship(
        "ProfessorKeyword", back_populates="professor", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_professors_status", "status"),
        Index("ix_professors_university", "university_id"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class ProfessorKeyword(Base):
    __tablename__ = "professor_keywords"
    id = Column(Integer, primary_key=True)
    professor_id = Column(
        Integer, ForeignKey("professors.id", ondelete="CASCADE"), nullable=False
    )
    keyword = Column(String(255), nullable=False)
    normalized_keyword = Column(String(255), nullable=False)
    weight = Column(Numeric(5, 4), default=1)
    source = Column(String(20), default=KeywordSource.RESEARCH_AREA)  # RESEARCH_AREA | PUBLICATION | MANUAL

    professor = relationship("Professor", back_populates="keywords")

    __table_args__ = (
        Index(
            "ix_professor_keywords_prof_norm",
            "professor_id",
            "normalized_keyword",
            unique=True,
        ),
    )
