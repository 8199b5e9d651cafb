"""Tenant & user models. Managed outside the outreach core; kept minimal so
tenant-scoped rows have something to reference."""

from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from .base import Base


class Tenant(Base):
    __tablename__ = "tenants"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True)
    status = Column(String(20), default="ACTIVE")  # ACTIVE | SUSPENDED
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    users = relationship("User", back_populates="tenant")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    first_name = Column(String(100))
    last_name = Column(String(100))
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    tenant = relationship("Tenant", back_populates="users")

    __table_args__ = (Index("ix_users_tenant", "tenant_id"),)
