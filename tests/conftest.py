"""
conftest.py — Shared Test Fixtures for the outreach core

Provides an in-memory SQLite database shared by the test session and every
background worker session, a throwaway storage root, and factory fixtures
for the core models (Tenant, Professor, CV, SmtpAccount, ...).

Business Rules:
- All tests run against an isolated in-memory DB (no prod data risk)
- Workers open their own sessions via scholar.database.SessionLocal; it is
  patched to the test sessionmaker so they see the same DB
- Files land under tmp_path, never under ./uploads
- Background tasks and cached mail senders never leak between tests

Called by: all test files via pytest autodiscovery
Depends on: scholar.models (Base), scholar.database, scholar.tasks
"""

import asyncio
import os
import threading

os.environ["TESTING"] = "1"  # Must be set before importing scholar modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENCRYPTION_KEY"] = "0123456789abcdef0123456789abcdef"
os.environ["LLM_API_KEY"] = "test-llm-key"

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from scholar import tasks
from scholar.config import settings
from scholar.constants import CampaignStatus, CVStatus, EmailStatus, SmtpStatus
from scholar.models import (
    CV,
    Base,
    CvKeyword,
    EmailCampaign,
    EmailLog,
    MatchResult,
    Professor,
    SmtpAccount,
    Tenant,
    University,
    User,
)
from scholar.services import mail_sender, storage_service
from scholar.services.encryption_service import encrypt_value

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default, turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, point worker sessions at them, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        with patch("scholar.database.SessionLocal", TestSessionLocal):
            yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def storage_root(tmp_path, monkeypatch):
    """Route CV blobs to a per-test directory."""
    root = tmp_path / "uploads"
    monkeypatch.setattr(settings, "storage_base_path", str(root))
    return root


@pytest.fixture(autouse=True)
def _isolate_background():
    """No leftover tasks or cached SMTP senders between tests."""
    yield
    tasks.cancel_all()
    tasks._background.clear()
    tasks.unbind_loop()
    mail_sender.clear_cache()


@pytest.fixture()
def worker_loop():
    """An event loop on its own thread, bound for off-loop task dispatch."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    tasks.bind_loop(loop)
    try:
        yield loop
    finally:
        tasks.unbind_loop()
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5)
        loop.close()


@pytest.fixture()
def tenant(db_session: Session) -> Tenant:
    t = Tenant(name="Vision Lab", email="admin@visionlab.example")
    db_session.add(t)
    db_session.commit()
    db_session.refresh(t)
    return t


@pytest.fixture()
def other_tenant(db_session: Session) -> Tenant:
    t = Tenant(name="Other Lab", email="admin@otherlab.example")
    db_session.add(t)
    db_session.commit()
    db_session.refresh(t)
    return t


@pytest.fixture()
def test_user(db_session: Session, tenant: Tenant) -> User:
    user = User(tenant_id=tenant.id, email="student@visionlab.example", first_name="Sam", last_name="Reyes")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def university(db_session: Session) -> University:
    uni = University(name="Massachusetts Institute of Technology", country="USA", rank_global=1)
    db_session.add(uni)
    db_session.commit()
    db_session.refresh(uni)
    return uni


@pytest.fixture()
def professors(db_session: Session, university: University) -> tuple[Professor, Professor]:
    """P1 works on transformers, P2 on fluid dynamics."""
    p1 = Professor(
        university_id=university.id,
        email="ada.lovelace@mit.example",
        first_name="Ada",
        last_name="Lovelace",
        department="Computer Science",
        research_area="Transformer architectures for NLP",
        publications="Attention in practice (2024)",
    )
    p2 = Professor(
        university_id=university.id,
        email="osborne.reynolds@mit.example",
        first_name="Osborne",
        last_name="Reynolds",
        department="Mechanical Engineering",
        research_area="Fluid dynamics",
    )
    db_session.add_all([p1, p2])
    db_session.commit()
    return p1, p2


def _add_cv_keywords(db: Session, cv: CV, ranked: list[tuple[str, str]]) -> None:
    for keyword, weight in ranked:
        db.add(CvKeyword(
            tenant_id=cv.tenant_id,
            cv_id=cv.id,
            keyword=keyword,
            normalized_keyword=keyword.lower(),
            weight=Decimal(weight),
            frequency=1,
        ))


@pytest.fixture()
def completed_cv(db_session: Session, tenant: Tenant) -> CV:
    """A parsed CV with three ranked keywords and a real blob on disk."""
    content = b"%PDF-1.4 fake cv bytes"
    rel_path = storage_service.store_file(content, tenant.id, "sam_reyes_cv.pdf")
    cv = CV(
        tenant_id=tenant.id,
        original_filename="sam_reyes_cv.pdf",
        stored_filename=rel_path.rsplit("/", 1)[-1],
        file_path=rel_path,
        file_size_bytes=len(content),
        mime_type="application/pdf",
        parsing_status=CVStatus.COMPLETED,
        parsed_at=datetime.now(timezone.utc),
    )
    db_session.add(cv)
    db_session.flush()
    _add_cv_keywords(db_session, cv, [
        ("transformer", "1.0000"),
        ("pytorch", "0.5500"),
        ("reinforcement learning", "0.1000"),
    ])
    db_session.commit()
    db_session.refresh(cv)
    return cv


@pytest.fixture()
def smtp_account(db_session: Session, tenant: Tenant) -> SmtpAccount:
    account = SmtpAccount(
        tenant_id=tenant.id,
        email="sam@visionlab.example",
        smtp_host="smtp.visionlab.example",
        smtp_port=587,
        username="sam",
        encrypted_password=encrypt_value("app-password-1234"),
        from_name="Sam Reyes",
        status=SmtpStatus.ACTIVE,
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture()
def make_match(db_session: Session):
    """Factory: MatchResult for (cv, professor) with a given score."""

    def _make(cv: CV, professor: Professor, score: str, matched: str = "transformer") -> MatchResult:
        match = MatchResult(
            tenant_id=cv.tenant_id,
            cv_id=cv.id,
            professor_id=professor.id,
            match_score=Decimal(score),
            matched_keywords=matched,
            total_cv_keywords=3,
            total_professor_keywords=4,
            total_matched_keywords=len(matched.split(", ")),
            computed_at=datetime.now(timezone.utc),
        )
        db_session.add(match)
        db_session.commit()
        db_session.refresh(match)
        return match

    return _make


@pytest.fixture()
def make_campaign(db_session: Session, smtp_account: SmtpAccount):
    """Factory: campaign on a CV with one PENDING log per given professor."""

    def _make(cv: CV, recipients: list[Professor], *, status: str = CampaignStatus.DRAFT, **kw) -> EmailCampaign:
        campaign = EmailCampaign(
            tenant_id=cv.tenant_id,
            cv_id=cv.id,
            smtp_account_id=smtp_account.id,
            name=kw.pop("name", "Spring outreach"),
            subject=kw.pop("subject", "Prospective PhD student"),
            body_template=kw.pop("body_template", "Dear {{professor_name}},"),
            min_match_score=Decimal(kw.pop("min_match_score", "0.5")),
            status=status,
            total_recipients=len(recipients),
            **kw,
        )
        db_session.add(campaign)
        db_session.flush()
        for prof in recipients:
            db_session.add(EmailLog(
                tenant_id=cv.tenant_id,
                campaign_id=campaign.id,
                professor_id=prof.id,
                recipient_email=prof.email,
                subject=campaign.subject,
                body=f"Dear {prof.full_name}, hello.",
                status=EmailStatus.PENDING,
                retry_count=0,
            ))
        db_session.commit()
        db_session.refresh(campaign)
        return campaign

    return _make


@pytest.fixture()
def fake_sender():
    """Stand-in MailSender; .send is a MagicMock recording messages."""
    sender = MagicMock(spec=mail_sender.MailSender)
    with patch("scholar.services.mail_sender.get_mail_sender", return_value=sender):
        yield sender


@pytest.fixture()
def make_professors(db_session: Session, university: University):
    """Factory: `count` ACTIVE professors all working on transformers."""

    def _make(count: int) -> list[Professor]:
        profs = [
            Professor(
                university_id=university.id,
                email=f"prof{i}@mit.example",
                first_name=f"Prof{i}",
                last_name="Example",
                research_area="Transformer models",
            )
            for i in range(count)
        ]
        db_session.add_all(profs)
        db_session.commit()
        return profs

    return _make
