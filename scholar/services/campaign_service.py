"""
campaign_service.py — Outreach campaign lifecycle, email logs and AI drafts.

Business Rules:
- A campaign targets one CV's matches with score ≥ min_match_score (or an
  explicit list of match ids from that CV)
- Creation seeds one PENDING EmailLog per recipient: professors deduped,
  blacklisted addresses skipped, existing (campaign, professor) pairs kept
- Template tokens {{professor_name}}, {{university}}, {{matched_keywords}}
  are replaced literally and case-sensitively
- Draft generation runs after commit; it rewrites only PENDING logs whose
  body is empty, "AI_GENERATED" or still the untouched template rendering
- Manual edit / regenerate only while the log is PENDING
- schedule: DRAFT only. cancel: SCHEDULED only. delete: not while IN_PROGRESS
- Auto-campaign (AUTO_CAMPAIGN_ENABLED): top 50 matches ≥ 0.40, AI bodies,
  never executed automatically

Called by: matching_service (auto-campaign), campaign_executor, transport layer
Depends on: llm_client, tasks, models (EmailCampaign, EmailLog, MatchResult, ...)
"""

from datetime import datetime, timezone
from decimal import Decimal

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from .. import tasks
from ..config import settings
from ..constants import (
    AI_GENERATED,
    ALTERNATE_BODY_SEPARATOR,
    CampaignStatus,
    EmailStatus,
)
from ..exceptions import (
    AuthorizationError,
    LLMError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..models import (
    CV,
    CvKeyword,
    EmailBlacklist,
    EmailCampaign,
    EmailLog,
    MatchResult,
    Professor,
    SmtpAccount,
)
from ..schemas import CampaignCreate
from . import llm_client
from .smtp_account_service import find_active_account

AUTO_CAMPAIGN_SUBJECT = "Research Inquiry regarding interests matching your recent work"


# ── Lookups ──────────────────────────────────────────────────────────


def get_campaign(db: Session, campaign_id: int, tenant_id: int) -> EmailCampaign:
    campaign = (
        db.query(EmailCampaign)
        .filter(EmailCampaign.id == campaign_id, EmailCampaign.tenant_id == tenant_id)
        .first()
    )
    if campaign is None:
        raise NotFoundError("EmailCampaign", campaign_id)
    return campaign


def list_campaigns(
    db: Session, tenant_id: int, *, limit: int = 50, offset: int = 0
) -> list[EmailCampaign]:
    return (
        db.query(EmailCampaign)
        .filter(EmailCampaign.tenant_id == tenant_id)
        .order_by(EmailCampaign.created_at.desc(), EmailCampaign.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def list_campaign_logs(
    db: Session, campaign_id: int, tenant_id: int, *, limit: int = 100, offset: int = 0
) -> list[EmailLog]:
    get_campaign(db, campaign_id, tenant_id)
    return (
        db.query(EmailLog)
        .filter(EmailLog.campaign_id == campaign_id, EmailLog.tenant_id == tenant_id)
        .order_by(EmailLog.id)
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_log(db: Session, log_id: int, tenant_id: int) -> EmailLog:
    """Fetch a log; a log owned by another tenant is an authorization failure."""
    log_entry = db.get(EmailLog, log_id)
    if log_entry is None:
        raise NotFoundError("EmailLog", log_id)
    if log_entry.tenant_id != tenant_id:
        logger.warning("Tenant {} tried to access email log {} of another tenant", tenant_id, log_id)
        raise AuthorizationError(f"EmailLog {log_id} belongs to another tenant")
    return log_entry


def is_blacklisted(db: Session, email: str, tenant_id: int) -> bool:
    """Exact-match lookup against the tenant's and the global blacklist."""
    hit = (
        db.query(EmailBlacklist.id)
        .filter(
            EmailBlacklist.email == email,
            or_(EmailBlacklist.tenant_id == tenant_id, EmailBlacklist.tenant_id.is_(None)),
        )
        .first()
    )
    return hit is not None


def qualifying_matches(db: Session, campaign: EmailCampaign) -> list[MatchResult]:
    """CV matches at or above the campaign threshold, best first."""
    return (
        db.query(MatchResult)
        .options(joinedload(MatchResult.professor).joinedload(Professor.university))
        .filter(
            MatchResult.cv_id == campaign.cv_id,
            MatchResult.tenant_id == campaign.tenant_id,
            MatchResult.match_score >= campaign.min_match_score,
        )
        .order_by(MatchResult.match_score.desc(), MatchResult.id)
        .all()
    )


# ── Template & logs ──────────────────────────────────────────────────


def render_template(template: str, professor: Professor, match: MatchResult | None) -> str:
    university = professor.university.name if professor.university else ""
    return (
        (template or "")
        .replace("{{professor_name}}", professor.full_name)
        .replace("{{university}}", university)
        .replace("{{matched_keywords}}", (match.matched_keywords if match else "") or "")
    )


def initialize_logs(db: Session, campaign: EmailCampaign, matches: list[MatchResult]) -> list[int]:
    """Seed PENDING logs for new recipients. Returns new log ids in insertion order."""
    existing = {
        pid
        for (pid,) in db.query(EmailLog.professor_id)
        .filter(EmailLog.campaign_id == campaign.id)
        .all()
    }

    new_logs: list[EmailLog] = []
    seen: set[int] = set()
    for match in matches:
        professor = match.professor
        if professor is None or professor.id in seen or professor.id in existing:
            continue
        seen.add(professor.id)
        if is_blacklisted(db, professor.email, campaign.tenant_id):
            logger.info("Skipping blacklisted recipient {} for campaign {}", professor.email, campaign.id)
            continue
        new_logs.append(EmailLog(
            tenant_id=campaign.tenant_id,
            campaign_id=campaign.id,
            professor_id=professor.id,
            match_result_id=match.id,
            recipient_email=professor.email,
            subject=campaign.subject,
            body=render_template(campaign.body_template, professor, match),
            status=EmailStatus.PENDING,
            retry_count=0,
        ))

    db.add_all(new_logs)
    db.flush()
    logger.info("Campaign {}: {} email logs initialized", campaign.id, len(new_logs))
    return [entry.id for entry in new_logs]


def _explicit_matches(
    db: Session, cv_id: int, tenant_id: int, match_ids: list[int]
) -> list[MatchResult]:
    matches = (
        db.query(MatchResult)
        .options(joinedload(MatchResult.professor).joinedload(Professor.university))
        .filter(MatchResult.id.in_(match_ids))
        .all()
    )
    by_id = {m.id: m for m in matches}
    missing = [mid for mid in match_ids if mid not in by_id]
    if missing:
        raise NotFoundError("MatchResult", missing[0])
    for m in matches:
        if m.tenant_id != tenant_id:
            raise AuthorizationError(f"MatchResult {m.id} belongs to another tenant")
        if m.cv_id != cv_id:
            raise ValidationError(f"MatchResult {m.id} does not belong to CV {cv_id}")
    # Keep caller order, drop repeats
    ordered, seen = [], set()
    for mid in match_ids:
        if mid not in seen:
            seen.add(mid)
            ordered.append(by_id[mid])
    return ordered


# ── Creation ─────────────────────────────────────────────────────────


def create_campaign(db: Session, tenant_id: int, payload: CampaignCreate) -> EmailCampaign:
    """Create a DRAFT campaign, seed its logs and queue draft generation."""
    cv = db.query(CV).filter(CV.id == payload.cv_id, CV.tenant_id == tenant_id).first()
    if cv is None:
        raise NotFoundError("CV", payload.cv_id)

    if payload.smtp_account_id is not None:
        smtp_account = db.get(SmtpAccount, payload.smtp_account_id)
        if smtp_account is None:
            raise NotFoundError("SmtpAccount", payload.smtp_account_id)
        if smtp_account.tenant_id != tenant_id:
            raise AuthorizationError("SMTP account belongs to another tenant")
    else:
        smtp_account = find_active_account(db, tenant_id)

    campaign = EmailCampaign(
        tenant_id=tenant_id,
        cv_id=cv.id,
        smtp_account_id=smtp_account.id if smtp_account else None,
        name=payload.name,
        subject=payload.subject,
        body_template=payload.body_template,
        min_match_score=Decimal(str(payload.min_match_score)),
        status=CampaignStatus.DRAFT,
    )
    db.add(campaign)
    db.flush()

    if payload.match_ids:
        matches = _explicit_matches(db, cv.id, tenant_id, payload.match_ids)
    else:
        matches = qualifying_matches(db, campaign)
    campaign.total_recipients = len(matches)
    log_ids = initialize_logs(db, campaign, matches)

    if log_ids:
        tasks.after_commit(db, generate_drafts, campaign.id)
    db.commit()
    logger.info(
        "Campaign {} created for CV {}: {} qualifying matches, {} logs",
        campaign.id, cv.id, len(matches), len(log_ids),
    )
    return campaign


def create_auto_campaign(db: Session, cv_id: int, tenant_id: int) -> EmailCampaign | None:
    """Campaign over the CV's best matches with AI-written bodies. Not executed."""
    cv = db.query(CV).filter(CV.id == cv_id, CV.tenant_id == tenant_id).first()
    if cv is None:
        raise NotFoundError("CV", cv_id)

    threshold = Decimal(str(settings.auto_campaign_threshold))
    matches = (
        db.query(MatchResult)
        .options(joinedload(MatchResult.professor).joinedload(Professor.university))
        .filter(
            MatchResult.cv_id == cv_id,
            MatchResult.tenant_id == tenant_id,
            MatchResult.match_score >= threshold,
        )
        .order_by(MatchResult.match_score.desc(), MatchResult.id)
        .limit(settings.auto_campaign_max_recipients)
        .all()
    )
    if not matches:
        logger.info("No matches ≥ {} for CV {}; auto-campaign skipped", threshold, cv_id)
        return None

    smtp_account = find_active_account(db, tenant_id)
    today = datetime.now(timezone.utc).date().isoformat()
    campaign = EmailCampaign(
        tenant_id=tenant_id,
        cv_id=cv_id,
        smtp_account_id=smtp_account.id if smtp_account else None,
        name=f"AI-Outreach: {cv.original_filename} ({today})",
        subject=AUTO_CAMPAIGN_SUBJECT,
        body_template=AI_GENERATED,
        min_match_score=threshold,
        status=CampaignStatus.DRAFT,
    )
    db.add(campaign)
    db.flush()

    log_ids = initialize_logs(db, campaign, matches)
    campaign.total_recipients = len(log_ids)
    if log_ids:
        tasks.after_commit(db, generate_drafts, campaign.id)
    db.commit()
    logger.info("Auto-campaign {} created for CV {} with {} recipients", campaign.id, cv_id, len(log_ids))
    return campaign


# ── Drafting ─────────────────────────────────────────────────────────


def student_keywords(db: Session, cv_id: int) -> list[str]:
    return [
        kw
        for (kw,) in db.query(CvKeyword.keyword)
        .filter(CvKeyword.cv_id == cv_id)
        .order_by(CvKeyword.weight.desc(), CvKeyword.id)
        .all()
    ]


def email_context(log_entry: EmailLog, keywords: list[str]) -> llm_client.EmailContext:
    professor = log_entry.professor
    return llm_client.EmailContext(
        professor_name=professor.full_name,
        university=professor.university.name if professor.university else "",
        student_keywords=keywords,
        matched_keywords=(log_entry.match_result.matched_keywords if log_entry.match_result else "") or "",
        publications=professor.publications,
    )


def needs_draft(log_entry: EmailLog, campaign: EmailCampaign) -> bool:
    """True when the body is still a placeholder rather than real content."""
    if log_entry.status != EmailStatus.PENDING:
        return False
    body = (log_entry.body or "").strip()
    if not body or body == AI_GENERATED:
        return True
    rendered = render_template(campaign.body_template, log_entry.professor, log_entry.match_result)
    return body == rendered.strip()


def apply_options(log_entry: EmailLog, options: list[str]) -> None:
    log_entry.body = options[0]
    rest = options[1:]
    log_entry.alternate_bodies = ALTERNATE_BODY_SEPARATOR.join(rest) if rest else None


async def generate_drafts(campaign_id: int) -> None:
    """Background worker: fill placeholder bodies with LLM drafts, one log at a time."""
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        campaign = db.get(EmailCampaign, campaign_id)
        if campaign is None:
            return
        keywords = student_keywords(db, campaign.cv_id)
        targets = [
            (entry.id, email_context(entry, keywords))
            for entry in campaign.logs
            if needs_draft(entry, campaign)
        ]
        db.rollback()  # release the read transaction before awaiting the LLM

        drafted = 0
        for log_id, ctx in targets:
            try:
                options = await llm_client.generate_email_options(ctx)
            except LLMError as e:
                logger.warning("Draft for email log {} failed: {}", log_id, e)
                continue

            entry = db.get(EmailLog, log_id)
            if entry is None or entry.status != EmailStatus.PENDING:
                db.rollback()
                continue
            apply_options(entry, options)
            db.commit()
            drafted += 1

        logger.info("Campaign {}: {}/{} drafts generated", campaign_id, drafted, len(targets))
    finally:
        db.close()


async def regenerate_log(db: Session, log_id: int, tenant_id: int) -> EmailLog:
    """Replace one PENDING log's body and alternates with fresh LLM drafts.

    LLMError propagates to the caller; the log is left unchanged.
    """
    log_entry = get_log(db, log_id, tenant_id)
    _require_pending(log_entry)
    ctx = email_context(log_entry, student_keywords(db, log_entry.campaign.cv_id))
    db.commit()  # nothing pending; ends the read transaction before the LLM call

    options = await llm_client.generate_email_options(ctx)

    log_entry = get_log(db, log_id, tenant_id)
    _require_pending(log_entry)
    apply_options(log_entry, options)
    db.commit()
    logger.info("Email log {} regenerated ({} options)", log_id, len(options))
    return log_entry


def update_log_body(db: Session, log_id: int, tenant_id: int, body: str) -> EmailLog:
    log_entry = get_log(db, log_id, tenant_id)
    _require_pending(log_entry)
    log_entry.body = body
    db.commit()
    logger.info("Email log {} body updated manually", log_id)
    return log_entry


def _require_pending(log_entry: EmailLog) -> None:
    if log_entry.status != EmailStatus.PENDING:
        raise StateConflictError(
            f"Email log {log_entry.id} is {log_entry.status}; only PENDING logs can be edited"
        )


# ── State transitions ────────────────────────────────────────────────


def schedule_campaign(
    db: Session, campaign_id: int, tenant_id: int, scheduled_at: datetime
) -> EmailCampaign:
    campaign = get_campaign(db, campaign_id, tenant_id)
    if campaign.status != CampaignStatus.DRAFT:
        raise StateConflictError("Only draft campaigns can be scheduled")
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    if scheduled_at <= datetime.now(timezone.utc):
        raise ValidationError("scheduled_at must be in the future")

    campaign.scheduled_at = scheduled_at
    campaign.status = CampaignStatus.SCHEDULED
    db.commit()
    logger.info("Campaign {} scheduled for {}", campaign_id, scheduled_at.isoformat())
    return campaign


def cancel_campaign(db: Session, campaign_id: int, tenant_id: int) -> EmailCampaign:
    campaign = get_campaign(db, campaign_id, tenant_id)
    if campaign.status != CampaignStatus.SCHEDULED:
        raise StateConflictError("Only scheduled campaigns can be cancelled")
    campaign.status = CampaignStatus.CANCELLED
    db.commit()
    logger.info("Campaign {} cancelled", campaign_id)
    return campaign


def delete_campaign(db: Session, campaign_id: int, tenant_id: int) -> None:
    campaign = get_campaign(db, campaign_id, tenant_id)
    if campaign.status == CampaignStatus.IN_PROGRESS:
        raise StateConflictError("Campaign is in progress and cannot be deleted")
    db.delete(campaign)
    db.commit()
    logger.info("Campaign {} deleted", campaign_id)
