"""
campaign_executor.py — Rate-limited, batched sending of one campaign.

Flow:
  1. Claim the campaign: one conditional UPDATE moves DRAFT/SCHEDULED →
     IN_PROGRESS. Zero rows changed means another worker has it; return.
  2. Resolve SMTP account + cached MailSender, seed logs if none exist,
     load the CV attachment.
  3. Send logs in id order, one at a time. At most EMAIL_RATE_LIMIT_PER_MINUTE
     sends per 60 s window; interim counters every EMAIL_BATCH_SIZE logs.
  4. Final counters, COMPLETED. Anything unhandled → FAILED with the counters
     reached so far; unattempted logs stay PENDING.

Business Rules:
- Each recipient is sent in its own session: PENDING → SENDING → SENT/FAILED
- Up to EMAIL_RETRY_ATTEMPTS submits (first try included), EMAIL_RETRY_DELAY_MS
  apart; retry_count = attempts - 1
- A log already SENT is never sent again; it counts toward sent_count
- Every log that reaches SMTP submission counts toward the rate window,
  whether it ends SENT or FAILED
- Blacklist is re-checked at send time (→ BLACKLISTED, counted as failed)
- A log never stays SENDING: errors mark it FAILED; cancellation puts it back
  to PENDING, or FAILED if a submission was in flight
- Cancellation during a rate-limit pause stops the loop, persists counters,
  marks the campaign FAILED and re-raises

Called by: scheduler tick, campaign_service.request_execution, transport layer
Depends on: campaign_service, mail_sender, smtp_account_service, storage_service, llm_client
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import tasks
from ..config import settings
from ..constants import AI_GENERATED, CampaignStatus, EmailStatus, SmtpStatus
from ..exceptions import DecryptionError, LLMError, StateConflictError
from ..models import EmailCampaign, EmailLog, SmtpAccount
from . import campaign_service, llm_client, mail_sender, storage_service
from .smtp_account_service import find_active_account

RATE_WINDOW_SECONDS = 60.0

# _process_log outcomes that submit nothing over SMTP
_ALREADY_SENT = "ALREADY_SENT"
_NOT_SUBMITTED = "NOT_SUBMITTED"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _pause(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass(frozen=True)
class SenderIdentity:
    email: str
    from_name: str | None


@dataclass
class Progress:
    sent: int = 0
    failed: int = 0


# ── Claim / finish ───────────────────────────────────────────────────


def try_start_campaign(db: Session, campaign_id: int) -> bool:
    """Atomically move DRAFT/SCHEDULED → IN_PROGRESS. True if this caller won."""
    result = db.execute(
        update(EmailCampaign)
        .where(
            EmailCampaign.id == campaign_id,
            EmailCampaign.status.in_(CampaignStatus.STARTABLE),
        )
        .values(status=CampaignStatus.IN_PROGRESS, started_at=_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _update_progress(campaign_id: int, progress: Progress) -> None:
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        db.execute(
            update(EmailCampaign)
            .where(EmailCampaign.id == campaign_id)
            .values(sent_count=progress.sent, failed_count=progress.failed)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    finally:
        db.close()


def _finish(campaign_id: int, status: str, progress: Progress) -> None:
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        values = {
            "status": status,
            "sent_count": progress.sent,
            "failed_count": progress.failed,
        }
        if status == CampaignStatus.COMPLETED:
            values["completed_at"] = _now()
        db.execute(
            update(EmailCampaign)
            .where(EmailCampaign.id == campaign_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    finally:
        db.close()
    logger.info(
        "Campaign {} {}: sent={} failed={}",
        campaign_id, status, progress.sent, progress.failed,
    )


# ── Account & sender ─────────────────────────────────────────────────


def resolve_account(db: Session, campaign: EmailCampaign) -> SmtpAccount:
    account = campaign.smtp_account
    if account is None or account.status != SmtpStatus.ACTIVE:
        account = find_active_account(db, campaign.tenant_id)
    if account is None:
        raise StateConflictError(f"Tenant {campaign.tenant_id} has no active SMTP account")
    return account


# ── Per-recipient send ───────────────────────────────────────────────


async def send_log(
    log_id: int,
    ai_body: str | None,
    attachment: bytes | None,
    attachment_name: str | None,
    sender: mail_sender.MailSender,
    identity: SenderIdentity,
) -> str | None:
    """Send one email log in its own session, retrying transient failures.

    Returns the log's resulting status: SENT or FAILED once it went to
    SENDING, BLACKLISTED when skipped, None if the log no longer exists.
    A log is never left SENDING: errors mark it FAILED, and cancellation
    outside an in-flight submission puts it back to PENDING.
    """
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        entry = db.get(EmailLog, log_id)
        if entry is None:
            logger.warning("Email log {} vanished before send", log_id)
            return None

        if ai_body and ai_body.strip():
            entry.body = ai_body

        if campaign_service.is_blacklisted(db, entry.recipient_email, entry.tenant_id):
            entry.status = EmailStatus.BLACKLISTED
            entry.error_message = "Recipient is blacklisted"
            db.commit()
            logger.info("Email log {} skipped: {} is blacklisted", log_id, entry.recipient_email)
            return EmailStatus.BLACKLISTED

        entry.status = EmailStatus.SENDING
        db.commit()

        max_attempts = max(1, settings.email_retry_attempts)
        delay = settings.email_retry_delay_ms / 1000
        attempts = 0
        in_flight = False
        last_error: Exception | None = None
        try:
            message = mail_sender.build_message(
                from_email=identity.email,
                from_name=identity.from_name,
                to_email=entry.recipient_email,
                subject=entry.subject,
                body=entry.body or "",
                attachment=attachment,
                attachment_name=attachment_name,
            )

            loop = asyncio.get_running_loop()
            while attempts < max_attempts:
                attempts += 1
                in_flight = True
                try:
                    await loop.run_in_executor(None, sender.send, message)
                except Exception as e:
                    in_flight = False
                    last_error = e
                    logger.warning(
                        "Send to {} failed (attempt {}/{}): {}",
                        entry.recipient_email, attempts, max_attempts, e,
                    )
                else:
                    in_flight = False
                    last_error = None
                    break
                if attempts < max_attempts:
                    await _pause(delay)
        except asyncio.CancelledError:
            entry.retry_count = max(0, attempts - 1)
            if in_flight:
                # Delivery outcome unknown; must not be resent.
                entry.status = EmailStatus.FAILED
                entry.error_message = "Interrupted during SMTP submission"
            else:
                entry.status = EmailStatus.PENDING
            db.commit()
            logger.warning("Email log {} interrupted; left {}", log_id, entry.status)
            raise
        except Exception as e:
            logger.error("Email log {} could not be sent: {}", log_id, e)
            last_error = e

        entry.retry_count = max(0, attempts - 1)
        if last_error is None:
            entry.status = EmailStatus.SENT
            entry.sent_at = _now()
            entry.error_message = None
        else:
            entry.status = EmailStatus.FAILED
            entry.error_message = str(last_error) or type(last_error).__name__
        db.commit()
        return entry.status
    finally:
        db.close()


async def _process_log(
    log_id: int,
    keywords: list[str],
    attachment: bytes,
    attachment_name: str,
    sender: mail_sender.MailSender,
    identity: SenderIdentity,
) -> str:
    """Send one log if it still needs sending.

    Returns SENT or FAILED when the log reached SMTP submission, otherwise
    BLACKLISTED, _ALREADY_SENT or _NOT_SUBMITTED (missing log, draft failure).
    """
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        entry = db.get(EmailLog, log_id)
        if entry is None:
            return _NOT_SUBMITTED
        if entry.status == EmailStatus.SENT:
            return _ALREADY_SENT
        if entry.status == EmailStatus.BLACKLISTED:
            return EmailStatus.BLACKLISTED

        body = (entry.body or "").strip()
        ctx = None
        if not body or body == AI_GENERATED:
            ctx = campaign_service.email_context(entry, keywords)
        db.rollback()

        ai_body = None
        if ctx is not None:
            try:
                ai_body = (await llm_client.generate_email_options(ctx))[0]
            except LLMError as e:
                entry = db.get(EmailLog, log_id)
                entry.status = EmailStatus.FAILED
                entry.error_message = f"Draft generation failed: {e}"
                db.commit()
                return _NOT_SUBMITTED
    finally:
        db.close()

    status = await send_log(log_id, ai_body, attachment, attachment_name, sender, identity)
    if status in (EmailStatus.SENT, EmailStatus.FAILED, EmailStatus.BLACKLISTED):
        return status
    return _NOT_SUBMITTED


async def _send_loop(
    campaign_id: int,
    log_ids: list[int],
    keywords: list[str],
    attachment: bytes,
    attachment_name: str,
    sender: mail_sender.MailSender,
    identity: SenderIdentity,
    progress: Progress,
) -> bool:
    """Serial send with a per-minute window. Returns False if interrupted."""
    rate_limit = max(1, settings.email_rate_limit_per_minute)
    batch_size = max(1, settings.email_batch_size)

    # SMTP submissions in the current window, whatever their outcome
    sent_in_window = 0
    window_start = time.monotonic()
    for processed, log_id in enumerate(log_ids, start=1):
        if sent_in_window >= rate_limit:
            wait = RATE_WINDOW_SECONDS - (time.monotonic() - window_start)
            if wait > 0:
                logger.debug("Campaign {}: rate limit reached, pausing {:.1f}s", campaign_id, wait)
                try:
                    await _pause(wait)
                except asyncio.CancelledError:
                    logger.warning("Campaign {} interrupted during rate-limit pause", campaign_id)
                    return False
            window_start = time.monotonic()
            sent_in_window = 0

        try:
            outcome = await _process_log(
                log_id, keywords, attachment, attachment_name, sender, identity
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Email log {} errored: {}", log_id, e)
            outcome = EmailStatus.FAILED
            sent_in_window += 1
        else:
            if outcome in (EmailStatus.SENT, EmailStatus.FAILED):
                sent_in_window += 1

        if outcome in (EmailStatus.SENT, _ALREADY_SENT):
            progress.sent += 1
        else:
            progress.failed += 1

        if processed % batch_size == 0:
            _update_progress(campaign_id, progress)
    return True


# ── Campaign execution ───────────────────────────────────────────────


async def execute_campaign(campaign_id: int) -> None:
    """Background worker: drive one campaign from claim to COMPLETED/FAILED."""
    from ..database import SessionLocal

    db = SessionLocal()
    progress = Progress()
    try:
        if not try_start_campaign(db, campaign_id):
            logger.info("Campaign {} not startable or already claimed; skipping", campaign_id)
            return
        logger.info("Campaign {} execution started", campaign_id)

        try:
            campaign = db.get(EmailCampaign, campaign_id)
            account = resolve_account(db, campaign)
            sender = mail_sender.get_mail_sender(account)
            identity = SenderIdentity(account.email, account.from_name)

            if not campaign.logs:
                campaign_service.initialize_logs(
                    db, campaign, campaign_service.qualifying_matches(db, campaign)
                )
            log_ids = [
                lid for (lid,) in db.query(EmailLog.id)
                .filter(EmailLog.campaign_id == campaign_id)
                .order_by(EmailLog.id)
                .all()
            ]
            campaign.total_recipients = max(campaign.total_recipients or 0, len(log_ids))
            keywords = campaign_service.student_keywords(db, campaign.cv_id)
            file_path = campaign.cv.file_path
            attachment_name = campaign.cv.original_filename
            db.commit()

            loop = asyncio.get_running_loop()
            attachment = await loop.run_in_executor(None, storage_service.retrieve_file, file_path)

            finished = await _send_loop(
                campaign_id, log_ids, keywords, attachment, attachment_name,
                sender, identity, progress,
            )
        except asyncio.CancelledError:
            db.rollback()
            _finish(campaign_id, CampaignStatus.FAILED, progress)
            raise
        except Exception as e:
            db.rollback()
            logger.error("Campaign {} failed: {}", campaign_id, e)
            _finish(campaign_id, CampaignStatus.FAILED, progress)
            return

        if not finished:
            _finish(campaign_id, CampaignStatus.FAILED, progress)
            raise asyncio.CancelledError()
        _finish(campaign_id, CampaignStatus.COMPLETED, progress)
    finally:
        db.close()


def request_execution(db: Session, campaign_id: int, tenant_id: int) -> EmailCampaign:
    """Validate and queue execution of a DRAFT or SCHEDULED campaign."""
    campaign = campaign_service.get_campaign(db, campaign_id, tenant_id)
    if campaign.status not in CampaignStatus.STARTABLE:
        raise StateConflictError(f"Campaign {campaign_id} is {campaign.status} and cannot be executed")
    tasks.after_commit(db, execute_campaign, campaign_id)
    db.commit()
    logger.info("Execution requested for campaign {}", campaign_id)
    return campaign


async def send_individual_email(db: Session, log_id: int, tenant_id: int) -> bool:
    """Send (or resend) a single PENDING/FAILED log outside a campaign run."""
    entry = campaign_service.get_log(db, log_id, tenant_id)
    if entry.status not in (EmailStatus.PENDING, EmailStatus.FAILED):
        raise StateConflictError(f"Email log {log_id} is {entry.status}")

    campaign = entry.campaign
    account = resolve_account(db, campaign)
    try:
        sender = mail_sender.get_mail_sender(account)
    except DecryptionError as e:
        logger.error("SMTP password for account {} could not be decrypted", account.id)
        entry.status = EmailStatus.FAILED
        entry.error_message = f"SMTP credentials unreadable: {e}"
        db.commit()
        return False

    identity = SenderIdentity(account.email, account.from_name)
    body = (entry.body or "").strip()
    ctx = None
    if not body or body == AI_GENERATED:
        ctx = campaign_service.email_context(
            entry, campaign_service.student_keywords(db, campaign.cv_id)
        )
    file_path = campaign.cv.file_path
    attachment_name = campaign.cv.original_filename
    db.commit()

    loop = asyncio.get_running_loop()
    attachment = await loop.run_in_executor(None, storage_service.retrieve_file, file_path)
    ai_body = (await llm_client.generate_email_options(ctx))[0] if ctx else None

    status = await send_log(log_id, ai_body, attachment, attachment_name, sender, identity)
    db.expire_all()
    return status == EmailStatus.SENT
