"""Background scheduler — releases scheduled campaigns.

One APScheduler interval job:
  - campaign_tick: every SCHEDULER_TICK_SECONDS (60 s) — starts every
    SCHEDULED campaign whose scheduled_at has passed

Execution itself is claimed by a conditional UPDATE, so a campaign picked up
by two ticks (or a tick and a manual execute) still runs once.
"""

from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from . import tasks
from .constants import CampaignStatus

scheduler = AsyncIOScheduler(timezone="UTC")


def _utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def configure_scheduler() -> None:
    """Register jobs. Call once before scheduler.start()."""
    from .config import settings

    scheduler.add_job(
        _job_campaign_tick,
        IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        id="campaign_tick",
        name="Release scheduled campaigns",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("Scheduler configured: campaign_tick every {}s", settings.scheduler_tick_seconds)


def due_campaign_ids(db, now: datetime | None = None) -> list[int]:
    from .models import EmailCampaign

    now = _utc(now) or datetime.now(timezone.utc)
    rows = (
        db.query(EmailCampaign.id)
        .filter(
            EmailCampaign.status == CampaignStatus.SCHEDULED,
            EmailCampaign.scheduled_at <= now,
        )
        .order_by(EmailCampaign.scheduled_at, EmailCampaign.id)
        .all()
    )
    return [cid for (cid,) in rows]


async def _job_campaign_tick():
    """Start execution for every due SCHEDULED campaign, across tenants."""
    from .database import SessionLocal
    from .services.campaign_executor import execute_campaign

    db = SessionLocal()
    try:
        due = due_campaign_ids(db)
    finally:
        db.close()

    if not due:
        return
    logger.info("Scheduler tick: {} campaign(s) due", len(due))
    for campaign_id in due:
        try:
            tasks.spawn(execute_campaign, campaign_id)
        except RuntimeError as e:
            logger.error("Could not start campaign {}: {}", campaign_id, e)
