"""
test_campaign_executor.py — Tests for rate-limited campaign sending

Covers: per-minute windows, retry exhaustion, single-winner claim under
concurrency, send-time blacklist, already-sent logs, AI bodies at send time,
missing SMTP account, cancellation during a pause, individual sends.

SMTP is replaced by the conftest fake_sender; rate-limit and retry waits go
through campaign_executor._pause, patched to an AsyncMock.

Called by: pytest
Depends on: scholar/services/campaign_executor.py, conftest fixtures
"""

import asyncio
import smtplib
from unittest.mock import AsyncMock, patch

import pytest

from scholar import tasks
from scholar.config import settings
from scholar.constants import AI_GENERATED, CampaignStatus, EmailStatus, SmtpStatus
from scholar.exceptions import DecryptionError, LLMError, StateConflictError
from scholar.models import EmailBlacklist, EmailCampaign, EmailLog
from scholar.services import campaign_executor


@pytest.fixture()
def pause():
    with patch("scholar.services.campaign_executor._pause", new=AsyncMock()) as mock:
        yield mock


def _reload(db_session, campaign_id):
    db_session.expire_all()
    return db_session.get(EmailCampaign, campaign_id)


# ── Claim ────────────────────────────────────────────────────────────


def test_try_start_only_once(db_session, completed_cv, professors, make_campaign):
    campaign = make_campaign(completed_cv, [professors[0]])
    assert campaign_executor.try_start_campaign(db_session, campaign.id) is True
    assert campaign_executor.try_start_campaign(db_session, campaign.id) is False

    campaign = _reload(db_session, campaign.id)
    assert campaign.status == CampaignStatus.IN_PROGRESS
    assert campaign.started_at is not None


@pytest.mark.parametrize("status", [
    CampaignStatus.COMPLETED, CampaignStatus.FAILED, CampaignStatus.CANCELLED,
])
def test_try_start_rejects_terminal(db_session, completed_cv, professors, make_campaign, status):
    campaign = make_campaign(completed_cv, [professors[0]], status=status)
    assert campaign_executor.try_start_campaign(db_session, campaign.id) is False


@pytest.mark.asyncio
async def test_concurrent_execute_sends_once(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    campaign = make_campaign(completed_cv, [professors[0]])

    await asyncio.gather(
        campaign_executor.execute_campaign(campaign.id),
        campaign_executor.execute_campaign(campaign.id),
    )

    assert fake_sender.send.call_count == 1
    campaign = _reload(db_session, campaign.id)
    assert campaign.status == CampaignStatus.COMPLETED
    assert campaign.sent_count == 1
    assert campaign.logs[0].status == EmailStatus.SENT


# ── Rate limiting & progress ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_rate_limit_windows(db_session, completed_cv, make_professors, make_campaign, fake_sender, pause, monkeypatch):
    monkeypatch.setattr(settings, "email_rate_limit_per_minute", 2)
    campaign = make_campaign(completed_cv, make_professors(5))

    await campaign_executor.execute_campaign(campaign.id)

    # 5 sends at 2/minute → three windows → two pauses
    assert pause.await_count == 2
    assert all(0 < c.args[0] <= campaign_executor.RATE_WINDOW_SECONDS for c in pause.await_args_list)
    assert fake_sender.send.call_count == 5

    campaign = _reload(db_session, campaign.id)
    assert campaign.status == CampaignStatus.COMPLETED
    assert campaign.sent_count == 5
    assert campaign.failed_count == 0
    assert campaign.completed_at is not None
    assert all(entry.status == EmailStatus.SENT and entry.sent_at for entry in campaign.logs)


@pytest.mark.asyncio
async def test_failed_submissions_count_toward_rate_limit(db_session, completed_cv, make_professors, make_campaign, fake_sender, pause, monkeypatch):
    monkeypatch.setattr(settings, "email_rate_limit_per_minute", 2)
    monkeypatch.setattr(settings, "email_retry_attempts", 1)
    fake_sender.send.side_effect = smtplib.SMTPServerDisconnected("connection dropped")
    campaign = make_campaign(completed_cv, make_professors(5))

    await campaign_executor.execute_campaign(campaign.id)

    assert fake_sender.send.call_count == 5
    assert pause.await_count == 2
    campaign = _reload(db_session, campaign.id)
    assert campaign.failed_count == 5
    assert all(entry.status == EmailStatus.FAILED for entry in campaign.logs)


@pytest.mark.asyncio
async def test_blacklisted_logs_do_not_use_window(db_session, completed_cv, make_professors, make_campaign, fake_sender, pause, monkeypatch):
    monkeypatch.setattr(settings, "email_rate_limit_per_minute", 2)
    profs = make_professors(3)
    campaign = make_campaign(completed_cv, profs)
    db_session.add(EmailBlacklist(tenant_id=completed_cv.tenant_id, email=profs[0].email, reason="opted out"))
    db_session.commit()

    await campaign_executor.execute_campaign(campaign.id)

    assert fake_sender.send.call_count == 2
    pause.assert_not_awaited()


@pytest.mark.asyncio
async def test_progress_persisted_every_batch(db_session, completed_cv, make_professors, make_campaign, fake_sender, pause, monkeypatch):
    monkeypatch.setattr(settings, "email_batch_size", 2)
    campaign = make_campaign(completed_cv, make_professors(5))

    with patch.object(
        campaign_executor, "_update_progress", wraps=campaign_executor._update_progress
    ) as progress:
        await campaign_executor.execute_campaign(campaign.id)

    assert progress.call_count == 2
    assert _reload(db_session, campaign.id).sent_count == 5


@pytest.mark.asyncio
async def test_message_carries_cv_attachment(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    p1, _ = professors
    campaign = make_campaign(completed_cv, [p1])

    await campaign_executor.execute_campaign(campaign.id)

    msg = fake_sender.send.call_args.args[0]
    assert msg["To"] == p1.email
    assert msg["From"] == "Sam Reyes <sam@visionlab.example>"
    assert msg["Subject"] == "Prospective PhD student"
    attachment = next(msg.iter_attachments())
    assert attachment.get_filename() == "sam_reyes_cv.pdf"
    assert attachment.get_content() == b"%PDF-1.4 fake cv bytes"


# ── Failures ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_retry_exhaustion(db_session, completed_cv, professors, make_campaign, fake_sender, pause, monkeypatch):
    monkeypatch.setattr(settings, "email_retry_attempts", 3)
    monkeypatch.setattr(settings, "email_retry_delay_ms", 10)
    fake_sender.send.side_effect = smtplib.SMTPServerDisconnected("connection dropped")
    campaign = make_campaign(completed_cv, [professors[0]])

    await campaign_executor.execute_campaign(campaign.id)

    assert fake_sender.send.call_count == 3
    assert [c.args[0] for c in pause.await_args_list] == [0.01, 0.01]
    campaign = _reload(db_session, campaign.id)
    entry = campaign.logs[0]
    assert entry.status == EmailStatus.FAILED
    assert entry.retry_count == 2
    assert entry.error_message == "connection dropped"
    assert entry.sent_at is None
    assert campaign.failed_count == 1
    assert campaign.sent_count == 0
    assert campaign.status == CampaignStatus.COMPLETED


@pytest.mark.asyncio
async def test_transient_failure_then_success(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    fake_sender.send.side_effect = [OSError("timeout"), None]
    campaign = make_campaign(completed_cv, [professors[0]])

    await campaign_executor.execute_campaign(campaign.id)

    entry = _reload(db_session, campaign.id).logs[0]
    assert entry.status == EmailStatus.SENT
    assert entry.retry_count == 1
    assert entry.error_message is None


@pytest.mark.asyncio
async def test_cancel_during_retry_pause_returns_log_to_pending(db_session, completed_cv, professors, make_campaign, fake_sender, monkeypatch):
    monkeypatch.setattr(settings, "email_retry_attempts", 3)
    fake_sender.send.side_effect = OSError("timeout")
    campaign = make_campaign(completed_cv, [professors[0]])

    with patch(
        "scholar.services.campaign_executor._pause",
        new=AsyncMock(side_effect=asyncio.CancelledError),
    ):
        with pytest.raises(asyncio.CancelledError):
            await campaign_executor.execute_campaign(campaign.id)

    assert fake_sender.send.call_count == 1
    campaign = _reload(db_session, campaign.id)
    assert campaign.status == CampaignStatus.FAILED
    entry = campaign.logs[0]
    assert entry.status == EmailStatus.PENDING
    assert entry.sent_at is None

    # The log is resendable afterwards
    fake_sender.send.side_effect = None
    ok = await campaign_executor.send_individual_email(db_session, entry.id, completed_cv.tenant_id)
    assert ok is True


@pytest.mark.asyncio
async def test_message_build_error_marks_log_failed(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    campaign = make_campaign(completed_cv, [professors[0]])

    with patch(
        "scholar.services.campaign_executor.mail_sender.build_message",
        side_effect=ValueError("invalid header"),
    ):
        await campaign_executor.execute_campaign(campaign.id)

    fake_sender.send.assert_not_called()
    campaign = _reload(db_session, campaign.id)
    entry = campaign.logs[0]
    assert entry.status == EmailStatus.FAILED
    assert entry.error_message == "invalid header"
    assert entry.retry_count == 0
    assert campaign.status == CampaignStatus.COMPLETED
    assert campaign.failed_count == 1


@pytest.mark.asyncio
async def test_blacklist_checked_at_send_time(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    p1, p2 = professors
    campaign = make_campaign(completed_cv, [p1, p2])
    db_session.add(EmailBlacklist(tenant_id=completed_cv.tenant_id, email=p2.email, reason="bounced"))
    db_session.commit()

    await campaign_executor.execute_campaign(campaign.id)

    assert fake_sender.send.call_count == 1
    campaign = _reload(db_session, campaign.id)
    assert [entry.status for entry in campaign.logs] == [EmailStatus.SENT, EmailStatus.BLACKLISTED]
    assert campaign.sent_count == 1
    assert campaign.failed_count == 1


@pytest.mark.asyncio
async def test_already_sent_log_not_resent(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    campaign = make_campaign(completed_cv, list(professors))
    campaign.logs[0].status = EmailStatus.SENT
    db_session.commit()

    await campaign_executor.execute_campaign(campaign.id)

    assert fake_sender.send.call_count == 1
    campaign = _reload(db_session, campaign.id)
    assert campaign.sent_count == 2


@pytest.mark.asyncio
async def test_no_active_smtp_account_fails_campaign(db_session, completed_cv, professors, make_campaign, smtp_account, pause):
    campaign = make_campaign(completed_cv, [professors[0]])
    smtp_account.status = SmtpStatus.INACTIVE
    db_session.commit()

    await campaign_executor.execute_campaign(campaign.id)

    campaign = _reload(db_session, campaign.id)
    assert campaign.status == CampaignStatus.FAILED
    assert campaign.logs[0].status == EmailStatus.PENDING


@pytest.mark.asyncio
async def test_not_startable_is_noop(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    campaign = make_campaign(completed_cv, [professors[0]], status=CampaignStatus.COMPLETED)
    await campaign_executor.execute_campaign(campaign.id)
    fake_sender.send.assert_not_called()
    assert _reload(db_session, campaign.id).logs[0].status == EmailStatus.PENDING


@pytest.mark.asyncio
async def test_cancelled_during_pause(db_session, completed_cv, professors, make_campaign, fake_sender, monkeypatch):
    monkeypatch.setattr(settings, "email_rate_limit_per_minute", 1)
    campaign = make_campaign(completed_cv, list(professors))

    with patch(
        "scholar.services.campaign_executor._pause",
        new=AsyncMock(side_effect=asyncio.CancelledError()),
    ):
        with pytest.raises(asyncio.CancelledError):
            await campaign_executor.execute_campaign(campaign.id)

    campaign = _reload(db_session, campaign.id)
    assert campaign.status == CampaignStatus.FAILED
    assert campaign.sent_count == 1
    assert [entry.status for entry in campaign.logs] == [EmailStatus.SENT, EmailStatus.PENDING]


# ── Bodies ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_placeholder_body_drafted_at_send(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    campaign = make_campaign(completed_cv, [professors[0]])
    campaign.logs[0].body = AI_GENERATED
    db_session.commit()

    with patch(
        "scholar.services.campaign_executor.llm_client.generate_email_options",
        new=AsyncMock(return_value=["Drafted at send time", "alt"]),
    ):
        await campaign_executor.execute_campaign(campaign.id)

    assert fake_sender.send.call_args.args[0].get_body().get_content().strip() == "Drafted at send time"
    entry = _reload(db_session, campaign.id).logs[0]
    assert entry.body == "Drafted at send time"
    assert entry.status == EmailStatus.SENT


@pytest.mark.asyncio
async def test_draft_failure_at_send_marks_log_failed(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    campaign = make_campaign(completed_cv, [professors[0]])
    campaign.logs[0].body = ""
    db_session.commit()

    with patch(
        "scholar.services.campaign_executor.llm_client.generate_email_options",
        new=AsyncMock(side_effect=LLMError("HTTP 503")),
    ):
        await campaign_executor.execute_campaign(campaign.id)

    fake_sender.send.assert_not_called()
    campaign = _reload(db_session, campaign.id)
    assert campaign.logs[0].status == EmailStatus.FAILED
    assert "Draft generation failed" in campaign.logs[0].error_message
    assert campaign.failed_count == 1
    assert campaign.status == CampaignStatus.COMPLETED


# ── Seeding ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_execute_seeds_logs_when_empty(db_session, completed_cv, professors, make_campaign, make_match, fake_sender, pause):
    p1, p2 = professors
    make_match(completed_cv, p1, "0.900000")
    make_match(completed_cv, p2, "0.200000")
    campaign = make_campaign(completed_cv, [])

    await campaign_executor.execute_campaign(campaign.id)

    campaign = _reload(db_session, campaign.id)
    assert [entry.professor_id for entry in campaign.logs] == [p1.id]
    assert campaign.total_recipients == 1
    assert campaign.sent_count == 1


# ── request_execution / individual send ──────────────────────────────


@pytest.mark.asyncio
async def test_request_execution_dispatches(db_session, completed_cv, professors, make_campaign):
    campaign = make_campaign(completed_cv, [professors[0]])
    with patch.object(tasks, "spawn") as spawn:
        campaign_executor.request_execution(db_session, campaign.id, completed_cv.tenant_id)
    spawn.assert_called_once_with(campaign_executor.execute_campaign, campaign.id)


def test_request_execution_rejects_completed(db_session, completed_cv, professors, make_campaign):
    campaign = make_campaign(completed_cv, [professors[0]], status=CampaignStatus.COMPLETED)
    with pytest.raises(StateConflictError):
        campaign_executor.request_execution(db_session, campaign.id, completed_cv.tenant_id)


@pytest.mark.asyncio
async def test_send_individual_retries_failed_log(db_session, completed_cv, professors, make_campaign, fake_sender, pause):
    campaign = make_campaign(completed_cv, [professors[0]])
    entry = campaign.logs[0]
    entry.status = EmailStatus.FAILED
    entry.error_message = "earlier failure"
    db_session.commit()

    ok = await campaign_executor.send_individual_email(db_session, entry.id, completed_cv.tenant_id)

    assert ok is True
    entry = db_session.get(EmailLog, entry.id)
    assert entry.status == EmailStatus.SENT
    assert entry.error_message is None


@pytest.mark.asyncio
async def test_send_individual_rejects_sent(db_session, completed_cv, professors, make_campaign, fake_sender):
    campaign = make_campaign(completed_cv, [professors[0]])
    campaign.logs[0].status = EmailStatus.SENT
    db_session.commit()
    with pytest.raises(StateConflictError):
        await campaign_executor.send_individual_email(db_session, campaign.logs[0].id, completed_cv.tenant_id)


@pytest.mark.asyncio
async def test_send_individual_unreadable_credentials(db_session, completed_cv, professors, make_campaign):
    entry = make_campaign(completed_cv, [professors[0]]).logs[0]
    with patch(
        "scholar.services.mail_sender.get_mail_sender",
        side_effect=DecryptionError("Authentication tag mismatch"),
    ):
        ok = await campaign_executor.send_individual_email(db_session, entry.id, completed_cv.tenant_id)

    assert ok is False
    entry = db_session.get(EmailLog, entry.id)
    assert entry.status == EmailStatus.FAILED
    assert "credentials" in entry.error_message
