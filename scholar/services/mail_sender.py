"""
mail_sender.py — Prepared SMTP submitters, cached per SMTP account.

Business Rules:
- One MailSender per SMTP account id, built once (decrypts the password once)
- Concurrent callers for the same account get the same instance
- SmtpAccountChanged evicts the entry; the next caller rebuilds it
- Auth always on; use_tls = STARTTLS required; use_ssl = implicit TLS
- 5 s connect/read/write timeout

Called by: campaign_executor.py
Depends on: smtp_account_service.py (password, change events), smtplib
"""

import mimetypes
import smtplib
import ssl
import threading
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from loguru import logger

from ..config import settings
from ..exceptions import MailDeliveryError
from ..models import SmtpAccount
from . import smtp_account_service
from .smtp_account_service import SmtpAccountChanged


class MailSender:
    """SMTP submitter bound to one account's host and credentials."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        use_tls: bool = True,
        use_ssl: bool = False,
        timeout: float = 5,
    ):
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self.use_tls = use_tls
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.auth = True

    def __repr__(self) -> str:
        return f"<MailSender {self.username}@{self.host}:{self.port} tls={self.use_tls} ssl={self.use_ssl}>"

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(
                self.host, self.port, timeout=self.timeout,
                context=ssl.create_default_context(),
            )
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)

    def send(self, message: EmailMessage) -> None:
        """Submit one message. Blocking; raises MailDeliveryError on failure."""
        try:
            with self._connect() as smtp:
                smtp.ehlo()
                if self.use_tls and not self.use_ssl:
                    # STARTTLS is required: starttls() raises if the server lacks it
                    smtp.starttls(context=ssl.create_default_context())
                    smtp.ehlo()
                if self.auth:
                    smtp.login(self.username, self._password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"{type(e).__name__}: {e}") from e


def build_message(
    *,
    from_email: str,
    from_name: str | None,
    to_email: str,
    subject: str,
    body: str,
    attachment: bytes | None = None,
    attachment_name: str | None = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((from_name, from_email)) if from_name else from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=from_email.rsplit("@", 1)[-1])
    msg.set_content(body or "")

    if attachment is not None:
        filename = attachment_name or "cv"
        ctype, _ = mimetypes.guess_type(filename)
        maintype, subtype = (ctype or "application/octet-stream").split("/", 1)
        msg.add_attachment(attachment, maintype=maintype, subtype=subtype, filename=filename)
    return msg


# ── Cache ────────────────────────────────────────────────────────────

_senders: dict[int, MailSender] = {}
_lock = threading.Lock()


def _build_sender(account: SmtpAccount) -> MailSender:
    return MailSender(
        account.smtp_host,
        account.smtp_port,
        account.username,
        smtp_account_service.decrypt_password(account),
        use_tls=bool(account.use_tls),
        use_ssl=bool(account.use_ssl),
        timeout=settings.smtp_timeout_seconds,
    )


def get_mail_sender(account: SmtpAccount) -> MailSender:
    """Cached sender for the account; built on first use."""
    sender = _senders.get(account.id)
    if sender is not None:
        return sender
    with _lock:
        sender = _senders.get(account.id)
        if sender is None:
            sender = _build_sender(account)
            _senders[account.id] = sender
            logger.info("Mail sender created for SMTP account {} ({})", account.id, account.smtp_host)
    return sender


def evict(account_id: int) -> None:
    with _lock:
        if _senders.pop(account_id, None) is not None:
            logger.info("Mail sender evicted for SMTP account {}", account_id)


def clear_cache() -> None:
    with _lock:
        _senders.clear()


def cached_account_ids() -> list[int]:
    return list(_senders)


def _on_account_changed(event: SmtpAccountChanged) -> None:
    evict(event.account_id)


smtp_account_service.subscribe(_on_account_changed)
