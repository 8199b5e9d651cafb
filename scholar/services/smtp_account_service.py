"""
smtp_account_service.py — Per-tenant outbound SMTP credentials.

Business Rules:
- Exactly one SMTP account per tenant; configuring again updates it in place
- The password is encrypted before it touches the row (AES-256-GCM)
- Every create/update/deactivate emits SmtpAccountChanged after commit so
  cached mail senders for that account are dropped

Called by: campaign_executor.py, transport layer (configure/deactivate)
Depends on: encryption_service.py, models (SmtpAccount), schemas.SmtpAccountConfig
"""

from dataclasses import dataclass
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from ..constants import SmtpStatus
from ..exceptions import NotFoundError
from ..models import SmtpAccount
from ..schemas import SmtpAccountConfig
from .encryption_service import decrypt_value, encrypt_value


@dataclass(frozen=True)
class SmtpAccountChanged:
    account_id: int
    tenant_id: int


_listeners: list[Callable[[SmtpAccountChanged], None]] = []


def subscribe(listener: Callable[[SmtpAccountChanged], None]) -> None:
    if listener not in _listeners:
        _listeners.append(listener)


def unsubscribe(listener: Callable[[SmtpAccountChanged], None]) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def _publish(event: SmtpAccountChanged) -> None:
    for listener in list(_listeners):
        listener(event)


def upsert_smtp_account(db: Session, tenant_id: int, cfg: SmtpAccountConfig) -> SmtpAccount:
    """Create or replace the tenant's SMTP account and mark it ACTIVE."""
    account = db.query(SmtpAccount).filter(SmtpAccount.tenant_id == tenant_id).first()
    if account is None:
        account = SmtpAccount(tenant_id=tenant_id)
        db.add(account)

    account.email = cfg.email
    account.smtp_host = cfg.host
    account.smtp_port = cfg.port
    account.username = cfg.username
    account.encrypted_password = encrypt_value(cfg.password)
    account.use_tls = cfg.use_tls
    account.use_ssl = cfg.use_ssl
    account.from_name = cfg.from_name
    account.status = SmtpStatus.ACTIVE

    db.commit()
    db.refresh(account)
    logger.info("SMTP account {} saved for tenant {}", account.id, tenant_id)

    _publish(SmtpAccountChanged(account.id, tenant_id))
    return account


def get_smtp_account(db: Session, tenant_id: int) -> SmtpAccount:
    account = db.query(SmtpAccount).filter(SmtpAccount.tenant_id == tenant_id).first()
    if account is None:
        raise NotFoundError("SmtpAccount", f"for tenant {tenant_id}")
    return account


def find_active_account(db: Session, tenant_id: int) -> SmtpAccount | None:
    return (
        db.query(SmtpAccount)
        .filter(SmtpAccount.tenant_id == tenant_id, SmtpAccount.status == SmtpStatus.ACTIVE)
        .first()
    )


def deactivate_smtp_account(db: Session, tenant_id: int) -> SmtpAccount:
    account = get_smtp_account(db, tenant_id)
    account.status = SmtpStatus.INACTIVE
    db.commit()
    logger.info("SMTP account {} deactivated for tenant {}", account.id, tenant_id)

    _publish(SmtpAccountChanged(account.id, tenant_id))
    return account


def decrypt_password(account: SmtpAccount) -> str:
    """Plaintext password for submission. Raises DecryptionError on tamper."""
    return decrypt_value(account.encrypted_password)
