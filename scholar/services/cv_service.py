"""
cv_service.py — CV intake and the asynchronous parse → keyword pipeline.

Business Rules:
- Upload rejects empty files, mime types outside CV_ALLOWED_TYPES and files
  over CV_MAX_SIZE_MB; the row starts PENDING
- Parsing is dispatched only after the upload commits
- Parse: IN_PROGRESS → blob → text → LLM keywords → replace keyword rows →
  COMPLETED (parsed_at set) → matching. Any failure → FAILED, parsed_at
  cleared, keyword rows untouched. No automatic retry
- Keyword weight by rank i of N: 1.0 - 0.9 * i / max(1, N-1), 4dp half-up
- A parse claims the CV with one conditional UPDATE; a second worker for the
  same CV finds it IN_PROGRESS and returns without calling the LLM
- A CV can't be re-parsed while a parse is queued or running, nor deleted
  while one of its campaigns is sending

Called by: transport layer (upload/parse/list/delete), tasks (parse_cv)
Depends on: storage_service, text_extractor, llm_client, matching_service
"""

import asyncio
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from loguru import logger
from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import tasks
from ..config import settings
from ..constants import CampaignStatus, CVStatus
from ..exceptions import NotFoundError, ScholarError, StateConflictError, ValidationError
from ..models import CV, CvKeyword, EmailCampaign
from . import llm_client, matching_service, storage_service, text_extractor

_WEIGHT_QUANTUM = Decimal("0.0001")


def compute_rank_weights(n: int) -> list[Decimal]:
    """Linear rank weights: first keyword 1.0000, last 0.1000."""
    span = Decimal(max(1, n - 1))
    return [
        (Decimal(1) - Decimal("0.9") * Decimal(i) / span).quantize(
            _WEIGHT_QUANTUM, rounding=ROUND_HALF_UP
        )
        for i in range(n)
    ]


def _validate_upload(content: bytes, declared_mime: str | None) -> None:
    if not content:
        raise ValidationError("File cannot be empty")
    if declared_mime not in settings.allowed_cv_types:
        raise ValidationError(
            f"Invalid file type {declared_mime!r}. Allowed types: {settings.cv_allowed_types}"
        )
    if len(content) > settings.cv_max_size_bytes:
        raise ValidationError(
            f"File size exceeds maximum allowed: {settings.cv_max_size_mb}MB"
        )


def upload_cv(
    db: Session,
    content: bytes,
    declared_mime: str | None,
    original_name: str,
    tenant_id: int,
    user_id: int | None = None,
) -> CV:
    """Store the file, create a PENDING CV row and queue parsing after commit."""
    _validate_upload(content, declared_mime)

    rel_path = storage_service.store_file(content, tenant_id, original_name)
    cv = CV(
        tenant_id=tenant_id,
        uploaded_by_id=user_id,
        original_filename=original_name,
        stored_filename=rel_path.rsplit("/", 1)[-1],
        file_path=rel_path,
        file_size_bytes=len(content),
        mime_type=declared_mime,
        parsing_status=CVStatus.PENDING,
    )
    db.add(cv)
    db.flush()

    tasks.after_commit(db, parse_cv, cv.id)
    db.commit()
    logger.info("CV {} uploaded for tenant {} ({} bytes)", cv.id, tenant_id, len(content))
    return cv


def get_cv(db: Session, cv_id: int, tenant_id: int) -> CV:
    cv = db.query(CV).filter(CV.id == cv_id, CV.tenant_id == tenant_id).first()
    if cv is None:
        raise NotFoundError("CV", cv_id)
    return cv


def list_cvs(db: Session, tenant_id: int, *, limit: int = 50, offset: int = 0) -> list[CV]:
    return (
        db.query(CV)
        .filter(CV.tenant_id == tenant_id)
        .order_by(CV.uploaded_at.desc(), CV.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_cv_keywords(db: Session, cv_id: int, tenant_id: int) -> list[CvKeyword]:
    """Keywords in rank order (highest weight first)."""
    return (
        db.query(CvKeyword)
        .filter(CvKeyword.cv_id == cv_id, CvKeyword.tenant_id == tenant_id)
        .order_by(CvKeyword.weight.desc(), CvKeyword.id)
        .all()
    )


def request_parse(db: Session, cv_id: int, tenant_id: int) -> CV:
    """Re-run parsing for a CV whose last parse finished (COMPLETED or FAILED)."""
    cv = get_cv(db, cv_id, tenant_id)
    if cv.parsing_status in (CVStatus.PENDING, CVStatus.IN_PROGRESS):
        raise StateConflictError(f"CV {cv_id} is already queued or being parsed")

    tasks.after_commit(db, parse_cv, cv.id)
    db.commit()
    logger.info("Re-parse requested for CV {}", cv_id)
    return cv


def delete_cv(db: Session, cv_id: int, tenant_id: int) -> None:
    """Delete a CV with its keywords, matches, campaigns and logs."""
    cv = get_cv(db, cv_id, tenant_id)
    sending = (
        db.query(EmailCampaign.id)
        .filter(
            EmailCampaign.cv_id == cv_id,
            EmailCampaign.status == CampaignStatus.IN_PROGRESS,
        )
        .first()
    )
    if sending:
        raise StateConflictError(f"CV {cv_id} has a campaign in progress")

    file_path = cv.file_path
    db.delete(cv)
    db.commit()
    logger.info("CV {} deleted for tenant {}", cv_id, tenant_id)

    try:
        storage_service.delete_file(file_path)
    except (OSError, ScholarError) as e:
        logger.warning("Failed to delete CV file {}: {}", file_path, e)


def _replace_keywords(db: Session, cv: CV, keywords: list[str]) -> int:
    """Swap the CV's keyword rows for a freshly ranked set (same transaction)."""
    unique: list[str] = []
    seen: set[str] = set()
    for kw in keywords:
        normalized = kw.strip().lower()
        if normalized and normalized not in seen:
            seen.add(normalized)
            unique.append(kw.strip())

    db.query(CvKeyword).filter(CvKeyword.cv_id == cv.id).delete(synchronize_session=False)
    db.flush()

    for kw, weight in zip(unique, compute_rank_weights(len(unique))):
        db.add(CvKeyword(
            tenant_id=cv.tenant_id,
            cv_id=cv.id,
            keyword=kw,
            normalized_keyword=kw.lower(),
            weight=weight,
            frequency=1,
        ))
    db.flush()
    return len(unique)


def _claim_parse(db: Session, cv_id: int) -> bool:
    """Atomically move a CV to IN_PROGRESS unless a parse already holds it."""
    result = db.execute(
        update(CV)
        .where(CV.id == cv_id, CV.parsing_status != CVStatus.IN_PROGRESS)
        .values(parsing_status=CVStatus.IN_PROGRESS, parsed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


async def parse_cv(cv_id: int) -> None:
    """Background worker: extract text and keywords, then trigger matching."""
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        if not _claim_parse(db, cv_id):
            logger.info("parse_cv: CV {} missing or already being parsed; skipping", cv_id)
            return
        cv = db.get(CV, cv_id)
        file_path, mime_type, tenant_id = cv.file_path, cv.mime_type, cv.tenant_id
        logger.info("Parsing CV {} ({})", cv_id, mime_type)

        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, storage_service.retrieve_file, file_path)
        text = await loop.run_in_executor(None, text_extractor.extract_text, content, mime_type)
        keywords = await llm_client.extract_keywords(text)

        count = _replace_keywords(db, cv, keywords)
        cv.parsing_status = CVStatus.COMPLETED
        cv.parsed_at = datetime.now(timezone.utc)
        tasks.after_commit(db, matching_service.compute_matches, cv_id, tenant_id)
        db.commit()
        logger.info("CV {} parsed: {} keywords", cv_id, count)
    except Exception as e:
        db.rollback()
        logger.error("CV {} parsing failed: {}", cv_id, e)
        _mark_failed(db, cv_id)
    finally:
        db.close()


def _mark_failed(db: Session, cv_id: int) -> None:
    cv = db.get(CV, cv_id)
    if cv is None:
        return
    cv.parsing_status = CVStatus.FAILED
    cv.parsed_at = None
    db.commit()
