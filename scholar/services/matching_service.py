"""
matching_service.py — Weighted keyword overlap between a CV and professors.

Scoring (default): each CV keyword is a literal substring test against
lower(research_area) + " " + lower(department). score = Σ weight(matched) /
Σ weight(all CV keywords), 6dp half-up. No overlap → no row.

Alternate scoring (MATCHING_USE_PROFESSOR_KEYWORDS=true): for professors
with ProfessorKeyword rows, score = Σ cvW·profW over the normalized
intersection / Σ cvW. Professors without keyword rows fall back to the
substring test. MatchResult shape is the same either way.

Business Rules:
- Only COMPLETED CVs and ACTIVE professors participate
- One MatchResult per (cv, professor): updated in place, never duplicated
- Rows for professors that no longer match are removed
- matched_keywords lists matches in CV rank order joined by ", "
- Failures are logged and dropped; the CV stays COMPLETED

Called by: cv_service.parse_cv (after commit), transport layer (recompute/list)
Depends on: models (CV, CvKeyword, Professor, MatchResult), campaign_service (auto-campaign)
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from loguru import logger
from sqlalchemy.orm import Session, selectinload

from .. import tasks
from ..config import settings
from ..constants import CVStatus, ProfessorStatus
from ..exceptions import NotFoundError, StateConflictError
from ..models import CV, CvKeyword, MatchResult, Professor
from . import campaign_service

_SCORE_QUANTUM = Decimal("0.000001")
_TOKEN_SPLIT = re.compile(r"[,;\s]+")


@dataclass
class ProfessorScore:
    score: Decimal
    matched: list[str]
    total_cv_keywords: int
    total_professor_keywords: int

    @property
    def matched_keywords(self) -> str:
        return ", ".join(self.matched)


def load_cv_weights(db: Session, cv_id: int) -> dict[str, Decimal]:
    """normalized keyword → weight, in rank order, duplicates collapsed by max."""
    rows = (
        db.query(CvKeyword.normalized_keyword, CvKeyword.weight)
        .filter(CvKeyword.cv_id == cv_id)
        .order_by(CvKeyword.weight.desc(), CvKeyword.id)
        .all()
    )
    weights: dict[str, Decimal] = {}
    for normalized, weight in rows:
        key = (normalized or "").strip().lower()
        if not key:
            continue
        weight = Decimal(str(weight))
        if key not in weights or weight > weights[key]:
            weights[key] = weight
    return weights


def estimate_professor_keywords(research_area: str | None) -> int:
    """Distinct non-blank tokens of research_area split on commas, semicolons, whitespace."""
    if not research_area:
        return 0
    return len({t for t in _TOKEN_SPLIT.split(research_area) if t.strip()})


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(_SCORE_QUANTUM, rounding=ROUND_HALF_UP)


def score_professor(
    cv_weights: dict[str, Decimal],
    professor: Professor,
    *,
    use_professor_keywords: bool = False,
) -> ProfessorScore | None:
    """Score one professor against the CV keyword map. None means no overlap."""
    total = sum(cv_weights.values(), Decimal(0))
    if not cv_weights or total <= 0:
        return None

    if use_professor_keywords and professor.keywords:
        prof_weights = {
            (pk.normalized_keyword or "").strip().lower(): Decimal(str(pk.weight or 0))
            for pk in professor.keywords
        }
        matched = [k for k in cv_weights if k in prof_weights]
        if not matched:
            return None
        mass = sum((cv_weights[k] * prof_weights[k] for k in matched), Decimal(0))
        return ProfessorScore(
            score=_quantize(mass / total),
            matched=matched,
            total_cv_keywords=len(cv_weights),
            total_professor_keywords=len(prof_weights),
        )

    combined = f"{(professor.research_area or '').lower()} {(professor.department or '').lower()}"
    if not combined.strip():
        return None

    matched = [k for k in cv_weights if k in combined]
    if not matched:
        return None
    mass = sum((cv_weights[k] for k in matched), Decimal(0))
    return ProfessorScore(
        score=_quantize(mass / total),
        matched=matched,
        total_cv_keywords=len(cv_weights),
        total_professor_keywords=estimate_professor_keywords(professor.research_area),
    )


def compute_for_cv(db: Session, cv_id: int, tenant_id: int) -> int:
    """Score every ACTIVE professor and upsert results. Returns rows kept."""
    cv = db.query(CV).filter(CV.id == cv_id, CV.tenant_id == tenant_id).first()
    if cv is None or cv.parsing_status != CVStatus.COMPLETED:
        logger.debug("Matching skipped for CV {}: not COMPLETED", cv_id)
        return 0

    cv_weights = load_cv_weights(db, cv_id)
    use_kw = settings.matching_use_professor_keywords

    query = db.query(Professor).filter(Professor.status == ProfessorStatus.ACTIVE)
    if use_kw:
        query = query.options(selectinload(Professor.keywords))
    professors = query.order_by(Professor.id).all()

    existing = {
        m.professor_id: m
        for m in db.query(MatchResult).filter(MatchResult.cv_id == cv_id).all()
    }

    now = datetime.now(timezone.utc)
    kept: set[int] = set()
    for prof in professors:
        result = score_professor(cv_weights, prof, use_professor_keywords=use_kw)
        if result is None:
            continue
        kept.add(prof.id)

        match = existing.get(prof.id)
        if match is None:
            match = MatchResult(tenant_id=tenant_id, cv_id=cv_id, professor_id=prof.id)
            db.add(match)
        match.match_score = result.score
        match.matched_keywords = result.matched_keywords
        match.total_cv_keywords = result.total_cv_keywords
        match.total_professor_keywords = result.total_professor_keywords
        match.total_matched_keywords = len(result.matched)
        match.computed_at = now

    stale = [m for pid, m in existing.items() if pid not in kept]
    for m in stale:
        db.delete(m)

    db.flush()
    db.commit()
    logger.info(
        "Matching CV {}: {} professors scored, {} matches, {} stale removed",
        cv_id, len(professors), len(kept), len(stale),
    )
    return len(kept)


async def compute_matches(cv_id: int, tenant_id: int) -> None:
    """Background worker: compute matches, then the optional auto-campaign."""
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        count = compute_for_cv(db, cv_id, tenant_id)
        if count and settings.auto_campaign_enabled:
            campaign_service.create_auto_campaign(db, cv_id, tenant_id)
    except Exception as e:
        db.rollback()
        logger.error("Match computation failed for CV {}: {}", cv_id, e)
    finally:
        db.close()


def recompute_matches(db: Session, cv_id: int, tenant_id: int) -> None:
    """Drop the CV's results and compute them again after commit."""
    cv = db.query(CV).filter(CV.id == cv_id, CV.tenant_id == tenant_id).first()
    if cv is None:
        raise NotFoundError("CV", cv_id)
    if cv.parsing_status != CVStatus.COMPLETED:
        raise StateConflictError(f"CV {cv_id} is {cv.parsing_status}, not COMPLETED")

    deleted = (
        db.query(MatchResult)
        .filter(MatchResult.cv_id == cv_id)
        .delete(synchronize_session=False)
    )
    tasks.after_commit(db, compute_matches, cv_id, tenant_id)
    db.commit()
    logger.info("Recompute requested for CV {} ({} results cleared)", cv_id, deleted)


def get_matches(
    db: Session,
    cv_id: int,
    tenant_id: int,
    *,
    min_score: float | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[MatchResult]:
    query = db.query(MatchResult).filter(
        MatchResult.cv_id == cv_id, MatchResult.tenant_id == tenant_id
    )
    if min_score is not None:
        query = query.filter(MatchResult.match_score >= min_score)
    return (
        query.order_by(MatchResult.match_score.desc(), MatchResult.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
