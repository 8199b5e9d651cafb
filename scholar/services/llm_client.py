"""LLM Client — chat-completion wrapper for keyword extraction and email drafting.

Purpose:
  Talks to an OpenRouter-compatible /chat/completions endpoint. Turns CV text
  into an ordered list of normalized technical keyphrases, and a professor
  match into 1-3 alternative outreach email bodies.

Design rules:
  - Failures raise LLMError (callers decide: parse → CV FAILED, draft → skip log)
  - Retries with exponential backoff on 429/500/502/503/504 and transport errors
  - Token usage logged for cost tracking
  - Keyword order is the model's significance ranking; it becomes the rank weight

Called by: cv_service, campaign_service, campaign_executor
Depends on: scholar.http_client, scholar.config
"""

import asyncio
import re
import time
from dataclasses import dataclass, field

import httpx
from loguru import logger

from ..config import settings
from ..constants import EMAIL_OPTION_DELIMITER
from ..exceptions import LLMError
from ..http_client import http

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0  # seconds

MAX_EMAIL_OPTIONS = 3

GENERIC_WORDS = frozenset({
    "study", "method", "results", "approach", "paper", "data", "analysis",
    "experience", "project", "education", "work", "using", "used",
})

KEYWORD_PROMPT = """You are an expert academic research profiler. Analyze the following CV text and extract a comprehensive list of up to {limit} technical keywords and keyphrases.
Focus strictly on:
1. Research Areas & Sub-domains (e.g., Computer Vision, Quantum Mechanics)
2. Specific Algorithms & Models (e.g., Transformer, ResNet-50, K-means)
3. Technical Skills & Tools (e.g., PyTorch, LaTeX, CRISPR)
4. Methodologies & Techniques (e.g., Reinforcement Learning, Spectrophotometry)
5. Application Domains (e.g., Healthcare, Autonomous Driving)

RULES:
- IGNORE generic words: study, method, results, approach, paper, data, analysis, experience, project, education.
- Keep phrases whole (e.g., 'Natural Language Processing' not just 'Processing').
- Rank them by technical significance, most significant first.
- Return ONLY a comma-separated list of keywords. No numbering, no preamble, no markdown formatting.

CV Text:
{text}"""

EMAIL_SYSTEM_PROMPT = """You write research outreach emails on behalf of a prospective PhD student.

Rules:
- Academic, respectful and eager tone; 150-200 words
- Mention the research alignment naturally, never as a keyword list
- Reference a publication only if one is provided
- Return only the email body: no subject line, no placeholders, no markdown"""

EMAIL_PROMPT = """Write {count} alternative outreach emails to Prof. {professor_name} at {university}.

The student's research interests: {student_keywords}
Research alignment found with this professor: {matched_keywords}
Professor's publications: {publications}

Separate the alternatives with a line containing only {delimiter}"""

_PREAMBLE_RE = re.compile(r"(?i)here are.*:")
_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")
_NUMERIC_RE = re.compile(r"^\d+$")


@dataclass
class EmailContext:
    professor_name: str
    university: str
    student_keywords: list[str] = field(default_factory=list)
    matched_keywords: str = ""
    publications: str | None = None


def _headers() -> dict:
    return {
        "Authorization": f"Bearer {settings.llm_api_key}",
        "Content-Type": "application/json",
    }


async def _call_llm(
    messages: list[dict],
    *,
    max_tokens: int = 2048,
    temperature: float = 0.2,
) -> dict:
    """Low-level chat-completion call with retries and token logging."""
    if not settings.llm_api_key:
        raise LLMError("LLM_API_KEY not set")

    body = {
        "model": settings.llm_model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }

    last_error = "no attempt made"
    for attempt in range(MAX_RETRIES):
        try:
            start = time.monotonic()
            resp = await http.post(
                settings.llm_url,
                headers=_headers(),
                json=body,
                timeout=settings.llm_timeout_seconds,
            )
            elapsed = time.monotonic() - start
        except httpx.HTTPError as e:
            last_error = f"{type(e).__name__}: {e}"
            if attempt < MAX_RETRIES - 1:
                delay = BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "LLM call failed (attempt {}/{}), retry in {:.1f}s: {}",
                    attempt + 1, MAX_RETRIES, delay, e,
                )
                await asyncio.sleep(delay)
                continue
            break

        if resp.status_code == 200:
            data = resp.json()
            usage = data.get("usage", {})
            logger.info(
                "LLM OK | model={} | in={} | out={} | {:.1f}s",
                settings.llm_model,
                usage.get("prompt_tokens", "?"),
                usage.get("completion_tokens", "?"),
                elapsed,
            )
            return data

        last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
        if resp.status_code in RETRYABLE_STATUSES and attempt < MAX_RETRIES - 1:
            delay = BASE_DELAY * (2 ** attempt)
            logger.warning(
                "LLM {} (attempt {}/{}), retry in {:.1f}s",
                resp.status_code, attempt + 1, MAX_RETRIES, delay,
            )
            await asyncio.sleep(delay)
            continue
        break

    logger.warning("LLM call gave up: {}", last_error)
    raise LLMError(last_error)


def _extract_text(data: dict) -> str | None:
    """Extract text content from a chat completion response."""
    choices = data.get("choices", [])
    if not choices:
        return None
    return choices[0].get("message", {}).get("content")


async def llm_text(prompt: str, *, system: str | None = None, **kwargs) -> str:
    """Single prompt → text. Raises LLMError on failure or empty content."""
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    text = _extract_text(await _call_llm(messages, **kwargs))
    if not text or not text.strip():
        raise LLMError("LLM returned no content")
    return text.strip()


# ── Keyword extraction ───────────────────────────────────────────────


def parse_keywords(response: str, limit: int | None = None) -> list[str]:
    """Normalize a comma-separated model reply into ordered, unique keyphrases."""
    cleaned = _PREAMBLE_RE.sub("", response).replace("```", "").replace("\n", ",")

    keywords: list[str] = []
    seen: set[str] = set()
    for part in cleaned.split(","):
        kw = _LIST_MARKER_RE.sub("", part).strip().lower()
        if len(kw) < 2 or _NUMERIC_RE.match(kw) or kw in GENERIC_WORDS:
            continue
        if kw in seen:
            continue
        seen.add(kw)
        keywords.append(kw)

    if limit is not None:
        keywords = keywords[:limit]
    return keywords


async def extract_keywords(text: str) -> list[str]:
    """CV text → ordered keyphrases, most significant first."""
    if not text or not text.strip():
        return []

    logger.info("Extracting keywords from {} chars of CV text", len(text))
    prompt = KEYWORD_PROMPT.format(limit=settings.llm_max_keywords, text=text)
    response = await llm_text(prompt, max_tokens=4096)
    keywords = parse_keywords(response, limit=settings.llm_max_keywords)
    logger.info("LLM extracted {} keywords", len(keywords))
    return keywords


# ── Email drafting ───────────────────────────────────────────────────


def split_email_options(response: str) -> list[str]:
    options = [o.strip() for o in response.split(EMAIL_OPTION_DELIMITER)]
    return [o for o in options if o][:MAX_EMAIL_OPTIONS]


async def generate_email_options(ctx: EmailContext) -> list[str]:
    """Draft 1-3 alternative email bodies for one professor."""
    prompt = EMAIL_PROMPT.format(
        count=MAX_EMAIL_OPTIONS,
        professor_name=ctx.professor_name,
        university=ctx.university or "their university",
        student_keywords=", ".join(ctx.student_keywords) or "(not provided)",
        matched_keywords=ctx.matched_keywords or "(not provided)",
        publications=ctx.publications or "(none listed)",
        delimiter=EMAIL_OPTION_DELIMITER,
    )
    response = await llm_text(prompt, system=EMAIL_SYSTEM_PROMPT, temperature=0.7)

    options = split_email_options(response)
    if not options:
        raise LLMError("LLM returned no usable email drafts")
    logger.info("Drafted {} email option(s) for {}", len(options), ctx.professor_name)
    return options
