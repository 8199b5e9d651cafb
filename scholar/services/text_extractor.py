"""Text extraction for uploaded CVs (PDF via pdfplumber, DOCX via python-docx).

Blocking; callers run it in the default executor.
"""

import io
import re

import pdfplumber
from docx import Document
from loguru import logger

from ..exceptions import ExtractionError, ValidationError

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
LEGACY_DOC_MIME = "application/msword"


def extract_text(content: bytes, mime_type: str) -> str:
    """Decode document bytes to cleaned plain text."""
    if mime_type == PDF_MIME:
        raw = _extract_pdf(content)
    elif mime_type == DOCX_MIME:
        raw = _extract_docx(content)
    elif mime_type == LEGACY_DOC_MIME:
        raise ValidationError("Legacy DOC format not supported")
    else:
        raise ValidationError(f"Unsupported document type: {mime_type}")

    text = clean_text(raw)
    logger.debug("Extracted {} chars from {}", len(text), mime_type)
    return text


def _extract_pdf(content: bytes) -> str:
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            return "\n".join(page.extract_text() or "" for page in pdf.pages)
    except Exception as e:
        raise ExtractionError(f"Could not read PDF: {e}") from e


def _extract_docx(content: bytes) -> str:
    try:
        doc = Document(io.BytesIO(content))
    except Exception as e:
        raise ExtractionError(f"Could not read DOCX: {e}") from e

    parts = [p.text for p in doc.paragraphs]
    # Skills sections are often laid out as tables
    for table in doc.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


def clean_text(text: str) -> str:
    """Collapse tabs/CRs and runs of spaces, keep at most one blank line."""
    if not text:
        return ""
    text = re.sub(r"[\t\r]+", " ", text)
    text = re.sub(r" {2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
