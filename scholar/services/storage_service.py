"""
storage_service.py — Tenant-scoped blob storage on the local filesystem.

Layout: {storage_base_path}/{tenant_id}/{uuid4}{ext}. The relative path
"{tenant_id}/{uuid4}{ext}" is what the CV row stores.

Business Rules:
- Every read/delete resolves the relative path against the root and rejects
  anything that normalizes to a location outside it (SecurityViolation)
- Missing file on read is a StorageError; missing file on delete is a warning

Called by: cv_service.py, campaign_executor.py
Depends on: config.py (storage_base_path)
"""

import os
import uuid
from pathlib import Path

from loguru import logger

from ..config import settings
from ..exceptions import SecurityViolation, StorageError


def _root() -> Path:
    return Path(settings.storage_base_path).resolve()


def file_extension(filename: str | None) -> str:
    """Return the extension including the dot (".pdf"), or "" if none."""
    if not filename:
        return ""
    return os.path.splitext(filename)[1].lower()


def _safe_path(rel_path: str) -> Path:
    root = _root()
    target = (root / rel_path).resolve()
    if target != root and root not in target.parents:
        logger.error("Path traversal attempt blocked: {}", rel_path)
        raise SecurityViolation(f"Path escapes storage root: {rel_path}")
    return target


def store_file(content: bytes, tenant_id: int, original_name: str | None) -> str:
    """Write bytes under the tenant's directory. Returns the relative path."""
    tenant_dir = _root() / str(tenant_id)
    tenant_dir.mkdir(parents=True, exist_ok=True)

    stored_name = f"{uuid.uuid4()}{file_extension(original_name)}"
    try:
        (tenant_dir / stored_name).write_bytes(content)
    except OSError as e:
        raise StorageError(f"Could not write {stored_name}: {e}") from e

    rel_path = f"{tenant_id}/{stored_name}"
    logger.info("Stored {} bytes at {}", len(content), rel_path)
    return rel_path


def retrieve_file(rel_path: str) -> bytes:
    target = _safe_path(rel_path)
    if not target.is_file():
        raise StorageError(f"File not found: {rel_path}")
    try:
        return target.read_bytes()
    except OSError as e:
        raise StorageError(f"Could not read {rel_path}: {e}") from e


def delete_file(rel_path: str) -> None:
    target = _safe_path(rel_path)
    if not target.exists():
        logger.warning("Delete skipped, file already gone: {}", rel_path)
        return
    target.unlink()
    logger.info("Deleted {}", rel_path)
