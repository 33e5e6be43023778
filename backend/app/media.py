from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterable
from pathlib import Path

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool

from app.errors import ValidationFailed
from app.settings import settings

logger = logging.getLogger(__name__)

UPLOAD_PREFIX = "/uploads"
_CHUNK_SIZE = 1024 * 1024


def upload_root() -> Path:
    root = Path(settings.upload_dir)
    root.mkdir(parents=True, exist_ok=True)
    return root


def media_kind(filename: str | None) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    return "video" if ext in settings.video_extensions else "image"


def media_url(stored_name: str) -> str:
    base = str(settings.public_base_url).rstrip("/") if settings.public_base_url else ""
    return f"{base}{UPLOAD_PREFIX}/{stored_name}"


def _clean_name(filename: str) -> str:
    name = os.path.basename(filename.replace("\\", "/")).strip()
    return name or "upload"


def _stored_name(root: Path, filename: str) -> str:
    ms = int(time.time() * 1000)
    name = _clean_name(filename)
    while (root / f"{ms}-{name}").exists():
        ms += 1
    return f"{ms}-{name}"


def present(files: Iterable[UploadFile | str | None] | None) -> list[UploadFile]:
    """Drop the empty parts browsers send for untouched file inputs."""
    return [f for f in files or [] if f is not None and not isinstance(f, str) and f.filename]


async def save_upload(upload: UploadFile) -> dict:
    root = upload_root()
    stored = _stored_name(root, upload.filename or "")
    path = root / stored
    written = 0
    out = await run_in_threadpool(path.open, "wb")
    try:
        try:
            while chunk := await upload.read(_CHUNK_SIZE):
                written += len(chunk)
                if written > settings.max_upload_bytes:
                    raise ValidationFailed(f"File {upload.filename} exceeds {settings.max_upload_bytes} bytes")
                await run_in_threadpool(out.write, chunk)
        finally:
            await run_in_threadpool(out.close)
    except ValidationFailed:
        path.unlink(missing_ok=True)
        raise
    finally:
        await upload.close()
    logger.info("Stored upload %s (%d bytes)", stored, written)
    return {"url": media_url(stored), "type": media_kind(upload.filename)}


async def save_uploads(files: list[UploadFile]) -> list[dict]:
    if len(files) > settings.max_upload_files:
        raise ValidationFailed(f"At most {settings.max_upload_files} files per request")
    saved: list[dict] = []
    try:
        for upload in files:
            saved.append(await save_upload(upload))
    except ValidationFailed:
        remove_media(item["url"] for item in saved)
        raise
    return saved


def _local_path(url: str) -> Path | None:
    marker = f"{UPLOAD_PREFIX}/"
    if marker not in url:
        return None
    name = os.path.basename(url.split(marker, 1)[1])
    return Path(settings.upload_dir) / name if name else None


def remove_media(urls: Iterable[str | None]) -> None:
    """Best-effort removal of uploaded files; failures are only logged."""
    for url in urls:
        if not url:
            continue
        path = _local_path(url)
        if path is None:
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Media file already gone: %s", path)
        except OSError:
            logger.warning("Could not remove media file %s", path, exc_info=True)
