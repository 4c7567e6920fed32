import logging
import os
import secrets
import time
from dataclasses import dataclass

import aiofiles
import aiofiles.os
from fastapi import UploadFile

from app.config import settings
from app.exceptions import Internal, ValidationError

logger = logging.getLogger(__name__)

ATTACHMENTS_DIR = "attachments"
AUDIO_DIR = "audio"
VOICE_DIR = "voice-messages"

CHUNK_SIZE = 8192
DOCUMENT_MIME_MARKERS = ("pdf", "msword", "officedocument", "text/")


@dataclass
class StoredFile:
    path: str
    url: str
    filename: str
    original_name: str
    size: int
    mime_type: str

    def as_attachment(self, attachment_type: str | None = None, **extra) -> dict:
        attachment = {
            "type": attachment_type or get_attachment_type(self.mime_type),
            "url": self.url,
            "filename": self.filename,
            "original_name": self.original_name,
            "size": self.size,
            "mime_type": self.mime_type,
        }
        attachment.update({k: v for k, v in extra.items() if v is not None})
        return attachment


def get_attachment_type(mime_type: str | None) -> str:
    mime_type = mime_type or ""
    for prefix in ("image", "video", "audio"):
        if mime_type.startswith(f"{prefix}/"):
            return prefix
    if any(marker in mime_type for marker in DOCUMENT_MIME_MARKERS):
        return "document"
    return "other"


def _unique_name(original_name: str | None) -> str:
    ext = os.path.splitext(original_name or "")[1]
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{ext}"


def _storage_path(subdir: str, name: str) -> str:
    return os.path.join(settings.upload_dir, subdir, name)


async def store_upload(
    file: UploadFile,
    subdir: str = ATTACHMENTS_DIR,
    max_size: int | None = None,
    mime_prefix: str | None = None,
) -> StoredFile:
    """Stream an upload to ``{upload_dir}/{subdir}/{epoch_ms}-{random}{ext}``."""
    max_size = max_size or settings.max_upload_size
    mime_type = file.content_type or "application/octet-stream"
    if mime_prefix and not mime_type.startswith(mime_prefix):
        raise ValidationError(f"Only {mime_prefix.rstrip('/')} files allowed")

    name = _unique_name(file.filename)
    storage_path = _storage_path(subdir, name)
    os.makedirs(os.path.dirname(storage_path), exist_ok=True)

    size = 0
    try:
        async with aiofiles.open(storage_path, "wb") as f:
            await file.seek(0)
            while chunk := await file.read(CHUNK_SIZE):
                size += len(chunk)
                if size > max_size:
                    break
                await f.write(chunk)
    except OSError:
        logger.exception("Could not write upload to %s", storage_path)
        raise Internal("Could not store file")

    if size > max_size:
        await aiofiles.os.remove(storage_path)
        raise ValidationError(f"File too large (max {max_size // (1024 * 1024)}MB)")

    return StoredFile(
        path=storage_path,
        url=f"{settings.upload_url_prefix}/{subdir}/{name}",
        filename=name,
        original_name=file.filename or "unnamed",
        size=size,
        mime_type=mime_type,
    )


async def store_uploads(files: list[UploadFile], subdir: str = ATTACHMENTS_DIR) -> list[StoredFile]:
    if not files:
        raise ValidationError("No files uploaded")
    if len(files) > settings.max_files_per_message:
        raise ValidationError(
            f"Too many files (max {settings.max_files_per_message})"
        )

    stored: list[StoredFile] = []
    try:
        for file in files:
            stored.append(await store_upload(file, subdir))
    except Exception:
        await remove_files(stored)
        raise
    return stored


async def remove_files(files: list[StoredFile]) -> None:
    """Best-effort cleanup of files whose message was never persisted."""
    for stored in files:
        try:
            await aiofiles.os.remove(stored.path)
        except FileNotFoundError:
            continue
        except OSError:
            logger.warning("Could not remove upload %s", stored.path, exc_info=True)
