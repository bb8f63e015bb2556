import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Request, UploadFile

from bchan.errors import ValidationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ReceivedFile:
    """A file that passed the type and size filter and is ready for the upload pipeline"""
    data: bytes
    original_name: str
    mime_type: str
    size: int


def check_file(mime_type: Optional[str], size: int, allowed_types: Iterable[str], max_size: int) -> None:
    """Raise ValidationError when a file is outside the configured whitelist or size limit"""
    allowed = list(allowed_types)
    if mime_type not in allowed:
        raise ValidationError(f"File type not allowed. Allowed types: {', '.join(allowed)}")
    if size > max_size:
        raise ValidationError(f"File exceeds maximum size of {max_size / 1024 / 1024:g}MB")


async def single_upload(request: Request, field: str = "file") -> Optional[UploadFile]:
    """
    The file sent under a form field, rejecting requests that carry several.

    FastAPI binds only the last part of a repeated field, so the parsed form
    is checked directly.
    """
    form = await request.form()
    uploads = [item for item in form.getlist(field) if not isinstance(item, str)]
    if len(uploads) > 1:
        for upload in uploads:
            await upload.close()
        raise ValidationError("Only one file may be uploaded")
    return uploads[0] if uploads else None


async def receive_upload(
        upload: Optional[UploadFile],
        allowed_types: Iterable[str],
        max_size: int
) -> Optional[ReceivedFile]:
    """
    Read an uploaded form file, enforcing the type whitelist and size limit.

    FastAPI spools the upload to a temporary file on disk; it is closed here
    on every path.

    Returns:
        ReceivedFile, or None if the request carried no file
    """
    if upload is None:
        return None

    try:
        if not upload.filename:
            return None

        mime_type = upload.content_type or 'application/octet-stream'
        # Reject by type before reading anything
        check_file(mime_type, 0, allowed_types, max_size)

        # Stop reading as soon as the limit is exceeded
        chunks = []
        size = 0
        while True:
            chunk = await upload.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > max_size:
                logger.info(f"Rejected oversized upload {upload.filename}")
                check_file(mime_type, size, allowed_types, max_size)
            chunks.append(chunk)

        return ReceivedFile(
            data=b"".join(chunks),
            original_name=upload.filename,
            mime_type=mime_type,
            size=size
        )
    finally:
        await upload.close()
