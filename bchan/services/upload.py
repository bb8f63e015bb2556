import os
import traceback
import uuid
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from loguru import logger
from starlette.concurrency import run_in_threadpool

from bchan.errors import StorageError
from bchan.util.thumbnails import THUMBNAIL_CONTENT_TYPE, THUMBNAIL_WIDTH, derive_thumbnail, is_raster_image

NSFW_PREFIX = "nsfw/"


class UploadState(str, Enum):
    RECEIVED = "received"
    UPLOADING_ORIGINAL = "uploading_original"
    DERIVING_THUMBNAIL = "deriving_thumbnail"
    UPLOADING_THUMBNAIL = "uploading_thumbnail"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadedFile:
    file_name: str
    file_size: int
    file_type: str
    file_path: str
    storage_path: str
    thumbnail_path: Optional[str] = None
    thumbnail_storage_path: Optional[str] = None

    def to_columns(self) -> dict:
        """Fields persisted on the thread or post row"""
        columns = asdict(self)
        # Thumbnails share the original's key, only the bucket differs
        columns.pop("thumbnail_storage_path")
        return columns


def make_storage_key(original_name: str, is_nsfw: bool = False) -> str:
    """Random object key keeping the original extension, namespaced for NSFW files"""
    extension = os.path.splitext(original_name or "")[1].lower()
    key = f"{uuid.uuid4()}{extension}"
    return f"{NSFW_PREFIX}{key}" if is_nsfw else key


class UploadPipeline:
    """
    Stores an uploaded file and its thumbnail.

    The original is written first; a failure there aborts the upload with
    StorageError and leaves nothing behind. Thumbnail derivation and upload are
    optional steps: any failure in them completes the upload without a
    thumbnail.
    """

    def __init__(self, storage, images_bucket: str, thumbnails_bucket: str,
                 thumbnail_width: int = THUMBNAIL_WIDTH):
        self.storage = storage
        self.images_bucket = images_bucket
        self.thumbnails_bucket = thumbnails_bucket
        self.thumbnail_width = thumbnail_width

    async def upload_file(
            self,
            data: bytes,
            original_name: str,
            mime_type: str,
            size: int,
            is_nsfw: bool = False
    ) -> UploadedFile:
        state = UploadState.RECEIVED
        storage_key = make_storage_key(original_name, is_nsfw)
        logger.info(f"Uploading file: {original_name} ({size} bytes) to {storage_key}")

        state = self._advance(storage_key, state, UploadState.UPLOADING_ORIGINAL)
        try:
            await self.storage.upload(self.images_bucket, storage_key, data, mime_type)
        except StorageError as e:
            self._advance(storage_key, state, UploadState.FAILED)
            logger.error(f"Error uploading file {original_name}: {e.message}")
            raise

        thumbnail_key = None
        if is_raster_image(mime_type):
            state = self._advance(storage_key, state, UploadState.DERIVING_THUMBNAIL)
            thumbnail = await self._derive(storage_key, data)

            if thumbnail is not None:
                state = self._advance(storage_key, state, UploadState.UPLOADING_THUMBNAIL)
                thumbnail_key = await self._upload_thumbnail(storage_key, thumbnail)

        self._advance(storage_key, state, UploadState.COMPLETED)
        return UploadedFile(
            file_name=original_name,
            file_size=size,
            file_type=mime_type,
            file_path=self.storage.public_url_for(self.images_bucket, storage_key),
            storage_path=storage_key,
            thumbnail_path=(
                self.storage.public_url_for(self.thumbnails_bucket, thumbnail_key) if thumbnail_key else None
            ),
            thumbnail_storage_path=thumbnail_key
        )

    @staticmethod
    def _advance(storage_key: str, current: UploadState, target: UploadState) -> UploadState:
        logger.debug(f"Upload {storage_key}: {current.value} -> {target.value}")
        return target

    async def _derive(self, storage_key: str, data: bytes) -> Optional[bytes]:
        try:
            return await run_in_threadpool(derive_thumbnail, data, self.thumbnail_width)
        except Exception as e:
            logger.error(f"Error processing thumbnail for {storage_key}: {str(e)}")
            logger.debug(traceback.format_exc())
            return None

    async def _upload_thumbnail(self, storage_key: str, thumbnail: bytes) -> Optional[str]:
        try:
            await self.storage.upload(self.thumbnails_bucket, storage_key, thumbnail, THUMBNAIL_CONTENT_TYPE)
            return storage_key
        except StorageError as e:
            logger.error(f"Error creating thumbnail for {storage_key}: {e.message}")
            return None

    async def delete_file(self, storage_key: Optional[str], thumbnail_key: Optional[str] = None) -> None:
        """
        Best-effort removal of an original and its thumbnail.

        Each object is deleted independently; failures are logged and left for
        the orphan cleanup to reclaim.
        """
        if storage_key:
            try:
                await self.storage.delete(self.images_bucket, storage_key)
                logger.info(f"Deleted file: {storage_key}")
            except StorageError as e:
                logger.error(f"Error deleting file {storage_key}: {e.message}")

        if thumbnail_key:
            try:
                await self.storage.delete(self.thumbnails_bucket, thumbnail_key)
                logger.info(f"Deleted thumbnail: {thumbnail_key}")
            except StorageError as e:
                logger.error(f"Error deleting thumbnail {thumbnail_key}: {e.message}")
