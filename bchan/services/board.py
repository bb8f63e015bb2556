import datetime
import math
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger
from sqlalchemy import delete, func, select, update, union
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bchan.db.models import Post, Thread
from bchan.errors import AuthorizationError, NotFoundError, PersistenceError, ValidationError
from bchan.services.upload import UploadedFile, UploadPipeline
from bchan.util.schemas import ReplyCreate, ThreadCreate
from bchan.util.tripcode import Tripcodes
from bchan.util.uploads import ReceivedFile

PREVIEW_POSTS = 3
FILE_COLUMNS = ("file_name", "file_path", "file_size", "file_type", "thumbnail_path", "storage_path")


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _file_columns(uploaded: Optional[UploadedFile]) -> dict:
    if uploaded is None:
        return dict.fromkeys(FILE_COLUMNS)
    return uploaded.to_columns()


async def referenced_storage_keys(db: AsyncSession) -> Set[str]:
    """Every storage key still referenced by a thread or a post"""
    query = union(
        select(Thread.storage_path).where(Thread.storage_path.is_not(None)),
        select(Post.storage_path).where(Post.storage_path.is_not(None)),
    )
    result = await db.execute(query)
    return {row[0] for row in result.all()}


class BoardService:
    """Threads and replies of the board, with their files kept in object storage"""

    def __init__(self, db: AsyncSession, pipeline: UploadPipeline, tripcodes: Tripcodes):
        self.db = db
        self.pipeline = pipeline
        self.tripcodes = tripcodes

    # Reads

    async def list_threads(self, page: int = 1, page_size: int = 15) -> Tuple[List[Tuple[Thread, List[Post]]], dict]:
        """
        Threads ordered by bump time, each with its most recent replies.

        Returns:
            (list of (thread, preview posts), pagination dict)
        """
        offset = (page - 1) * page_size

        total = await self.db.scalar(select(func.count()).select_from(Thread))
        result = await self.db.execute(
            select(Thread)
            .order_by(Thread.bumped_at.desc())
            .offset(offset)
            .limit(page_size)
        )
        threads = result.scalars().all()

        previews: Dict[str, List[Post]] = {thread.id: [] for thread in threads}
        if threads:
            # Latest replies per thread in one query
            ranked = (
                select(
                    Post.id,
                    func.row_number().over(
                        partition_by=Post.thread_id,
                        order_by=Post.created_at.desc()
                    ).label("rank")
                )
                .where(Post.thread_id.in_(list(previews)))
                .subquery()
            )
            posts_result = await self.db.execute(
                select(Post)
                .join(ranked, ranked.c.id == Post.id)
                .where(ranked.c.rank <= PREVIEW_POSTS)
                .order_by(Post.created_at.desc())
            )
            for post in posts_result.scalars().all():
                previews[post.thread_id].append(post)

        pagination = {
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(total / page_size) if page_size else 0,
        }
        return [(thread, previews[thread.id]) for thread in threads], pagination

    async def get_thread(self, thread_id: str) -> Tuple[Thread, List[Post]]:
        thread = await self._get_thread(thread_id)

        result = await self.db.execute(
            select(Post)
            .where(Post.thread_id == thread_id)
            .order_by(Post.created_at.asc())
        )
        return thread, list(result.scalars().all())

    async def stats(self) -> dict:
        thread_count = await self.db.scalar(select(func.count()).select_from(Thread))
        post_count = await self.db.scalar(select(func.count()).select_from(Post))
        thread_images = await self.db.scalar(
            select(func.count()).select_from(Thread).where(Thread.storage_path.is_not(None))
        )
        post_images = await self.db.scalar(
            select(func.count()).select_from(Post).where(Post.storage_path.is_not(None))
        )
        return {
            "thread_count": thread_count,
            "post_count": post_count,
            "image_count": thread_images + post_images,
        }

    # Writes

    async def create_thread(self, form: ThreadCreate, file: Optional[ReceivedFile], ip_address: Optional[str]) -> Thread:
        form.require_content(file is not None)

        uploaded = await self._upload(file, form.is_nsfw)
        now = _now()
        thread = Thread(
            subject=form.subject,
            comment=form.comment,
            name=form.name,
            tripcode=self.tripcodes.generate(form.password),
            is_nsfw=form.is_nsfw,
            ip_address=ip_address,
            created_at=now,
            bumped_at=now,
            images_count=1 if uploaded else 0,
            reply_count=0,
            **_file_columns(uploaded)
        )

        self.db.add(thread)
        await self._save(uploaded, "thread")
        logger.info(f"Created thread {thread.id}")
        return thread

    async def reply_to_thread(
            self,
            thread_id: str,
            form: ReplyCreate,
            file: Optional[ReceivedFile],
            ip_address: Optional[str]
    ) -> Post:
        form.require_content(file is not None)
        await self._get_thread(thread_id)

        if form.reply_to:
            target = await self.db.get(Post, form.reply_to)
            if target is None or target.thread_id != thread_id:
                raise ValidationError("reply_to must reference a post in the same thread")

        uploaded = await self._upload(file, form.is_nsfw)
        now = _now()
        post = Post(
            thread_id=thread_id,
            comment=form.comment,
            name=form.name,
            tripcode=self.tripcodes.generate(form.password),
            is_nsfw=form.is_nsfw,
            reply_to=form.reply_to,
            ip_address=ip_address,
            created_at=now,
            **_file_columns(uploaded)
        )

        self.db.add(post)
        # Concurrent replies simply overwrite each other's bump time
        await self._save(
            uploaded,
            "reply",
            update(Thread)
            .where(Thread.id == thread_id)
            .values(
                bumped_at=now,
                reply_count=Thread.reply_count + 1,
                images_count=Thread.images_count + (1 if uploaded else 0)
            )
        )
        logger.info(f"Created reply {post.id} in thread {thread_id}")
        return post

    async def delete_thread(self, thread_id: str, password: str) -> None:
        thread = await self._get_thread(thread_id)
        self._check_owner(thread, password)

        result = await self.db.execute(
            select(Post.storage_path, Post.thumbnail_path)
            .where(Post.thread_id == thread_id, Post.storage_path.is_not(None))
        )
        files = [(thread.storage_path, thread.thumbnail_key)] if thread.has_file else []
        files.extend((storage_path, storage_path if thumbnail_path else None)
                     for storage_path, thumbnail_path in result.all())

        # Posts go first so no foreign key cascade is needed
        await self._save(
            None,
            "thread deletion",
            delete(Post).where(Post.thread_id == thread_id),
            delete(Thread).where(Thread.id == thread_id)
        )
        logger.info(f"Deleted thread {thread_id} with {len(files)} files")

        for storage_path, thumbnail_key in files:
            await self.pipeline.delete_file(storage_path, thumbnail_key)

    async def delete_post(self, post_id: str, password: str) -> None:
        post = await self.db.get(Post, post_id)
        if post is None:
            raise NotFoundError("Post not found")
        self._check_owner(post, password)

        thread_id, storage_path, thumbnail_key = post.thread_id, post.storage_path, post.thumbnail_key
        await self._save(
            None,
            "post deletion",
            update(Post).where(Post.reply_to == post_id).values(reply_to=None),
            delete(Post).where(Post.id == post_id),
            update(Thread)
            .where(Thread.id == thread_id)
            .values(
                reply_count=Thread.reply_count - 1,
                images_count=Thread.images_count - (1 if storage_path else 0)
            )
        )
        logger.info(f"Deleted post {post_id}")

        if storage_path:
            await self.pipeline.delete_file(storage_path, thumbnail_key)

    # Helpers

    async def _get_thread(self, thread_id: str) -> Thread:
        thread = await self.db.get(Thread, thread_id)
        if thread is None:
            raise NotFoundError("Thread not found")
        return thread

    def _check_owner(self, row, password: str) -> None:
        if not row.tripcode or not self.tripcodes.verify(password, row.tripcode):
            raise AuthorizationError("Invalid password")

    async def _upload(self, file: Optional[ReceivedFile], is_nsfw: bool) -> Optional[UploadedFile]:
        if file is None:
            return None
        return await self.pipeline.upload_file(
            file.data,
            file.original_name,
            file.mime_type,
            file.size,
            is_nsfw
        )

    async def _save(self, uploaded: Optional[UploadedFile], what: str, *statements) -> None:
        """
        Run the write statements and commit.

        When the write fails after a file was uploaded for it, the file is
        deleted again before PersistenceError is raised.
        """
        try:
            for statement in statements:
                await self.db.execute(statement)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error saving {what}: {str(e)}")
            if uploaded is not None:
                await self.pipeline.delete_file(uploaded.storage_path, uploaded.thumbnail_storage_path)
            raise PersistenceError(f"Failed to save {what}")
