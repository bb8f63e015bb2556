from typing import List, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKeyConstraint, Integer, PrimaryKeyConstraint, String, Text, Index, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.ext.asyncio import AsyncAttrs
import datetime
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    pass


class FileColumns:
    """Metadata of the single file a thread or post may carry"""

    file_name: Mapped[Optional[str]] = mapped_column(String(255))
    file_path: Mapped[Optional[str]] = mapped_column(Text)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger)
    file_type: Mapped[Optional[str]] = mapped_column(String(100))
    thumbnail_path: Mapped[Optional[str]] = mapped_column(Text)
    storage_path: Mapped[Optional[str]] = mapped_column(String(255))

    @property
    def has_file(self) -> bool:
        return self.storage_path is not None

    @property
    def thumbnail_key(self) -> Optional[str]:
        # The thumbnail lives under the original's key in the thumbnails bucket
        return self.storage_path if self.thumbnail_path else None


class Thread(FileColumns, Base):
    __tablename__ = 'threads'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='threads_pkey'),
        Index('threads_bumped_at_idx', 'bumped_at'),
    )

    id: Mapped[str] = mapped_column(String(36), default=_new_id)
    subject: Mapped[Optional[str]] = mapped_column(String(100))
    comment: Mapped[Optional[str]] = mapped_column(Text)
    name: Mapped[str] = mapped_column(String(50), default='Anonymous', server_default=text("'Anonymous'"))
    tripcode: Mapped[Optional[str]] = mapped_column(String(16))
    is_nsfw: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text('false'))
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)
    bumped_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)
    images_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text('0'))
    reply_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text('0'))

    posts: Mapped[List['Post']] = relationship(
        'Post',
        back_populates='thread',
        order_by='Post.created_at',
        passive_deletes=True
    )


class Post(FileColumns, Base):
    __tablename__ = 'posts'
    __table_args__ = (
        ForeignKeyConstraint(['thread_id'], ['threads.id'], name='posts_thread_id_fkey', ondelete='CASCADE'),
        ForeignKeyConstraint(['reply_to'], ['posts.id'], name='posts_reply_to_fkey', ondelete='SET NULL'),
        PrimaryKeyConstraint('id', name='posts_pkey'),
        Index('posts_thread_id_created_at_idx', 'thread_id', 'created_at'),
    )

    id: Mapped[str] = mapped_column(String(36), default=_new_id)
    thread_id: Mapped[str] = mapped_column(String(36))
    comment: Mapped[Optional[str]] = mapped_column(Text)
    name: Mapped[str] = mapped_column(String(50), default='Anonymous', server_default=text("'Anonymous'"))
    tripcode: Mapped[Optional[str]] = mapped_column(String(16))
    is_nsfw: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text('false'))
    reply_to: Mapped[Optional[str]] = mapped_column(String(36))
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)

    thread: Mapped['Thread'] = relationship('Thread', back_populates='posts')
