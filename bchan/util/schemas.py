import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from typing import Optional, List, Type, TypeVar

from bchan.errors import ValidationError

DEFAULT_NAME = "Anonymous"

ModelT = TypeVar("ModelT", bound=BaseModel)


class PostFields(BaseModel):
    comment: Optional[str] = Field(None, max_length=10000)
    name: Optional[str] = Field(DEFAULT_NAME, max_length=50)
    password: Optional[str] = None
    is_nsfw: bool = False

    @field_validator("password")
    @classmethod
    def blank_password(cls, value):
        return value or None

    @field_validator("name")
    @classmethod
    def default_name(cls, value):
        if value is None or not value.strip():
            return DEFAULT_NAME
        return value.strip()

    def require_content(self, has_file: bool) -> None:
        """A post needs either a file or a comment"""
        if not has_file and (self.comment is None or not self.comment.strip()):
            raise ValidationError("Either an image or comment is required")


class ThreadCreate(PostFields):
    subject: Optional[str] = Field(None, max_length=100)

    @field_validator("subject")
    @classmethod
    def blank_subject(cls, value):
        return value or None


class ReplyCreate(PostFields):
    reply_to: Optional[str] = None

    @field_validator("reply_to")
    @classmethod
    def reply_to_uuid(cls, value):
        if not value:
            return None
        try:
            return str(uuid.UUID(value))
        except ValueError:
            raise ValueError("reply_to must be a valid post id")


class DeleteRequest(BaseModel):
    password: str = Field(..., min_length=1)


def parse_form(model: Type[ModelT], **data) -> ModelT:
    """Build a schema from form fields, reporting problems as ValidationError"""
    try:
        return model(**data)
    except PydanticValidationError as e:
        details = [f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError("Validation error", details=details)


class PostOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    thread_id: str
    comment: Optional[str] = None
    name: str
    tripcode: Optional[str] = None
    is_nsfw: bool
    reply_to: Optional[str] = None
    created_at: datetime
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    thumbnail_path: Optional[str] = None
    storage_path: Optional[str] = None


class ThreadOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    subject: Optional[str] = None
    comment: Optional[str] = None
    name: str
    tripcode: Optional[str] = None
    is_nsfw: bool
    created_at: datetime
    bumped_at: datetime
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    thumbnail_path: Optional[str] = None
    storage_path: Optional[str] = None
    images_count: int = 0
    reply_count: int = 0


class ThreadPreview(ThreadOut):
    preview_posts: List[PostOut] = Field(default_factory=list)


class Pagination(BaseModel):
    total: int
    page: int
    pageSize: int
    totalPages: int


class ThreadListResponse(BaseModel):
    threads: List[ThreadPreview]
    pagination: Pagination


class ThreadDetailResponse(BaseModel):
    thread: ThreadOut
    posts: List[PostOut]


class ThreadCreatedResponse(BaseModel):
    message: str
    thread: ThreadOut


class PostCreatedResponse(BaseModel):
    message: str
    post: PostOut


class MessageResponse(BaseModel):
    message: str


class BoardStats(BaseModel):
    thread_count: int
    post_count: int
    image_count: int
