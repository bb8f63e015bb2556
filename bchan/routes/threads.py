from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status

from bchan.config import Settings
from bchan.dependencies import get_board, get_cache, get_client_ip, get_settings, rate_limit
from bchan.services.board import BoardService
from bchan.util.redis_config import JsonCache
from bchan.util.schemas import (
    BoardStats,
    DeleteRequest,
    MessageResponse,
    PostCreatedResponse,
    PostOut,
    ReplyCreate,
    ThreadCreate,
    ThreadCreatedResponse,
    ThreadDetailResponse,
    ThreadListResponse,
    ThreadOut,
    ThreadPreview,
    parse_form,
)
from bchan.util.uploads import receive_upload, single_upload

STATS_CACHE_KEY = "stats"

router = APIRouter(
    prefix="/api",
    tags=["threads"],
    dependencies=[Depends(rate_limit)],
)


@router.get("/threads", response_model=ThreadListResponse)
async def get_threads(
        page: int = Query(1, ge=1),
        pageSize: int = Query(15, ge=1, le=100),
        board: BoardService = Depends(get_board),
):
    """Threads ordered by last bump, each with its three latest replies."""
    threads, pagination = await board.list_threads(page, pageSize)

    return ThreadListResponse(
        threads=[
            ThreadPreview(
                **ThreadOut.model_validate(thread).model_dump(),
                preview_posts=[PostOut.model_validate(post) for post in posts]
            )
            for thread, posts in threads
        ],
        pagination=pagination
    )


@router.get("/thread/{thread_id}", response_model=ThreadDetailResponse)
async def get_thread(
        thread_id: str,
        board: BoardService = Depends(get_board),
):
    thread, posts = await board.get_thread(thread_id)
    return ThreadDetailResponse(
        thread=ThreadOut.model_validate(thread),
        posts=[PostOut.model_validate(post) for post in posts]
    )


@router.post("/thread", response_model=ThreadCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_thread(
        request: Request,
        subject: Optional[str] = Form(None),
        comment: Optional[str] = Form(None),
        name: Optional[str] = Form(None),
        password: Optional[str] = Form(None),
        is_nsfw: bool = Form(False),
        # Declared for the schema, read through single_upload
        file: Optional[UploadFile] = File(None),
        board: BoardService = Depends(get_board),
        settings: Settings = Depends(get_settings),
        cache: JsonCache = Depends(get_cache),
        ip: Optional[str] = Depends(get_client_ip),
):
    form = parse_form(
        ThreadCreate,
        subject=subject,
        comment=comment,
        name=name,
        password=password,
        is_nsfw=is_nsfw
    )
    received = await receive_upload(
        await single_upload(request),
        settings.allowed_file_types,
        settings.max_file_size
    )

    thread = await board.create_thread(form, received, ip)
    await cache.delete(STATS_CACHE_KEY)

    return ThreadCreatedResponse(
        message="Thread created successfully",
        thread=ThreadOut.model_validate(thread)
    )


@router.post("/thread/{thread_id}/reply", response_model=PostCreatedResponse, status_code=status.HTTP_201_CREATED)
async def reply_to_thread(
        request: Request,
        thread_id: str,
        comment: Optional[str] = Form(None),
        name: Optional[str] = Form(None),
        password: Optional[str] = Form(None),
        is_nsfw: bool = Form(False),
        reply_to: Optional[str] = Form(None),
        # Declared for the schema, read through single_upload
        file: Optional[UploadFile] = File(None),
        board: BoardService = Depends(get_board),
        settings: Settings = Depends(get_settings),
        cache: JsonCache = Depends(get_cache),
        ip: Optional[str] = Depends(get_client_ip),
):
    form = parse_form(
        ReplyCreate,
        comment=comment,
        name=name,
        password=password,
        is_nsfw=is_nsfw,
        reply_to=reply_to
    )
    received = await receive_upload(
        await single_upload(request),
        settings.allowed_file_types,
        settings.max_file_size
    )

    post = await board.reply_to_thread(thread_id, form, received, ip)
    await cache.delete(STATS_CACHE_KEY)

    return PostCreatedResponse(
        message="Reply posted successfully",
        post=PostOut.model_validate(post)
    )


@router.delete("/thread/{thread_id}", response_model=MessageResponse)
async def delete_thread(
        thread_id: str,
        body: DeleteRequest,
        board: BoardService = Depends(get_board),
        cache: JsonCache = Depends(get_cache),
):
    await board.delete_thread(thread_id, body.password)
    await cache.delete(STATS_CACHE_KEY)
    return MessageResponse(message="Thread deleted successfully")


@router.delete("/post/{post_id}", response_model=MessageResponse, tags=["posts"])
async def delete_post(
        post_id: str,
        body: DeleteRequest,
        board: BoardService = Depends(get_board),
        cache: JsonCache = Depends(get_cache),
):
    await board.delete_post(post_id, body.password)
    await cache.delete(STATS_CACHE_KEY)
    return MessageResponse(message="Post deleted successfully")


@router.get("/stats", response_model=BoardStats, tags=["board"])
async def get_board_stats(
        board: BoardService = Depends(get_board),
        cache: JsonCache = Depends(get_cache),
        settings: Settings = Depends(get_settings),
):
    # Try to get from cache first
    cached = await cache.get(STATS_CACHE_KEY)
    if cached:
        return cached

    stats = await board.stats()
    await cache.set(STATS_CACHE_KEY, stats, ttl=settings.stats_cache_ttl)
    return stats
