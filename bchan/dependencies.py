from typing import Optional

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from bchan.config import Settings
from bchan.db.database import get_db
from bchan.services.board import BoardService
from bchan.util.redis_config import JsonCache, RateLimiter, client_ip


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache(request: Request) -> JsonCache:
    return request.app.state.cache


def get_client_ip(request: Request, settings: Settings = Depends(get_settings)) -> Optional[str]:
    return client_ip(request, settings.trust_proxy)


async def get_board(
        request: Request,
        db: AsyncSession = Depends(get_db),
) -> BoardService:
    return BoardService(db, request.app.state.pipeline, request.app.state.tripcodes)


async def rate_limit(
        request: Request,
        response: Response,
        ip: Optional[str] = Depends(get_client_ip),
) -> None:
    limiter: RateLimiter = request.app.state.rate_limiter
    result = await limiter.hit(ip or "unknown")

    headers = {
        "RateLimit-Limit": str(result.limit),
        "RateLimit-Remaining": str(result.remaining),
        "RateLimit-Reset": str(result.reset),
    }
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "Too many requests, please try again later.",
                "retryAfter": limiter.window,
            },
            headers={**headers, "Retry-After": str(result.reset)},
        )
    response.headers.update(headers)
