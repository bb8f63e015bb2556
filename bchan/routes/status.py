from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from starlette.responses import RedirectResponse

from bchan.config import Settings
from bchan.dependencies import get_settings

router = APIRouter(tags=["status"])


@router.get("/status")
async def get_status(settings: Settings = Depends(get_settings)):
    return {
        "status": "OK",
        "boardName": settings.board_name,
        "time": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/", include_in_schema=False)
async def root():
    return RedirectResponse("/status")
