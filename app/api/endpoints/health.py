import time

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health", summary="Health check")
async def health(request: Request):
    uptime = time.monotonic() - request.app.state.started_at
    return {"status": "ok", "uptime_seconds": round(uptime, 3)}
