# app/services/scheduler.py
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from loguru import logger

scheduler: Optional[AsyncIOScheduler] = None


def sweep_stale_uploads(upload_dir: str, max_age_sec: float, now: Optional[float] = None) -> int:
    """
    刪除暫存目錄中超過 max_age_sec 的檔案，回傳刪除數量。
    正常 request 會自己清掉暫存檔；這裡只收 process 當掉留下的孤兒。
    """
    if not os.path.isdir(upload_dir):
        return 0
    now = time.time() if now is None else now
    deleted = 0
    with os.scandir(upload_dir) as it:
        for entry in it:
            if not entry.is_file():
                continue
            try:
                if now - entry.stat().st_mtime > max_age_sec:
                    os.remove(entry.path)
                    deleted += 1
            except OSError as e:
                logger.warning("Could not sweep {}: {}", entry.path, e)
    return deleted


@asynccontextmanager
async def lifespan_scheduler(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan：啟動 / 關閉 APScheduler，並在關機時釋放外部連線。
    """
    global scheduler
    settings = app.state.settings
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_sweep_job,
        IntervalTrigger(minutes=settings.UPLOAD_SWEEP_MINUTES),
        args=[settings.UPLOAD_DIR, settings.UPLOAD_MAX_AGE_MINUTES * 60],
    )
    scheduler.start()
    logger.info("APScheduler started: upload sweep every {} minutes", settings.UPLOAD_SWEEP_MINUTES)
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            logger.info("APScheduler shutdown")
        await app.state.inference_client.aclose()
        await app.state.rate_limiter.close()


async def run_sweep_job(upload_dir: str, max_age_sec: float) -> None:
    """排程作業：清理過期暫存檔。"""
    try:
        deleted = sweep_stale_uploads(upload_dir, max_age_sec)
        logger.info("Upload sweep done, deleted={}", deleted)
    except OSError as e:
        logger.exception("Upload sweep failed: {}", e)
