# app/main.py
import os
import time
from typing import Optional

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from loguru import logger
from prometheus_fastapi_instrumentator import Instrumentator

from app.api.router import api_router
from app.core.config import Settings, get_settings
from app.core.errors import register_error_handlers
from app.core.logging import setup_logging
from app.schemas.analysis import ResponseMode
from app.services.inference import InferenceClient
from app.services.pipeline import AnalysisPipeline
from app.services.rate_limit import RateLimiter
from app.services.upload import UploadValidator
from app.services.scheduler import lifespan_scheduler  # lifespan（排程）

setup_logging()


def _validate_secrets(settings: Settings) -> None:
    """
    部署前安全檢查：在 prod/staging 等環境時，不允許沒有推論金鑰就啟動。
    """
    env = (settings.ENV or "").lower()
    if env in {"prod", "production", "staging"} and not settings.OPENAI_API_KEY:
        raise RuntimeError(
            f"Missing OPENAI_API_KEY in ENV={settings.ENV}. "
            "Please set it via environment variables."
        )


def create_app(settings: Optional[Settings] = None,
               inference_client: Optional[InferenceClient] = None) -> FastAPI:
    settings = settings or get_settings()
    _validate_secrets(settings)

    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        lifespan=lifespan_scheduler,
    )

    # 共用元件：啟動時建一次，明確交給 pipeline，不在 request 內讀環境變數
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    inference = inference_client or InferenceClient.from_settings(settings)
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.inference_client = inference
    app.state.rate_limiter = RateLimiter.from_settings(settings)
    app.state.pipelines = {
        ResponseMode.DETECT: AnalysisPipeline(
            ResponseMode.DETECT,
            UploadValidator(settings.UPLOAD_DIR, settings.detect_max_bytes),
            inference,
            debug=settings.DEBUG,
        ),
        ResponseMode.ASK: AnalysisPipeline(
            ResponseMode.ASK,
            UploadValidator(settings.UPLOAD_DIR, settings.ask_max_bytes),
            inference,
            debug=settings.DEBUG,
        ),
    }
    if not settings.OPENAI_API_KEY and inference_client is None:
        logger.warning("OPENAI_API_KEY is not set; analysis requests will fail with 500")

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---- Sentry 初始化（若未設定 SENTRY_DSN 就略過）----
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            environment=settings.SENTRY_ENV,
        )

    # ---- Prometheus /metrics ----
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    # 統一錯誤處理
    register_error_handlers(app, debug=settings.DEBUG)

    app.include_router(api_router)

    # 暫存目錄的靜態檔（預設關閉）
    if settings.SERVE_UPLOADS:
        app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

    @app.get("/", summary="Root")
    async def root():
        return {"app": settings.APP_NAME, "env": settings.ENV}

    logger.info("Application initialized (env={})", settings.ENV)
    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.PORT)


# Uvicorn 進入點
app = create_app()

if __name__ == "__main__":
    run()
