# app/core/errors.py
"""
錯誤分類（closed taxonomy）：
- 每個錯誤在「發生的地方」就決定 kind 與 HTTP status，下游不再去猜。
- AnalysisPipeline 會在自己的邊界把它們轉成 error payload；
  這裡的 handler 只處理漏網之魚與框架本身的錯誤。
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.schemas.analysis import error_payload


class ErrorKind(str, Enum):
    UPLOAD_MISSING = "upload_missing"
    UPLOAD_MALFORMED = "upload_malformed"
    UPLOAD_TOO_LARGE = "upload_too_large"
    INVALID_FILE_TYPE = "invalid_file_type"
    ENCODING = "encoding_error"
    CONFIG = "config_error"
    TIMEOUT = "timeout"
    PROVIDER = "provider_error"
    UNKNOWN = "unknown_error"


class AnalysisError(Exception):
    kind: ErrorKind = ErrorKind.UNKNOWN
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def public_message(self, debug: bool = False) -> str:
        return self.message


class UploadMissing(AnalysisError):
    kind = ErrorKind.UPLOAD_MISSING
    status_code = 400

    def __init__(self, message: str = "No file uploaded"):
        super().__init__(message)


class UploadMalformed(AnalysisError):
    kind = ErrorKind.UPLOAD_MALFORMED
    status_code = 400


class UploadTooLarge(AnalysisError):
    kind = ErrorKind.UPLOAD_TOO_LARGE
    status_code = 400

    def __init__(self, limit_bytes: int):
        super().__init__(f"File too large (limit {limit_bytes // (1024 * 1024)}MB)")
        self.limit_bytes = limit_bytes


class InvalidFileType(AnalysisError):
    kind = ErrorKind.INVALID_FILE_TYPE
    status_code = 415

    def __init__(self, mimetype: Optional[str], extension: str):
        super().__init__("Only image files are allowed!")
        self.mimetype = mimetype
        self.extension = extension


class EncodingError(AnalysisError):
    kind = ErrorKind.ENCODING
    status_code = 500


class ConfigError(AnalysisError):
    kind = ErrorKind.CONFIG
    status_code = 500


class InferenceTimeout(AnalysisError):
    kind = ErrorKind.TIMEOUT
    status_code = 504

    def __init__(self, timeout_sec: float):
        super().__init__(f"Inference request timed out after {timeout_sec:g}s")
        self.timeout_sec = timeout_sec


class ProviderError(AnalysisError):
    kind = ErrorKind.PROVIDER

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        # 上游狀態碼原樣轉給呼叫端
        self.status_code = status_code


class UnknownError(AnalysisError):
    kind = ErrorKind.UNKNOWN
    status_code = 500

    def public_message(self, debug: bool = False) -> str:
        # 正式環境不洩露內部細節
        return self.message if debug else "Internal server error"


def register_error_handlers(app: FastAPI, debug: bool = False) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):
        # 統一輸出格式
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={**error_payload("Validation error"), "errors": exc.errors()},
        )

    @app.exception_handler(AnalysisError)
    async def analysis_exc_handler(request: Request, exc: AnalysisError):
        logger.warning("Unhandled {} on {}: {}", exc.kind.value, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_payload(exc.public_message(debug)))

    @app.exception_handler(Exception)
    async def unexpected_exc_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error("Unexpected error on {}", request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_payload(UnknownError(str(exc)).public_message(debug)),
        )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        # 小強化：避免洩露伺服器細節，順便記一行 access log
        started = time.perf_counter()
        resp = await call_next(request)
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("{} {} {} {:.1f}ms", request.method, request.url.path, resp.status_code, elapsed_ms)
        return resp
