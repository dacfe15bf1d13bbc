# app/services/pipeline.py
"""
每個 request 一條 AnalysisPipeline.run()：

  Received -> Validating -> Encoding -> Inferring -> [Extracting] -> Responding -> CleaningUp -> Done

- stages 是有順序的 list，任何一個 stage 拋 AnalysisError 就直接跳到 Responding（error）。
- 暫存檔清理放在 finally，成功或失敗都只做一次。
- detect / ask 兩種模式共用同一條 pipeline，只差最後的回應形狀。
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from loguru import logger
from starlette.concurrency import run_in_threadpool

from app.core.errors import AnalysisError, UnknownError
from app.schemas.analysis import AnalysisResult, Detection, ResponseMode
from app.services.encoder import encode_image
from app.services.extractor import extract_detections
from app.services.inference import DEFAULT_QUESTION, DETECTION_PROMPT, InferenceClient
from app.services.upload import UploadedImage, UploadValidator


@dataclass
class AnalysisContext:
    parts: Sequence[object]
    question: Optional[str] = None
    request_id: str = field(default_factory=lambda: secrets.token_hex(4))
    state: str = "received"
    upload: Optional[UploadedImage] = None
    image_b64: Optional[str] = None
    raw_output: Optional[str] = None
    content: Union[str, List[Detection], None] = None


@dataclass
class PipelineOutcome:
    status_code: int
    result: AnalysisResult


Stage = Callable[[AnalysisContext], Awaitable[None]]


class AnalysisPipeline:
    def __init__(self, mode: ResponseMode, validator: UploadValidator,
                 inference: InferenceClient, debug: bool = False):
        self.mode = mode
        self.validator = validator
        self.inference = inference
        self.debug = debug

        self.stages: List[Stage] = [self._validate, self._encode, self._infer]
        if mode is ResponseMode.DETECT:
            self.stages.append(self._extract)

    async def run(self, parts: Sequence[object], question: Optional[str] = None) -> PipelineOutcome:
        ctx = AnalysisContext(parts=parts, question=question)
        log = logger.bind(request_id=ctx.request_id)
        try:
            for stage in self.stages:
                await stage(ctx)
            ctx.state = "responding"
            outcome = PipelineOutcome(200, AnalysisResult(status="success", content=ctx.content))
        except AnalysisError as exc:
            log.warning("{} failed while {}: {}", self.mode.value, ctx.state, exc.message)
            outcome = self._failure(exc)
        except Exception as exc:
            log.opt(exception=exc).error("{} crashed while {}", self.mode.value, ctx.state)
            outcome = self._failure(UnknownError(str(exc)))
        finally:
            self._cleanup(ctx)
        log.info("{} finished with {}", self.mode.value, outcome.status_code)
        return outcome

    def _failure(self, exc: AnalysisError) -> PipelineOutcome:
        return PipelineOutcome(
            exc.status_code,
            AnalysisResult(status="error", content=exc.public_message(self.debug)),
        )

    async def _validate(self, ctx: AnalysisContext) -> None:
        ctx.state = "validating"
        ctx.upload = await self.validator.validate(ctx.parts)

    async def _encode(self, ctx: AnalysisContext) -> None:
        ctx.state = "encoding"
        ctx.image_b64 = await run_in_threadpool(encode_image, ctx.upload.path)

    async def _infer(self, ctx: AnalysisContext) -> None:
        ctx.state = "inferring"
        if self.mode is ResponseMode.DETECT:
            prompt = DETECTION_PROMPT
        else:
            prompt = (ctx.question or "").strip() or DEFAULT_QUESTION
        ctx.raw_output = await self.inference.infer(ctx.image_b64, prompt)
        ctx.content = ctx.raw_output

    async def _extract(self, ctx: AnalysisContext) -> None:
        ctx.state = "extracting"
        ctx.content = extract_detections(ctx.raw_output)

    def _cleanup(self, ctx: AnalysisContext) -> None:
        ctx.state = "cleaning_up"
        if ctx.upload is not None:
            ctx.upload.discard()
        ctx.state = "done"
