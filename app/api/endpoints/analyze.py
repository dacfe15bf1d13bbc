# app/api/endpoints/analyze.py
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.schemas.analysis import ResponseMode
from app.services.pipeline import AnalysisPipeline
from app.services.rate_limit import enforce_rate_limit

router = APIRouter(dependencies=[Depends(enforce_rate_limit)])


async def _run_pipeline(request: Request, mode: ResponseMode) -> JSONResponse:
    pipeline: AnalysisPipeline = request.app.state.pipelines[mode]
    # form 內的 spooled 檔案在離開 with 時關閉；暫存檔由 pipeline 自己清
    async with request.form() as form:
        question: Optional[str] = None
        if mode is ResponseMode.ASK:
            value = form.get("question")
            question = value if isinstance(value, str) else None
        outcome = await pipeline.run(form.getlist("image"), question=question)
    return JSONResponse(status_code=outcome.status_code, content=outcome.result.to_payload(mode))


@router.post("/upload", summary="Upload an image and list detected objects")
async def upload_and_detect(request: Request):
    """
    multipart/form-data，欄位 `image`（jpg/jpeg/png/gif，上限 5MB）。
    回傳 `{status, objects: [{label, confidence}], timestamp}`。
    """
    return await _run_pipeline(request, ResponseMode.DETECT)


@router.post("/analyze", summary="Ask a question about an uploaded image")
async def analyze_image(request: Request):
    """
    multipart/form-data，欄位 `image`（上限 10MB）與選填的 `question`。
    回傳 `{status, response, timestamp}`。
    """
    return await _run_pipeline(request, ResponseMode.ASK)
