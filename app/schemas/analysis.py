# app/schemas/analysis.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResponseMode(str, Enum):
    """同一條 pipeline 的兩種回應形狀。"""

    DETECT = "detect"  # POST /upload -> objects
    ASK = "ask"  # POST /analyze -> response

    @property
    def content_key(self) -> str:
        return "objects" if self is ResponseMode.DETECT else "response"


class Detection(BaseModel):
    # strict：不接受 true 或 "0.9" 這類被強制轉型的值
    label: str = Field(..., strict=True)
    confidence: float = Field(..., ge=0, le=1, strict=True)


PARSE_ERROR_SENTINEL = "Error parsing objects"


def sentinel_detections(label: str = PARSE_ERROR_SENTINEL) -> List[Detection]:
    return [Detection(label=label, confidence=0)]


class AnalysisResult(BaseModel):
    status: Literal["success", "error"]
    content: Union[str, List[Detection]]
    timestamp: str = Field(default_factory=utc_now_iso)

    def to_payload(self, mode: ResponseMode) -> Dict[str, Any]:
        if self.status == "error":
            payload = error_payload(str(self.content), timestamp=self.timestamp)
            if mode is ResponseMode.DETECT:
                # 只讀 objects 的前端也能顯示錯誤
                payload["objects"] = [
                    d.model_dump() for d in sentinel_detections(f"Error: {self.content}")
                ]
            return payload

        content: Any = self.content
        if isinstance(content, list):
            content = [d.model_dump() for d in content]
        return {"status": "success", mode.content_key: content, "timestamp": self.timestamp}


def error_payload(message: str, timestamp: Optional[str] = None) -> Dict[str, Any]:
    return {"status": "error", "error": message, "timestamp": timestamp or utc_now_iso()}
