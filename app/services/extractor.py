# app/services/extractor.py
"""
從模型輸出還原 Detection list（total function，絕不拋例外）：
  1) 整段直接 json.loads
  2) 去掉 ```json / ``` 圍欄與前後空白後再 parse
  3) 找第一個 [ 到最後一個 ]（greedy、可跨行）再 parse
  4) 全部失敗 -> [{"label": "Error parsing objects", "confidence": 0}]

每一層 parse 出來的東西還必須通過 Detection 驗證，否則交給下一層。
"""
from __future__ import annotations

import json
import re
from typing import Any, Callable, List, Optional

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from app.schemas.analysis import Detection, sentinel_detections

_FENCE_RE = re.compile(r"```json\n|\n```|```", re.IGNORECASE)
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

_DETECTIONS = TypeAdapter(List[Detection])


def _as_detections(value: Any) -> Optional[List[Detection]]:
    if not isinstance(value, list):
        return None
    try:
        return _DETECTIONS.validate_python(value)
    except ValidationError:
        return None


def _direct(text: str) -> Any:
    return json.loads(text)


def _strip_fences(text: str) -> Any:
    return json.loads(_FENCE_RE.sub("", text).strip())


def _bracketed(text: str) -> Any:
    match = _ARRAY_RE.search(text)
    if match is None:
        raise ValueError("no bracketed array")
    return json.loads(match.group(0))


_LAYERS: List[Callable[[str], Any]] = [_direct, _strip_fences, _bracketed]


def extract_detections(text: Optional[str]) -> List[Detection]:
    if not isinstance(text, str):
        text = "" if text is None else str(text)

    for layer in _LAYERS:
        try:
            parsed = layer(text)
        except (ValueError, RecursionError):
            # json.JSONDecodeError 是 ValueError 的子類
            continue
        detections = _as_detections(parsed)
        if detections is not None:
            return detections

    logger.warning("Failed to parse objects from model output: {!r}", text[:500])
    return sentinel_detections()
