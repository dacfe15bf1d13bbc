# app/api/router.py
from fastapi import APIRouter

from .endpoints import analyze, health

api_router = APIRouter()

# 系統健康檢查
api_router.include_router(health.router, tags=["health"])

# 影像分析（/upload 物件偵測、/analyze 自由問答）
api_router.include_router(analyze.router, tags=["vision"])
