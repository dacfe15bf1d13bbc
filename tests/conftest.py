# tests/conftest.py
import os
import tempfile

import pytest
from httpx import AsyncClient, ASGITransport

# ---- 測試期環境變數（先於 app 載入）----
os.environ.setdefault("ENV", "test")
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="vision-uploads-"))

from app.core.config import Settings  # noqa: E402
from app.main import create_app  # noqa: E402

PNG_HEADER = b"\x89PNG\r\n\x1a\n"


def png_bytes(size: int = 2048) -> bytes:
    """只需要像 PNG 的位元組，內容不會被驗證。"""
    return PNG_HEADER + b"\x00" * (size - len(PNG_HEADER))


class FakeInferenceClient:
    """取代真正的 InferenceClient：記錄呼叫、回固定文字或拋指定錯誤。"""

    def __init__(self, reply: str = "A cat sitting on a windowsill."):
        self.reply = reply
        self.error = None
        self.calls = []

    async def infer(self, image_b64: str, prompt: str) -> str:
        self.calls.append((image_b64, prompt))
        if self.error is not None:
            raise self.error
        return self.reply

    async def aclose(self) -> None:
        pass


@pytest.fixture(scope="session")
def anyio_backend():
    """讓 pytest 使用 asyncio event loop。"""
    return "asyncio"


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def settings(upload_dir):
    return Settings(
        ENV="test",
        UPLOAD_DIR=str(upload_dir),
        OPENAI_API_KEY="sk-test",
        RATE_LIMIT_ENABLED=False,
    )


@pytest.fixture
def fake_inference():
    return FakeInferenceClient()


@pytest.fixture
def app(settings, fake_inference):
    return create_app(settings, inference_client=fake_inference)


@pytest.fixture
async def client(app):
    """使用 ASGITransport 直接掛載 app，不需啟動伺服器。"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def make_png():
    return png_bytes
