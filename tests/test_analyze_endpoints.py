# tests/test_analyze_endpoints.py
import asyncio
import base64
from datetime import datetime
from types import SimpleNamespace

import httpx
import openai
import pytest
from httpx import AsyncClient, ASGITransport

from app.core.errors import EncodingError, InferenceTimeout, ProviderError
from app.main import create_app
from app.services.inference import DEFAULT_QUESTION, DETECTION_PROMPT, InferenceClient

pytestmark = pytest.mark.anyio


def _assert_no_temp_files(upload_dir):
    assert list(upload_dir.iterdir()) == []


# ===========================================
# /analyze（自由問答）
# ===========================================
async def test_analyze_cat_example(client: AsyncClient, fake_inference, upload_dir, make_png):
    data = make_png(2048)
    r = await client.post("/analyze", files={"image": ("cat.png", data, "image/png")})

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "success"
    assert body["response"] == "A cat sitting on a windowsill."
    datetime.fromisoformat(body["timestamp"])  # ISO8601

    (image_b64, prompt), = fake_inference.calls
    assert base64.b64decode(image_b64) == data
    assert prompt == DEFAULT_QUESTION
    _assert_no_temp_files(upload_dir)


async def test_analyze_forwards_question(client: AsyncClient, fake_inference, make_png):
    r = await client.post(
        "/analyze",
        files={"image": ("cat.jpg", make_png(), "image/jpeg")},
        data={"question": "What color is the cat?"},
    )
    assert r.status_code == 200
    assert fake_inference.calls[0][1] == "What color is the cat?"


async def test_analyze_blank_question_uses_default(client: AsyncClient, fake_inference, make_png):
    r = await client.post(
        "/analyze",
        files={"image": ("cat.jpg", make_png(), "image/jpeg")},
        data={"question": "   "},
    )
    assert r.status_code == 200
    assert fake_inference.calls[0][1] == DEFAULT_QUESTION


# ===========================================
# /upload（物件偵測）
# ===========================================
async def test_upload_returns_parsed_objects(client: AsyncClient, fake_inference, upload_dir, make_png):
    fake_inference.reply = '```json\n[{"label": "cat", "confidence": 0.97}]\n```'
    r = await client.post("/upload", files={"image": ("cat.png", make_png(), "image/png")})

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "success"
    assert body["objects"] == [{"label": "cat", "confidence": 0.97}]
    assert "response" not in body
    assert fake_inference.calls[0][1] == DETECTION_PROMPT
    _assert_no_temp_files(upload_dir)


async def test_upload_unparseable_output_yields_sentinel(client: AsyncClient, fake_inference, make_png):
    fake_inference.reply = "I see a cat, probably."
    r = await client.post("/upload", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "success"
    assert body["objects"] == [{"label": "Error parsing objects", "confidence": 0.0}]


async def test_upload_accepts_octet_stream_with_image_extension(client: AsyncClient, fake_inference, make_png):
    fake_inference.reply = "[]"
    r = await client.post(
        "/upload", files={"image": ("photo.PNG", make_png(), "application/octet-stream")}
    )
    assert r.status_code == 200
    assert r.json()["objects"] == []


async def test_upload_error_carries_sentinel_objects(client: AsyncClient, fake_inference, upload_dir, make_png):
    fake_inference.error = ProviderError(503, "Service Unavailable")
    r = await client.post("/upload", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 503
    body = r.json()
    assert body["status"] == "error"
    assert body["error"] == "Service Unavailable"
    assert body["objects"] == [{"label": "Error: Service Unavailable", "confidence": 0.0}]
    _assert_no_temp_files(upload_dir)


# ===========================================
# 驗證失敗（不應呼叫推論）
# ===========================================
async def test_text_file_rejected_before_inference(client: AsyncClient, fake_inference, upload_dir):
    r = await client.post("/analyze", files={"image": ("notes.txt", b"just text", "text/plain")})
    assert r.status_code == 415
    body = r.json()
    assert body["status"] == "error"
    assert fake_inference.calls == []
    _assert_no_temp_files(upload_dir)


async def test_image_extension_wins_over_text_mimetype(client: AsyncClient, fake_inference, make_png):
    # MIME 與副檔名是 OR：副檔名合法就接受
    r = await client.post("/analyze", files={"image": ("renamed.png", make_png(), "text/plain")})
    assert r.status_code == 200
    assert len(fake_inference.calls) == 1


async def test_missing_file_is_400(client: AsyncClient, fake_inference):
    r = await client.post("/analyze", data={"question": "anything?"})
    assert r.status_code == 400
    assert r.json()["error"] == "No file uploaded"
    assert fake_inference.calls == []


async def test_more_than_one_image_is_400(client: AsyncClient, fake_inference, upload_dir, make_png):
    files = [
        ("image", ("a.png", make_png(), "image/png")),
        ("image", ("b.png", make_png(), "image/png")),
    ]
    r = await client.post("/upload", files=files)
    assert r.status_code == 400
    assert fake_inference.calls == []
    _assert_no_temp_files(upload_dir)


async def test_image_field_as_text_is_400(client: AsyncClient, fake_inference):
    r = await client.post("/analyze", data={"image": "not a file"})
    assert r.status_code == 400
    assert fake_inference.calls == []


async def test_oversized_upload_is_400(settings, fake_inference, upload_dir, make_png):
    small = settings.model_copy(update={"DETECT_MAX_UPLOAD_MB": 1})
    app = create_app(small, inference_client=fake_inference)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        r = await ac.post(
            "/upload", files={"image": ("big.png", make_png(1024 * 1024 + 1), "image/png")}
        )
    assert r.status_code == 400
    assert "too large" in r.json()["error"]
    assert fake_inference.calls == []
    _assert_no_temp_files(upload_dir)


# ===========================================
# 推論失敗 -> status code 對應，暫存檔一定清掉
# ===========================================
async def test_timeout_maps_to_504(client: AsyncClient, fake_inference, upload_dir, make_png):
    fake_inference.error = InferenceTimeout(30)
    r = await client.post("/analyze", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 504
    assert r.json()["status"] == "error"
    _assert_no_temp_files(upload_dir)


async def test_hanging_provider_returns_504_and_cleans_up(settings, upload_dir, make_png):
    async def create(**kwargs):
        await asyncio.sleep(10)

    sdk = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    inference = InferenceClient(api_key="sk-test", timeout_sec=0.05, client=sdk)
    app = create_app(settings, inference_client=inference)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        r = await ac.post("/analyze", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 504
    _assert_no_temp_files(upload_dir)


async def test_upstream_429_passes_through(settings, upload_dir, make_png):
    async def create(**kwargs):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        raise openai.RateLimitError(
            "Rate limit reached",
            response=httpx.Response(429, request=request),
            body=None,
        )

    sdk = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    app = create_app(settings, inference_client=InferenceClient(api_key="sk-test", client=sdk))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        r = await ac.post("/upload", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 429
    assert r.json()["error"] == "Rate limit reached"
    _assert_no_temp_files(upload_dir)


async def test_missing_credential_is_500(settings, upload_dir, make_png):
    no_key = settings.model_copy(update={"OPENAI_API_KEY": None})
    app = create_app(no_key)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        r = await ac.post("/analyze", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 500
    assert r.json()["error"] == "Inference API key is not configured"
    _assert_no_temp_files(upload_dir)


async def test_encoding_failure_is_500(client: AsyncClient, fake_inference, upload_dir, make_png, monkeypatch):
    def broken(path):
        raise EncodingError("Could not read uploaded image: gone")

    monkeypatch.setattr("app.services.pipeline.encode_image", broken)
    r = await client.post("/analyze", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 500
    assert fake_inference.calls == []
    _assert_no_temp_files(upload_dir)


async def test_unexpected_failure_is_generic_500(client: AsyncClient, fake_inference, upload_dir, make_png):
    fake_inference.error = RuntimeError("secret internals")
    r = await client.post("/analyze", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 500
    body = r.json()
    assert body["status"] == "error"
    assert "secret internals" not in body["error"]
    _assert_no_temp_files(upload_dir)


async def test_cleanup_failure_does_not_change_response(client: AsyncClient, upload_dir, make_png, monkeypatch):
    def boom(path):
        raise PermissionError("read-only")

    monkeypatch.setattr("app.services.upload.os.remove", boom)
    r = await client.post("/analyze", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 200
    assert r.json()["status"] == "success"


async def test_long_extension_accepted_by_mimetype(client: AsyncClient, fake_inference, upload_dir, make_png):
    r = await client.post(
        "/analyze", files={"image": ("photo." + "x" * 300, make_png(), "image/png")}
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "success"
    assert len(fake_inference.calls) == 1
    _assert_no_temp_files(upload_dir)


async def test_encoding_runs_in_threadpool(client: AsyncClient, make_png, monkeypatch):
    called = []
    from app.services import pipeline as pipeline_mod

    original = pipeline_mod.run_in_threadpool

    async def spy(func, *args, **kwargs):
        called.append(func)
        return await original(func, *args, **kwargs)

    monkeypatch.setattr(pipeline_mod, "run_in_threadpool", spy)
    r = await client.post("/analyze", files={"image": ("cat.png", make_png(), "image/png")})
    assert r.status_code == 200
    assert called == [pipeline_mod.encode_image]
