# app/services/encoder.py
import base64

from app.core.errors import EncodingError


def encode_image(path: str) -> str:
    """讀檔並轉成 base64 字串（給 data URI 用）；不重新驗證內容。"""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise EncodingError(f"Could not read uploaded image: {e.strerror or e}") from e
    return base64.b64encode(data).decode("ascii")
