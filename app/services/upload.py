# app/services/upload.py
"""
上傳驗證層：
- 先看 MIME（octet-stream 時改用副檔名推測），再看副檔名；兩者「任一」通過即接受。
- 通過後以 <毫秒時間戳>-<隨機 hex><副檔名> 寫入暫存目錄（不存在就建立）。
- 大小超過上限時刪掉寫到一半的檔案並拋 UploadTooLarge。

UploadedImage 只屬於建立它的那個 request；discard() 由 pipeline 在 finally 呼叫。
"""
from __future__ import annotations

import mimetypes
import os
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from loguru import logger
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from app.core.errors import InvalidFileType, UploadMalformed, UploadMissing, UploadTooLarge

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif"})
ALLOWED_EXTENSIONS = frozenset({".jpeg", ".jpg", ".png", ".gif"})
OCTET_STREAM = "application/octet-stream"

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class UploadedImage:
    path: str
    original_filename: str
    mimetype: str
    extension: str
    size: int

    def discard(self) -> bool:
        """刪除暫存檔；失敗只記 log，不往外拋。"""
        try:
            os.remove(self.path)
            return True
        except FileNotFoundError:
            logger.warning("Temp file already gone: {}", self.path)
        except OSError as e:
            logger.error("Failed to remove temp file {}: {}", self.path, e)
        return False


def normalize_mimetype(declared: Optional[str], extension: str) -> str:
    mime = (declared or "").split(";", 1)[0].strip().lower()
    if not mime or mime == OCTET_STREAM:
        guessed, _ = mimetypes.guess_type(f"file{extension}")
        return guessed or OCTET_STREAM
    return mime


def check_file_type(filename: str, declared_mimetype: Optional[str]) -> tuple[str, str]:
    """回傳 (normalized mimetype, 小寫副檔名)；兩種檢查都失敗時拋 InvalidFileType。"""
    extension = os.path.splitext(filename or "")[1].lower()
    mimetype = normalize_mimetype(declared_mimetype, extension)
    if mimetype in ALLOWED_MIME_TYPES or extension in ALLOWED_EXTENSIONS:
        return mimetype, extension
    logger.info("Rejected upload {!r}: mimetype={} extension={!r}", filename, mimetype, extension)
    raise InvalidFileType(mimetype, extension)


def stored_extension(mimetype: str, extension: str) -> str:
    """暫存檔名只用白名單內的副檔名；否則依 MIME 推測（推不出來就不帶）。"""
    if extension in ALLOWED_EXTENSIONS:
        return extension
    return mimetypes.guess_extension(mimetype) or ""


def generate_filename(extension: str) -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{extension}"


class UploadValidator:
    def __init__(self, upload_dir: str, max_bytes: int):
        self.upload_dir = upload_dir
        self.max_bytes = max_bytes

    def select_part(self, parts: Sequence[object]) -> UploadFile:
        """從 multipart 的 image 欄位中挑出唯一一個檔案。"""
        if not parts:
            raise UploadMissing()
        if len(parts) > 1:
            raise UploadMalformed("Only one image may be uploaded per request")
        part = parts[0]
        if not isinstance(part, UploadFile):
            raise UploadMalformed("Field 'image' must be a file")
        if not part.filename:
            raise UploadMissing()
        return part

    async def validate(self, parts: Sequence[object]) -> UploadedImage:
        part = self.select_part(parts)
        filename = part.filename or ""
        mimetype, extension = check_file_type(filename, part.content_type)

        if part.size is not None and part.size > self.max_bytes:
            raise UploadTooLarge(self.max_bytes)

        os.makedirs(self.upload_dir, exist_ok=True)
        path = os.path.join(self.upload_dir, generate_filename(stored_extension(mimetype, extension)))

        size = 0
        try:
            # 磁碟 I/O 丟到 threadpool，不卡住 event loop
            f = await run_in_threadpool(open, path, "wb")
            try:
                while True:
                    chunk = await part.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise UploadTooLarge(self.max_bytes)
                    await run_in_threadpool(f.write, chunk)
            finally:
                await run_in_threadpool(f.close)
        except BaseException:
            # 寫到一半的檔案不能留下來
            try:
                os.remove(path)
            except OSError:
                logger.warning("Failed to remove partial upload {}", path)
            raise

        logger.debug("Stored upload {!r} as {} ({} bytes)", filename, path, size)
        return UploadedImage(
            path=path,
            original_filename=filename,
            mimetype=mimetype,
            extension=extension,
            size=size,
        )
