"""
本地文件存储

上传文件保存在 upload_dir（默认 uploads/）下，对外以 static_prefix（默认 static/）
开头的 URL 暴露；入库与删除时再把 URL 还原为本地路径。

文件名格式：{毫秒时间戳}-{随机串}{扩展名}，原始文件名只保存在数据库记录中。
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from kbchat.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    path: Path        # 本地路径（入库时读取）
    url: str          # 对外 URL（保存到数据库）
    extension: str    # 小写扩展名，含点号
    size: int


class LocalFileStorage:
    """上传文件的本地存储"""

    def __init__(self, root: str | Path | None = None, static_prefix: str | None = None):
        settings = get_settings()
        self.root = Path(root or settings.upload_dir)
        self.static_prefix = (static_prefix or settings.static_prefix).strip("/")

    def _new_name(self, original_name: str) -> str:
        ext = PurePosixPath(original_name).suffix.lower()
        return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{ext}"

    def to_url(self, path: Path) -> str:
        """本地路径 -> 对外 URL（uploads/x.pdf -> static/x.pdf）"""
        relative = path.relative_to(self.root)
        return f"{self.static_prefix}/{relative.as_posix()}"

    def resolve(self, url: str) -> Path:
        """对外 URL -> 本地路径（static/x.pdf -> uploads/x.pdf）"""
        url = url.lstrip("/")
        prefix = f"{self.static_prefix}/"
        if url.startswith(prefix):
            url = url[len(prefix):]
        resolved = (self.root / url).resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise ValueError(f"非法文件路径: {url}")
        return self.root / url

    async def save(self, original_name: str, data: bytes) -> StoredFile:
        """保存上传内容，返回本地路径与对外 URL"""
        path = self.root / self._new_name(original_name)

        def _write() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info(f"保存上传文件: {original_name} -> {path} ({len(data)} bytes)")
        return StoredFile(
            path=path,
            url=self.to_url(path),
            extension=path.suffix,
            size=len(data),
        )

    async def remove(self, path: Path) -> bool:
        """删除本地文件，文件不存在时返回 False"""

        def _unlink() -> bool:
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False

        removed = await asyncio.to_thread(_unlink)
        if removed:
            logger.info(f"删除本地文件: {path}")
        else:
            logger.debug(f"本地文件不存在，跳过删除: {path}")
        return removed


file_storage = LocalFileStorage()
