"""
Gallery 测试配置文件

这个文件包含 pytest fixtures（测试夹具）。
Fixtures 是测试的"准备工作"：在测试运行前创建所需的对象和环境。

提供：
- image_root：包含 a.webp 和 pets/b.png 的临时图片目录
- settings：指向临时目录的配置
- FakeRedis：可注入故障的内存 Redis 客户端
- FakeClock：可手动推进的虚拟时钟
"""

import asyncio
import fnmatch
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# 添加 backend 目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from config import RedisSettings, Settings


# 所有测试统一使用东八区固定偏移，避免依赖系统时区数据库
TEST_TZ = timezone(timedelta(hours=8))
TEST_TZ_NAME = "+08:00"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 56
WEBP_BYTES = b"RIFF\x24\x00\x00\x00WEBPVP8 " + b"\x00" * 28


# ============================================
# Helper Functions
# ============================================

def write_image(path: Path, data: bytes, mtime: str) -> Path:
    """
    写入图片文件并设置修改时间。

    mtime 格式：YYYY-MM-DD HH:MM:SS（东八区）
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    stamp = datetime.strptime(mtime, "%Y-%m-%d %H:%M:%S").replace(tzinfo=TEST_TZ).timestamp()
    os.utime(path, (stamp, stamp))
    return path


def make_client(app) -> httpx.AsyncClient:
    """
    创建直连 ASGI 应用的 HTTP 客户端。

    使用方式：
    ```python
    async with make_client(app) as client:
        response = await client.get("/?json=1")
    ```
    """
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


class FakeClock:
    """虚拟时钟：测试中手动推进时间"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """
    内存版 Redis 客户端。

    - fail = True 时所有命令抛出 ConnectionError
    - delay > 0 时命令会先 sleep，用于测试超时
    - calls 记录所有收到的命令
    """

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.calls = []
        self.fail = False
        self.delay = 0.0
        self.closed = 0

    async def _command(self, name: str) -> None:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def data_calls(self):
        """除 ping 以外的命令"""
        return [c for c in self.calls if c != "ping"]

    async def ping(self):
        await self._command("ping")
        return True

    async def get(self, key):
        await self._command("get")
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        await self._command("set")
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        await self._command("delete")
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def scan_iter(self, match=None, count=None):
        await self._command("scan")
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def dbsize(self):
        await self._command("dbsize")
        return len(self.store)

    async def aclose(self):
        self.closed += 1


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def image_root(tmp_path):
    """
    创建测试图片目录：

    img/
    ├── a.webp          (2025-01-01 00:00:00)
    ├── notes.txt       (非图片，应被忽略)
    └── pets/
        └── b.png       (2025-01-02 00:00:00)
    """
    root = tmp_path / "img"
    write_image(root / "a.webp", WEBP_BYTES, "2025-01-01 00:00:00")
    write_image(root / "pets" / "b.png", PNG_BYTES, "2025-01-02 00:00:00")
    (root / "notes.txt").write_text("not an image")
    return root


@pytest.fixture
def settings(tmp_path, image_root):
    """指向临时目录的配置（不启用 Redis）"""
    return Settings(
        img_dir=image_root,
        manifest_file=tmp_path / "list.json",
        update_token="secret",
        timezone=TEST_TZ_NAME,
    )


@pytest.fixture
def redis_settings():
    """重试参数较小的 Redis 配置"""
    return RedisSettings(
        enabled=True,
        max_retries=2,
        retry_interval=5.0,
        connect_timeout=0.5,
        operation_timeout=0.2,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()
