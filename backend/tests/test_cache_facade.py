"""
缓存门面测试

测试两级缓存的读写路由：
- Redis 健康时只写 Redis
- Redis 不可用时回退到本地缓存，且不再调用 Redis
- 恢复连接后清除回退期间写入的本地条目

运行测试：
    cd backend
    pytest tests/test_cache_facade.py -v
"""

import json
from dataclasses import replace

import pytest

from cache.cache_facade import CacheFacade
from cache.memory_store import LocalCache
from cache.redis_adapter import RedisCacheAdapter
from gallery.models import ImageRecord


KEY = "image:pets/b.png"


def make_record(**overrides) -> ImageRecord:
    data = {"name": "b.png", "size": 64, "mtime": "2025-01-02 00:00:00", "path": "pets/b.png"}
    data.update(overrides)
    return ImageRecord(**data)


def make_facade(settings, redis_settings, fake_redis, clock, **overrides):
    settings = replace(settings, redis=redis_settings, **overrides)
    adapter = RedisCacheAdapter(redis_settings, client_factory=lambda _: fake_redis, clock=clock)
    return CacheFacade(settings, local=LocalCache(capacity=10, clock=clock), external=adapter)


# ============================================
# 1. Redis 健康
# ============================================

class TestHealthyExternal:
    """Redis 可用时的读写"""

    @pytest.mark.asyncio
    async def test_set_goes_to_redis_only(self, settings, redis_settings, fake_redis, clock):
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()

        assert await facade.set(KEY, make_record()) is True

        assert KEY in fake_redis.store
        assert fake_redis.ttls[KEY] == settings.cache_ttl
        assert KEY not in facade.local

    @pytest.mark.asyncio
    async def test_get_from_redis(self, settings, redis_settings, fake_redis, clock):
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()
        await facade.set(KEY, make_record())

        record = await facade.get(KEY)
        assert record == make_record()

    @pytest.mark.asyncio
    async def test_redis_ttl_overrides_cache_ttl(self, settings, redis_settings, fake_redis, clock):
        """测试：REDIS_TTL 优先于 CACHE_TTL"""
        facade = make_facade(settings, replace(redis_settings, ttl=120), fake_redis, clock)
        await facade.external.connect()

        await facade.set(KEY, make_record())
        assert fake_redis.ttls[KEY] == 120

    @pytest.mark.asyncio
    async def test_legacy_record_is_normalized(self, settings, redis_settings, fake_redis, clock):
        """测试：旧字段名的缓存记录会被转换"""
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()
        fake_redis.store[KEY] = json.dumps({
            "filename": "b.png",
            "size": 64,
            "modifiedAt": "2025-01-02 00:00:00",
            "relativePath": "/pets/b.png",
        })

        assert await facade.get(KEY) == make_record()

    @pytest.mark.asyncio
    async def test_invalid_record_is_a_miss(self, settings, redis_settings, fake_redis, clock):
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()
        fake_redis.store[KEY] = json.dumps({"name": "b.png", "size": -1})

        assert await facade.get(KEY) is None
        assert facade.external.healthy


# ============================================
# 2. 回退到本地缓存
# ============================================

class TestFallback:
    """Redis 不可用时的行为"""

    @pytest.mark.asyncio
    async def test_disconnected_uses_local_without_external_calls(
        self, settings, redis_settings, fake_redis, clock
    ):
        """测试：断开期间完全不调用 Redis"""
        fake_redis.fail = True
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()

        assert await facade.set(KEY, make_record()) is True
        assert await facade.get(KEY) == make_record()
        await facade.delete("image:other.png")

        assert fake_redis.data_calls() == []
        assert KEY in facade.local

    @pytest.mark.asyncio
    async def test_set_failure_falls_back_for_that_call(
        self, settings, redis_settings, fake_redis, clock
    ):
        """测试：写入途中 Redis 失败，本次写入落到本地"""
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()

        fake_redis.fail = True
        assert await facade.set(KEY, make_record()) is True

        assert KEY in facade.local
        assert not facade.external.healthy
        stats = await facade.stats()
        assert stats["fallbacks"] == 1
        assert stats["demoted_keys"] == 1

    @pytest.mark.asyncio
    async def test_get_failure_falls_back_to_local(
        self, settings, redis_settings, fake_redis, clock
    ):
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()
        facade.local.set(KEY, make_record())

        fake_redis.fail = True
        assert await facade.get(KEY) == make_record()
        assert (await facade.stats())["fallbacks"] == 1

    @pytest.mark.asyncio
    async def test_reconnect_purges_fallback_entries(
        self, settings, redis_settings, fake_redis, clock
    ):
        """测试：重新连接后回退期间写入的本地条目被清除"""
        fake_redis.fail = True
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()
        await facade.set(KEY, make_record())
        facade.local.set("image:unrelated.png", make_record(name="unrelated.png", path="unrelated.png"))

        fake_redis.fail = False
        clock.advance(redis_settings.retry_interval)
        assert await facade.external.maybe_reconnect() is True

        assert KEY not in facade.local
        assert "image:unrelated.png" in facade.local
        assert (await facade.stats())["demoted_keys"] == 0

    @pytest.mark.asyncio
    async def test_manual_reconnect_through_facade(
        self, settings, redis_settings, fake_redis, clock
    ):
        fake_redis.fail = True
        facade = make_facade(settings, replace(redis_settings, max_retries=0), fake_redis, clock)
        await facade.external.connect()

        fake_redis.fail = False
        assert await facade.reconnect() is True
        assert facade.external.healthy


# ============================================
# 3. 绕过与禁用
# ============================================

class TestBypass:
    """TTL 为 0 与缓存禁用"""

    @pytest.mark.asyncio
    async def test_zero_ttl_bypasses_both_tiers(self, settings, redis_settings, fake_redis, clock):
        """测试：TTL <= 0 时两级缓存都不写入"""
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()

        assert await facade.set(KEY, make_record(), ttl=0) is False
        assert fake_redis.data_calls() == []
        assert len(facade.local) == 0

    @pytest.mark.asyncio
    async def test_zero_cache_ttl_setting_bypasses(self, settings, redis_settings, fake_redis, clock):
        facade = make_facade(settings, redis_settings, fake_redis, clock, cache_ttl=0)
        await facade.external.connect()

        assert await facade.set(KEY, make_record()) is False
        assert await facade.get(KEY) is None

    @pytest.mark.asyncio
    async def test_disabled_cache_is_noop(self, settings, fake_redis):
        facade = CacheFacade(replace(settings, cache_enabled=False))

        assert await facade.set(KEY, make_record()) is False
        assert await facade.get(KEY) is None
        assert await facade.delete(KEY) is False
        assert await facade.clear() == 0
        assert len(facade.local) == 0

    @pytest.mark.asyncio
    async def test_local_only_when_external_not_configured(self, settings):
        """测试：未配置 Redis 时只使用本地缓存"""
        facade = CacheFacade(settings)

        assert await facade.set(KEY, make_record()) is True
        assert await facade.get(KEY) == make_record()
        stats = await facade.stats()
        assert stats["redis"] is None
        assert stats["demoted_keys"] == 0
        assert stats["local"]["size"] == 1

    @pytest.mark.asyncio
    async def test_local_ttl_applies_to_fallback_entries(self, settings, clock):
        """测试：LOCAL_CACHE_TTL 控制本地条目过期"""
        facade = CacheFacade(
            replace(settings, local_cache_ttl=30),
            local=LocalCache(capacity=10, clock=clock),
        )
        await facade.set(KEY, make_record())

        clock.advance(31)
        assert await facade.get(KEY) is None

    def test_injected_empty_local_cache_is_kept(self, settings):
        """测试：注入的空本地缓存不会被默认实例替换"""
        local = LocalCache(capacity=2)
        facade = CacheFacade(settings, local=local)

        assert facade.local is local
        assert facade.local.capacity == 2

    @pytest.mark.asyncio
    async def test_demoted_keys_stay_bounded(self, settings, redis_settings, fake_redis, clock):
        """测试：回退写入超过容量时，被淘汰的 key 不再被记录"""
        fake_redis.fail = True
        adapter = RedisCacheAdapter(redis_settings, client_factory=lambda _: fake_redis, clock=clock)
        local = LocalCache(capacity=2, clock=clock)
        facade = CacheFacade(replace(settings, redis=redis_settings), local=local, external=adapter)
        await adapter.connect()

        for i in range(50):
            await facade.set(f"image:{i}.png", make_record(name=f"{i}.png", path=f"{i}.png"))

        stats = await facade.stats()
        assert stats["local"]["size"] == 2
        assert stats["demoted_keys"] == 2

    @pytest.mark.asyncio
    async def test_demoted_keys_drop_expired_entries(self, settings, redis_settings, fake_redis, clock):
        """测试：过期清理后的 key 不会让回退记录无限增长"""
        fake_redis.fail = True
        adapter = RedisCacheAdapter(redis_settings, client_factory=lambda _: fake_redis, clock=clock)
        local = LocalCache(capacity=3, clock=clock)
        facade = CacheFacade(
            replace(settings, redis=redis_settings, local_cache_ttl=5),
            local=local,
            external=adapter,
        )
        await adapter.connect()

        for i in range(20):
            await facade.set(f"image:{i}.png", make_record(name=f"{i}.png", path=f"{i}.png"))
            clock.advance(10)
            await local.sweep_expired()

        assert (await facade.stats())["demoted_keys"] <= local.capacity


# ============================================
# 4. 删除与清空
# ============================================

class TestInvalidation:
    """delete / clear / invalidate_local"""

    @pytest.mark.asyncio
    async def test_delete_removes_from_both_tiers(self, settings, redis_settings, fake_redis, clock):
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()
        await facade.set(KEY, make_record())
        facade.local.set(KEY, make_record())

        assert await facade.delete(KEY) is True
        assert KEY not in fake_redis.store
        assert KEY not in facade.local
        assert await facade.delete(KEY) is False

    @pytest.mark.asyncio
    async def test_clear(self, settings, redis_settings, fake_redis, clock):
        facade = make_facade(settings, redis_settings, fake_redis, clock)
        await facade.external.connect()
        await facade.set(KEY, make_record())
        facade.local.set("image:a.webp", make_record(name="a.webp", path="a.webp"))
        fake_redis.store["session:keep"] = "{}"

        assert await facade.clear() == 2
        assert list(fake_redis.store) == ["session:keep"]
        assert len(facade.local) == 0

    @pytest.mark.asyncio
    async def test_start_and_close(self, settings, redis_settings, fake_redis, clock):
        facade = make_facade(settings, redis_settings, fake_redis, clock)

        await facade.start()
        assert facade.external.healthy
        facade.local.set(KEY, make_record())

        await facade.close()
        assert len(facade.local) == 0
        assert not facade.external.healthy
