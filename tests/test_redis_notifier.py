import asyncio

import pytest

from forgegraph.storage.redis_cache import RedisApprovalNotifier


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def rpush(self, key, value):
        self.ops.append(("rpush", key, value))
        return self

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))
        return self

    async def execute(self):
        for op, key, value in self.ops:
            if op == "rpush":
                self.client.lists.setdefault(key, []).append(value)
                self.client.changed.set()
            else:
                self.client.ttls[key] = value
        return [True] * len(self.ops)


class FakeRedis:
    """Enough of redis.asyncio.Redis for list-based notifications."""

    def __init__(self):
        self.lists = {}
        self.ttls = {}
        self.changed = asyncio.Event()
        self.closed = False

    def pipeline(self):
        return FakePipeline(self)

    async def blpop(self, keys, timeout=0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for key in keys:
                if self.lists.get(key):
                    return key, self.lists[key].pop(0)
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            self.changed.clear()
            try:
                await asyncio.wait_for(self.changed.wait(), remaining)
            except asyncio.TimeoutError:
                return None

    async def aclose(self):
        self.closed = True


def test_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisApprovalNotifier()


@pytest.mark.asyncio
async def test_publish_sets_marker_with_ttl():
    client = FakeRedis()
    notifier = RedisApprovalNotifier(client=client, ttl_seconds=120)

    await notifier.publish_resolution("a1", "approved")

    assert client.lists["approval:resolved:a1"] == ["approved"]
    assert client.ttls["approval:resolved:a1"] == 120


@pytest.mark.asyncio
async def test_waiter_wakes_on_publish():
    client = FakeRedis()
    notifier = RedisApprovalNotifier(client=client)

    waiter = asyncio.ensure_future(notifier.wait_for_approval_update("a1", 5))
    await asyncio.sleep(0.01)
    await notifier.publish_resolution("a1")

    assert await asyncio.wait_for(waiter, 1) is True


@pytest.mark.asyncio
async def test_resolution_before_wait_is_not_lost():
    client = FakeRedis()
    notifier = RedisApprovalNotifier(client=client)

    await notifier.publish_resolution("a1")

    assert await notifier.wait_for_approval_update("a1", 1) is True


@pytest.mark.asyncio
async def test_wait_times_out():
    notifier = RedisApprovalNotifier(client=FakeRedis())

    assert await notifier.wait_for_approval_update("a1", 0.05) is False
    assert await notifier.wait_for_approval_update("a1", 0) is False


@pytest.mark.asyncio
async def test_close_closes_client():
    client = FakeRedis()

    await RedisApprovalNotifier(client=client).close()

    assert client.closed is True
