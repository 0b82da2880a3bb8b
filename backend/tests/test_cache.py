"""Tests for containers/cache.py -- the in-memory container cache."""

import time

from containers.cache import ContainerCache, ContainerInfo


def _info(user_id: int, container_id: str | None = None) -> ContainerInfo:
    return ContainerInfo(
        id=container_id or f"c{user_id}",
        name=f"claude-user-{user_id}",
        user_id=user_id,
    )


class TestContainerCache:
    def test_put_and_get(self) -> None:
        cache = ContainerCache()
        info = _info(1)

        cache.put(info)

        assert cache.get(1) is info
        assert 1 in cache
        assert len(cache) == 1

    def test_put_replaces_entry_for_user(self) -> None:
        cache = ContainerCache()
        cache.put(_info(1, "old"))
        cache.put(_info(1, "new"))

        assert cache.get(1).id == "new"
        assert len(cache) == 1

    def test_evict(self) -> None:
        cache = ContainerCache()
        info = _info(1)
        cache.put(info)

        assert cache.evict(1) is info
        assert cache.evict(1) is None
        assert 1 not in cache

    def test_evict_container(self) -> None:
        cache = ContainerCache()
        cache.put(_info(1))
        cache.put(_info(2))

        evicted = cache.evict_container("c2")

        assert evicted.user_id == 2
        assert cache.evict_container("c2") is None
        assert 1 in cache

    def test_snapshot_is_a_copy(self) -> None:
        cache = ContainerCache()
        cache.put(_info(1))
        cache.put(_info(2))

        for info in cache.snapshot():
            cache.evict(info.user_id)

        assert len(cache) == 0


class TestContainerInfo:
    def test_touch_refreshes_last_active(self) -> None:
        info = _info(1)
        info.last_active = time.time() - 100

        info.touch()

        assert time.time() - info.last_active < 5
