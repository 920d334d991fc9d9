import asyncio
import json
import threading
import time
from datetime import timedelta

import httpx
import pytest

from errors import ConflictError, RateLimitedError, StoreNotConfiguredError, ValidationFailedError
from helpers import MemoryCache
from normalization import isoformat
from stores import SqlCacheStore


def write_file(test_settings, licenses):
    with open(test_settings.LICENSES_FILE_PATH, "w", encoding="utf-8") as handle:
        json.dump(licenses, handle)


def test_verify_merges_all_sources(make_service, fake_github, test_settings, now):
    static = [{"key": "STATIC1", "expiry": "2099-01-01"}]
    write_file(test_settings, [{"key": "file1", "expiry": "2099-01-01"}])
    fake_github.content = json.dumps([{"key": "REMOTE1", "expiry": "2099-01-01"}])
    cache = MemoryCache([{"key": "CACHE1", "expiry": "2099-01-01"}])
    service = make_service(static=static, cache=cache)

    canonical = asyncio.run(service.canonical())

    assert set(canonical) == {"STATIC1", "FILE1", "REMOTE1", "CACHE1"}
    assert asyncio.run(service.verify("file1", now=now))["valid"] is True


def test_verify_prefers_the_most_recently_updated_copy(make_service, fake_github, now):
    static = [{"key": "ABC123", "expiry": "2099-01-01", "updated": "2020-01-01"}]
    fake_github.content = json.dumps([{"key": "abc123", "expiry": "2099-06-01", "updated": "2024-01-01"}])
    cache = MemoryCache([{"key": "ABC123", "expiry": "2000-01-01", "updated": "2019-01-01"}])

    result = asyncio.run(make_service(static=static, cache=cache).verify("abc123", now=now))

    assert result["expiry"] == "2099-06-01"
    assert result["key"] == "abc123"


def test_verify_survives_every_remote_origin_failing(make_service, fake_github, now):
    fake_github.raw_status = 500

    class BrokenCache:
        name = "broken"

        async def get(self, key):
            raise httpx.ConnectError("down")

    service = make_service(static=[{"key": "K", "expiry": isoformat(now + timedelta(days=3))}], cache=BrokenCache())
    result = asyncio.run(service.verify("k", now=now))

    assert result["valid"] is True
    assert result["days_remaining"] == 3


def test_verify_treats_a_slow_cache_as_empty(make_service, test_settings, now):
    test_settings.CACHE_TIMEOUT = 0.01

    class SlowCache:
        name = "slow"

        async def get(self, key):
            await asyncio.sleep(5)
            return [{"key": "K", "expiry": "2099-01-01"}]

    result = asyncio.run(make_service(cache=SlowCache()).verify("K", now=now))

    assert result["valid"] is False
    assert result["message"] == "License not found"


def test_broken_local_file_reads_empty(make_service, test_settings, now):
    with open(test_settings.LICENSES_FILE_PATH, "w", encoding="utf-8") as handle:
        handle.write("{broken")

    assert asyncio.run(make_service().verify("K", now=now))["valid"] is False


def test_list_licenses_prefers_cache_then_remote(make_service, fake_github):
    fake_github.content = json.dumps([{"key": "REMOTE"}])

    assert asyncio.run(make_service(cache=MemoryCache([{"key": "CACHED"}])).list_licenses()) == [{"key": "CACHED"}]
    assert asyncio.run(make_service(cache=MemoryCache()).list_licenses()) == [{"key": "REMOTE"}]

    fake_github.raw_status = 503
    assert asyncio.run(make_service().list_licenses()) == []


def test_sync_writes_normalized_batch_to_cache(make_service):
    cache = MemoryCache()
    service = make_service(cache=cache)

    result = asyncio.run(service.sync([{"key": "X1"}, {"key": "x1", "expiry": "2030-01-01"}]))

    assert result == {"success": True, "message": "Licenses synced to cache", "count": 1}
    assert [r["key"] for r in cache.values["licenses"]] == ["X1"]


def test_sync_rejects_batch_without_valid_records(make_service):
    with pytest.raises(ValidationFailedError):
        asyncio.run(make_service(cache=MemoryCache()).sync([{"key": "X1"}]))


def test_sync_falls_back_to_repository_when_cache_fails(make_service, fake_github):
    class FailingCache:
        name = "failing"

        async def set(self, key, value):
            raise httpx.ConnectError("down")

    result = asyncio.run(
        make_service(cache=FailingCache(), token="secret").sync([{"key": "a", "expiry": "2030-01-01"}])
    )

    assert result["message"] == "Licenses committed to repository"
    assert result["commit"]["sha"] == "commit-1"
    assert json.loads(fake_github.content)[0]["key"] == "A"


def test_sync_surfaces_cache_rate_limiting(make_service):
    class ThrottledCache:
        name = "throttled"

        async def set(self, key, value):
            raise RateLimitedError(retry_after=5)

    with pytest.raises(RateLimitedError):
        asyncio.run(make_service(cache=ThrottledCache()).sync([{"key": "a", "expiry": "2030-01-01"}]))


def test_sync_writes_local_file_without_cache_or_token(make_service, test_settings):
    result = asyncio.run(make_service().sync([{"key": "a", "expiry": "2030-01-01"}]))

    assert result["message"] == "Licenses synced to licenses.json file"
    assert result["file_path"] == test_settings.LICENSES_FILE_PATH
    with open(test_settings.LICENSES_FILE_PATH, encoding="utf-8") as handle:
        assert json.load(handle)[0]["key"] == "A"


def test_sync_returns_content_when_nothing_is_writable(make_service):
    result = asyncio.run(make_service(local_file=False).sync([{"key": "a", "expiry": "2030-01-01"}]))

    assert result["message"] == "Please commit licenses.json to Git"
    assert json.loads(result["json_content"])[0]["key"] == "A"
    assert result["count"] == 1


def test_commit_reads_sha_then_writes(make_service, fake_github):
    fake_github.sha = "sha-1"

    result = asyncio.run(
        make_service(token="secret").commit([{"key": "a", "expiry": "2030-01-01"}], "add a")
    )

    assert fake_github.puts[0]["sha"] == "sha-1"
    assert fake_github.puts[0]["message"] == "add a"
    assert result["count"] == 1
    assert result["commit"] == {"sha": "commit-1", "message": "add a", "url": "https://github.com/c/1"}


def test_commit_creates_missing_file(make_service, fake_github):
    fake_github.content = None
    fake_github.sha = None

    asyncio.run(make_service(token="secret").commit([{"key": "a", "expiry": "2030-01-01"}]))

    assert "sha" not in fake_github.puts[0]
    assert fake_github.puts[0]["message"].startswith("Auto-update licenses.json - ")


def test_commit_surfaces_concurrent_write_as_conflict(make_service, fake_github):
    fake_github.put_status = 409

    with pytest.raises(ConflictError):
        asyncio.run(make_service(token="secret").commit([{"key": "a", "expiry": "2030-01-01"}]))

    assert len(fake_github.puts) == 1


def test_commit_requires_token(make_service):
    with pytest.raises(StoreNotConfiguredError):
        asyncio.run(make_service().commit([{"key": "a", "expiry": "2030-01-01"}]))


def test_refresh_cache_mirrors_reconciled_view(make_service, fake_github):
    fake_github.content = json.dumps([{"key": "R", "expiry": "2099-01-01"}])
    cache = MemoryCache([{"key": "C", "expiry": "2099-01-01"}])

    count = asyncio.run(make_service(static=[{"key": "S", "expiry": "2099-01-01"}], cache=cache).refresh_cache())

    assert count == 3
    assert {r["key"] for r in cache.values["licenses"]} == {"S", "R", "C"}


def test_refresh_cache_without_cache_is_a_no_op(make_service):
    assert asyncio.run(make_service().refresh_cache()) == 0


def test_cache_refresh_job_is_only_scheduled_with_an_interval(make_service, test_settings):
    service = make_service(cache=MemoryCache())

    service.start_cache_refresh()
    assert not service.scheduler.running

    test_settings.CACHE_REFRESH_INTERVAL_MINUTES = 5

    async def start_and_stop():
        service.start_cache_refresh()
        job = service.scheduler.get_job("license_cache_refresh")
        running = service.scheduler.running
        service.stop_cache_refresh()
        return job, running

    job, running = asyncio.run(start_and_stop())
    assert running
    assert job is not None


def test_verify_does_not_wait_for_a_blocked_sql_cache(make_service, test_settings, sql_session_factory, now):
    test_settings.CACHE_TIMEOUT = 0.05
    release = threading.Event()

    def blocked_session():
        release.wait(5)
        return sql_session_factory()

    service = make_service(
        static=[{"key": "K", "expiry": "2099-01-01"}],
        cache=SqlCacheStore(blocked_session),
    )

    async def timed_verify():
        started = time.monotonic()
        try:
            result = await service.verify("K", now=now)
        finally:
            release.set()
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(timed_verify())

    assert result["valid"] is True
    assert elapsed < 2
