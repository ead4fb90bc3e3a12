"""
Unit tests for hubzone/core/http_client.py and hubzone/services/dataset_cache.py

Downloads are served by httpx.MockTransport; the cache index lives in a
temporary SQLite database.
"""
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from hubzone.core.api_errors import CorruptPayloadError, NotFoundError, RetryableError
from hubzone.core.errors import DatasetUnavailable
from hubzone.core.http_client import DatasetHttpClient, parse_retry_after
from hubzone.core.models import CacheEntry
from hubzone.services.dataset_cache import DatasetCacheManager, LocalDataset, SourceSpec
from hubzone.sources.sba.client import validate_designation_payload

GOOD_BODY = json.dumps({"designations": []}).encode("utf-8")


class _Upstream:
    """Scripted upstream: pops one response per request, repeating the last."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _spec(state="06", critical=False):
    return SourceSpec(
        source_id="sba_feed",
        url="https://sba.example/designations",
        params={"state": state},
        state_fips=state,
        critical=critical,
        validator=validate_designation_payload,
    )


def _manager(tmp_path, session_factory, upstream, max_retries=3):
    client = DatasetHttpClient(
        max_retries=max_retries,
        base_delay=0.0,
        max_delay=0.0,
        transport=httpx.MockTransport(upstream),
    )
    return DatasetCacheManager(tmp_path / "cache", client, session_factory, cache_duration_days=90)


# =============================================================================
# Source specs
# =============================================================================


@pytest.mark.unit
class TestSourceSpec:

    def test_cache_key_is_stable_and_scoped(self):
        assert _spec("06").cache_key == _spec("06").cache_key
        assert _spec("06").cache_key != _spec("36").cache_key
        assert _spec("06").cache_key.startswith("sba_feed:06:")

    def test_api_key_param_is_not_part_of_cache_key(self):
        keyed = _spec("06")
        keyed.params["key"] = "secret"
        assert keyed.cache_key == _spec("06").cache_key


# =============================================================================
# HTTP client
# =============================================================================


@pytest.mark.unit
class TestDatasetHttpClient:

    def test_backoff_delay_is_capped(self):
        client = DatasetHttpClient(base_delay=1.0, backoff_factor=2.0, max_delay=5.0)
        for attempt in range(10):
            delay = client.backoff_delay(attempt)
            assert 0.0 <= delay <= 5.0 * 1.25

    def test_backoff_grows_exponentially(self):
        client = DatasetHttpClient(base_delay=1.0, backoff_factor=2.0, max_delay=100.0)
        assert 0.75 <= client.backoff_delay(0) <= 1.25
        assert 3.0 <= client.backoff_delay(2) <= 5.0

    @pytest.mark.asyncio
    async def test_retries_server_errors_then_succeeds(self):
        upstream = _Upstream(httpx.Response(503, text="busy"), httpx.Response(200, content=GOOD_BODY))
        async with DatasetHttpClient(base_delay=0.0, max_delay=0.0, transport=httpx.MockTransport(upstream)) as client:
            body = await client.fetch_bytes("https://x.example/d", source="test")

        assert body == GOOD_BODY
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        upstream = _Upstream(httpx.Response(404, text="no such vintage"))
        async with DatasetHttpClient(base_delay=0.0, max_delay=0.0, transport=httpx.MockTransport(upstream)) as client:
            with pytest.raises(NotFoundError):
                await client.fetch_bytes("https://x.example/d", source="test")

        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        upstream = _Upstream(httpx.Response(500, text="down"))
        async with DatasetHttpClient(
            max_retries=3, base_delay=0.0, max_delay=0.0, transport=httpx.MockTransport(upstream)
        ) as client:
            with pytest.raises(RetryableError):
                await client.fetch_bytes("https://x.example/d", source="test")

        assert upstream.calls == 3

    @pytest.mark.asyncio
    async def test_corrupt_payload_is_retried(self):
        upstream = _Upstream(httpx.Response(200, content=b"{trunc"), httpx.Response(200, content=GOOD_BODY))
        async with DatasetHttpClient(base_delay=0.0, max_delay=0.0, transport=httpx.MockTransport(upstream)) as client:
            body = await client.fetch_bytes(
                "https://x.example/d", source="test", validate=validate_designation_payload
            )

        assert body == GOOD_BODY
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        upstream = _Upstream(
            httpx.Response(429, headers={"Retry-After": "0"}, text="slow down"),
            httpx.Response(200, content=GOOD_BODY),
        )
        async with DatasetHttpClient(base_delay=0.0, max_delay=0.0, transport=httpx.MockTransport(upstream)) as client:
            body = await client.fetch_bytes("https://x.example/d", source="test")

        assert body == GOOD_BODY
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_rate_limit_with_http_date_retry_after(self):
        upstream = _Upstream(
            httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, text="slow down"),
            httpx.Response(200, content=GOOD_BODY),
        )
        async with DatasetHttpClient(base_delay=0.0, max_delay=0.0, transport=httpx.MockTransport(upstream)) as client:
            body = await client.fetch_bytes("https://x.example/d", source="test")

        assert body == GOOD_BODY
        assert upstream.calls == 2


@pytest.mark.unit
class TestParseRetryAfter:

    NOW = datetime(2015, 10, 21, 7, 28, 0, tzinfo=timezone.utc)

    def test_delay_seconds(self):
        assert parse_retry_after("120") == 120.0
        assert parse_retry_after(" 1.5 ") == 1.5

    def test_http_date(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:30 GMT", now=self.NOW) == 30.0

    def test_http_date_in_the_past_means_no_wait(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:00:00 GMT", now=self.NOW) == 0.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("soon-ish") is None


# =============================================================================
# Cache manager
# =============================================================================


@pytest.mark.unit
class TestDatasetCacheManager:

    @pytest.mark.asyncio
    async def test_download_is_cached_and_reused(self, tmp_path, session_factory):
        upstream = _Upstream(httpx.Response(200, content=GOOD_BODY))
        manager = _manager(tmp_path, session_factory, upstream)

        first = await manager.acquire(_spec())
        second = await manager.acquire(_spec())
        await manager.close()

        assert isinstance(first, LocalDataset)
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.checksum == first.checksum
        assert second.json() == {"designations": []}
        assert upstream.calls == 1

        with session_factory() as db:
            entry = db.query(CacheEntry).one()
            assert entry.byte_size == len(GOOD_BODY)
            assert entry.expires_at - entry.downloaded_at == timedelta(days=90)
            assert Path(entry.local_path).is_file()

    @pytest.mark.asyncio
    async def test_stale_entry_is_downloaded_again(self, tmp_path, session_factory):
        upstream = _Upstream(httpx.Response(200, content=GOOD_BODY))
        manager = _manager(tmp_path, session_factory, upstream)
        await manager.acquire(_spec())

        with session_factory() as db:
            entry = db.query(CacheEntry).one()
            entry.expires_at = datetime.utcnow() - timedelta(seconds=1)
            db.commit()

        dataset = await manager.acquire(_spec())
        await manager.close()

        assert dataset.from_cache is False
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_tampered_file_fails_checksum(self, tmp_path, session_factory):
        upstream = _Upstream(httpx.Response(200, content=GOOD_BODY))
        manager = _manager(tmp_path, session_factory, upstream)
        first = await manager.acquire(_spec())

        first.path.write_bytes(b'{"designations": [{"geoid": "x"}]}')

        second = await manager.acquire(_spec())
        await manager.close()

        assert second.from_cache is False
        assert second.read_bytes() == GOOD_BODY
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_corrupt_payload_becomes_dataset_unavailable(self, tmp_path, session_factory):
        upstream = _Upstream(httpx.Response(200, content=b"<html>oops</html>"))
        manager = _manager(tmp_path, session_factory, upstream, max_retries=2)

        with pytest.raises(DatasetUnavailable) as exc_info:
            await manager.acquire(_spec("36"))
        await manager.close()

        error = exc_info.value
        assert error.state_fips == "36"
        assert error.critical is False
        assert error.retryable is True
        assert isinstance(error.__cause__, CorruptPayloadError)
        assert upstream.calls == 2

        with session_factory() as db:
            assert db.query(CacheEntry).count() == 0

    @pytest.mark.asyncio
    async def test_critical_source_failure_is_fatal(self, tmp_path, session_factory):
        upstream = _Upstream(httpx.Response(404, text="gone"))
        manager = _manager(tmp_path, session_factory, upstream)

        with pytest.raises(DatasetUnavailable) as exc_info:
            await manager.acquire(_spec(critical=True))
        await manager.close()

        assert exc_info.value.fatal is True
        assert exc_info.value.retryable is False
        assert exc_info.value.to_entry()["severity"] == "fatal"
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_acquire_many_returns_failures_in_place(self, tmp_path, session_factory):
        def upstream(request: httpx.Request) -> httpx.Response:
            if request.url.params["state"] == "NY":
                return httpx.Response(500, text="down")
            return httpx.Response(200, content=GOOD_BODY)

        manager = _manager(tmp_path, session_factory, upstream, max_retries=1)
        ca = _spec("06")
        ny = _spec("36")
        ca.params["state"] = "CA"
        ny.params["state"] = "NY"

        results = await manager.acquire_many([ca, ny])
        await manager.close()

        assert isinstance(results[0], LocalDataset)
        assert isinstance(results[1], DatasetUnavailable)
        assert results[1].state_fips == "36"

    @pytest.mark.asyncio
    async def test_unexpected_download_failure_becomes_dataset_unavailable(self, tmp_path, session_factory):
        def upstream(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("transport exploded")

        manager = _manager(tmp_path, session_factory, upstream)

        results = await manager.acquire_many([_spec("36")])
        await manager.close()

        error = results[0]
        assert isinstance(error, DatasetUnavailable)
        assert error.state_fips == "36"
        assert error.retryable is False
        assert error.fatal is False
        assert "transport exploded" in error.message

    @pytest.mark.asyncio
    async def test_evict_expired(self, tmp_path, session_factory):
        upstream = _Upstream(httpx.Response(200, content=GOOD_BODY))
        manager = _manager(tmp_path, session_factory, upstream)
        stale = await manager.acquire(_spec("06"))
        fresh = await manager.acquire(_spec("36"))
        await manager.close()

        with session_factory() as db:
            entry = db.query(CacheEntry).filter(CacheEntry.cache_key == stale.spec.cache_key).one()
            entry.expires_at = datetime.utcnow() - timedelta(days=1)
            db.commit()

        assert manager.evict_expired() == 1
        assert not stale.path.exists()
        assert fresh.path.exists()
        with session_factory() as db:
            assert db.query(CacheEntry).count() == 1
