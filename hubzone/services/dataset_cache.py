"""
Dataset cache manager.

Fetches raw source datasets and keeps validated local copies with TTL,
checksum, and size metadata (CacheEntry rows). Never touches designation
data.
"""
import asyncio
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from hubzone.core.api_errors import APIError
from hubzone.core.config import Settings
from hubzone.core.database import session_scope
from hubzone.core.errors import DatasetUnavailable
from hubzone.core.http_client import DatasetHttpClient, PayloadValidator
from hubzone.core.models import CacheEntry

logger = logging.getLogger(__name__)

# Query parameters that never take part in a cache key
_UNKEYED_PARAMS = {"key"}


@dataclass
class SourceSpec:
    """
    Descriptor of one source dataset download.

    A spec is either national (state_fips is None) or scoped to one state.
    `critical` decides whether an unavailable dataset aborts the run.
    """
    source_id: str
    url: str
    params: Dict[str, Any] = field(default_factory=dict)
    fmt: str = "json"
    state_fips: Optional[str] = None
    critical: bool = False
    validator: Optional[PayloadValidator] = None

    @property
    def scope(self) -> str:
        return self.state_fips or "national"

    @property
    def cache_key(self) -> str:
        keyed = {k: v for k, v in sorted(self.params.items()) if k not in _UNKEYED_PARAMS}
        digest = hashlib.sha256(
            f"{self.url}?{json.dumps(keyed, sort_keys=True, default=str)}".encode("utf-8")
        ).hexdigest()[:16]
        return f"{self.source_id}:{self.scope}:{digest}"


@dataclass
class LocalDataset:
    """A validated local copy of a source dataset."""
    spec: SourceSpec
    path: Path
    checksum: str
    byte_size: int
    downloaded_at: datetime
    from_cache: bool = False

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def json(self) -> Any:
        return json.loads(self.read_bytes())


AcquireResult = Union[LocalDataset, DatasetUnavailable]


def sha256_bytes(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _file_checksum(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


class DatasetCacheManager:
    """
    Returns local copies of source datasets, downloading only when needed.

    A cached copy is used when its CacheEntry is unexpired, the file is
    present, and the file checksum matches the recorded one. Otherwise the
    dataset is downloaded with bounded parallelism and retry, validated,
    written to the cache directory and recorded.
    """

    def __init__(
        self,
        cache_directory: Union[str, Path],
        http_client: DatasetHttpClient,
        session_factory=None,
        cache_duration_days: int = 90,
    ):
        self.cache_directory = Path(cache_directory)
        self.http_client = http_client
        self.session_factory = session_factory
        self.cache_duration = timedelta(days=cache_duration_days)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache_directory: Optional[str] = None,
    ) -> "DatasetCacheManager":
        client = DatasetHttpClient(
            max_concurrency=settings.max_concurrency,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay_seconds,
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )
        return cls(
            cache_directory=cache_directory or settings.cache_directory,
            http_client=client,
            session_factory=session_factory,
            cache_duration_days=settings.cache_duration_days,
        )

    async def close(self) -> None:
        await self.http_client.close()

    def _local_path(self, spec: SourceSpec) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", spec.cache_key)
        return self.cache_directory / f"{safe}.{spec.fmt}"

    def _lookup(self, spec: SourceSpec) -> Optional[LocalDataset]:
        """Return the cached dataset if fresh and intact."""
        now = datetime.utcnow()
        with session_scope(self.session_factory) as db:
            entry = db.query(CacheEntry).filter(CacheEntry.cache_key == spec.cache_key).first()
            if entry is None:
                return None
            if entry.expires_at <= now:
                logger.info(f"[{spec.source_id}] Cache entry for {spec.scope} is stale")
                return None
            path = Path(entry.local_path)
            checksum = _file_checksum(path)
            if checksum != entry.checksum:
                logger.warning(
                    f"[{spec.source_id}] Cached file for {spec.scope} is missing or "
                    f"fails checksum; re-downloading"
                )
                return None
            return LocalDataset(
                spec=spec,
                path=path,
                checksum=entry.checksum,
                byte_size=entry.byte_size,
                downloaded_at=entry.downloaded_at,
                from_cache=True,
            )

    def _store(self, spec: SourceSpec, body: bytes) -> LocalDataset:
        """Write the payload to disk and upsert its CacheEntry."""
        self.cache_directory.mkdir(parents=True, exist_ok=True)
        path = self._local_path(spec)
        tmp_path = path.with_suffix(path.suffix + ".part")
        with open(tmp_path, "wb") as f:
            f.write(body)
        os.replace(tmp_path, path)

        now = datetime.utcnow()
        checksum = sha256_bytes(body)
        with session_scope(self.session_factory) as db:
            entry = db.query(CacheEntry).filter(CacheEntry.cache_key == spec.cache_key).first()
            if entry is None:
                entry = CacheEntry(cache_key=spec.cache_key, source_id=spec.source_id)
                db.add(entry)
            entry.source_url = spec.url
            entry.local_path = str(path)
            entry.downloaded_at = now
            entry.expires_at = now + self.cache_duration
            entry.checksum = checksum
            entry.byte_size = len(body)

        return LocalDataset(
            spec=spec,
            path=path,
            checksum=checksum,
            byte_size=len(body),
            downloaded_at=now,
        )

    async def acquire(self, spec: SourceSpec) -> LocalDataset:
        """
        Return a validated local copy of the dataset.

        Raises:
            DatasetUnavailable: If the source is unreachable or corrupt after
                all retries
        """
        cached = self._lookup(spec)
        if cached is not None:
            logger.debug(f"[{spec.source_id}] Cache hit for {spec.scope}")
            return cached

        logger.info(f"[{spec.source_id}] Downloading {spec.scope} from {spec.url}")
        try:
            body = await self.http_client.fetch_bytes(
                spec.url,
                source=spec.source_id,
                params=spec.params,
                validate=spec.validator,
            )
        except APIError as e:
            raise DatasetUnavailable(
                spec.source_id,
                str(e),
                critical=spec.critical,
                state_fips=spec.state_fips,
                retryable=e.retryable,
            ) from e
        except Exception as e:
            logger.error(f"[{spec.source_id}] Unexpected download failure for {spec.scope}: {e}", exc_info=True)
            raise DatasetUnavailable(
                spec.source_id,
                f"Unexpected download failure: {e}",
                critical=spec.critical,
                state_fips=spec.state_fips,
                retryable=False,
            ) from e

        dataset = self._store(spec, body)
        logger.info(
            f"[{spec.source_id}] Cached {spec.scope}: {dataset.byte_size} bytes "
            f"(sha256 {dataset.checksum[:12]})"
        )
        return dataset

    async def _acquire_or_error(self, spec: SourceSpec) -> AcquireResult:
        try:
            return await self.acquire(spec)
        except DatasetUnavailable as e:
            logger.warning(f"Dataset unavailable: {e.message}")
            return e

    async def acquire_many(self, specs: List[SourceSpec]) -> List[AcquireResult]:
        """
        Acquire several datasets concurrently (bounded by the HTTP client).

        Waits for every download to finish or fail. Results are returned in
        the order of `specs`; unavailable datasets are returned as
        DatasetUnavailable instances rather than raised.
        """
        return list(await asyncio.gather(*(self._acquire_or_error(s) for s in specs)))

    def evict_expired(self) -> int:
        """
        Remove stale cache files and their CacheEntry rows.

        Returns:
            Number of entries evicted
        """
        now = datetime.utcnow()
        evicted = 0
        with session_scope(self.session_factory) as db:
            stale = db.query(CacheEntry).filter(CacheEntry.expires_at <= now).all()
            for entry in stale:
                path = Path(entry.local_path)
                if path.exists():
                    path.unlink()
                db.delete(entry)
                evicted += 1
        logger.info(f"Evicted {evicted} stale cache entries")
        return evicted
