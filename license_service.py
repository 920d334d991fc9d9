import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

from config import settings as default_settings
from errors import RateLimitedError, RemoteStoreError, StoreNotConfiguredError
from normalization import isoformat, normalize_batch
from reconciler import merge
from sources import Origin, SourceResult, read_source
from stores import GitHubDocumentStore, LocalFileStore
from validator import evaluate

logger = logging.getLogger(__name__)


class LicenseService:
    """
    Verifies license keys against every known copy of licenses.json and
    writes submitted collections back to the stores.

    Nothing is cached between calls except the static snapshot, which is
    loaded once by the caller and passed in.
    """

    def __init__(
        self,
        static_snapshot: SourceResult,
        remote: GitHubDocumentStore,
        cache=None,
        local_file: Optional[LocalFileStore] = None,
        settings=default_settings,
    ):
        self.static_snapshot = static_snapshot
        self.remote = remote
        self.cache = cache
        self.local_file = local_file
        self.settings = settings
        self.scheduler = AsyncIOScheduler()

    # Source reads

    async def _fetch_cache(self) -> Any:
        if self.cache is None:
            return None
        return await self.cache.get(self.settings.CACHE_KEY)

    async def _fetch_file(self) -> Any:
        if self.local_file is None or not self.local_file.exists():
            return None
        text = await asyncio.to_thread(self.local_file.read)
        return json.loads(text)

    async def _fetch_remote(self) -> Any:
        return await self.remote.fetch_licenses(self.settings.LICENSES_PATH)

    async def read_sources(self) -> List[SourceResult]:
        """Read every origin concurrently; the result is in merge order."""
        file_result, remote_result, cache_result = await asyncio.gather(
            read_source(Origin.FILE, self._fetch_file, self.settings.FILE_TIMEOUT),
            read_source(Origin.REMOTE, self._fetch_remote, self.settings.remote_timeout),
            read_source(Origin.CACHE, self._fetch_cache, self.settings.CACHE_TIMEOUT),
        )
        results = [self.static_snapshot, file_result, remote_result, cache_result]
        return sorted(results, key=lambda result: result.origin)

    async def canonical(self) -> Dict[str, Mapping[str, Any]]:
        results = await self.read_sources()
        logger.info(
            "License sources: %s",
            ", ".join(f"{r.origin.name.lower()}={len(r.records)}" for r in results),
        )
        return merge(result.records for result in results)

    # Operations

    async def verify(self, license_key: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Evaluate a license key against the reconciled view of all sources.
        """
        canonical = await self.canonical()
        return evaluate(
            canonical,
            license_key,
            now or datetime.now(timezone.utc),
            expiring_days=self.settings.EXPIRING_SOON_DAYS,
            locale=self.settings.MESSAGE_LOCALE,
        )

    async def list_licenses(self) -> List[Any]:
        """
        Raw license array from the best available source: cache, then the
        remote repository, then an empty list.
        """
        cached = await read_source(Origin.CACHE, self._fetch_cache, self.settings.CACHE_TIMEOUT)
        if cached.records:
            return list(cached.records)

        remote = await read_source(Origin.REMOTE, self._fetch_remote, self.settings.remote_timeout)
        return list(remote.records)

    async def sync(self, licenses: List[Any]) -> Dict[str, Any]:
        """
        Validate a submitted batch and persist it to the first writable
        target: cache, remote repository, local file.
        """
        records = normalize_batch(licenses)
        count = len(records)
        content = json.dumps(records, indent=2, ensure_ascii=False)

        if self.cache is not None:
            try:
                await self.cache.set(self.settings.CACHE_KEY, records)
                return {"success": True, "message": "Licenses synced to cache", "count": count}
            except (httpx.HTTPError, RemoteStoreError, SQLAlchemyError) as e:
                logger.error("Cache write failed, trying next target: %s", e)

        if self.remote.can_write:
            try:
                commit = await self._commit_document(content, self._default_commit_message())
                return {
                    "success": True,
                    "message": "Licenses committed to repository",
                    "count": count,
                    "commit": commit,
                }
            except RemoteStoreError as e:
                logger.error("Repository write failed, trying next target: %s", e)

        if self.local_file is not None:
            try:
                await asyncio.to_thread(self.local_file.write, content)
                return {
                    "success": True,
                    "message": "Licenses synced to licenses.json file",
                    "count": count,
                    "file_path": str(self.local_file.path),
                }
            except OSError as e:
                logger.error("Cannot write %s: %s", self.local_file.path, e)

        return {
            "success": True,
            "message": "Please commit licenses.json to Git",
            "count": count,
            "licenses": records,
            "note": "Save the licenses array above to licenses.json file",
            "json_content": content,
        }

    async def commit(self, licenses: List[Any], message: Optional[str] = None) -> Dict[str, Any]:
        """
        Commit a submitted batch to the remote repository.
        """
        if not self.remote.can_write:
            raise StoreNotConfiguredError("Repository token not configured, set GITHUB_TOKEN")

        records = normalize_batch(licenses)
        commit_message = message or self._default_commit_message()
        content = json.dumps(records, indent=2, ensure_ascii=False)
        commit = await self._commit_document(content, commit_message)

        return {
            "success": True,
            "message": "licenses.json committed to repository successfully",
            "count": len(records),
            "commit": commit,
        }

    async def _commit_document(self, content: str, message: str) -> Dict[str, Any]:
        """
        Read the current sha, then write conditionally on it.

        A concurrent edit makes the write fail with ConflictError instead of
        overwriting it.
        """
        path = self.settings.LICENSES_PATH
        version = None
        try:
            document = await self.remote.get(path)
            version = document.version if document else None
        except RateLimitedError:
            raise
        except (httpx.HTTPError, RemoteStoreError) as e:
            logger.warning("Could not read current version of %s: %s", path, e)

        try:
            result = await self.remote.put(path, content, message, version)
        except httpx.HTTPError as e:
            raise RemoteStoreError("Remote repository unreachable", status_code=502) from e

        commit = result["commit"]
        return {"sha": commit.get("sha"), "message": message, "url": commit.get("html_url")}

    def _default_commit_message(self) -> str:
        return f"Auto-update licenses.json - {isoformat(datetime.now(timezone.utc))}"

    # Cache mirror

    async def refresh_cache(self) -> int:
        """
        Write the reconciled collection into the cache. Returns the number of
        records mirrored.
        """
        if self.cache is None:
            return 0

        canonical = await self.canonical()
        records = list(canonical.values())
        await self.cache.set(self.settings.CACHE_KEY, records)
        logger.info("Mirrored %d licenses into the %s cache", len(records), self.cache.name)
        return len(records)

    async def _scheduled_refresh(self):
        try:
            await self.refresh_cache()
        except (httpx.HTTPError, RemoteStoreError, RateLimitedError, SQLAlchemyError) as e:
            logger.warning("Cache refresh failed: %s", e)

    def start_cache_refresh(self):
        """
        Start the periodic cache mirror job, if an interval is configured.
        """
        interval = self.settings.CACHE_REFRESH_INTERVAL_MINUTES
        if self.cache is None or interval <= 0 or self.scheduler.running:
            return

        self.scheduler.add_job(
            self._scheduled_refresh,
            'interval',
            minutes=interval,
            id='license_cache_refresh'
        )
        self.scheduler.start()

    def stop_cache_refresh(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
