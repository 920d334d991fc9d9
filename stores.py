"""
External stores the license service talks to.

- GitHubDocumentStore: the authoritative licenses.json in a GitHub repository
- KVCacheStore / SqlCacheStore: the low-latency cache mirror
- LocalFileStore: the working copy on local disk
"""
import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session, sessionmaker

from database import CacheEntry, SessionLocal
from errors import ConflictError, RateLimitedError, RemoteStoreError, StoreNotConfiguredError

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[int]:
    header = response.headers.get("Retry-After")
    if header and header.isdigit():
        return int(header)
    reset = response.headers.get("X-RateLimit-Reset")
    if reset and reset.isdigit():
        return max(0, int(reset) - int(time.time()))
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"Upstream returned status {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or f"Upstream returned status {response.status_code}")
    return f"Upstream returned status {response.status_code}"


def raise_for_store_status(response: httpx.Response) -> None:
    """Translate an unsuccessful store response into the service error taxonomy."""
    if response.is_success:
        return

    status = response.status_code
    rate_limited = status == 429 or (
        status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"
    )
    if rate_limited:
        raise RateLimitedError(retry_after=_retry_after(response))

    message = _error_message(response)
    # GitHub answers 409 on a stale sha, and 422 when a sha is missing or malformed
    if status == 409 or (status == 422 and "sha" in message.lower()):
        raise ConflictError()

    raise RemoteStoreError(message, status_code=status)


@dataclass(frozen=True)
class RemoteDocument:
    content: str
    version: Optional[str]


class GitHubDocumentStore:
    """Read and conditionally write a single file through the GitHub contents API."""

    def __init__(
        self,
        owner: str,
        repo: str,
        branch: str = "main",
        token: str = "",
        api_url: str = "https://api.github.com",
        raw_url: str = "https://raw.githubusercontent.com",
        user_agent: str = "License-Manager-Pro",
        api_timeout: float = 5.0,
        raw_timeout: float = 7.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.raw_url = raw_url.rstrip("/")
        self.user_agent = user_agent
        self.api_timeout = api_timeout
        self.raw_timeout = raw_timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "GitHubDocumentStore":
        return cls(
            owner=settings.GITHUB_REPO_OWNER,
            repo=settings.GITHUB_REPO_NAME,
            branch=settings.GITHUB_REPO_BRANCH,
            token=settings.GITHUB_TOKEN,
            api_url=settings.GITHUB_API_URL,
            raw_url=settings.GITHUB_RAW_URL,
            user_agent=settings.GITHUB_USER_AGENT,
            api_timeout=settings.REMOTE_API_TIMEOUT,
            raw_timeout=settings.REMOTE_RAW_TIMEOUT,
            transport=transport,
        )

    @property
    def can_write(self) -> bool:
        return bool(self.token)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _api_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": self.user_agent,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _contents_url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{path}"

    async def get(self, path: str) -> Optional[RemoteDocument]:
        """
        Fetch a file and its blob sha through the contents API.

        Returns None when the file does not exist yet.
        """
        async with self._client(self.api_timeout) as client:
            response = await client.get(
                self._contents_url(path),
                params={"ref": self.branch},
                headers=self._api_headers(),
            )

        if response.status_code == 404:
            return None
        raise_for_store_status(response)

        data = response.json()
        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return RemoteDocument(content=content, version=data.get("sha"))

    async def get_raw(self, path: str) -> Optional[str]:
        """Fetch a file from the raw content host, bypassing intermediate caches."""
        url = f"{self.raw_url}/{self.owner}/{self.repo}/{self.branch}/{path}"
        async with self._client(self.raw_timeout) as client:
            response = await client.get(url, headers={"Cache-Control": "no-cache"})

        if response.status_code == 404:
            return None
        raise_for_store_status(response)
        return response.text

    async def put(self, path: str, content: str, message: str, version: Optional[str] = None) -> Dict[str, Any]:
        """
        Commit ``content`` to ``path``.

        ``version`` is the blob sha the write is based on; omitting it creates
        the file. Returns the commit metadata from GitHub.
        """
        if not self.can_write:
            raise StoreNotConfiguredError("Repository token not configured, set GITHUB_TOKEN")

        body = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if version:
            body["sha"] = version

        async with self._client(self.api_timeout) as client:
            response = await client.put(
                self._contents_url(path),
                json=body,
                headers=self._api_headers(),
            )

        raise_for_store_status(response)
        data = response.json()
        return {
            "version": (data.get("content") or {}).get("sha"),
            "commit": data.get("commit") or {},
        }

    async def fetch_licenses(self, path: str) -> Any:
        """
        Load the parsed licenses document.

        Uses the contents API when a token is configured and falls back to the
        raw host when that fails. A missing file reads as an empty list.
        """
        if self.can_write:
            try:
                document = await self.get(path)
                if document is not None:
                    return json.loads(document.content)
            except (httpx.HTTPError, RemoteStoreError, RateLimitedError, ValueError) as e:
                logger.info("GitHub API read failed, trying raw URL: %s", e)

        text = await self.get_raw(path)
        if text is None:
            return []
        return json.loads(text)


class KVCacheStore:
    """Vercel KV / Upstash Redis over its REST API."""

    name = "kv"

    def __init__(self, url: str, token: str, timeout: float = 3.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.token}"},
        )

    async def get(self, key: str) -> Any:
        async with self._client() as client:
            response = await client.get(f"{self.url}/get/{key}")
        raise_for_store_status(response)

        result = response.json().get("result")
        if isinstance(result, str):
            return json.loads(result)
        return result

    async def set(self, key: str, value: Any) -> None:
        async with self._client() as client:
            response = await client.post(f"{self.url}/set/{key}", content=json.dumps(value))
        raise_for_store_status(response)


class SqlCacheStore:
    """Cache kept in a local SQL table, one JSON value per key."""

    name = "sql"

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def get(self, key: str) -> Any:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._set, key, value)

    def _get(self, key: str) -> Any:
        db: Session = self.session_factory()
        try:
            entry = db.query(CacheEntry).filter(CacheEntry.key == key).first()
            return entry.value if entry else None
        finally:
            db.close()

    def _set(self, key: str, value: Any) -> None:
        db: Session = self.session_factory()
        try:
            entry = db.query(CacheEntry).filter(CacheEntry.key == key).first()
            if entry:
                entry.value = value
            else:
                db.add(CacheEntry(key=key, value=value))
            db.commit()
        finally:
            db.close()


class LocalFileStore:
    """The licenses.json working copy on local disk."""

    def __init__(self, path: str):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def write(self, content: str) -> None:
        self.path.write_text(content, encoding="utf-8")


def build_cache_store(settings, session_factory: Optional[sessionmaker] = None, transport=None):
    """Pick the cache backend named by ``CACHE_BACKEND``; None means no cache."""
    backend = settings.CACHE_BACKEND.lower()

    if backend == "kv":
        if not (settings.KV_REST_API_URL and settings.KV_REST_API_TOKEN):
            logger.warning("CACHE_BACKEND=kv but KV_REST_API_URL/KV_REST_API_TOKEN are not set, cache disabled")
            return None
        return KVCacheStore(
            settings.KV_REST_API_URL,
            settings.KV_REST_API_TOKEN,
            timeout=settings.CACHE_TIMEOUT,
            transport=transport,
        )

    if backend == "sql":
        return SqlCacheStore(session_factory or SessionLocal)

    if backend != "none":
        logger.warning("Unknown CACHE_BACKEND %r, cache disabled", settings.CACHE_BACKEND)
    return None
