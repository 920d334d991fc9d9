"""
Source readers.

Each origin yields a SourceResult. A read never raises: transport errors,
timeouts, malformed payloads and missing data all become an empty result
whose ``error`` says why.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class Origin(IntEnum):
    """License origins in merge order, lowest default precedence first."""

    STATIC = 0
    FILE = 1
    REMOTE = 2
    CACHE = 3


@dataclass(frozen=True)
class SourceResult:
    origin: Origin
    records: Tuple[Any, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def empty(cls, origin: Origin, error: Optional[str] = None) -> "SourceResult":
        return cls(origin=origin, records=(), error=error)


def as_collection(payload: Any) -> Optional[Tuple[Any, ...]]:
    """Accept a payload only when it is a non-empty JSON array."""
    if isinstance(payload, list) and payload:
        return tuple(payload)
    return None


async def read_source(origin: Origin, fetch: Callable[[], Awaitable[Any]], timeout: float) -> SourceResult:
    """Run ``fetch`` for one origin, bounded by ``timeout`` seconds."""
    try:
        payload = await asyncio.wait_for(fetch(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.info("%s source timed out after %ss", origin.name.lower(), timeout)
        return SourceResult.empty(origin, "timeout")
    except Exception as e:
        logger.info("%s source unavailable: %s", origin.name.lower(), e)
        return SourceResult.empty(origin, type(e).__name__)

    records = as_collection(payload)
    if records is None:
        return SourceResult.empty(origin, "no data")

    logger.debug("Loaded %d licenses from %s source", len(records), origin.name.lower())
    return SourceResult(origin=origin, records=records)


def load_static_snapshot(path: str) -> SourceResult:
    """
    Load the bundled fallback collection once, at startup.

    The returned result is immutable and is handed to the service explicitly.
    """
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Static license bundle %s not loaded: %s", path, e)
        return SourceResult.empty(Origin.STATIC, type(e).__name__)

    records = as_collection(payload)
    if records is None:
        return SourceResult.empty(Origin.STATIC, "no data")

    logger.info("Loaded %d licenses from static bundle %s", len(records), path)
    return SourceResult(origin=Origin.STATIC, records=records)
