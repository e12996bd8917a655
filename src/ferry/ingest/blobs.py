"""Blob fetchers — download stored uploads into a job workspace."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import aiohttp

from ferry.exceptions import DeadlineExceededError, StorageIOError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


@runtime_checkable
class BlobFetcher(Protocol):
    """Copies the blob at *locator* to *dest*, returning the byte count."""

    async def fetch(self, locator: str, dest: Path, *, timeout: float) -> int: ...


class LocalBlobFetcher:
    """Fetches blobs addressed by filesystem paths or ``file://`` URLs."""

    async def fetch(self, locator: str, dest: Path, *, timeout: float) -> int:
        source = _local_path(locator)
        try:
            await asyncio.wait_for(asyncio.to_thread(shutil.copyfile, source, dest), timeout)
        except TimeoutError as e:
            msg = f"Copy of {locator} exceeded {timeout}s"
            raise DeadlineExceededError(msg) from e
        except OSError as e:
            msg = f"Cannot read local blob {locator}: {e}"
            raise StorageIOError(msg) from e
        return dest.stat().st_size


class HttpBlobFetcher:
    """Streams blobs over HTTP(S) with ``aiohttp``.

    A session may be injected; otherwise one is opened lazily and closed
    by :meth:`close`.
    """

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def fetch(self, locator: str, dest: Path, *, timeout: float) -> int:
        session = await self._get_session()
        written = 0
        try:
            async with session.get(
                locator, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as resp:
                if resp.status >= 400:
                    msg = f"GET {locator} returned HTTP {resp.status}"
                    raise StorageIOError(msg)
                out = await asyncio.to_thread(open, dest, "wb")
                try:
                    async for block in resp.content.iter_chunked(_CHUNK_SIZE):
                        await asyncio.to_thread(out.write, block)
                        written += len(block)
                finally:
                    await asyncio.to_thread(out.close)
        except TimeoutError as e:
            msg = f"Download of {locator} exceeded {timeout}s"
            raise DeadlineExceededError(msg) from e
        except aiohttp.ClientError as e:
            msg = f"Download of {locator} failed: {e}"
            raise StorageIOError(msg) from e
        except OSError as e:
            msg = f"Cannot write {dest}: {e}"
            raise StorageIOError(msg) from e
        return written

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session


class RoutingBlobFetcher:
    """Dispatches to a fetcher by ``StoredFile.storage_kind``."""

    def __init__(self, fetchers: Mapping[str, BlobFetcher]) -> None:
        self._fetchers = dict(fetchers)

    def for_kind(self, storage_kind: str) -> BlobFetcher:
        fetcher = self._fetchers.get(storage_kind)
        if fetcher is None:
            msg = f"No blob fetcher registered for storage kind {storage_kind!r}"
            raise StorageIOError(msg)
        return fetcher

    async def fetch(
        self, locator: str, dest: Path, *, timeout: float, storage_kind: str = "local"
    ) -> int:
        return await self.for_kind(storage_kind).fetch(locator, dest, timeout=timeout)

    async def close(self) -> None:
        for fetcher in self._fetchers.values():
            close = getattr(fetcher, "close", None)
            if close is not None:
                await close()


def default_fetcher() -> RoutingBlobFetcher:
    """Local paths for ``local`` blobs, HTTP for ``remote-object`` blobs."""
    return RoutingBlobFetcher({"local": LocalBlobFetcher(), "remote-object": HttpBlobFetcher()})


async def fetch_with_retry(
    fetch: BlobFetcher | RoutingBlobFetcher,
    locator: str,
    dest: Path,
    *,
    timeout: float,
    storage_kind: str = "local",
    attempts: int = 3,
    backoff: float = 0.5,
) -> int:
    """Fetch with bounded retries and exponential backoff.

    Deadline expiry is retried like any other I/O failure; the last error
    is re-raised as :class:`StorageIOError`.
    """
    last: Exception | None = None
    for attempt in range(attempts):
        try:
            if isinstance(fetch, RoutingBlobFetcher):
                return await fetch.fetch(locator, dest, timeout=timeout, storage_kind=storage_kind)
            return await fetch.fetch(locator, dest, timeout=timeout)
        except (StorageIOError, DeadlineExceededError) as e:
            last = e
            logger.warning(
                "Fetch of %s failed (attempt %d/%d): %s", locator, attempt + 1, attempts, e
            )
            if attempt + 1 < attempts:
                await asyncio.sleep(backoff * (2**attempt))
    msg = f"Giving up on {locator} after {attempts} attempts: {last}"
    raise StorageIOError(msg) from last


def _local_path(locator: str) -> Path:
    if locator.startswith("file://"):
        return Path(unquote(urlparse(locator).path))
    return Path(locator)
