"""Source fetcher.

Resolves a time-limited read URL for the source object and streams it into
the workspace input directory.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from hls_pipeline.core.logging import log_info, log_warning
from hls_pipeline.core.metrics import FETCH_BYTES_TOTAL
from hls_pipeline.core.storage import Storage
from hls_pipeline.modules.transcoding.errors import SourceUnavailable
from hls_pipeline.modules.transcoding.workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Result of downloading a source object."""
    success: bool
    storage_key: str
    local_path: Optional[Path] = None
    size: int = 0
    error: Optional[SourceUnavailable] = None


class SourceFetcher:
    """Downloads source objects into a job workspace."""

    def __init__(
        self,
        storage: Storage,
        read_url_ttl: int = 3600,
        timeout: float = 300.0,
        read_timeout: float = 60.0,
        chunk_size: int = 1024 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the fetcher.

        Args:
            storage: Storage issuing read URLs
            read_url_ttl: Lifetime of the read URL in seconds
            timeout: Upper bound for the whole download in seconds
            read_timeout: Upper bound for a single network read in seconds
            chunk_size: Streaming chunk size in bytes
            transport: Optional httpx transport (tests use a mock transport)
        """
        self.storage = storage
        self.read_url_ttl = read_url_ttl
        self.timeout = timeout
        self.read_timeout = read_timeout
        self.chunk_size = chunk_size
        self.transport = transport

    async def fetch(
        self,
        storage_key: str,
        workspace: Workspace,
        content_type: Optional[str] = None,
    ) -> FetchResult:
        """Download ``storage_key`` into ``workspace.input_dir``.

        Args:
            storage_key: Key of the source object
            workspace: Workspace owned by the current attempt
            content_type: Content type requested for the read URL

        Returns:
            FetchResult with the local path, or a SourceUnavailable error
        """
        destination = workspace.input_dir / self._local_name(storage_key)
        loop = asyncio.get_running_loop()

        url = await loop.run_in_executor(
            None,
            self.storage.get_read_url,
            storage_key,
            content_type,
            self.read_url_ttl,
        )
        if not url:
            return self._failure(storage_key, "source object not found")

        try:
            if urlparse(url).scheme == "file":
                size = await loop.run_in_executor(None, self._copy_local, url, destination)
            else:
                size = await asyncio.wait_for(self._download(url, destination), self.timeout)
        except SourceUnavailable as e:
            return self._failure(storage_key, e.message)
        except asyncio.TimeoutError:
            return self._failure(storage_key, f"download exceeded {self.timeout}s")
        except httpx.HTTPError as e:
            return self._failure(storage_key, f"download interrupted: {e}")
        except OSError as e:
            return self._failure(storage_key, f"cannot read source: {e}")

        if size == 0:
            return self._failure(storage_key, "source object is empty")

        FETCH_BYTES_TOTAL.inc(size)
        log_info(logger, "Source fetched", storage_key=storage_key, size=size)
        return FetchResult(success=True, storage_key=storage_key, local_path=destination, size=size)

    async def _download(self, url: str, destination: Path) -> int:
        timeout = httpx.Timeout(self.read_timeout, connect=min(30.0, self.read_timeout))
        async with httpx.AsyncClient(
            timeout=timeout,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            async with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise SourceUnavailable(f"storage returned HTTP {response.status_code}")

                written = 0
                with open(destination, "wb") as f:
                    async for chunk in response.aiter_bytes(self.chunk_size):
                        f.write(chunk)
                        written += len(chunk)

                expected = response.headers.get("content-length")
                received = response.num_bytes_downloaded
                if expected is not None and int(expected) != received:
                    raise SourceUnavailable(
                        f"download truncated: received {received} of {expected} bytes"
                    )
                return written

    @staticmethod
    def _copy_local(url: str, destination: Path) -> int:
        source = Path(unquote(urlparse(url).path))
        shutil.copyfile(source, destination)
        return destination.stat().st_size

    @staticmethod
    def _local_name(storage_key: str) -> str:
        name = PurePosixPath(storage_key).name
        if not name or name in (".", ".."):
            return "source"
        return name

    def _failure(self, storage_key: str, reason: str) -> FetchResult:
        log_warning(logger, "Source fetch failed", storage_key=storage_key, reason=reason)
        return FetchResult(
            success=False,
            storage_key=storage_key,
            error=SourceUnavailable(f"Source {storage_key} unavailable: {reason}"),
        )
