"""
Upload sinks for backup archives.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

import aiohttp

from man10routine.config.loader import StorageConfig
from man10routine.errors.errors import ErrorCode, RoutineError, new_configuration_error, new_transient_error

logger = logging.getLogger(__name__)

COMPONENT = "storage"


class UploadSink(ABC):
    """Destination that accepts an archive under a relative path."""

    @abstractmethod
    async def upload(self, blob: bytes, path: str) -> str:
        """Store `blob` at `path` and return the resulting location."""

    async def close(self):
        pass

    @staticmethod
    def _check_path(path: str) -> str:
        relative = PurePosixPath(path)
        if relative.is_absolute() or '..' in relative.parts or not relative.parts:
            raise RoutineError(ErrorCode.STORAGE, COMPONENT, "upload", f"refusing to upload to unsafe path '{path}'")
        return str(relative)


class HttpUploadSink(UploadSink):
    """PUTs archives to `<endpoint>/<bucket>/<path>`."""

    def __init__(self, config: StorageConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout.total_seconds())
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self._session = aiohttp.ClientSession(timeout=timeout, headers=headers)
        return self._session

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def upload(self, blob: bytes, path: str) -> str:
        url = f"{self.config.endpoint}/{self.config.bucket}/{self._check_path(path)}"
        session = self._get_session()
        try:
            async with session.put(url, data=blob, headers={"Content-Type": "application/gzip"}) as response:
                if response.status not in (200, 201, 204):
                    text = await response.text()
                    raise RoutineError(
                        ErrorCode.STORAGE, COMPONENT, "upload",
                        f"upload to {url} failed with status {response.status}: {text.strip()[:200]}"
                    ).with_context("status", response.status)
        except RoutineError:
            raise
        except asyncio.TimeoutError as e:
            raise new_transient_error(COMPONENT, "upload", f"upload to {url} timed out", e)
        except aiohttp.ClientError as e:
            raise new_transient_error(COMPONENT, "upload", f"upload to {url} failed", e)

        logger.info(f"Uploaded {len(blob)} bytes to {url}")
        return url


class DirectoryUploadSink(UploadSink):
    """Writes archives below a local or mounted directory."""

    def __init__(self, config: StorageConfig):
        self.root = Path(config.directory)

    def _write(self, blob: bytes, target: Path):
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".partial")
        partial.write_bytes(blob)
        partial.replace(target)

    async def upload(self, blob: bytes, path: str) -> str:
        target = self.root / self._check_path(path)
        try:
            await asyncio.to_thread(self._write, blob, target)
        except OSError as e:
            raise RoutineError(ErrorCode.STORAGE, COMPONENT, "upload", f"cannot write {target}", e)

        logger.info(f"Wrote {len(blob)} bytes to {target}")
        return str(target)


def create_sink(config: StorageConfig) -> UploadSink:
    """Build the sink selected by `storage.type`."""
    if config.type == "http":
        return HttpUploadSink(config)
    if config.type == "directory":
        return DirectoryUploadSink(config)
    raise new_configuration_error("create_sink", f"unknown storage type '{config.type}'")
