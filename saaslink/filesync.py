import asyncio
import logging
import shutil
import weakref
import zipfile
from pathlib import Path
from typing import Any, Awaitable, Iterable, List, Optional

import httpx

from . import crypto
from .config import AgentConfig
from .messages import FileReference

"""
filesync.py — download, replace, extract.

Per file reference:
    1. name the scratch file <appRoot>/.tmp/<pbkdf2(fileToken, sessionToken)>.zip
    2. stream POST <url>/socket/download into it
    3. pick the destination: `dest` for modules, its parent for everything else
    4. remove `dest` (missing is fine)
    5. extract the archive into the destination
    6. delete the scratch file (also when anything above failed)

sync_all() runs every reference concurrently and only succeeds if all do.
All transfers are joined before it returns or raises, so no scratch file
outlives the command.
"""

logger = logging.getLogger("saaslink.filesync")

DOWNLOAD_TIMEOUT = 60.0
CHUNK_SIZE = 64 * 1024


class FileSyncError(RuntimeError):
    """One file reference could not be materialized."""


class PathLocks:
    """
    One asyncio.Lock per resolved filesystem path.

    Commands are dispatched concurrently; anything that mutates a path holds
    its lock so two commands can't interleave on the same destination.
    Unused locks are dropped automatically.
    """
    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock(self, path) -> asyncio.Lock:
        key = str(Path(path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


async def gather_strict(aws: Iterable[Awaitable[Any]]) -> List[Any]:
    """
    Await everything concurrently; if anything failed, raise the first
    failure (in submission order) once all of them are done.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


def remove_path(path: Path) -> None:
    """Delete a file, symlink or directory tree. A missing path is not an error."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        pass


def extract_archive(archive: Path, destination: Path) -> None:
    """Extract a zip into `destination`, refusing members that escape it."""
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    with zipfile.ZipFile(archive) as zf:
        for member in zf.namelist():
            target = (root / member).resolve()
            if target != root and root not in target.parents:
                raise FileSyncError(f"Archive member escapes destination: {member!r}")
        zf.extractall(root)


class FileSyncPipeline:
    """Materializes FileReferences onto disk for the command dispatcher."""

    def __init__(
        self,
        config: AgentConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        locks: Optional[PathLocks] = None,
    ) -> None:
        self.config = config
        self.http_client = http_client
        self.locks = locks or PathLocks()

    def artifact_path(self, ref: FileReference, session_token: str) -> Path:
        name = crypto.derive_artifact_name(ref.file_token, session_token)
        return self.config.scratch_dir / f"{name}.zip"

    @staticmethod
    def destination_for(ref: FileReference) -> Path:
        """Modules extract in place; other assets replace the tree one level up."""
        dest = Path(ref.destination_path).resolve()
        return dest if ref.is_module else dest.parent

    async def sync_all(self, refs: Iterable[FileReference], session_token: Optional[str]) -> List[Path]:
        """
        Materialize every reference. Raises the first failure, but only after
        every transfer has finished.
        """
        return await gather_strict(self.sync(ref, session_token) for ref in refs)

    async def sync(self, ref: FileReference, session_token: Optional[str]) -> Path:
        """Run the whole pipeline for one reference; returns the extraction directory."""
        if not session_token:
            raise FileSyncError("A session token is required to download files")

        artifact = self.artifact_path(ref, session_token)
        target = Path(ref.destination_path).resolve()
        destination = self.destination_for(ref)

        try:
            await asyncio.to_thread(artifact.parent.mkdir, parents=True, exist_ok=True)
            await self._download(ref, session_token, artifact)

            async with self.locks.lock(destination):
                await asyncio.to_thread(remove_path, target)
                await asyncio.to_thread(extract_archive, artifact, destination)
        except FileSyncError:
            raise
        except Exception as exc:
            # zipfile raises more than BadZipFile (NotImplementedError, EOFError, RuntimeError).
            raise FileSyncError(
                f"Download ZIP or unzip of `{ref.destination_path}` failed: {exc}"
            ) from exc
        finally:
            await self._discard(artifact)

        logger.info("Synced %s into %s", ref.destination_path, destination)
        return destination

    async def _download(self, ref: FileReference, session_token: str, artifact: Path) -> None:
        body = {"token": session_token, "fileId": ref.file_token, "src": ref.source_category}
        if self.http_client is not None:
            await self._stream_to(self.http_client, body, artifact)
            return
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT) as client:
            await self._stream_to(client, body, artifact)

    async def _stream_to(self, client: httpx.AsyncClient, body, artifact: Path) -> None:
        async with client.stream("POST", self.config.download_url, json=body) as response:
            response.raise_for_status()
            with open(artifact, "wb") as f:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    f.write(chunk)

    async def _discard(self, artifact: Path) -> None:
        try:
            await asyncio.to_thread(artifact.unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove temporary archive %s: %s", artifact.name, exc)
