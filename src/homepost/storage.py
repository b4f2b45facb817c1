"""
Homepost - Homeserver storage clients.

Storage is addressed with pubky-style URLs:

    pubky://<owner public key hex>/<path>

Every owner can read anyone's public paths but write only under their own
key, mirroring how a homeserver only accepts writes from its signed-in
user. Two backends are provided:

- MemoryStorage: in-process homeservers with failure and latency injection,
  used by tests and simulations
- DirectoryStorage: homeservers laid out in a local directory tree, with
  atomic writes through aiofiles

Failures to reach a homeserver raise StorageUnavailable so readers can
degrade gracefully.
"""

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

import aiofiles
import aiofiles.os

from .constants import KEY_DISPLAY_LENGTH, URL_SCHEME
from .errors import ErrorCode, StorageError, StorageUnavailable

logger = logging.getLogger(__name__)

_OWNER_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_TEMP_SUFFIX = ".tmp"


def parse_url(url: str) -> Tuple[str, str]:
    """
    Split a storage URL into (owner, path).

    Raises:
        StorageError: If the URL is not a valid homeserver URL
    """
    if not url.startswith(URL_SCHEME):
        raise StorageError(ErrorCode.E604_INVALID_URL, f"Unsupported URL scheme: {url}")

    rest = url[len(URL_SCHEME):]
    owner, sep, path = rest.partition("/")
    if not sep or not _OWNER_PATTERN.match(owner):
        raise StorageError(ErrorCode.E604_INVALID_URL, f"Invalid homeserver owner in URL: {url}")

    path = "/" + path
    if any(part in (".", "..") for part in path.split("/")):
        raise StorageError(ErrorCode.E604_INVALID_URL, f"Relative path segments in URL: {url}")

    return owner, path


class StorageClient(ABC):
    """Async interface to the homeservers of all users.

    Attributes:
        owner: Hex public key the client is authenticated as, if any
    """

    def __init__(self):
        self.owner: Optional[str] = None

    async def open(self) -> None:
        """Prepare the client. Idempotent."""

    async def authenticate(self, owner: str) -> None:
        """Bind the client to the owner whose namespace it may write."""
        self.owner = owner
        logger.debug(f"Storage client authenticated as {owner[:KEY_DISPLAY_LENGTH]}")

    def sign_out(self) -> None:
        self.owner = None

    async def close(self) -> None:
        """Release resources held by the client."""

    def _check_write(self, owner: str, url: str) -> None:
        if self.owner is None or owner != self.owner:
            raise StorageError(
                ErrorCode.E603_STORAGE_PERMISSION_DENIED,
                "Writes are only allowed in the signed-in owner's namespace",
                {"url": url},
            )

    @abstractmethod
    async def put(self, url: str, body: bytes) -> None:
        """Store body at url in the authenticated owner's namespace."""

    @abstractmethod
    async def list(self, url: str) -> List[str]:
        """List record URLs below a directory URL; missing directories are empty."""

    @abstractmethod
    async def get(self, url: str) -> bytes:
        """Fetch the body stored at url."""


class MemoryHomeservers:
    """Shared in-process state for every owner's homeserver."""

    def __init__(self):
        self.records: Dict[str, Dict[str, bytes]] = {}
        self.unreachable: Set[str] = set()
        self.latency: Dict[str, float] = {}

    def set_unreachable(self, owner: str, unreachable: bool = True) -> None:
        if unreachable:
            self.unreachable.add(owner)
        else:
            self.unreachable.discard(owner)

    def set_latency(self, owner: str, seconds: float) -> None:
        self.latency[owner] = seconds

    def store(self, owner: str, path: str, body: bytes) -> None:
        """Write directly, bypassing authentication (fixtures and tests)."""
        self.records.setdefault(owner, {})[path] = body


class MemoryStorage(StorageClient):
    """Storage client backed by MemoryHomeservers."""

    def __init__(self, homeservers: Optional[MemoryHomeservers] = None):
        super().__init__()
        self.homeservers = homeservers or MemoryHomeservers()

    async def _reach(self, owner: str) -> Dict[str, bytes]:
        delay = self.homeservers.latency.get(owner)
        if delay:
            await asyncio.sleep(delay)
        if owner in self.homeservers.unreachable:
            raise StorageUnavailable(
                ErrorCode.E601_STORAGE_UNAVAILABLE,
                f"Homeserver for {owner[:KEY_DISPLAY_LENGTH]} is unreachable",
                {"owner": owner},
            )
        return self.homeservers.records.setdefault(owner, {})

    async def put(self, url: str, body: bytes) -> None:
        owner, path = parse_url(url)
        self._check_write(owner, url)
        files = await self._reach(owner)
        files[path] = bytes(body)

    async def list(self, url: str) -> List[str]:
        owner, path = parse_url(url)
        files = await self._reach(owner)
        prefix = path if path.endswith("/") else path + "/"
        return [f"{URL_SCHEME}{owner}{name}" for name in sorted(files) if name.startswith(prefix)]

    async def get(self, url: str) -> bytes:
        owner, path = parse_url(url)
        files = await self._reach(owner)
        try:
            return files[path]
        except KeyError:
            raise StorageError(ErrorCode.E600_STORAGE_ERROR, f"Not found: {url}", {"url": url}) from None


class DirectoryStorage(StorageClient):
    """Homeservers stored under a local directory: <root>/<owner>/<path>."""

    def __init__(self, root: Union[str, Path]):
        super().__init__()
        self.root = Path(root)

    def _local_path(self, url: str) -> Tuple[str, Path]:
        owner, path = parse_url(url)
        return owner, self.root / owner / path.lstrip("/")

    async def open(self) -> None:
        try:
            await aiofiles.os.makedirs(self.root, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(
                ErrorCode.E601_STORAGE_UNAVAILABLE, f"Cannot prepare storage root: {e}"
            ) from e

    async def put(self, url: str, body: bytes) -> None:
        owner, target = self._local_path(url)
        self._check_write(owner, url)

        temp_file = target.with_name(target.name + _TEMP_SUFFIX)
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(temp_file, "wb") as f:
                await f.write(body)
            await aiofiles.os.replace(temp_file, target)
        except OSError as e:
            logger.error(f"Failed to write {url}: {e}")
            raise StorageUnavailable(
                ErrorCode.E601_STORAGE_UNAVAILABLE, f"Cannot write record: {e}", {"url": url}
            ) from e

    async def list(self, url: str) -> List[str]:
        owner, directory = self._local_path(url)
        base = url if url.endswith("/") else url + "/"
        try:
            names = await aiofiles.os.listdir(directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageUnavailable(
                ErrorCode.E601_STORAGE_UNAVAILABLE, f"Cannot list {url}: {e}", {"url": url}
            ) from e

        return [
            base + name
            for name in sorted(names)
            if not name.endswith(_TEMP_SUFFIX) and os.path.isfile(directory / name)
        ]

    async def get(self, url: str) -> bytes:
        _, target = self._local_path(url)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise StorageError(ErrorCode.E600_STORAGE_ERROR, f"Not found: {url}", {"url": url}) from e
        except OSError as e:
            raise StorageUnavailable(
                ErrorCode.E601_STORAGE_UNAVAILABLE, f"Cannot read {url}: {e}", {"url": url}
            ) from e
