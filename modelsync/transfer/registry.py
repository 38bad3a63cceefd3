"""
Registry client for modelsync.

Reads the artifact listing of a registry and retrieves individual payload
files from it. A registry exposes:

    GET {registry}/model                    -> {"data": [{"uuid": ..., "name": ...}, ...]}
    GET {registry}/models/{uuid}/{file}     -> raw file, byte ranges supported
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Set

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import RegistryUnreachable

logger = logging.getLogger(__name__)

# Constants
CHUNK_SIZE = 64 * 1024  # 64KB chunks
DEFAULT_TIMEOUT = 300.0


class ArtifactRecord(BaseModel):
    """
    One entry of a registry listing.

    ``identifier`` is the only safe join key, ``name`` is a free label that may
    repeat or be missing.
    """
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    identifier: str = Field(alias="uuid", min_length=1)
    name: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value):
        # Some registries send numeric labels
        if value is None or isinstance(value, str):
            return value
        return str(value)


class RegistryListing(BaseModel):
    """Wire format of ``GET /model``."""
    model_config = ConfigDict(extra="ignore")

    data: List[ArtifactRecord]


class RegistryClient:
    """
    HTTP client for artifact registries.

    The same client can talk to any number of registries; the registry URL is
    passed to every call.

    Usage:
        async with RegistryClient(api_key=key) as client:
            records = await client.list_artifacts("https://hub.example.com")
            ids = await client.find("https://hub.example.com", "face")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"

            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    # ==================== Listing ====================

    async def list_artifacts(self, registry_url: str) -> Set[ArtifactRecord]:
        """
        Fetch the set of artifacts known to a registry.

        Raises:
            RegistryUnreachable: the endpoint failed or returned no well-formed listing
        """
        registry_url = registry_url.rstrip("/")
        session = await self._get_session()

        try:
            async with session.get(f"{registry_url}/model") as resp:
                if resp.status != 200:
                    raise RegistryUnreachable(registry_url, f"HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistryUnreachable(registry_url, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise RegistryUnreachable(registry_url, f"unparseable listing: {e}") from e

        try:
            listing = RegistryListing.model_validate(payload)
        except ValidationError as e:
            raise RegistryUnreachable(
                registry_url, f"malformed listing ({e.error_count()} errors)"
            ) from e

        logger.debug(f"{registry_url} lists {len(listing.data)} artifacts")
        return set(listing.data)

    async def known_identifiers(self, registry_url: str) -> Set[str]:
        """Identifiers listed by a registry."""
        return {r.identifier for r in await self.list_artifacts(registry_url)}

    async def find(self, registry_url: str, selector: str) -> Set[str]:
        """
        Resolve a selector to identifiers.

        Matches on ``name`` first and falls back to the identifier itself, so a
        selector may be either. Returns an empty set when nothing matches.
        """
        records = await self.list_artifacts(registry_url)

        by_name = {r.identifier for r in records if r.name == selector}
        if by_name:
            return by_name

        return {r.identifier for r in records if r.identifier == selector}

    # ==================== Files ====================

    def file_url(self, registry_url: str, identifier: str, filename: str) -> str:
        return f"{registry_url.rstrip('/')}/models/{identifier}/{filename}"

    async def download_file(
        self,
        registry_url: str,
        identifier: str,
        filename: str,
        dest: Path
    ) -> int:
        """
        Download one payload file, resuming a partial ``dest`` if present.

        An existing file of ``n`` bytes is continued with ``Range: bytes=n-``.
        A 206 reply is appended, a 200 reply rewrites the file, and a 416 reply
        means the local copy is already complete.

        Returns:
            Size of ``dest`` after the download

        Raises:
            aiohttp.ClientError: on connection failure or an error status
        """
        dest = Path(dest)
        offset = dest.stat().st_size if dest.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        url = self.file_url(registry_url, identifier, filename)

        session = await self._get_session()
        async with session.get(url, headers=headers) as resp:
            if resp.status == 416 and offset:
                logger.debug(f"{identifier}/{filename} already complete ({offset} bytes)")
                return offset

            resp.raise_for_status()

            if resp.status == 206:
                mode = "ab"
                logger.debug(f"Resuming {identifier}/{filename} at byte {offset}")
            else:
                mode = "wb"
                offset = 0

            written = offset
            with open(dest, mode) as f:
                async for chunk in resp.content.iter_chunked(self.chunk_size):
                    f.write(chunk)
                    written += len(chunk)

        return written
