"""crates.io registry metadata client."""

import logging
from datetime import datetime
from typing import Any

import httpx

from ..constants import (
    CRATES_IO_API_URL,
    DEFAULT_REQUEST_TIMEOUT,
    RATE_LIMIT_WINDOW_SECONDS,
    REGISTRY_REQUESTS_PER_MINUTE,
    USER_AGENT,
)
from ..core.exceptions import RegistryError
from ..core.rate_limiter import RateLimiter
from ..models import PackageMetadata

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_crate_response(data: dict[str, Any], version: str | None) -> PackageMetadata:
    """Build ``PackageMetadata`` from a ``/crates/{name}`` response.

    The publish date and publisher come from the matching version entry
    when present, otherwise from the crate record.
    """
    crate = data.get("crate") or {}
    version_entry: dict[str, Any] = {}
    if version:
        for entry in data.get("versions") or []:
            if entry.get("num") == version:
                version_entry = entry
                break

    publish_date = _parse_timestamp(version_entry.get("created_at")) or _parse_timestamp(
        crate.get("created_at")
    )

    downloads = crate.get("downloads")
    authors: list[str] = []
    published_by = version_entry.get("published_by")
    if isinstance(published_by, dict) and published_by.get("login"):
        authors.append(published_by["login"])

    return PackageMetadata(
        publish_date=publish_date,
        download_count=downloads if isinstance(downloads, int) else None,
        authors=authors,
    )


class CratesIOClient:
    """Fetches crate metadata from crates.io, throttled by its own limiter."""

    def __init__(
        self,
        base_url: str = CRATES_IO_API_URL,
        rate_limiter: RateLimiter | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter(
            min_interval=RATE_LIMIT_WINDOW_SECONDS / REGISTRY_REQUESTS_PER_MINUTE,
            max_per_window=REGISTRY_REQUESTS_PER_MINUTE,
        )
        self.timeout = timeout
        self._client = client

    async def get_crate(self, name: str) -> dict[str, Any] | None:
        """Raw ``/crates/{name}`` document, or None when the crate does not exist.

        Raises:
            RegistryError: The request failed or the body was not JSON.
        """
        await self.rate_limiter.acquire()
        url = f"{self.base_url}/crates/{name}"
        headers = {"User-Agent": USER_AGENT}

        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=headers)
            if response.status_code == 404:
                logger.info(f"Crate {name} not found on registry")
                return None
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to fetch registry metadata for {name}: {e}") from e
        except ValueError as e:
            raise RegistryError(f"Invalid registry response for {name}: {e}") from e

    async def fetch_metadata(self, name: str, version: str | None = None) -> PackageMetadata | None:
        """Metadata for ``name`` (optionally one version), or None on any failure."""
        try:
            data = await self.get_crate(name)
        except RegistryError as e:
            logger.warning(str(e))
            return None
        if data is None:
            return None
        return parse_crate_response(data, version)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
