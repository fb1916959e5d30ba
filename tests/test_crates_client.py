"""Tests for the crates.io metadata client."""

from datetime import datetime, timezone

import httpx
import pytest

from cratewarden.clients.crates_client import CratesIOClient, parse_crate_response
from cratewarden.core.exceptions import RegistryError
from cratewarden.core.rate_limiter import RateLimiter

CRATE_RESPONSE = {
    "crate": {
        "id": "tokio",
        "downloads": 250_000_000,
        "created_at": "2016-07-01T00:00:00.000000+00:00",
    },
    "versions": [
        {
            "num": "1.38.0",
            "created_at": "2024-05-30T10:00:00.000000+00:00",
            "published_by": {"login": "carllerche"},
        },
        {
            "num": "1.37.0",
            "created_at": "2024-03-28T10:00:00.000000+00:00",
            "published_by": None,
        },
    ],
}


def _client(handler) -> CratesIOClient:
    return CratesIOClient(
        base_url="https://registry.test/api/v1",
        rate_limiter=RateLimiter(min_interval=0.0, max_per_window=1, enabled=False),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestParseCrateResponse:
    def test_matching_version(self):
        metadata = parse_crate_response(CRATE_RESPONSE, "1.38.0")

        assert metadata.publish_date == datetime(2024, 5, 30, 10, tzinfo=timezone.utc)
        assert metadata.download_count == 250_000_000
        assert metadata.authors == ["carllerche"]

    def test_unknown_version_falls_back_to_crate(self):
        metadata = parse_crate_response(CRATE_RESPONSE, "9.9.9")

        assert metadata.publish_date == datetime(2016, 7, 1, tzinfo=timezone.utc)
        assert metadata.authors == []

    def test_missing_fields(self):
        metadata = parse_crate_response({}, None)

        assert metadata.publish_date is None
        assert metadata.download_count is None


class TestCratesIOClient:
    @pytest.mark.asyncio
    async def test_fetch_metadata(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["agent"] = request.headers.get("user-agent")
            return httpx.Response(200, json=CRATE_RESPONSE)

        client = _client(handler)
        metadata = await client.fetch_metadata("tokio", "1.37.0")
        await client.aclose()

        assert seen["url"] == "https://registry.test/api/v1/crates/tokio"
        assert seen["agent"].startswith("cratewarden")
        assert metadata.publish_date == datetime(2024, 3, 28, 10, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_not_found(self):
        client = _client(lambda request: httpx.Response(404, json={"errors": []}))
        assert await client.fetch_metadata("no-such-crate") is None

    @pytest.mark.asyncio
    async def test_server_error_is_swallowed(self):
        client = _client(lambda request: httpx.Response(500, text="oops"))
        assert await client.fetch_metadata("tokio") is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))
        assert await client.fetch_metadata("tokio") is None

    @pytest.mark.asyncio
    async def test_get_crate_raises_registry_error(self):
        client = _client(lambda request: httpx.Response(503, text="maintenance"))

        with pytest.raises(RegistryError, match="tokio"):
            await client.get_crate("tokio")

    @pytest.mark.asyncio
    async def test_get_crate_rejects_non_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(RegistryError, match="Invalid registry response"):
            await client.get_crate("tokio")

    @pytest.mark.asyncio
    async def test_get_crate_missing(self):
        client = _client(lambda request: httpx.Response(404))
        assert await client.get_crate("no-such-crate") is None
