"""
Unit tests for the bundled fetcher and chunker adapters.
"""

import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import aioresponses

from pipeguard.collaborators import HttpFetcher, TextChunker
from pipeguard.config import ChunkingConfig, FetcherConfig
from pipeguard.faults import NetworkFault, ParsingFault, ValidationFault
from pipeguard.protocols import ErrorType

URL = "https://docs.example.com/guide"


@pytest_asyncio.fixture
async def fetcher():
    async with HttpFetcher(FetcherConfig(timeout=5.0)) as http:
        yield http


class TestHttpFetcher:
    @pytest.mark.asyncio
    async def test_returns_body_on_success(self, fetcher):
        with aioresponses() as mocked:
            mocked.get(URL, status=200, body="<html>guide</html>")
            assert await fetcher.fetch(URL) == "<html>guide</html>"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 408, 429])
    async def test_retryable_status_is_network_fault(self, fetcher, status):
        with aioresponses() as mocked:
            mocked.get(URL, status=status)
            with pytest.raises(NetworkFault) as exc_info:
                await fetcher.fetch(URL)
        fault = exc_info.value
        assert fault.error_type == ErrorType.NETWORK
        assert fault.recoverable is True
        assert fault.details["status"] == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403, 404])
    async def test_client_error_is_validation_fault(self, fetcher, status):
        with aioresponses() as mocked:
            mocked.get(URL, status=status)
            with pytest.raises(ValidationFault) as exc_info:
                await fetcher.fetch(URL)
        assert exc_info.value.recoverable is False
        assert exc_info.value.trips_breaker is False

    @pytest.mark.asyncio
    async def test_connection_error_is_network_fault(self, fetcher):
        with aioresponses() as mocked:
            mocked.get(URL, exception=aiohttp.ClientConnectionError("connection refused"))
            with pytest.raises(NetworkFault, match="ClientConnectionError"):
                await fetcher.fetch(URL)

    @pytest.mark.asyncio
    async def test_timeout_is_network_fault(self, fetcher):
        with aioresponses() as mocked:
            mocked.get(URL, exception=asyncio.TimeoutError())
            with pytest.raises(NetworkFault, match="timed out"):
                await fetcher.fetch(URL)

    @pytest.mark.asyncio
    async def test_requires_initialize(self):
        with pytest.raises(RuntimeError):
            await HttpFetcher().fetch(URL)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        http = HttpFetcher()
        await http.initialize()
        assert http.session is not None
        await http.close()
        await http.close()
        assert http.session is None


class TestTextChunker:
    def test_short_text_is_one_chunk(self):
        assert TextChunker().split("  a short page  ") == ["a short page"]

    def test_windows_overlap_and_cover_text(self):
        text = " ".join(f"word{i:03d}" for i in range(200))
        chunker = TextChunker(ChunkingConfig(chunk_size=100, chunk_overlap=20))

        chunks = chunker.split(text)

        assert len(chunks) > 1
        assert all(len(chunk) <= 100 for chunk in chunks)
        assert chunks[0].startswith("word000")
        assert chunks[-1].endswith("word199")
        # Neighbouring chunks share text
        for left, right in zip(chunks, chunks[1:]):
            assert right.split()[0] in left

    def test_prefers_whitespace_boundaries(self):
        text = " ".join(["lorem"] * 50)
        chunks = TextChunker(ChunkingConfig(chunk_size=40, chunk_overlap=5)).split(text)
        assert all(set(chunk.split()) == {"lorem"} for chunk in chunks)

    def test_unbroken_text_is_still_split(self):
        chunks = TextChunker(ChunkingConfig(chunk_size=10, chunk_overlap=2)).split("x" * 35)
        assert all(len(chunk) <= 10 for chunk in chunks)
        assert len(chunks) >= 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   \n\t "])
    async def test_empty_content_is_parsing_fault(self, content):
        with pytest.raises(ParsingFault) as exc_info:
            await TextChunker().chunk(content)
        assert exc_info.value.recoverable is False
