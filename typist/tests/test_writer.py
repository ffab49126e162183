"""Tests for the HTTP document writer.

Run: python -m pytest typist/tests/test_writer.py -v
"""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio
import respx

from typist.writer import (
    DEFAULT_RETRY_AFTER_MS,
    AuthRevoked,
    HttpDocumentWriter,
    RateLimited,
    WriteFatal,
    WriteOk,
    parse_retry_after,
)

BASE_URL = "https://docs.test"
TOKEN = "test-token"
DOC_URL = f"{BASE_URL}/v1/documents/doc-1:batchUpdate"


@pytest_asyncio.fixture
async def writer(respx_mock: respx.MockRouter) -> HttpDocumentWriter:
    w = HttpDocumentWriter(BASE_URL, TOKEN, insert_offset=1)
    await w.start()
    yield w
    await w.close()


# -- Success -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_write_inserts_at_offset_index(
    writer: HttpDocumentWriter, respx_mock: respx.MockRouter
) -> None:
    route = respx_mock.post(DOC_URL).mock(
        return_value=httpx.Response(200, json={"documentId": "doc-1"})
    )

    result = await writer.write("doc-1", "Hello", 10)

    assert result == WriteOk()
    assert route.called
    request = route.calls[0].request
    assert request.headers["Authorization"] == f"Bearer {TOKEN}"
    body = json.loads(request.content)
    insert = body["requests"][0]["insertText"]
    assert insert["text"] == "Hello"
    assert insert["location"]["index"] == 11


# -- Classified failures ---------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_auth_failures(
    writer: HttpDocumentWriter, respx_mock: respx.MockRouter, status: int
) -> None:
    respx_mock.post(DOC_URL).mock(return_value=httpx.Response(status, json={}))
    assert await writer.write("doc-1", "x", 0) == AuthRevoked()


@pytest.mark.asyncio
async def test_rate_limited_with_retry_after(
    writer: HttpDocumentWriter, respx_mock: respx.MockRouter
) -> None:
    respx_mock.post(DOC_URL).mock(
        return_value=httpx.Response(429, headers={"Retry-After": "3"})
    )
    assert await writer.write("doc-1", "x", 0) == RateLimited(retry_after_ms=3000)


@pytest.mark.asyncio
async def test_rate_limited_without_retry_after(
    writer: HttpDocumentWriter, respx_mock: respx.MockRouter
) -> None:
    respx_mock.post(DOC_URL).mock(return_value=httpx.Response(429))
    result = await writer.write("doc-1", "x", 0)
    assert result == RateLimited(retry_after_ms=DEFAULT_RETRY_AFTER_MS)


@pytest.mark.asyncio
async def test_other_4xx_is_fatal(
    writer: HttpDocumentWriter, respx_mock: respx.MockRouter
) -> None:
    respx_mock.post(DOC_URL).mock(
        return_value=httpx.Response(
            400, json={"error": {"message": "Index 99 must be less than the end index"}}
        )
    )
    result = await writer.write("doc-1", "x", 98)
    assert isinstance(result, WriteFatal)
    assert "Index 99" in result.message


@pytest.mark.asyncio
async def test_5xx_raises(writer: HttpDocumentWriter, respx_mock: respx.MockRouter) -> None:
    respx_mock.post(DOC_URL).mock(return_value=httpx.Response(503))
    with pytest.raises(httpx.HTTPStatusError):
        await writer.write("doc-1", "x", 0)


@pytest.mark.asyncio
async def test_transport_error_raises(
    writer: HttpDocumentWriter, respx_mock: respx.MockRouter
) -> None:
    respx_mock.post(DOC_URL).mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(httpx.ConnectError):
        await writer.write("doc-1", "x", 0)


# -- Lifecycle -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_write_before_start_raises() -> None:
    w = HttpDocumentWriter(BASE_URL, TOKEN)
    with pytest.raises(RuntimeError, match="not started"):
        await w.write("doc-1", "x", 0)


def test_parse_retry_after() -> None:
    assert parse_retry_after("2") == 2000
    assert parse_retry_after("0.5") == 500
    assert parse_retry_after(None) is None
    assert parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT") is None
    assert parse_retry_after("-1") is None
