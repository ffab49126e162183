"""Remote document writer.

The engine only ever writes: write(document_ref, text, at_index) inserts
text at a character index and reports the outcome as a value. Expected
failures (rate limit, revoked credentials, rejected request) come back as
result objects; transport errors and 5xx responses raise, and the
dispatcher treats those as transient.

HttpDocumentWriter talks to the Google Docs batchUpdate endpoint with a
persistent httpx.AsyncClient.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Protocol, Union
from urllib.parse import quote

import httpx

log = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_MS = 1_000


@dataclass(frozen=True)
class WriteOk:
    pass


@dataclass(frozen=True)
class RateLimited:
    retry_after_ms: int | None = None


@dataclass(frozen=True)
class AuthRevoked:
    pass


@dataclass(frozen=True)
class WriteFatal:
    message: str


WriteResult = Union[WriteOk, RateLimited, AuthRevoked, WriteFatal]


class DocumentWriter(Protocol):
    async def write(self, document_ref: str, text: str, at_index: int) -> WriteResult:
        ...


def parse_retry_after(value: str | None) -> int | None:
    """Retry-After header (seconds) to milliseconds. Dates are not supported."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return int(seconds * 1000)


class HttpDocumentWriter:
    """Inserts text into a Google Doc through documents.batchUpdate."""

    def __init__(self, base_url: str, access_token: str, insert_offset: int = 1) -> None:
        self._base_url: str = base_url.rstrip("/")
        self._access_token: str = access_token
        self._insert_offset: int = insert_offset
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Create the persistent httpx.AsyncClient."""
        self._client = httpx.AsyncClient(timeout=15.0)

    async def close(self) -> None:
        """Close the httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _url(self, document_ref: str) -> str:
        return f"{self._base_url}/v1/documents/{quote(document_ref, safe='')}:batchUpdate"

    async def write(self, document_ref: str, text: str, at_index: int) -> WriteResult:
        """Insert text at at_index (0-based position within the job's text)."""
        if self._client is None:
            raise RuntimeError(
                "HttpDocumentWriter not started. Call await writer.start() first."
            )

        body = json.dumps({
            "requests": [{
                "insertText": {
                    "location": {"index": self._insert_offset + at_index},
                    "text": text,
                },
            }],
        })
        resp = await self._client.post(
            self._url(document_ref),
            content=body,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
        )

        if resp.status_code in (401, 403):
            log.warning("Document write rejected: HTTP %d for %s", resp.status_code, document_ref)
            return AuthRevoked()
        if resp.status_code == 429:
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            return RateLimited(retry_after_ms=retry_after or DEFAULT_RETRY_AFTER_MS)
        if 400 <= resp.status_code < 500:
            return WriteFatal(message=_error_message(resp))
        resp.raise_for_status()
        return WriteOk()


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return f"HTTP {resp.status_code}: {error['message']}"
    return f"HTTP {resp.status_code}"
