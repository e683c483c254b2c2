"""Tests for HTTP head parsing and body relays."""

import asyncio

import pytest

from devherd.proxy.proxy_helpers import (
    BodyTooLarge,
    Headers,
    HeadTooLarge,
    MalformedHead,
    content_length,
    is_chunked,
    read_request_head,
    read_response_head,
    relay_chunked,
)


def _reader(data: bytes, limit: int = 64 * 1024) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class _Collector:
    def __init__(self):
        self.data = b""

    def write(self, data):
        self.data += data

    async def drain(self):
        return None


@pytest.mark.asyncio
async def test_parse_request_head():
    head = await read_request_head(
        _reader(b"get /api/items?x=1 HTTP/1.1\r\nHost: localhost\r\nConnection: Upgrade\r\nUpgrade: websocket\r\n\r\n"), 1024
    )

    assert head.method == "GET"
    assert head.path == "/api/items"
    assert head.headers.get("host") == "localhost"
    assert head.is_upgrade


@pytest.mark.asyncio
async def test_empty_connection_is_eof():
    with pytest.raises(EOFError):
        await read_request_head(_reader(b""), 1024)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        b"GET /\r\n\r\n",
        b"GET http://example.com/ HTTP/1.1\r\n\r\n",
        b"GET / HTTP/1.1\r\nContent-Length: 1\r\nContent-Length: 2\r\n\r\n",
        b"POST / HTTP/1.1\r\nContent-Length: 1\r\nTransfer-Encoding: chunked\r\n\r\n",
        b"GET / HTTP/1.1\r\nBad Header\r\n\r\n",
        b"GET / HTTP/1.1\r\nHost: x\r\n",
    ],
)
async def test_malformed_heads_rejected(raw):
    with pytest.raises(MalformedHead):
        await read_request_head(_reader(raw), 1024)


@pytest.mark.asyncio
async def test_oversized_head_rejected():
    raw = b"GET / HTTP/1.1\r\nX-Big: " + b"a" * 500 + b"\r\n\r\n"

    with pytest.raises(HeadTooLarge):
        await read_request_head(_reader(raw, limit=128), 128)


@pytest.mark.asyncio
async def test_parse_response_head():
    head = await read_response_head(_reader(b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\n\r\n"), 1024)

    assert head.status == 404
    assert head.reason == "Not Found"
    assert content_length(head.headers) == 0


def test_hop_by_hop_headers_dropped():
    headers = Headers([("Connection", "keep-alive, X-Secret"), ("X-Secret", "1"), ("Keep-Alive", "5"), ("Accept", "*/*")])

    assert headers.without_hop_by_hop().items == [("Accept", "*/*")]


def test_chunked_detection_and_bad_length():
    assert is_chunked(Headers([("Transfer-Encoding", "gzip, chunked")]))
    assert not is_chunked(Headers([("Transfer-Encoding", "chunked, gzip")]))
    with pytest.raises(MalformedHead):
        content_length(Headers([("Content-Length", "-5")]))


@pytest.mark.asyncio
async def test_relay_chunked_copies_verbatim():
    body = b"5\r\nhello\r\n6;ext=1\r\n world\r\n0\r\nX-Trailer: y\r\n\r\n"
    sink = _Collector()

    total = await relay_chunked(_reader(body), sink, 100)

    assert total == 11
    assert sink.data == body


@pytest.mark.asyncio
async def test_relay_chunked_enforces_limit():
    with pytest.raises(BodyTooLarge):
        await relay_chunked(_reader(b"a\r\n0123456789\r\n0\r\n\r\n"), _Collector(), 5)
