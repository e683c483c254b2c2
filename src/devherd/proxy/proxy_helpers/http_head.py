"""HTTP/1.x message heads: parsing from a stream and re-serialising."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

_HEAD_TERMINATOR = b"\r\n\r\n"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "upgrade",
    }
)


class MalformedHead(ValueError):
    """The peer sent something that is not an HTTP/1.x message head."""


class HeadTooLarge(MalformedHead):
    pass


@dataclass
class Headers:
    """Ordered, case-insensitive header list that keeps the original spelling."""

    items: List[Tuple[str, str]] = field(default_factory=list)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.items:
            if key.lower() == lowered:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        lowered = name.lower()
        return [value for key, value in self.items if key.lower() == lowered]

    def tokens(self, name: str) -> List[str]:
        """Comma-separated tokens across every occurrence, lower-cased."""
        return [token.strip().lower() for value in self.get_all(name) for token in value.split(",") if token.strip()]

    def remove(self, name: str) -> None:
        lowered = name.lower()
        self.items = [(key, value) for key, value in self.items if key.lower() != lowered]

    def set(self, name: str, value: str) -> None:
        self.remove(name)
        self.items.append((name, value))

    def add(self, name: str, value: str) -> None:
        self.items.append((name, value))

    def without_hop_by_hop(self) -> "Headers":
        named = {token for token in self.tokens("Connection")}
        kept = [(k, v) for k, v in self.items if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in named]
        return Headers(kept)

    def serialize(self) -> bytes:
        return b"".join(f"{key}: {value}\r\n".encode("latin-1") for key, value in self.items)


@dataclass
class RequestHead:
    method: str
    target: str
    version: str
    headers: Headers

    @property
    def path(self) -> str:
        return self.target.split("?", 1)[0]

    @property
    def is_upgrade(self) -> bool:
        return "upgrade" in self.headers.tokens("Connection") and self.headers.get("Upgrade") is not None

    def serialize(self) -> bytes:
        return f"{self.method} {self.target} {self.version}\r\n".encode("latin-1") + self.headers.serialize() + b"\r\n"


@dataclass
class ResponseHead:
    version: str
    status: int
    reason: str
    headers: Headers

    def serialize(self) -> bytes:
        return f"{self.version} {self.status} {self.reason}\r\n".encode("latin-1") + self.headers.serialize() + b"\r\n"


async def _read_raw_head(reader: asyncio.StreamReader, limit: int) -> List[str]:
    try:
        raw = await reader.readuntil(_HEAD_TERMINATOR)
    except asyncio.LimitOverrunError as exc:
        raise HeadTooLarge(f"message head exceeds {limit} bytes") from exc
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            raise EOFError("connection closed before a message head") from exc
        raise MalformedHead("connection closed inside the message head") from exc
    if len(raw) > limit:
        raise HeadTooLarge(f"message head exceeds {limit} bytes")
    try:
        text = raw.decode("latin-1")
    except UnicodeDecodeError as exc:  # pragma: no cover - latin-1 decodes every byte
        raise MalformedHead("undecodable head") from exc
    return text[: -len(_HEAD_TERMINATOR)].split("\r\n")


def _parse_headers(lines: List[str]) -> Headers:
    headers = Headers()
    for line in lines:
        if not line:
            continue
        if line[0] in " \t":
            raise MalformedHead("obsolete header line folding")
        name, sep, value = line.partition(":")
        if not sep or not name or name != name.strip():
            raise MalformedHead(f"bad header line {line!r}")
        headers.add(name, value.strip())
    return headers


async def read_request_head(reader: asyncio.StreamReader, limit: int) -> RequestHead:
    """
    Read one request head.

    Raises:
        EOFError: The client closed the connection without sending anything
        MalformedHead: The head cannot be parsed or is too large
    """
    lines = await _read_raw_head(reader, limit)
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[0].isalpha() or not parts[2].startswith("HTTP/1."):
        raise MalformedHead(f"bad request line {lines[0]!r}")
    method, target, version = parts
    if not target.startswith("/"):
        raise MalformedHead(f"unsupported request target {target!r}")
    head = RequestHead(method.upper(), target, version, _parse_headers(lines[1:]))
    if len(head.headers.get_all("Content-Length")) > 1:
        raise MalformedHead("duplicate Content-Length")
    if head.headers.get("Content-Length") is not None and head.headers.get("Transfer-Encoding") is not None:
        raise MalformedHead("both Content-Length and Transfer-Encoding present")
    return head


async def read_response_head(reader: asyncio.StreamReader, limit: int) -> ResponseHead:
    lines = await _read_raw_head(reader, limit)
    parts = lines[0].split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/1.") or not parts[1].isdigit():
        raise MalformedHead(f"bad status line {lines[0]!r}")
    reason = parts[2] if len(parts) == 3 else ""
    return ResponseHead(parts[0], int(parts[1]), reason, _parse_headers(lines[1:]))


def content_length(headers: Headers) -> Optional[int]:
    value = headers.get("Content-Length")
    if value is None:
        return None
    if not value.isdigit():
        raise MalformedHead(f"bad Content-Length {value!r}")
    return int(value)


def is_chunked(headers: Headers) -> bool:
    codings = headers.tokens("Transfer-Encoding")
    return bool(codings) and codings[-1] == "chunked"
