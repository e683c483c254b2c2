"""Responses generated by the proxy itself."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Mapping, Optional

import orjson


def build_response(
    status: int,
    body: bytes,
    *,
    content_type: str = "text/plain; charset=utf-8",
    headers: Optional[Mapping[str, str]] = None,
) -> bytes:
    status = int(status)
    reason = HTTPStatus(status).phrase
    lines = [
        f"HTTP/1.1 {status} {reason}",
        f"Content-Type: {content_type}",
        f"Content-Length: {len(body)}",
        "Connection: close",
        "Server: devherd",
    ]
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def error_response(status: int, message: str, *, headers: Optional[Mapping[str, str]] = None) -> bytes:
    return build_response(status, (message.rstrip("\n") + "\n").encode("utf-8"), headers=headers)


def service_unavailable(service_name: str, reason: str, retry_after_seconds: int) -> bytes:
    return error_response(
        HTTPStatus.SERVICE_UNAVAILABLE,
        f"{service_name} is unavailable: {reason}",
        headers={"Retry-After": str(retry_after_seconds)},
    )


def json_response(payload: Any, status: int = HTTPStatus.OK) -> bytes:
    return build_response(status, orjson.dumps(payload, option=orjson.OPT_INDENT_2), content_type="application/json")
