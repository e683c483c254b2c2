"""Stream-level HTTP helpers for the reverse proxy."""

from .http_head import (
    HOP_BY_HOP_HEADERS,
    Headers,
    HeadTooLarge,
    MalformedHead,
    RequestHead,
    ResponseHead,
    content_length,
    is_chunked,
    read_request_head,
    read_response_head,
)
from .relay import BadChunk, BodyTooLarge, relay_chunked, relay_fixed, relay_until_eof, tunnel
from .responses import build_response, error_response, json_response, service_unavailable

__all__ = [
    "BadChunk",
    "BodyTooLarge",
    "HOP_BY_HOP_HEADERS",
    "HeadTooLarge",
    "Headers",
    "MalformedHead",
    "RequestHead",
    "ResponseHead",
    "build_response",
    "content_length",
    "error_response",
    "is_chunked",
    "json_response",
    "read_request_head",
    "read_response_head",
    "relay_chunked",
    "relay_fixed",
    "relay_until_eof",
    "service_unavailable",
    "tunnel",
]
