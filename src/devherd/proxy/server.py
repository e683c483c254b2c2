"""
Prefix-routing reverse proxy.

Works on raw asyncio streams so request bodies, response bodies and upgraded
connections are relayed as bytes without being buffered or re-framed. Each
connection carries one request; both sides are told ``Connection: close``.
"""

from __future__ import annotations

import asyncio
import logging
from http import HTTPStatus
from typing import Optional, Set

from ..config import ProxySettings
from ..errors import ProxyUpstreamUnavailable
from .proxy_helpers import (
    BadChunk,
    BodyTooLarge,
    Headers,
    HeadTooLarge,
    MalformedHead,
    RequestHead,
    content_length,
    error_response,
    is_chunked,
    json_response,
    read_request_head,
    read_response_head,
    relay_chunked,
    relay_fixed,
    relay_until_eof,
    service_unavailable,
    tunnel,
)
from .route_table import RouteEntry, RouteTable, RouteTableHolder

logger = logging.getLogger(__name__)

ROUTES_PATH = "/_devherd/routes"


class _Respond(Exception):
    """Abort the exchange and answer the client with a proxy-generated response."""

    def __init__(self, payload: bytes) -> None:
        self.payload = payload
        super().__init__()


class ReverseProxy:
    """Single-port HTTP ingress routing by longest path prefix."""

    def __init__(self, routes: RouteTableHolder, settings: Optional[ProxySettings] = None) -> None:
        self.routes = routes
        self.settings = settings or ProxySettings()
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Proxy is not listening")
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.settings.host,
            self.settings.port,
            limit=self.settings.max_header_bytes,
        )
        logger.info("Proxy listening on http://%s:%d", self.settings.host, self.port)

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        for task in list(self._connections):
            task.cancel()
        await asyncio.gather(*self._connections, return_exceptions=True)
        self._server = None
        logger.info("Proxy stopped")

    async def __aenter__(self) -> "ReverseProxy":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            await self._exchange(reader, writer)
        except _Respond as response:
            await self._send(writer, response.payload)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:  # policy_guard: allow-silent-handler
            logger.debug("Client connection dropped: %s", exc)
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
                logger.debug("Client socket already closed")

    async def _send(self, writer: asyncio.StreamWriter, payload: bytes) -> None:
        try:
            writer.write(payload)
            await writer.drain()
        except ConnectionError:  # policy_guard: allow-silent-handler
            logger.debug("Client went away before the response was sent")

    async def _exchange(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await read_request_head(reader, self.settings.max_header_bytes)
        except EOFError:  # policy_guard: allow-silent-handler
            return
        except HeadTooLarge as exc:
            raise _Respond(error_response(HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE, str(exc))) from exc
        except MalformedHead as exc:
            raise _Respond(error_response(HTTPStatus.BAD_REQUEST, str(exc))) from exc

        if head.path == ROUTES_PATH:
            raise _Respond(json_response(self.routes.current.to_dict()))

        # One snapshot for the whole request, however long it runs.
        table: RouteTable = self.routes.current
        entry = table.match(head.path)
        if entry is None:
            raise _Respond(error_response(HTTPStatus.NOT_FOUND, f"No route for {head.path}"))
        if head.is_upgrade and not entry.upgrade:
            raise _Respond(error_response(HTTPStatus.BAD_REQUEST, f"Upgrade requests are not accepted on {entry.prefix}"))
        if not entry.active:
            raise _Respond(service_unavailable(entry.service_name, "not healthy", self.settings.retry_after_seconds))

        try:
            length = content_length(head.headers)
        except MalformedHead as exc:
            raise _Respond(error_response(HTTPStatus.BAD_REQUEST, str(exc))) from exc
        if length is not None and length > self.settings.max_body_bytes:
            raise _Respond(
                error_response(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, f"Request body exceeds {self.settings.max_body_bytes} bytes")
            )

        upstream_reader, upstream_writer = await self._connect(entry)
        try:
            await self._forward(head, length, entry, reader, writer, upstream_reader, upstream_writer)
        finally:
            upstream_writer.close()
            try:
                await upstream_writer.wait_closed()
            except (ConnectionError, OSError):  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
                logger.debug("Upstream socket already closed")

    async def _connect(self, entry: RouteEntry):
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(entry.host, entry.port, limit=self.settings.max_header_bytes),
                self.settings.connect_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            error = ProxyUpstreamUnavailable(entry.prefix, entry.service_name, str(exc) or type(exc).__name__)
            logger.warning("%s", error)
            raise _Respond(service_unavailable(entry.service_name, error.reason, self.settings.retry_after_seconds)) from exc

    def _upstream_head(self, head: RequestHead, entry: RouteEntry, writer: asyncio.StreamWriter) -> RequestHead:
        headers: Headers = head.headers.without_hop_by_hop()
        peer = writer.get_extra_info("peername")
        client_ip = peer[0] if peer else "unknown"
        forwarded_for = head.headers.get("X-Forwarded-For")
        headers.set("X-Forwarded-For", f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip)
        headers.set("X-Forwarded-Proto", head.headers.get("X-Forwarded-Proto") or "http")
        if head.headers.get("Host") is not None:
            headers.set("X-Forwarded-Host", head.headers.get("Host"))
        headers.set("X-Forwarded-Prefix", entry.prefix)
        if head.is_upgrade:
            headers.set("Upgrade", head.headers.get("Upgrade"))
            headers.set("Connection", "Upgrade")
        else:
            headers.set("Connection", "close")
        return RequestHead(head.method, head.target, "HTTP/1.1", headers)

    async def _forward(
        self,
        head: RequestHead,
        length: Optional[int],
        entry: RouteEntry,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
    ) -> None:
        upstream_writer.write(self._upstream_head(head, entry, writer).serialize())
        await upstream_writer.drain()

        try:
            if is_chunked(head.headers):
                await relay_chunked(reader, upstream_writer, self.settings.max_body_bytes)
            elif length:
                await relay_fixed(reader, upstream_writer, length)
        except BodyTooLarge as exc:
            raise _Respond(error_response(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, str(exc))) from exc
        except (BadChunk, asyncio.LimitOverrunError) as exc:
            raise _Respond(error_response(HTTPStatus.BAD_REQUEST, f"Malformed chunked body: {exc}")) from exc
        except ConnectionResetError as exc:
            raise _Respond(service_unavailable(entry.service_name, "upstream closed the connection", self.settings.retry_after_seconds)) from exc

        try:
            response = await asyncio.wait_for(
                read_response_head(upstream_reader, self.settings.max_header_bytes),
                self.settings.upstream_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("%s did not answer %s %s within %.1fs", entry.service_name, head.method, head.target, self.settings.upstream_timeout_seconds)
            raise _Respond(
                error_response(HTTPStatus.GATEWAY_TIMEOUT, f"{entry.service_name} did not respond in time")
            ) from exc
        except (EOFError, MalformedHead, ConnectionError) as exc:
            logger.warning("Bad response from %s: %s", entry.service_name, exc)
            raise _Respond(error_response(HTTPStatus.BAD_GATEWAY, f"Invalid response from {entry.service_name}")) from exc

        upgraded = head.is_upgrade and response.status == HTTPStatus.SWITCHING_PROTOCOLS
        if not upgraded:
            response.headers = response.headers.without_hop_by_hop()
            response.headers.set("Connection", "close")
        writer.write(response.serialize())
        await writer.drain()

        if upgraded:
            logger.debug("Tunnel open to %s via %s", entry.service_name, entry.prefix)
            await tunnel(reader, writer, upstream_reader, upstream_writer)
            return
        await relay_until_eof(upstream_reader, writer)
