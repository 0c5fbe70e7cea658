#Filename: upstream.py
"""
UPSTREAM CONNECTOR
Opens one fresh connection per proxied request (no keep-alive pool) via httpx and
maps transport failures onto UpstreamError(UNREACHABLE | TIMEOUT).
The timeout bounds connect, write and every individual read.
"""

import asyncio
import logging
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Tuple

import httpx

from proxy_common import UpstreamError, UpstreamFailure
from structures import HOP_BY_HOP_HEADERS, ConnectionContext, get_header, remove_headers

log = logging.getLogger("Upstream")

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
# Recomputed from the (possibly rewritten) body, or left to httpx for chunked bodies.
STRIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {'content-length'}


def _map_error(exc: Exception, where: str) -> UpstreamError:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return UpstreamError(UpstreamFailure.TIMEOUT, f"Upstream timeout during {where}: {exc}")
    return UpstreamError(UpstreamFailure.UNREACHABLE, f"Upstream failure during {where}: {exc}")


class UpstreamConnector:
    """forward(ctx) -> streamed response, or UpstreamError."""
    __slots__ = ('timeout', 'buffer_size', 'verify_tls')

    def __init__(self, timeout: float, buffer_size: int, verify_tls: bool = False) -> None:
        self.timeout = timeout
        self.buffer_size = buffer_size
        self.verify_tls = verify_tls

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            limits=httpx.Limits(max_connections=1, max_keepalive_connections=0),
            verify=self.verify_tls,
            trust_env=False,
            follow_redirects=False,
        )

    async def _chunks(self, body: bytes) -> AsyncIterator[bytes]:
        view = memoryview(body)
        for offset in range(0, len(body), self.buffer_size):
            yield bytes(view[offset:offset + self.buffer_size])

    async def _relay(self, stream: AsyncIterator[bytes], tail: bytes) -> AsyncIterator[bytes]:
        async for chunk in stream:
            yield chunk
        if tail:
            yield tail

    def build_request(self, client: httpx.AsyncClient, ctx: ConnectionContext) -> httpx.Request:
        """
        A streamed client body keeps its Content-Length (plus any appended tail), or
        goes out chunked when the client sent it chunked.
        """
        headers = remove_headers(ctx.request_headers, STRIPPED_REQUEST_HEADERS)
        if get_header(headers, 'host') is None:
            headers.append(("Host", ctx.authority))
        content = None
        if ctx.request_body_stream is not None:
            content = self._relay(ctx.request_body_stream, ctx.request_body_tail)
            if ctx.request_body_length is not None:
                length = ctx.request_body_length + len(ctx.request_body_tail)
                headers.append(("Content-Length", str(length)))
        elif ctx.request_body:
            headers.append(("Content-Length", str(len(ctx.request_body))))
            content = self._chunks(ctx.request_body)
        elif ctx.method in BODY_METHODS:
            headers.append(("Content-Length", "0"))
        return client.build_request(ctx.method, ctx.url, headers=headers, content=content)

    @asynccontextmanager
    async def forward(self, ctx: ConnectionContext) -> AsyncIterator[httpx.Response]:
        """
        Sends the request and yields the response with its body not yet read.
        The upstream connection is closed when the context exits, on every path.
        """
        async with self._client() as client:
            log.debug(f"-> {ctx.method} {ctx.url}")
            try:
                request = self.build_request(client, ctx)
                response = await client.send(request, stream=True)
            except httpx.InvalidURL as exc:
                raise UpstreamError(UpstreamFailure.UNREACHABLE, f"Invalid upstream URL: {exc}") from exc
            except (httpx.HTTPError, OSError, asyncio.TimeoutError) as exc:
                log.debug(f"{ctx.method} {ctx.url} failed: {type(exc).__name__}: {exc}")
                raise _map_error(exc, "request") from exc
            try:
                yield response
            finally:
                await response.aclose()

    async def stream_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        """Raw (still content-encoded) body in buffer_size chunks."""
        try:
            async for chunk in response.aiter_raw(self.buffer_size):
                yield chunk
        except (httpx.HTTPError, OSError) as exc:
            raise _map_error(exc, "response body") from exc

    async def read_body(self, response: httpx.Response) -> bytes:
        """Whole body, with any content coding removed."""
        try:
            return await response.aread()
        except (httpx.HTTPError, OSError) as exc:
            raise _map_error(exc, "response body") from exc

    async def open_tunnel(
        self, host: str, port: int
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Raw TCP connection for CONNECT tunnels."""
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise _map_error(exc, "connect") from exc
        except OSError as exc:
            raise _map_error(exc, "connect") from exc
        try:
            sock = writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        return reader, writer


def response_head(response: httpx.Response) -> Tuple[int, str, list]:
    """(status, reason, headers) with headers as decoded (name, value) tuples."""
    headers = [
        (k.decode('latin-1'), v.decode('latin-1')) for k, v in response.headers.raw
    ]
    return response.status_code, response.reason_phrase or "", headers
