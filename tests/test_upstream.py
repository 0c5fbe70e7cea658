# tests/test_upstream.py
"""
UpstreamConnector against real loopback origins: success, timeout and refusal.
"""
import asyncio
import gzip
import socket
import time

import pytest

from proxy_common import UpstreamError, UpstreamFailure
from structures import ConnectionContext
from upstream import UpstreamConnector, response_head

from conftest import read_http_request, simple_origin


def ctx_for(port: int, method="GET", path="/", headers=None, body=b"") -> ConnectionContext:
    ctx = ConnectionContext(("127.0.0.1", 50000))
    ctx.method, ctx.target_host, ctx.target_port, ctx.path = method, "127.0.0.1", port, path
    ctx.request_headers = headers if headers is not None else [("Host", f"127.0.0.1:{port}")]
    ctx.request_body = body
    return ctx


def closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestForward:
    @pytest.mark.asyncio
    async def test_success_streams_body(self, origin_server):
        seen = []
        port = await origin_server(simple_origin(b"hello world", "text/plain", seen=seen))
        connector = UpstreamConnector(timeout=5, buffer_size=4)

        ctx = ctx_for(port, path="/a?b=1", headers=[
            ("Connection", "keep-alive"),
            ("Proxy-Authorization", "Bearer x"), ("X-Custom", "1")
        ])
        async with connector.forward(ctx) as response:
            status, reason, headers = response_head(response)
            chunks = [c async for c in connector.stream_body(response)]

        assert (status, reason) == (200, "OK")
        assert {k.lower(): v for k, v in headers}["content-type"] == "text/plain"
        assert b"".join(chunks) == b"hello world"

        line, req_headers, _ = seen[0]
        assert line == b"GET /a?b=1 HTTP/1.1"
        assert req_headers["host"] == f"127.0.0.1:{port}"
        assert req_headers["x-custom"] == "1"
        assert "proxy-authorization" not in req_headers
        assert req_headers.get("connection") != "keep-alive"

    @pytest.mark.asyncio
    async def test_request_body_is_forwarded(self, origin_server):
        seen = []
        port = await origin_server(simple_origin(b"ok", seen=seen))
        connector = UpstreamConnector(timeout=5, buffer_size=3)

        ctx = ctx_for(port, method="POST", body=b"a=1&b=2", headers=[("Content-Length", "999")])
        async with connector.forward(ctx) as response:
            assert await connector.read_body(response) == b"ok"

        _, req_headers, body = seen[0]
        assert body == b"a=1&b=2"
        assert req_headers["content-length"] == "7"

    @pytest.mark.asyncio
    async def test_rewritten_host_is_kept(self, origin_server):
        seen = []
        port = await origin_server(simple_origin(b"ok", seen=seen))
        connector = UpstreamConnector(timeout=5, buffer_size=1024)
        async with connector.forward(ctx_for(port, headers=[("Host", "vhost.test")])) as response:
            await connector.read_body(response)
        assert seen[0][1]["host"] == "vhost.test"

    @pytest.mark.asyncio
    async def test_streamed_body_with_tail_keeps_length(self, origin_server):
        async def client_body():
            for piece in (b"a=1", b"&b=2"):
                yield piece

        seen = []
        port = await origin_server(simple_origin(b"ok", seen=seen))
        connector = UpstreamConnector(timeout=5, buffer_size=1024)
        ctx = ctx_for(port, method="PUT")
        ctx.request_body_stream, ctx.request_body_length = client_body(), 7
        ctx.request_body_tail = b"&c=3"
        async with connector.forward(ctx) as response:
            await connector.read_body(response)

        _, req_headers, body = seen[0]
        assert body == b"a=1&b=2&c=3"
        assert req_headers["content-length"] == "11"

    @pytest.mark.asyncio
    async def test_streamed_body_of_unknown_length_goes_chunked(self, origin_server):
        async def client_body():
            yield b"part1-"
            yield b"part2"

        seen = []
        port = await origin_server(simple_origin(b"ok", seen=seen))
        connector = UpstreamConnector(timeout=5, buffer_size=1024)
        ctx = ctx_for(port, method="POST")
        ctx.request_body_stream = client_body()
        async with connector.forward(ctx) as response:
            await connector.read_body(response)

        _, req_headers, body = seen[0]
        assert body == b"part1-part2"
        assert req_headers["transfer-encoding"] == "chunked"
        assert "content-length" not in req_headers

    @pytest.mark.asyncio
    async def test_empty_post_sends_zero_length(self, origin_server):
        seen = []
        port = await origin_server(simple_origin(b"", seen=seen))
        connector = UpstreamConnector(timeout=5, buffer_size=1024)
        async with connector.forward(ctx_for(port, method="POST")) as response:
            await connector.read_body(response)
        assert seen[0][1]["content-length"] == "0"

    @pytest.mark.asyncio
    async def test_timeout_maps_to_504(self, origin_server):
        async def silent(reader, writer):
            await read_http_request(reader)
            await asyncio.sleep(10)
            writer.close()

        port = await origin_server(silent)
        connector = UpstreamConnector(timeout=1, buffer_size=1024)

        start = time.monotonic()
        with pytest.raises(UpstreamError) as exc_info:
            async with connector.forward(ctx_for(port)):
                pass
        assert exc_info.value.kind is UpstreamFailure.TIMEOUT
        assert exc_info.value.status == 504
        assert time.monotonic() - start < 1.5

    @pytest.mark.asyncio
    async def test_refused_maps_to_502(self):
        connector = UpstreamConnector(timeout=2, buffer_size=1024)
        with pytest.raises(UpstreamError) as exc_info:
            async with connector.forward(ctx_for(closed_port())):
                pass
        assert exc_info.value.kind is UpstreamFailure.UNREACHABLE
        assert exc_info.value.status == 502

    @pytest.mark.asyncio
    async def test_gzip_is_decoded_when_read(self, origin_server):
        payload = gzip.compress(b"<html><body>z</body></html>")
        port = await origin_server(simple_origin(
            payload, extra_headers="Content-Encoding: gzip\r\n"
        ))
        connector = UpstreamConnector(timeout=5, buffer_size=1024)
        async with connector.forward(ctx_for(port)) as response:
            assert await connector.read_body(response) == b"<html><body>z</body></html>"


class TestTunnel:
    @pytest.mark.asyncio
    async def test_open_tunnel(self, origin_server):
        async def echo(reader, writer):
            writer.write(await reader.read(100))
            await writer.drain()
            writer.close()

        port = await origin_server(echo)
        connector = UpstreamConnector(timeout=2, buffer_size=1024)
        reader, writer = await connector.open_tunnel("127.0.0.1", port)
        writer.write(b"ping")
        await writer.drain()
        assert await reader.read(100) == b"ping"
        writer.close()

    @pytest.mark.asyncio
    async def test_open_tunnel_refused(self):
        connector = UpstreamConnector(timeout=2, buffer_size=1024)
        with pytest.raises(UpstreamError) as exc_info:
            await connector.open_tunnel("127.0.0.1", closed_port())
        assert exc_info.value.status == 502
