# conftest.py
import asyncio
import json
import os
import sys
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from structures import InjectionScript, InjectType


def make_script(name: str = "s", inject_type: InjectType = InjectType.HEADER, **kw) -> InjectionScript:
    kw.setdefault("target_domains", ("*",))
    return InjectionScript(name=name, inject_type=inject_type, **kw)


@pytest.fixture
def scripts_dir(tmp_path):
    """A scripts directory plus a writer for JSON script files."""
    directory = tmp_path / "scripts"
    directory.mkdir()

    def _write(filename: str, record) -> str:
        path = directory / filename
        if isinstance(record, str):
            path.write_text(record, encoding="utf-8")
        else:
            path.write_text(json.dumps(record), encoding="utf-8")
        return str(path)

    _write.path = str(directory)
    return _write


@pytest.fixture
def mock_writer():
    """StreamWriter stand-in that records everything written."""
    writer = MagicMock()
    writer.sent = bytearray()
    writer.write.side_effect = writer.sent.extend
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    writer.get_extra_info.return_value = ("10.0.0.7", 51000)
    return writer


def feed_reader(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


async def read_http_request(reader: asyncio.StreamReader) -> Tuple[bytes, Dict[str, str], bytes]:
    """Minimal origin-side parser: request line, headers (lowercased), decoded body."""
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    headers = {}
    for line in lines[1:]:
        if ":" in line:
            k, v = line.split(":", 1)
            headers[k.strip().lower()] = v.strip()
    body = b""
    if headers.get("transfer-encoding", "").lower() == "chunked":
        parts = []
        while True:
            size = int((await reader.readuntil(b"\r\n")).split(b";")[0], 16)
            if size == 0:
                await reader.readuntil(b"\r\n")
                break
            parts.append(await reader.readexactly(size))
            await reader.readexactly(2)
        body = b"".join(parts)
    elif "content-length" in headers:
        body = await reader.readexactly(int(headers["content-length"]))
    return lines[0].encode("latin-1"), headers, body


OriginHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


@pytest_asyncio.fixture
async def origin_server():
    """Starts loopback origin servers; yields a factory returning the bound port."""
    servers: List[asyncio.AbstractServer] = []

    async def _start(handler: OriginHandler) -> int:
        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield _start

    for server in servers:
        server.close()


def simple_origin(
    body: bytes,
    content_type: str = "text/html; charset=utf-8",
    status: str = "200 OK",
    seen: Optional[list] = None,
    extra_headers: str = ""
) -> OriginHandler:
    """Origin that records each request and replies with a fixed response."""
    async def _handler(reader, writer):
        try:
            request = await read_http_request(reader)
            if seen is not None:
                seen.append(request)
            writer.write(
                f"HTTP/1.1 {status}\r\nContent-Type: {content_type}\r\n"
                f"Content-Length: {len(body)}\r\n{extra_headers}Connection: close\r\n\r\n".encode()
                + body
            )
            await writer.drain()
        finally:
            writer.close()
    return _handler


def split_response(raw: bytes) -> Tuple[str, Dict[str, str], bytes]:
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    headers = {}
    for line in lines[1:]:
        k, _, v = line.partition(":")
        headers[k.strip().lower()] = v.strip()
    return lines[0], headers, body
