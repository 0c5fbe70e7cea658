#Filename: proxy_core.py
"""
ASYNC PROXY CORE - SPLICE PROXY
Per-connection orchestration:
ReadingRequest -> Authorizing -> MatchingScripts -> InjectingRequest -> Forwarding
-> InjectingResponse -> WritingResponse -> Closed (or Rejected).
"""

import asyncio
from typing import AsyncIterator, Callable, Optional, Tuple
from urllib.parse import urlsplit

from injection import InjectionPipeline
from proxy_common import (
    BaseProxyHandler, ClientTimeoutError, ParseError, UpstreamError,
    STRICT_HEADER_PATTERN, REQUEST_LINE_PATTERN, MAX_HEADER_LIST_SIZE, MAX_HEADER_COUNT,
    COMPACTION_THRESHOLD, READ_CHUNK_SIZE, REASON_PHRASES
)
from script_registry import ScriptRegistry, normalize_host
from security_gate import Decision, SecurityGate, extract_token
from structures import (
    ConnectionContext, HandlerState, HOP_BY_HOP_HEADERS,
    Headers, redact_headers, remove_headers, set_header
)
from upstream import UpstreamConnector, response_head

IDLE_TIMEOUT = 60.0


class InjectionProxyHandler(BaseProxyHandler):
    """
    Handles one HTTP/1.1 client connection: one request, one response, then close.
    CONNECT requests become blind tunnels (no TLS interception).
    """
    __slots__ = (
        'reader', 'writer', 'registry', 'gate', 'pipeline', 'connector',
        'client_timeout', 'buffer_size', 'buffer', '_buffer_offset',
        '_previous_byte_was_cr', 'ctx', '_response_started'
    )

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        registry: ScriptRegistry,
        gate: SecurityGate,
        pipeline: InjectionPipeline,
        connector: UpstreamConnector,
        manager_callback: Optional[Callable[[str, object], None]] = None,
        client_timeout: float = IDLE_TIMEOUT,
        buffer_size: int = READ_CHUNK_SIZE,
        initial_data: bytes = b""
    ):
        """Initializes the InjectionProxyHandler."""
        raw_addr = writer.get_extra_info('peername')
        client_addr = (
            (str(raw_addr[0]), int(raw_addr[1]))
            if isinstance(raw_addr, tuple) and len(raw_addr) >= 2 else None
        )
        super().__init__(manager_callback, client_addr)

        self.reader = reader
        self.writer = writer
        self.registry = registry
        self.gate = gate
        self.pipeline = pipeline
        self.connector = connector
        self.client_timeout = client_timeout
        self.buffer_size = buffer_size
        self.buffer = bytearray(initial_data)
        self._buffer_offset = 0
        self._previous_byte_was_cr = False
        self.ctx = ConnectionContext(client_addr)
        self._response_started = False

    def _transition(self, state: HandlerState) -> None:
        self.ctx.state = state

    # -- Reading --

    async def _fill(self, what: str) -> bytes:
        try:
            data = await asyncio.wait_for(
                self.reader.read(READ_CHUNK_SIZE), timeout=self.client_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ClientTimeoutError(f"Read Timeout (Idle) in {what}") from exc
        return data

    def _compact(self) -> None:
        if (
            self._buffer_offset > COMPACTION_THRESHOLD
            and self._buffer_offset > (len(self.buffer) // 2)
        ):
            del self.buffer[:self._buffer_offset]
            self._buffer_offset = 0

    async def _read_strict_line(self, allow_eof: bool = False) -> bytes:
        """
        Reads a single line from the buffer/stream, strictly adhering to RFC limits.
        With allow_eof, an EOF on a line boundary returns b"". Any other EOF raises
        ClientTimeoutError.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index == -1:
                if len(self.buffer) - self._buffer_offset > 0:
                    self._previous_byte_was_cr = self.buffer[-1] == 0x0D
                if (len(self.buffer) - self._buffer_offset) > MAX_HEADER_LIST_SIZE:
                    raise ParseError("Header Line Exceeded Max Length")
                self._compact()

                data = await self._fill("headers")
                if not data:
                    if allow_eof and len(self.buffer) == self._buffer_offset:
                        return b""
                    raise ClientTimeoutError("Incomplete message")
                self.buffer.extend(data)
                continue

            line_len = lf_index - self._buffer_offset
            if line_len > MAX_HEADER_LIST_SIZE:
                raise ParseError("Header Line Exceeded Max Length")

            is_crlf = False
            if lf_index > self._buffer_offset:
                if self.buffer[lf_index - 1] == 0x0D:
                    is_crlf = True
            elif lf_index == self._buffer_offset:
                if self._previous_byte_was_cr:
                    is_crlf = True

            line_end = lf_index - 1 if is_crlf else lf_index
            if line_end > self._buffer_offset:
                line = bytes(self.buffer[self._buffer_offset:line_end])
            else:
                line = b""

            self._buffer_offset = lf_index + 1
            self._previous_byte_was_cr = False
            return line

    async def _read_some(self, n: int) -> bytes:
        """Up to n body bytes: whatever is buffered, else one fresh read."""
        if self._buffer_offset >= len(self.buffer):
            self.buffer.clear()
            self._buffer_offset = 0
            data = await self._fill("body")
            if not data:
                raise ClientTimeoutError("Incomplete read")
            self.buffer.extend(data)

        end = min(len(self.buffer), self._buffer_offset + n)
        chunk = bytes(self.buffer[self._buffer_offset:end])
        self._buffer_offset = end
        return chunk

    async def _relay_bytes(self, n: int) -> AsyncIterator[bytes]:
        """Yields exactly n bytes from the client in buffer_size pieces."""
        remaining = n
        while remaining > 0:
            chunk = await self._read_some(min(remaining, self.buffer_size))
            remaining -= len(chunk)
            yield chunk

    async def _relay_chunked_body(self) -> AsyncIterator[bytes]:
        """Decodes a chunked body as it arrives. Trailers are consumed and dropped."""
        while True:
            line = await self._read_strict_line()
            if b';' in line:
                line, _ = line.split(b';', 1)
            try:
                size = int(line.strip(), 16)
            except ValueError as exc:
                raise ParseError("Invalid chunk size") from exc
            if size < 0:
                raise ParseError("Invalid chunk size")

            if size == 0:
                while True:
                    t = await self._read_strict_line()
                    if not t:
                        break
                return

            async for chunk in self._relay_bytes(size):
                yield chunk
            if await self._read_strict_line():
                raise ParseError("Missing CRLF after chunk data")

    async def _read_request(self) -> bool:
        """
        Parses request line and headers into self.ctx. The body is not read here:
        ctx.request_body_stream relays it from the client while forwarding.
        Returns False when the client closed before sending anything.
        """
        ctx = self.ctx
        line = await self._read_strict_line(allow_eof=True)
        if not line:
            return False

        match = REQUEST_LINE_PATTERN.match(line)
        if not match:
            raise ParseError("Malformed Request Line")
        ctx.method = match.group(1).decode('ascii')
        ctx.target = match.group(2).decode('ascii', 'replace')
        ctx.version = match.group(3).decode('ascii')

        headers: Headers = []
        while True:
            h_line = await self._read_strict_line()
            if not h_line:
                break
            if h_line[0] in (0x20, 0x09):
                raise ParseError("Obsolete Line Folding Rejected")
            h_match = STRICT_HEADER_PATTERN.match(h_line)
            if not h_match:
                raise ParseError("Invalid Header Syntax")
            headers.append((
                h_match.group(1).decode('ascii'),
                h_match.group(2).decode('latin-1').strip()
            ))
            if len(headers) > MAX_HEADER_COUNT:
                raise ParseError("Too Many Headers")
        ctx.request_headers = headers

        self._resolve_target()

        te = ctx.request_header('transfer-encoding')
        cl_values = [v for k, v in headers if k.lower() == 'content-length']
        if te:
            enc = [e.strip().lower() for e in te.split(',')]
            if enc[-1] != 'chunked':
                raise ParseError("Bad Transfer-Encoding")
            # RFC 9112 Section 6.3: Transfer-Encoding overrides Content-Length
            ctx.request_headers = remove_headers(headers, {'content-length'})
            ctx.request_body_stream = self._relay_chunked_body()
        elif cl_values:
            if len(set(cl_values)) != 1:
                raise ParseError("Conflicting Content-Length")
            try:
                length = int(cl_values[0])
                if length < 0:
                    raise ValueError
            except ValueError as exc:
                raise ParseError("Invalid Content-Length") from exc
            if length:
                ctx.request_body_length = length
                ctx.request_body_stream = self._relay_bytes(length)
        return True

    def _resolve_target(self) -> None:
        """Fills scheme/host/port/path from the request target (or Host header)."""
        ctx = self.ctx
        if ctx.method == 'CONNECT':
            host, port = self._parse_target(ctx.target, default_port=443)
            if not host:
                raise ParseError("CONNECT requires host:port")
            ctx.scheme, ctx.target_host, ctx.target_port, ctx.path = "https", host, port, ""
            return

        if ctx.target.startswith(('http://', 'https://')):
            p = urlsplit(ctx.target)
            authority = p.netloc.rpartition('@')[2]
            ctx.scheme = p.scheme
            path = p.path or "/"
            ctx.path = path + ("?" + p.query if p.query else "")
        elif ctx.target.startswith('/'):
            authority = ctx.request_header('host') or ""
            ctx.scheme = "http"
            ctx.path = ctx.target
        else:
            raise ParseError("Unsupported request target")

        if not authority:
            raise ParseError("Missing target host")
        default_port = 443 if ctx.scheme == "https" else 80
        host, port = self._parse_target(authority, default_port=default_port)
        if not host:
            raise ParseError("Missing target host")
        ctx.target_host = normalize_host(host)
        ctx.target_port = port

    # -- Writing --

    async def _send_error(self, code: int, message: str, extra: Headers = ()) -> None:
        """Sends a proxy-generated error response to the client."""
        self._transition(HandlerState.REJECTED)
        reason = REASON_PHRASES.get(code, "Error")
        body = f"{code} {reason}: {message}\n".encode('utf-8', 'replace')
        head = [f"HTTP/1.1 {code} {reason}\r\n"]
        for k, v in extra:
            head.append(f"{k}: {v}\r\n")
        head.append(
            "Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
        )
        try:
            self.writer.write("".join(head).encode('latin-1') + body)
            await self.writer.drain()
        except (ConnectionError, OSError):
            pass

    def _write_head(self, headers: Headers) -> None:
        ctx = self.ctx
        buf = [f"HTTP/1.1 {ctx.response_status} {ctx.response_reason}\r\n".encode('latin-1')]
        for k, v in headers:
            buf.append(f"{k}: {v}\r\n".encode('latin-1', 'replace'))
        buf.append(b"Connection: close\r\n\r\n")
        self._response_started = True
        self.writer.write(b"".join(buf))

    async def _write_buffered(self) -> None:
        ctx = self.ctx
        body = ctx.response_body or b""
        headers = remove_headers(
            ctx.response_headers, HOP_BY_HOP_HEADERS | {'content-length', 'content-encoding'}
        )
        headers = set_header(headers, "Content-Length", str(len(body)))
        self._write_head(headers)
        if body and ctx.method != "HEAD":
            self.writer.write(body)
        await self.writer.drain()

    async def _write_streamed(self, response: object) -> None:
        headers = remove_headers(self.ctx.response_headers, HOP_BY_HOP_HEADERS)
        self._write_head(headers)
        await self.writer.drain()
        async for chunk in self.connector.stream_body(response):
            self.writer.write(chunk)
            await self.writer.drain()

    # -- Orchestration --

    async def run(self) -> None:
        """Main state machine for one client connection."""
        ctx = self.ctx
        try:
            if not await self._read_request():
                return

            self.log("DEBUG", f"{ctx.method} {ctx.target} [{redact_headers(ctx.request_headers)}]")
            self._transition(HandlerState.AUTHORIZING)
            token = extract_token(ctx.request_header('proxy-authorization'))
            decision = self.gate.authorize(ctx.client_ip, token)
            if not decision:
                await self._deny(decision)
                return

            if ctx.method == 'CONNECT':
                await self._handle_connect()
                return

            self._transition(HandlerState.MATCHING_SCRIPTS)
            snapshot = self.registry.snapshot()
            ctx.matched_scripts = snapshot.match(ctx.target_host) if self.pipeline.enabled else ()

            self._transition(HandlerState.INJECTING_REQUEST)
            # Host names the target authority; a Header script may still replace it.
            ctx.request_headers = set_header(ctx.request_headers, "Host", ctx.authority)
            self.pipeline.apply_request(ctx, ctx.matched_scripts)

            self._transition(HandlerState.FORWARDING)
            await self._forward()
        except ClientTimeoutError as e:
            self.log("DEBUG", f"Client {ctx.client_ip} dropped: {e}")
        except ParseError as e:
            self.log("ERROR", f"Framing Error from {ctx.client_ip}: {e}")
            if not self._response_started:
                await self._send_error(400, str(e))
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            self.log("DEBUG", f"Client {ctx.client_ip} went away: {e}")
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", f"Proxy Error ({ctx.method} {ctx.target}): {e}")
        finally:
            if ctx.state is not HandlerState.REJECTED:
                self._transition(HandlerState.CLOSED)
            await self._close_writer(self.writer)

    async def _deny(self, decision: Decision) -> None:
        ctx = self.ctx
        reason = decision.reason.value if decision.reason else "denied"
        self.log("DENY", f"{ctx.client_ip} -> {ctx.method} {ctx.target}: {reason}")
        extra: Headers = [("Retry-After", "60")] if decision.status == 429 else []
        await self._send_error(decision.status, reason, extra)

    async def _forward(self) -> None:
        ctx = self.ctx
        try:
            async with self.connector.forward(ctx) as response:
                status, reason, headers = response_head(response)
                ctx.response_status, ctx.response_reason, ctx.response_headers = (
                    status, reason, headers
                )

                self._transition(HandlerState.INJECTING_RESPONSE)
                scripts = ctx.matched_scripts
                if self.pipeline.wants_response_body(ctx, scripts):
                    ctx.response_body = await self.connector.read_body(response)
                self.pipeline.apply_response(ctx, scripts)

                self._transition(HandlerState.WRITING_RESPONSE)
                if ctx.response_body is not None:
                    await self._write_buffered()
                else:
                    await self._write_streamed(response)
        except UpstreamError as e:
            self.log("UPSTREAM", f"{ctx.method} {ctx.url}: {e}")
            if not self._response_started:
                await self._send_error(e.status, str(e.kind.name.lower()))
            return

        if ctx.injected:
            self.log("INJECT", f"{ctx.url}: {', '.join(ctx.injected)}")
        self.log("REQUEST", f"{ctx.client_ip} {ctx.method} {ctx.url} -> {ctx.response_status}")

    async def _handle_connect(self) -> None:
        """Blind CONNECT tunnel. Bytes are relayed untouched."""
        ctx = self.ctx
        self._transition(HandlerState.FORWARDING)
        try:
            u_r, u_w = await self.connector.open_tunnel(ctx.target_host, ctx.target_port)
        except UpstreamError as e:
            self.log("UPSTREAM", f"CONNECT {ctx.target}: {e}")
            await self._send_error(e.status, str(e.kind.name.lower()))
            return

        try:
            self.writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            await self.writer.drain()
            if self._buffer_offset < len(self.buffer):
                u_w.write(bytes(self.buffer[self._buffer_offset:]))
                await u_w.drain()
                self._buffer_offset = len(self.buffer)
            self.log("REQUEST", f"{ctx.client_ip} CONNECT {ctx.target_host}:{ctx.target_port}")
            await asyncio.gather(
                self._pipe(self.reader, u_w),
                self._pipe(u_r, self.writer),
                return_exceptions=True
            )
        finally:
            await self._close_writer(u_w)

    async def _pipe(self, r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        """Pipes data from a reader to a writer until EOF on either side."""
        try:
            while not r.at_eof():
                data = await r.read(self.buffer_size)
                if not data:
                    break
                w.write(data)
                await w.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            await self._close_writer(w)

    @staticmethod
    async def _close_writer(w: asyncio.StreamWriter) -> None:
        try:
            if not w.is_closing():
                w.close()
            await w.wait_closed()
        except Exception: # pylint: disable=broad-exception-caught
            pass


def client_address(writer: asyncio.StreamWriter) -> Tuple[str, int]:
    raw = writer.get_extra_info('peername')
    if isinstance(raw, tuple) and len(raw) >= 2:
        return str(raw[0]), int(raw[1])
    return "", 0
