#Filename: proxy_common.py
"""
PROXY COMMON DEFINITIONS
Shared constants, the error taxonomy, and the base handler for the Splice Proxy Core.
Implements Single Source of Truth (SSOT) for wire-level limits and status mapping.
"""

import enum
import re
from typing import Callable, Dict, Optional, Tuple

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
REQUEST_LINE_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+) (\S+) (HTTP/1\.[01])$')
MAX_HEADER_LIST_SIZE = 65536
MAX_HEADER_COUNT = 256
READ_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536

REASON_PHRASES: Dict[int, str] = {
    400: "Bad Request",
    403: "Forbidden",
    429: "Too Many Requests",
    502: "Bad Gateway",
    504: "Gateway Timeout",
}

# -- Error Taxonomy --

class ProxyError(Exception):
    """Base exception for Proxy operations."""

class ParseError(ProxyError):
    """Malformed client request (request line, headers or framing)."""

class ClientTimeoutError(ProxyError):
    """The client went idle (or disconnected) before the request was complete."""

class UpstreamFailure(enum.Enum):
    """Kinds of upstream failure, mapped to distinct status codes."""
    UNREACHABLE = 502
    TIMEOUT = 504

class UpstreamError(ProxyError):
    """The origin could not be reached or did not answer in time."""

    def __init__(self, kind: UpstreamFailure, message: str = "") -> None:
        super().__init__(message or kind.name.lower())
        self.kind = kind

    @property
    def status(self) -> int:
        return self.kind.value

class BindError(ProxyError):
    """The listener could not bind its address. Fatal at startup."""

class ScriptLoadError(ProxyError):
    """A script file (or the scripts directory) could not be loaded."""

class ScriptExecutionTimeout(ProxyError):
    """A script transformation overran its max_execution_time budget."""


class BaseProxyHandler:
    """
    Base class containing shared logic for proxy handlers.
    Manages event reporting and target parsing.
    """
    __slots__ = ('callback', 'client_addr')

    def __init__(
        self,
        manager_callback: Optional[Callable[[str, object], None]],
        client_addr: Optional[Tuple[str, int]] = None
    ):
        """Initializes the BaseProxyHandler."""
        self.callback = manager_callback
        self.client_addr = client_addr

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            try:
                self.callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    @staticmethod
    def _parse_target(explicit_host: str, default_port: int = 80) -> Tuple[str, int]:
        """Parses a host string into (hostname, port). Raises ParseError on a bad port."""
        if not explicit_host:
            return "", 0
        if explicit_host.startswith('['):
            end = explicit_host.find(']')
            if end == -1:
                raise ParseError(f"Unterminated IPv6 literal: {explicit_host}")
            host = explicit_host[1:end]
            rem = explicit_host[end+1:]
            if not rem:
                return host, default_port
            if not rem.startswith(':'):
                raise ParseError(f"Invalid authority: {explicit_host}")
            port_str = rem[1:]
        elif ':' in explicit_host:
            host, port_str = explicit_host.rsplit(':', 1)
        else:
            return explicit_host, default_port

        if not port_str:
            return host, default_port
        try:
            port = int(port_str)
        except ValueError as exc:
            raise ParseError(f"Invalid port in authority: {explicit_host}") from exc
        if not 0 < port < 65536:
            raise ParseError(f"Port out of range: {port}")
        return host, port
