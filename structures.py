#Filename: structures.py
"""
CORE DATA STRUCTURES
Single Source of Truth (SSOT) for the injection proxy.
Shared between the Script Registry, Injection Pipeline and the Proxy Core.
Strict type enforcement at the runtime boundary (script files are untrusted input).
"""

import enum
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Set, Tuple

from proxy_common import ScriptLoadError

# -- Constants --

# RFC 9110 Section 7.6.1: Connection-specific fields are not forwarded.
# Use set for O(1) lookup speed in hot paths
HOP_BY_HOP_HEADERS: Set[str] = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'proxy-connection', 'te', 'trailer', 'trailers', 'transfer-encoding', 'upgrade'
}

# OpSec: Headers to redact in logs
SENSITIVE_HEADERS: Set[str] = {
    'authorization', 'proxy-authorization', 'cookie', 'set-cookie',
    'x-auth-token', 'x-api-key'
}

HTML_CONTENT_TYPES: Tuple[str, ...] = ('text/html', 'application/xhtml+xml')

# -- Types --

Headers = List[Tuple[str, str]]


class InjectType(enum.Enum):
    """What a script rewrites, and in which phase."""
    HEADER = "Header"
    BODY = "Body"
    RESPONSE_HEADER = "ResponseHeader"
    RESPONSE_BODY = "ResponseBody"
    JAVASCRIPT = "JavaScript"
    CSS = "CSS"

    @classmethod
    def parse(cls, value: object) -> "InjectType":
        """Resolves a script file value, case-insensitively."""
        if isinstance(value, str):
            wanted = value.strip().lower()
            for member in cls:
                if member.value.lower() == wanted:
                    return member
        raise ScriptLoadError(f"Unrecognized inject_type: {value!r}")

    @property
    def is_request_phase(self) -> bool:
        return self in (InjectType.HEADER, InjectType.BODY)


class HandlerState(enum.Enum):
    """Lifecycle of a single proxied connection."""
    READING_REQUEST = "ReadingRequest"
    AUTHORIZING = "Authorizing"
    MATCHING_SCRIPTS = "MatchingScripts"
    INJECTING_REQUEST = "InjectingRequest"
    FORWARDING = "Forwarding"
    INJECTING_RESPONSE = "InjectingResponse"
    WRITING_RESPONSE = "WritingResponse"
    CLOSED = "Closed"
    REJECTED = "Rejected"


def _require_str(record: Mapping[str, Any], key: str, default: str = "") -> str:
    value = record.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ScriptLoadError(f"Field '{key}' must be a string, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class InjectionScript:
    """
    A declarative rewrite rule loaded from the scripts directory.
    Immutable once loaded: a reload replaces the whole set.
    """
    name: str
    inject_type: InjectType
    description: str = ""
    version: str = ""
    author: str = ""
    target_domains: Tuple[str, ...] = ()
    script_content: str = ""
    headers: Tuple[Tuple[str, str], ...] = ()
    enabled: bool = True

    @classmethod
    def from_dict(cls, record: object) -> "InjectionScript":
        """
        Builds a script from one decoded JSON record.
        Raises ScriptLoadError for a missing name/inject_type or a badly typed field.
        """
        if not isinstance(record, dict):
            raise ScriptLoadError(
                f"Script record must be an object, got {type(record).__name__}"
            )

        name = record.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ScriptLoadError("Script record is missing 'name'")
        if "inject_type" not in record:
            raise ScriptLoadError(f"Script '{name}' is missing 'inject_type'")
        inject_type = InjectType.parse(record["inject_type"])

        domains = record.get("target_domains") or []
        if isinstance(domains, str) or not isinstance(domains, list) \
                or not all(isinstance(d, str) for d in domains):
            raise ScriptLoadError(f"Script '{name}': 'target_domains' must be a list of strings")

        raw_headers = record.get("headers") or {}
        if not isinstance(raw_headers, dict):
            raise ScriptLoadError(f"Script '{name}': 'headers' must be an object")
        headers = []
        for key, val in raw_headers.items():
            if not isinstance(val, str):
                raise ScriptLoadError(f"Script '{name}': header '{key}' must map to a string")
            if '\r' in key or '\n' in key or '\r' in val or '\n' in val:
                raise ScriptLoadError(f"Script '{name}': header '{key}' contains CR/LF")
            headers.append((key, val))

        enabled = record.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ScriptLoadError(f"Script '{name}': 'enabled' must be a boolean")

        return cls(
            name=name.strip(),
            inject_type=inject_type,
            description=_require_str(record, "description"),
            version=_require_str(record, "version"),
            author=_require_str(record, "author"),
            target_domains=tuple(d.strip().lower() for d in domains if d.strip()),
            script_content=_require_str(record, "script_content"),
            headers=tuple(headers),
            enabled=enabled,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Script file representation (inverse of from_dict)."""
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "author": self.author,
            "target_domains": list(self.target_domains),
            "inject_type": self.inject_type.value,
            "script_content": self.script_content,
            "headers": dict(self.headers),
            "enabled": self.enabled,
        }

    def __str__(self) -> str:
        flag = "on" if self.enabled else "off"
        return f"{self.name} [{self.inject_type.value}] ({flag})"


class ConnectionContext:
    """
    Per-request record. Owned by exactly one handler, never shared across connections.
    Optimized: __slots__ lowers instantiation overhead on the hot path.
    """
    __slots__ = (
        'client_addr', 'method', 'target', 'version', 'scheme', 'target_host',
        'target_port', 'path', 'request_headers', 'request_body', 'request_body_stream',
        'request_body_length', 'request_body_tail', 'matched_scripts',
        'response_status', 'response_reason', 'response_headers', 'response_body',
        'state', 'injected'
    )

    def __init__(self, client_addr: Optional[Tuple[str, int]] = None) -> None:
        self.client_addr = client_addr
        self.method: str = ""
        self.target: str = ""
        self.version: str = "HTTP/1.1"
        self.scheme: str = "http"
        self.target_host: str = ""
        self.target_port: int = 80
        self.path: str = "/"
        self.request_headers: Headers = []
        self.request_body: bytes = b""
        # Set when the client body is relayed upstream as it arrives.
        # request_body_length is None for chunked framing; tail holds appended content.
        self.request_body_stream: Optional[AsyncIterator[bytes]] = None
        self.request_body_length: Optional[int] = None
        self.request_body_tail: bytes = b""
        self.matched_scripts: Tuple[InjectionScript, ...] = ()
        self.response_status: int = 0
        self.response_reason: str = ""
        self.response_headers: Headers = []
        # None while the response body is streamed rather than buffered
        self.response_body: Optional[bytes] = None
        self.state: HandlerState = HandlerState.READING_REQUEST
        self.injected: List[str] = []

    @property
    def client_ip(self) -> str:
        return self.client_addr[0] if self.client_addr else ""

    @property
    def authority(self) -> str:
        host = f"[{self.target_host}]" if ':' in self.target_host else self.target_host
        default = 443 if self.scheme == "https" else 80
        return host if self.target_port == default else f"{host}:{self.target_port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.authority}{self.path}"

    def request_header(self, name: str) -> Optional[str]:
        """First request header value with the given name (case-insensitive)."""
        return get_header(self.request_headers, name)

    def response_header(self, name: str) -> Optional[str]:
        return get_header(self.response_headers, name)

    def is_html_response(self) -> bool:
        ctype = (self.response_header('content-type') or "").split(';', 1)[0].strip().lower()
        return ctype in HTML_CONTENT_TYPES

    def __repr__(self) -> str:
        return f"<ConnectionContext {self.method} {self.url} [{self.state.value}]>"


def get_header(headers: Headers, name: str) -> Optional[str]:
    """Returns the first value of a header (case-insensitive), or None."""
    wanted = name.lower()
    for key, val in headers:
        if key.lower() == wanted:
            return val
    return None


def set_header(headers: Headers, name: str, value: str) -> Headers:
    """Replaces every occurrence of a header with a single new value."""
    wanted = name.lower()
    out = [(k, v) for k, v in headers if k.lower() != wanted]
    out.append((name, value))
    return out


def remove_headers(headers: Headers, names: Set[str]) -> Headers:
    """Drops the headers whose lowercased name is in `names`."""
    return [(k, v) for k, v in headers if k.lower() not in names]


def redact_headers(headers: Headers) -> str:
    """Header dump with sensitive values masked, for logging."""
    return ", ".join(
        f"{k}: [REDACTED]" if k.lower() in SENSITIVE_HEADERS else f"{k}: {v}"
        for k, v in headers
    )
