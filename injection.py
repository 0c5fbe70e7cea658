#Filename: injection.py
"""
INJECTION PIPELINE
Applies matched scripts to the request and response of one connection, in match
order. Each script sees the output of the previous one.

Every script runs under a cooperative Deadline. A script that overruns its
max_execution_time has its partial effect discarded; the pipeline moves on.
"""

import logging
import time
from typing import Callable, Optional, Sequence, Tuple

from config import ScriptSettings
from proxy_common import ScriptExecutionTimeout
from structures import ConnectionContext, Headers, InjectionScript, InjectType, set_header

log = logging.getLogger("Injection")

# Content codings httpx can always decode; anything else is streamed untouched.
DECODABLE_ENCODINGS = frozenset({"", "identity", "gzip", "x-gzip", "deflate"})
BODYLESS_STATUSES = frozenset({204, 304})

Transform = Callable[[InjectionScript, Headers, Optional[bytes], "Deadline"],
                     Tuple[Headers, Optional[bytes]]]


class Deadline:
    """Cancellation token for one script invocation."""
    __slots__ = ('expires_at', '_clock', 'script_name')

    def __init__(
        self,
        budget_ms: int,
        clock: Callable[[], float] = time.monotonic,
        script_name: str = ""
    ) -> None:
        self._clock = clock
        self.script_name = script_name
        self.expires_at = clock() + budget_ms / 1000.0 if budget_ms > 0 else None

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at

    def check(self) -> None:
        """Raises ScriptExecutionTimeout once the budget is spent."""
        if self.expired:
            raise ScriptExecutionTimeout(
                f"Script '{self.script_name}' exceeded its execution budget"
            )


def _find_tag(body: bytes, tag: bytes, last: bool) -> int:
    lowered = body.lower()
    return lowered.rfind(tag) if last else lowered.find(tag)


def _insert_before(body: bytes, tag: bytes, fragment: bytes, last: bool) -> bytes:
    idx = _find_tag(body, tag, last)
    if idx == -1:
        return body
    return body[:idx] + fragment + body[idx:]


# -- Transforms (one per inject_type) --

def _merge_headers(script: InjectionScript, headers: Headers, body: Optional[bytes],
                   deadline: Deadline) -> Tuple[Headers, Optional[bytes]]:
    for name, value in script.headers:
        deadline.check()
        headers = set_header(headers, name, value)
    return headers, body


def _append_body(script: InjectionScript, headers: Headers, body: Optional[bytes],
                 deadline: Deadline) -> Tuple[Headers, Optional[bytes]]:
    deadline.check()
    if body is None or not script.script_content:
        return headers, body
    return headers, body + script.script_content.encode('utf-8')


def _inject_javascript(script: InjectionScript, headers: Headers, body: Optional[bytes],
                       deadline: Deadline) -> Tuple[Headers, Optional[bytes]]:
    deadline.check()
    if body is None:
        return headers, body
    fragment = b"<script>" + script.script_content.encode('utf-8') + b"</script>"
    return headers, _insert_before(body, b"</body>", fragment, last=True)


def _inject_css(script: InjectionScript, headers: Headers, body: Optional[bytes],
                deadline: Deadline) -> Tuple[Headers, Optional[bytes]]:
    deadline.check()
    if body is None:
        return headers, body
    fragment = b"<style>" + script.script_content.encode('utf-8') + b"</style>"
    return headers, _insert_before(body, b"</head>", fragment, last=False)


REQUEST_TRANSFORMS = {
    InjectType.HEADER: _merge_headers,
    InjectType.BODY: _append_body,
}

RESPONSE_TRANSFORMS = {
    InjectType.RESPONSE_HEADER: _merge_headers,
    InjectType.RESPONSE_BODY: _append_body,
    InjectType.JAVASCRIPT: _inject_javascript,
    InjectType.CSS: _inject_css,
}

HTML_ONLY = frozenset({InjectType.JAVASCRIPT, InjectType.CSS})


class InjectionPipeline:
    """Request/response rewrite stages for one proxy instance."""
    __slots__ = ('settings', '_clock')

    def __init__(
        self,
        settings: ScriptSettings,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.settings = settings
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def _run(
        self,
        ctx: ConnectionContext,
        script: InjectionScript,
        transform: Transform,
        headers: Headers,
        body: Optional[bytes]
    ) -> Tuple[Headers, Optional[bytes]]:
        deadline = Deadline(self.settings.max_execution_time, self._clock, script.name)
        try:
            new_headers, new_body = transform(script, list(headers), body, deadline)
            deadline.check()
        except ScriptExecutionTimeout as e:
            log.warning(f"{e} on {ctx.target_host}; effect discarded")
            return headers, body
        ctx.injected.append(script.name)
        return new_headers, new_body

    def apply_request(
        self, ctx: ConnectionContext, scripts: Sequence[InjectionScript]
    ) -> ConnectionContext:
        """
        Header and Body scripts rewrite the outgoing request. When the client body
        is streamed, Body scripts append to ctx.request_body_tail, sent after it.
        """
        if not self.enabled:
            return ctx
        streamed = ctx.request_body_stream is not None
        headers = ctx.request_headers
        body = ctx.request_body_tail if streamed else ctx.request_body
        for script in scripts:
            if not script.inject_type.is_request_phase or not script.enabled:
                continue
            transform = REQUEST_TRANSFORMS[script.inject_type]
            headers, body = self._run(ctx, script, transform, headers, body)
        ctx.request_headers = headers
        if streamed:
            ctx.request_body_tail = body or b""
        else:
            ctx.request_body = body or b""
        return ctx

    def apply_response(
        self, ctx: ConnectionContext, scripts: Sequence[InjectionScript]
    ) -> ConnectionContext:
        """
        ResponseHeader scripts always apply. Body-phase scripts apply only when the
        body was buffered (ctx.response_body is not None); JavaScript/CSS only on HTML.
        """
        if not self.enabled:
            return ctx
        is_html = ctx.is_html_response()
        headers, body = ctx.response_headers, ctx.response_body
        for script in scripts:
            if script.inject_type.is_request_phase or not script.enabled:
                continue
            transform = RESPONSE_TRANSFORMS[script.inject_type]
            if script.inject_type in HTML_ONLY and not is_html:
                continue
            headers, body = self._run(ctx, script, transform, headers, body)
        ctx.response_headers = headers
        ctx.response_body = body
        return ctx

    def wants_response_body(
        self, ctx: ConnectionContext, scripts: Sequence[InjectionScript]
    ) -> bool:
        """True when a matched script needs the whole (decoded) response body."""
        if not self.enabled or ctx.method == "HEAD":
            return False
        status = ctx.response_status
        if status < 200 or status in BODYLESS_STATUSES:
            return False
        encoding = (ctx.response_header('content-encoding') or "").strip().lower()
        if encoding not in DECODABLE_ENCODINGS:
            return False
        is_html = ctx.is_html_response()
        for script in scripts:
            if not script.enabled:
                continue
            if script.inject_type is InjectType.RESPONSE_BODY:
                return True
            if script.inject_type in HTML_ONLY and is_html:
                return True
        return False
