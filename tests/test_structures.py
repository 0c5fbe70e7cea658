# tests/test_structures.py
import pytest

from proxy_common import BaseProxyHandler, ParseError, ScriptLoadError
from structures import (
    ConnectionContext, InjectionScript, InjectType, get_header, redact_headers,
    remove_headers, set_header
)


class TestInjectType:
    def test_parse_is_case_insensitive(self):
        assert InjectType.parse("javascript") is InjectType.JAVASCRIPT
        assert InjectType.parse("ResponseHeader") is InjectType.RESPONSE_HEADER
        assert InjectType.parse(" css ") is InjectType.CSS

    @pytest.mark.parametrize("value", ["Cookie", "", None, 3])
    def test_parse_rejects_unknown(self, value):
        with pytest.raises(ScriptLoadError):
            InjectType.parse(value)

    def test_request_phase(self):
        assert InjectType.HEADER.is_request_phase
        assert InjectType.BODY.is_request_phase
        assert not InjectType.JAVASCRIPT.is_request_phase


class TestInjectionScript:
    def test_from_dict_full_record(self):
        script = InjectionScript.from_dict({
            "name": "tracker",
            "description": "adds a header",
            "version": "1.0.0",
            "author": "ops",
            "target_domains": ["*.Example.com", "  "],
            "inject_type": "Header",
            "script_content": "",
            "headers": {"X-Debug": "true"},
        })
        assert script.name == "tracker"
        assert script.inject_type is InjectType.HEADER
        assert script.target_domains == ("*.example.com",)
        assert script.headers == (("X-Debug", "true"),)
        assert script.enabled is True

    def test_missing_optionals_take_defaults(self):
        script = InjectionScript.from_dict({"name": "css", "inject_type": "CSS"})
        assert script.target_domains == ()
        assert script.script_content == ""
        assert script.headers == ()

    @pytest.mark.parametrize("record", [
        [],
        {"inject_type": "Header"},
        {"name": "x"},
        {"name": "x", "inject_type": "Nope"},
        {"name": "x", "inject_type": "Header", "target_domains": "*.com"},
        {"name": "x", "inject_type": "Header", "headers": {"A": 1}},
        {"name": "x", "inject_type": "Header", "headers": {"A": "b\r\nEvil: 1"}},
        {"name": "x", "inject_type": "Header", "enabled": "yes"},
        {"name": "x", "inject_type": "Header", "description": 5},
    ])
    def test_from_dict_rejects_bad_records(self, record):
        with pytest.raises(ScriptLoadError):
            InjectionScript.from_dict(record)

    def test_to_dict_matches_file_schema(self):
        script = InjectionScript(
            name="n", inject_type=InjectType.RESPONSE_HEADER,
            target_domains=("a.com",), headers=(("X", "1"),), enabled=False
        )
        record = script.to_dict()
        assert record["inject_type"] == "ResponseHeader"
        assert record["headers"] == {"X": "1"}
        assert InjectionScript.from_dict(record) == script


class TestConnectionContext:
    def test_authority_omits_default_port(self):
        ctx = ConnectionContext(("1.2.3.4", 5555))
        ctx.target_host, ctx.target_port, ctx.path = "example.com", 80, "/a?b=1"
        assert ctx.url == "http://example.com/a?b=1"
        ctx.target_port = 8080
        assert ctx.authority == "example.com:8080"
        assert ctx.client_ip == "1.2.3.4"

    def test_ipv6_authority_is_bracketed(self):
        ctx = ConnectionContext()
        ctx.target_host, ctx.target_port = "::1", 8000
        assert ctx.authority == "[::1]:8000"

    def test_is_html_response(self):
        ctx = ConnectionContext()
        ctx.response_headers = [("Content-Type", "Text/HTML; charset=utf-8")]
        assert ctx.is_html_response()
        ctx.response_headers = [("Content-Type", "application/json")]
        assert not ctx.is_html_response()
        ctx.response_headers = []
        assert not ctx.is_html_response()


class TestHeaderHelpers:
    def test_set_header_replaces_all_occurrences(self):
        headers = [("X-A", "1"), ("x-a", "2"), ("Other", "o")]
        out = set_header(headers, "X-A", "3")
        assert out == [("Other", "o"), ("X-A", "3")]
        assert headers[0] == ("X-A", "1")

    def test_get_and_remove(self):
        headers = [("Host", "h"), ("Connection", "close")]
        assert get_header(headers, "HOST") == "h"
        assert get_header(headers, "missing") is None
        assert remove_headers(headers, {"connection"}) == [("Host", "h")]

    def test_redaction(self):
        dump = redact_headers([("Cookie", "secret"), ("Accept", "*/*")])
        assert "secret" not in dump
        assert "Accept: */*" in dump


class TestTargetParsing:
    @pytest.mark.parametrize("raw, expected", [
        ("example.com", ("example.com", 80)),
        ("example.com:8443", ("example.com", 8443)),
        ("[::1]:9000", ("::1", 9000)),
        ("[::1]", ("::1", 80)),
        ("", ("", 0)),
    ])
    def test_parse_target(self, raw, expected):
        assert BaseProxyHandler._parse_target(raw) == expected

    @pytest.mark.parametrize("raw", ["host:abc", "host:70000", "[::1", "[::1]x"])
    def test_parse_target_rejects(self, raw):
        with pytest.raises(ParseError):
            BaseProxyHandler._parse_target(raw)
