# tests/test_script_registry.py
"""
Tests for script_registry.py: loading, matching, the global domain gate and reload.
"""
import json
import os

import pytest

from proxy_common import ScriptLoadError
from script_registry import (
    DomainGate, EXAMPLE_SCRIPTS, ScriptRegistry, domain_matches, fingerprint,
    load_directory, normalize_host, write_example_scripts
)
from structures import InjectType


def record(name, domains=("*",), inject_type="Header", **extra):
    rec = {"name": name, "target_domains": list(domains), "inject_type": inject_type}
    rec.update(extra)
    return rec


class TestMatching:
    @pytest.mark.parametrize("host, expected", [
        ("Example.COM", "example.com"),
        ("example.com:8080", "example.com"),
        ("[::1]:443", "::1"),
        ("example.com.", "example.com"),
    ])
    def test_normalize_host(self, host, expected):
        assert normalize_host(host) == expected

    def test_glob_patterns(self):
        assert domain_matches("api.example.com", ["*.example.com"])
        assert not domain_matches("example.com", ["*.example.com"])
        assert domain_matches("anything.test", ["*"])
        assert domain_matches("API.Example.com:8443", ["*.EXAMPLE.com"])
        assert not domain_matches("example.org", [])

    def test_only_star_is_a_wildcard(self):
        assert not domain_matches("abc.com", ["a?c.com"])
        assert domain_matches("a?c.com", ["a?c.com"])
        assert not domain_matches("a.com", ["[ab].com"])
        assert domain_matches("cdn.[x].com", ["cdn.[x].com"])
        assert domain_matches("x.a]b.com", ["*.a]b.com"])

    def test_blocked_beats_wildcard(self):
        gate = DomainGate(allowed=("*",), blocked=("*.bank.com",))
        assert not gate.permits("login.bank.com")
        assert gate.permits("news.com")

    def test_allow_list_restricts(self):
        gate = DomainGate(allowed=("*.corp.local",))
        assert gate.permits("wiki.corp.local")
        assert not gate.permits("example.com")


class TestLoading:
    def test_load_skips_malformed_and_duplicates(self, scripts_dir, caplog):
        scripts_dir("a.json", record("first"))
        scripts_dir("b.json", "{not json")
        scripts_dir("c.json", record("bad-type", inject_type="Cookie"))
        scripts_dir("d.json", record("first"))
        scripts_dir("e.json", record("second", inject_type="CSS"))
        scripts_dir("notes.txt", "ignored")

        scripts = load_directory(scripts_dir.path)
        assert [s.name for s in scripts] == ["first", "second"]
        assert "b.json" in caplog.text
        assert "duplicate name 'first'" in caplog.text

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(ScriptLoadError):
            load_directory(str(tmp_path / "nope"))

    def test_empty_directory_loads_empty(self, scripts_dir):
        registry = ScriptRegistry.load(scripts_dir.path)
        assert len(registry) == 0
        assert registry.match("example.com") == ()

    def test_match_order_and_disabled(self, scripts_dir):
        scripts_dir("10-a.json", record("a", domains=["*.example.com"]))
        scripts_dir("20-b.json", record("b", domains=["*"], enabled=False))
        scripts_dir("30-c.json", record("c", domains=["API.example.com"]))
        scripts_dir("40-d.json", record("d", domains=["other.org"]))
        registry = ScriptRegistry.load(scripts_dir.path)

        assert [s.name for s in registry.match("api.example.com:8080")] == ["a", "c"]
        assert registry.match("other.org")[0].name == "d"
        assert registry.names() == ["a", "b", "c", "d"]

    def test_gate_applies_before_script_domains(self, scripts_dir):
        scripts_dir("a.json", record("everywhere", domains=["*"]))
        registry = ScriptRegistry.load(scripts_dir.path, gate=DomainGate(blocked=("*.bank.com",)))
        assert registry.match("secure.bank.com") == ()
        assert len(registry.match("shop.com")) == 1


class TestReload:
    def test_reload_swaps_snapshot(self, scripts_dir):
        scripts_dir("a.json", record("a"))
        registry = ScriptRegistry.load(scripts_dir.path)
        before = registry.snapshot()

        scripts_dir("b.json", record("b"))
        after = registry.reload()

        assert registry.names() == ["a", "b"]
        assert after.generation == before.generation + 1
        # A snapshot held by an in-flight request is unaffected
        assert before.names() == ["a"]

    def test_reload_failure_keeps_previous_set(self, scripts_dir):
        path = scripts_dir("a.json", record("a"))
        registry = ScriptRegistry.load(scripts_dir.path)
        with open(path, "w", encoding="utf-8") as f:
            f.write("{broken")

        with pytest.raises(ScriptLoadError):
            registry.reload()
        assert registry.names() == ["a"]

    def test_reload_unreadable_directory_keeps_previous_set(self, scripts_dir, tmp_path):
        scripts_dir("a.json", record("a"))
        registry = ScriptRegistry.load(scripts_dir.path)
        with pytest.raises(ScriptLoadError):
            registry.reload(str(tmp_path / "gone"))
        assert registry.names() == ["a"]
        assert registry.directory == scripts_dir.path

    def test_set_domain_gate_keeps_scripts(self, scripts_dir):
        scripts_dir("a.json", record("a"))
        registry = ScriptRegistry.load(scripts_dir.path)
        registry.set_domain_gate(DomainGate(blocked=("example.com",)))
        assert registry.names() == ["a"]
        assert registry.match("example.com") == ()

    def test_fingerprint_tracks_changes(self, scripts_dir):
        scripts_dir("a.json", record("a"))
        first = fingerprint(scripts_dir.path)
        scripts_dir("b.json", record("b"))
        assert fingerprint(scripts_dir.path) != first
        assert fingerprint(os.path.join(scripts_dir.path, "missing")) == ()


class TestExampleScripts:
    def test_write_example_scripts(self, tmp_path):
        directory = str(tmp_path / "fresh")
        written = write_example_scripts(directory)
        assert len(written) == len(EXAMPLE_SCRIPTS)

        registry = ScriptRegistry.load(directory)
        assert sorted(registry.names()) == ["cors-bypass", "custom-headers", "debug-console"]
        # Examples ship disabled
        assert registry.match("www.example.com") == ()

        types = {s.name: s.inject_type for s in registry.snapshot().scripts}
        assert types["cors-bypass"] is InjectType.RESPONSE_HEADER

    def test_existing_files_are_not_overwritten(self, tmp_path):
        directory = tmp_path / "fresh"
        directory.mkdir()
        custom = directory / "debug-console.json"
        custom.write_text(json.dumps(record("debug-console", enabled=True)), encoding="utf-8")

        written = write_example_scripts(str(directory))
        assert len(written) == len(EXAMPLE_SCRIPTS) - 1
        assert json.loads(custom.read_text(encoding="utf-8"))["enabled"] is True
