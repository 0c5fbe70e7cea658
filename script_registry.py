#Filename: script_registry.py
"""
SCRIPT REGISTRY
Loads, validates and indexes injection scripts from a directory of JSON files.

Readers take an immutable RegistrySnapshot (scripts + global domain gate) once per
request. A reload builds a complete new snapshot off to the side and installs it with
a single reference assignment, so a request never observes a half-loaded set.
"""

import fnmatch
import functools
import json
import logging
import os
import re
import threading
from typing import Iterable, List, Optional, Tuple

from proxy_common import ScriptLoadError
from structures import InjectionScript, InjectType

log = logging.getLogger("ScriptRegistry")

SCRIPT_SUFFIX = ".json"


def normalize_host(host: str) -> str:
    """Lowercases a host and strips port, IPv6 brackets and a trailing dot."""
    host = host.strip().lower()
    if host.startswith('['):
        end = host.find(']')
        host = host[1:end] if end != -1 else host[1:]
    elif host.count(':') == 1:
        host = host.split(':', 1)[0]
    return host.rstrip('.')


@functools.lru_cache(maxsize=1024)
def _compile_glob(pattern: str) -> "re.Pattern[str]":
    # Only `*` is a wildcard: `?` and `[` are matched literally.
    literal = "".join(f"[{c}]" if c in "?[" else c for c in pattern)
    return re.compile(fnmatch.translate(literal))


def domain_matches(host: str, patterns: Iterable[str]) -> bool:
    """Glob match (`*` matches any run of characters), case-insensitive, host only."""
    host = normalize_host(host)
    for pattern in patterns:
        pattern = pattern.strip().lower()
        if pattern == "*" or _compile_glob(pattern).match(host):
            return True
    return False


class DomainGate:
    """
    Global allow/block gate evaluated before any per-script match.
    Blocked patterns veto everything; a non-wildcard allow list restricts eligibility.
    """
    __slots__ = ('allowed', 'blocked')

    def __init__(self, allowed: Iterable[str] = ("*",), blocked: Iterable[str] = ()) -> None:
        self.allowed: Tuple[str, ...] = tuple(p.strip().lower() for p in allowed)
        self.blocked: Tuple[str, ...] = tuple(p.strip().lower() for p in blocked)

    @classmethod
    def from_settings(cls, settings: object) -> "DomainGate":
        return cls(getattr(settings, "allowed_domains", ("*",)),
                   getattr(settings, "blocked_domains", ()))

    def permits(self, host: str) -> bool:
        if self.blocked and domain_matches(host, self.blocked):
            return False
        if self.allowed == ("*",):
            return True
        return domain_matches(host, self.allowed)

    def __repr__(self) -> str:
        return f"<DomainGate allowed={list(self.allowed)} blocked={list(self.blocked)}>"


class RegistrySnapshot:
    """An immutable, fully-loaded view of the script set."""
    __slots__ = ('scripts', 'gate', 'generation')

    def __init__(
        self,
        scripts: Tuple[InjectionScript, ...],
        gate: DomainGate,
        generation: int = 0
    ) -> None:
        self.scripts = scripts
        self.gate = gate
        self.generation = generation

    def match(self, domain: str) -> Tuple[InjectionScript, ...]:
        """Enabled, domain-matched scripts in load order."""
        if not self.gate.permits(domain):
            return ()
        return tuple(
            s for s in self.scripts
            if s.enabled and domain_matches(domain, s.target_domains)
        )

    def names(self) -> List[str]:
        return [s.name for s in self.scripts]

    def __len__(self) -> int:
        return len(self.scripts)

    def __repr__(self) -> str:
        return f"<RegistrySnapshot gen={self.generation} scripts={len(self.scripts)}>"


def load_script_file(path: str) -> InjectionScript:
    """Parses a single script file. Raises ScriptLoadError on any problem."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            record = json.load(f)
    except OSError as exc:
        raise ScriptLoadError(f"Cannot read {path}: {exc}") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ScriptLoadError(f"Invalid JSON in {path}: {exc}") from exc
    return InjectionScript.from_dict(record)


def load_directory(directory: str) -> Tuple[InjectionScript, ...]:
    """
    Loads every *.json file in sorted name order. Bad files are skipped with a warning.
    Raises ScriptLoadError only when the directory itself cannot be listed.
    """
    try:
        entries = sorted(
            e for e in os.listdir(directory)
            if e.endswith(SCRIPT_SUFFIX) and os.path.isfile(os.path.join(directory, e))
        )
    except OSError as exc:
        raise ScriptLoadError(f"Cannot list scripts directory {directory}: {exc}") from exc

    scripts: List[InjectionScript] = []
    seen = set()
    for entry in entries:
        path = os.path.join(directory, entry)
        try:
            script = load_script_file(path)
        except ScriptLoadError as e:
            log.warning(f"Skipping script file {entry}: {e}")
            continue
        if script.name in seen:
            log.warning(f"Skipping script file {entry}: duplicate name '{script.name}'")
            continue
        seen.add(script.name)
        scripts.append(script)
        log.debug(f"Loaded script: {script}")
    return tuple(scripts)


def fingerprint(directory: str) -> Tuple[Tuple[str, int, int], ...]:
    """(name, mtime_ns, size) of every script file; changes whenever a reload is due."""
    try:
        with os.scandir(directory) as it:
            stats = []
            for entry in it:
                if entry.name.endswith(SCRIPT_SUFFIX) and entry.is_file():
                    st = entry.stat()
                    stats.append((entry.name, st.st_mtime_ns, st.st_size))
    except OSError:
        return ()
    return tuple(sorted(stats))


class ScriptRegistry:
    """
    Process-wide registry. Multiple readers, single writer.
    Readers never lock: they read one reference. Writers serialize on a lock.
    """
    __slots__ = ('directory', '_snapshot', '_write_lock')

    def __init__(
        self,
        directory: str,
        scripts: Iterable[InjectionScript] = (),
        gate: Optional[DomainGate] = None
    ) -> None:
        self.directory = directory
        self._snapshot = RegistrySnapshot(tuple(scripts), gate or DomainGate())
        self._write_lock = threading.Lock()

    @classmethod
    def load(cls, directory: str, gate: Optional[DomainGate] = None) -> "ScriptRegistry":
        """Initial load. An empty directory is accepted; an unreadable one is not."""
        scripts = load_directory(directory)
        log.info(f"Loaded {len(scripts)} injection scripts from {directory}")
        return cls(directory, scripts, gate)

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def match(self, domain: str) -> Tuple[InjectionScript, ...]:
        return self._snapshot.match(domain)

    def names(self) -> List[str]:
        return self._snapshot.names()

    def reload(self, directory: Optional[str] = None) -> RegistrySnapshot:
        """
        Rebuilds the registry from disk and swaps it in atomically.
        Fail-safe: on a directory error or zero valid scripts the old snapshot stays
        active and ScriptLoadError is raised.
        """
        directory = directory or self.directory
        with self._write_lock:
            scripts = load_directory(directory)
            if not scripts:
                raise ScriptLoadError(
                    f"Reload of {directory} produced no valid scripts; keeping previous set"
                )
            old = self._snapshot
            self._snapshot = RegistrySnapshot(scripts, old.gate, old.generation + 1)
            self.directory = directory
        log.info(f"Reloaded {len(scripts)} injection scripts (generation {old.generation + 1})")
        return self._snapshot

    def set_domain_gate(self, gate: DomainGate) -> None:
        with self._write_lock:
            old = self._snapshot
            self._snapshot = RegistrySnapshot(old.scripts, gate, old.generation + 1)

    def __len__(self) -> int:
        return len(self._snapshot)


EXAMPLE_SCRIPTS: Tuple[InjectionScript, ...] = (
    InjectionScript(
        name="custom-headers",
        description="Inject custom headers for debugging",
        version="1.0.0",
        author="Splice Proxy",
        target_domains=("*.example.com",),
        inject_type=InjectType.HEADER,
        headers=(("X-Debug", "true"), ("X-Proxy", "splice-proxy")),
        enabled=False,
    ),
    InjectionScript(
        name="debug-console",
        description="Inject debug console for web debugging",
        version="1.0.0",
        author="Splice Proxy",
        target_domains=("*",),
        inject_type=InjectType.JAVASCRIPT,
        script_content=(
            "console.log('Splice Proxy Debug Console Loaded');\n"
            "window.spliceProxy = {\n"
            "    debug: function(msg) { console.log('[SPLICE-PROXY]', msg); },\n"
            "    getInfo: function() {\n"
            "        return { userAgent: navigator.userAgent, url: window.location.href,\n"
            "                 timestamp: new Date().toISOString() };\n"
            "    }\n"
            "};\n"
        ),
        enabled=False,
    ),
    InjectionScript(
        name="cors-bypass",
        description="Add CORS headers to responses",
        version="1.0.0",
        author="Splice Proxy",
        target_domains=("*",),
        inject_type=InjectType.RESPONSE_HEADER,
        headers=(
            ("Access-Control-Allow-Origin", "*"),
            ("Access-Control-Allow-Methods", "GET, POST, PUT, DELETE, OPTIONS"),
            ("Access-Control-Allow-Headers", "Content-Type, Authorization"),
        ),
        enabled=False,
    ),
)


def write_example_scripts(directory: str) -> List[str]:
    """Creates the directory and any missing example script files. Returns paths written."""
    os.makedirs(directory, exist_ok=True)
    written = []
    for script in EXAMPLE_SCRIPTS:
        path = os.path.join(directory, f"{script.name}{SCRIPT_SUFFIX}")
        if os.path.exists(path):
            continue
        with open(path, "w", encoding="utf-8") as f:
            json.dump(script.to_dict(), f, indent=2)
        written.append(path)
        log.info(f"Created example script: {script.name}")
    return written
