# proxy_manager.py

"""
Proxy Manager: the listener side of Splice Proxy.
Binds the TCP port, enforces the max_connections ceiling, dispatches each accepted
connection to an InjectionProxyHandler, and handles reload/stop signals.
"""

import asyncio
import logging
import signal
from typing import Any, Callable, Optional

from config import ConfigError, ProxyConfig, load_config
from injection import InjectionPipeline
from proxy_common import BindError, ScriptLoadError
from proxy_core import InjectionProxyHandler, client_address
from script_registry import DomainGate, ScriptRegistry, fingerprint
from security_gate import SecurityGate
from upstream import UpstreamConnector

log = logging.getLogger("ProxyManager")

SHUTDOWN_GRACE = 5.0


class ConnectionLimiter:
    """
    Ceiling on concurrently active handlers. A connection that finds the ceiling
    reached may wait up to `timeout` seconds for a slot, then it is dropped.
    """
    def __init__(self, limit: int):
        self.limit = limit
        self.active = 0
        self._sem = asyncio.Semaphore(limit)

    async def acquire(self, timeout: float) -> bool:
        if not self._sem.locked():
            await self._sem.acquire()
        elif timeout <= 0:
            return False
        else:
            try:
                await asyncio.wait_for(self._sem.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                return False
        self.active += 1
        return True

    def release(self) -> None:
        self.active -= 1
        self._sem.release()


class ProxyManager:
    def __init__(
        self,
        config: ProxyConfig,
        registry: Optional[ScriptRegistry] = None,
        external_callback: Optional[Callable[[str, Any], None]] = None,
        config_loader: Optional[Callable[[], ProxyConfig]] = None
    ):
        self.config = config
        self.registry = registry or ScriptRegistry(
            config.scripts.directory, gate=DomainGate.from_settings(config.scripts)
        )
        self.external_callback = external_callback
        self.config_loader = config_loader or (
            (lambda: load_config(config.source)) if config.source else None
        )
        self.gate = SecurityGate(config.security)
        self.pipeline = InjectionPipeline(config.scripts)
        self.connector = self._build_connector(config)
        self.limiter = ConnectionLimiter(config.proxy.max_connections)
        self.server: Optional[asyncio.AbstractServer] = None
        self.stop_event = asyncio.Event()
        self._watch_task: Optional[asyncio.Task] = None

    @staticmethod
    def _build_connector(config: ProxyConfig) -> UpstreamConnector:
        return UpstreamConnector(
            config.proxy.upstream_timeout, config.proxy.buffer_size,
            verify_tls=config.proxy.verify_upstream_tls
        )

    def unified_callback(self, level: str, msg: Any) -> None:
        if level == "DENY":
            log.warning(f"[DENY] {msg}")
        elif level == "UPSTREAM":
            log.warning(f"[UPSTREAM] {msg}")
        elif level == "INJECT":
            log.info(f"[INJECT] {msg}")
        elif level == "REQUEST":
            log.info(f"[REQUEST] {msg}")
        elif level == "SYSTEM":
            log.info(f"[SYSTEM] {msg}")
        elif level == "ERROR":
            log.error(f"[ERROR] {msg}")
        else:
            log.debug(f"[{level}] {msg}")

        if self.external_callback:
            try:
                self.external_callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    @property
    def port(self) -> int:
        """Actual bound port (useful when configured with port 0)."""
        if self.server and self.server.sockets:
            return self.server.sockets[0].getsockname()[1]
        return self.config.proxy.port

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if not await self.limiter.acquire(self.config.proxy.admission_timeout):
            host, port = client_address(writer)
            self.unified_callback("WARN", f"Connection ceiling reached, dropping {host}:{port}")
            writer.close()
            return
        try:
            cfg = self.config
            await InjectionProxyHandler(
                reader, writer, self.registry, self.gate, self.pipeline, self.connector,
                self.unified_callback, client_timeout=cfg.proxy.client_timeout,
                buffer_size=cfg.proxy.buffer_size
            ).run()
        finally:
            self.limiter.release()

    async def start(self) -> asyncio.AbstractServer:
        """Binds the listener. Raises BindError if the address is unavailable."""
        host, port = self.config.proxy.bind_address, self.config.proxy.port
        try:
            self.server = await asyncio.start_server(self._handle_client, host, port)
        except OSError as e:
            raise BindError(f"Cannot bind {host}:{port}: {e}") from e

        self.unified_callback("SYSTEM", f"Splice Proxy listening on {host}:{self.port}")
        log.info(f"  - Scripts enabled: {self.config.scripts.enabled} ({len(self.registry)} loaded)")
        log.info(f"  - Max connections: {self.config.proxy.max_connections}")
        log.info(f"  - Upstream timeout: {self.config.proxy.upstream_timeout}s")
        log.info(f"  - Rate limit: {self.config.security.rate_limit} req/min")
        return self.server

    def reload(self) -> bool:
        """
        Re-reads the config file (if any) and the scripts directory.
        Each half is fail-safe: on error the previous state stays active.
        """
        ok = True
        if self.config_loader:
            try:
                new_cfg = self.config_loader()
            except ConfigError as e:
                log.error(f"Config reload rejected: {e}")
                new_cfg = None
                ok = False
            if new_cfg is not None:
                self.apply_config(new_cfg)

        try:
            self.registry.reload(self.config.scripts.directory)
        except ScriptLoadError as e:
            log.error(f"Script reload rejected: {e}")
            ok = False
        return ok

    def apply_config(self, new_cfg: ProxyConfig) -> None:
        """Installs new settings for connections accepted from now on."""
        old = self.config
        if (new_cfg.proxy.bind_address, new_cfg.proxy.port) != (old.proxy.bind_address, old.proxy.port):
            log.warning("bind_address/port changes require a restart; keeping the current listener")
        if new_cfg.proxy.max_connections != old.proxy.max_connections:
            log.warning("max_connections changes require a restart")
        self.gate.reconfigure(new_cfg.security)
        self.pipeline = InjectionPipeline(new_cfg.scripts)
        self.connector = self._build_connector(new_cfg)
        self.registry.set_domain_gate(DomainGate.from_settings(new_cfg.scripts))
        self.config = new_cfg
        log.info("Configuration reloaded")

    async def _watch_scripts(self, interval: float) -> None:
        last = fingerprint(self.registry.directory)
        while True:
            await asyncio.sleep(interval)
            current = fingerprint(self.registry.directory)
            if current == last:
                continue
            last = current
            try:
                self.registry.reload()
            except ScriptLoadError as e:
                log.error(f"Script reload rejected: {e}")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGHUP, self.reload)
            loop.add_signal_handler(signal.SIGTERM, self.stop)
            loop.add_signal_handler(signal.SIGINT, self.stop)
        except (NotImplementedError, AttributeError, RuntimeError):
            log.debug("Signal handlers unavailable on this platform")

    async def run(self, install_signals: bool = True) -> None:
        log.info("=== Starting Proxy Manager ===")
        if self.server is None:
            await self.start()
        if install_signals:
            self._install_signal_handlers()
        if self.config.scripts.watch_interval > 0:
            self._watch_task = asyncio.create_task(
                self._watch_scripts(self.config.scripts.watch_interval)
            )

        try:
            await self.stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            if self._watch_task:
                self._watch_task.cancel()
            if self.server:
                self.server.close()
                try:
                    await asyncio.wait_for(self.server.wait_closed(), timeout=SHUTDOWN_GRACE)
                except asyncio.TimeoutError:
                    log.warning("Shutdown grace period elapsed with connections still open")
            self.unified_callback("SYSTEM", "Proxy stopped")

    def stop(self) -> None:
        self.stop_event.set()
