# splice_proxy.py
"""
Splice Proxy -- HTTP Forward Proxy with Script-Driven Traffic Injection.

ARCHITECTURE:
- LISTENER: 'proxy_manager.py' (connection ceiling, reload/stop signals).
- CORE: 'proxy_core.py' (per-connection state machine).
- RULES: 'script_registry.py' (hot-reloadable JSON scripts) + 'injection.py'.
- GATE: 'security_gate.py' (IP lists, token auth, rate limiting).
- UPSTREAM: 'upstream.py' (httpx, one connection per request).
"""

import sys
import asyncio
import argparse
import logging
import os
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

# uvloop is optional: it does not build on Windows.
try:
    import uvloop
except ImportError:
    uvloop = None

from config import ConfigError, ProxyConfig, configure_logging, load_config
from proxy_common import BindError, ScriptLoadError
from proxy_manager import ProxyManager
from script_registry import DomainGate, ScriptRegistry, write_example_scripts

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "config.toml"

BANNER = r"""
{Fore.CYAN}
   ____       ___
  / __/__ __ / (_)______
 _\ \/ _ \/ / / / __/ -_)
/___/ .__/_/_/_/\__/\__/
   /_/  {Fore.YELLOW}[ SPLICE PROXY ]{Style.RESET_ALL}
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="splice-proxy",
        description="HTTP proxy that injects scripts into matching traffic"
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG,
                        help=f"Configuration file, TOML or YAML (default: {DEFAULT_CONFIG})")
    parser.add_argument("-p", "--port", type=int, default=None, help="Proxy listen port")
    parser.add_argument("-b", "--bind", default=None, help="Proxy bind address")
    parser.add_argument("-s", "--scripts-dir", default=None,
                        help="Directory containing injection scripts")
    parser.add_argument("--log-level", default=None,
                        choices=["debug", "info", "warning", "error"], help="Log level")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("start", help="Start the proxy server (default)")
    sub.add_parser("list-scripts", help="List available injection scripts")
    return parser


def resolve_config(args: argparse.Namespace) -> ProxyConfig:
    return load_config(args.config).with_overrides(
        port=args.port, bind_address=args.bind,
        scripts_dir=args.scripts_dir, log_level=args.log_level
    )


def open_registry(config: ProxyConfig) -> ScriptRegistry:
    """Loads the scripts directory, seeding it with disabled examples on first run."""
    directory = config.scripts.directory
    if not os.path.isdir(directory):
        write_example_scripts(directory)
    return ScriptRegistry.load(directory, gate=DomainGate.from_settings(config.scripts))


def list_scripts(registry: ScriptRegistry) -> None:
    snapshot = registry.snapshot()
    print(f"{Fore.YELLOW}Available injection scripts ({len(snapshot)}):{Style.RESET_ALL}")
    for script in snapshot.scripts:
        color = Fore.GREEN if script.enabled else Fore.RED
        domains = ", ".join(script.target_domains) or "-"
        print(f"  {color}{script.name:<24}{Style.RESET_ALL} "
              f"{script.inject_type.value:<15} {domains}")
        if script.description:
            print(f"      {script.description}")


async def serve(config: ProxyConfig, registry: ScriptRegistry, args: argparse.Namespace) -> None:
    manager = ProxyManager(
        config, registry,
        config_loader=(lambda: resolve_config(args)) if config.source else None
    )
    await manager.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    colorama_init(autoreset=True)

    try:
        config = resolve_config(args)
    except ConfigError as e:
        print(f"{Fore.RED}[CRITICAL] {e}{Style.RESET_ALL}", file=sys.stderr)
        return 1
    configure_logging(config.logging)

    try:
        registry = open_registry(config)
    except (ScriptLoadError, OSError) as e:
        logger.error(f"Failed to initialize script registry: {e}")
        return 1

    if args.command == "list-scripts":
        list_scripts(registry)
        return 0

    print(BANNER.format(Fore=Fore, Style=Style))
    try:
        if uvloop is not None:
            uvloop.run(serve(config, registry, args))
        else:
            asyncio.run(serve(config, registry, args))
    except BindError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
