#Filename: config.py
"""
PROXY CONFIGURATION
Typed configuration model and loader. The file format is TOML or YAML (picked by
suffix); only the schema matters: sections `proxy`, `scripts`, `logging`, `security`.
Unknown keys are ignored; missing keys take the defaults declared below.
"""

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import tomli_w
import yaml

log = logging.getLogger("Config")

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"


class ConfigError(ValueError):
    """Raised when a config file cannot be parsed or holds invalid values."""


# Config model
@dataclass(frozen=True)
class ProxySettings:
    bind_address: str = "127.0.0.1"
    port: int = 8080
    upstream_timeout: float = 30.0      # seconds, connect and each read
    max_connections: int = 1000
    buffer_size: int = 8192             # bytes per streamed chunk
    client_timeout: float = 60.0        # seconds a client may stay idle mid-request
    admission_timeout: float = 0.5      # seconds a connection may queue at the ceiling
    verify_upstream_tls: bool = False


@dataclass(frozen=True)
class ScriptSettings:
    directory: str = "scripts"
    enabled: bool = True
    max_execution_time: int = 5000      # milliseconds per script, 0 = unbounded
    allowed_domains: Tuple[str, ...] = ("*",)
    blocked_domains: Tuple[str, ...] = ()
    watch_interval: float = 0.0         # seconds between directory polls, 0 = off


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "info"
    file: Optional[str] = None


@dataclass(frozen=True)
class SecuritySettings:
    require_auth: bool = False
    auth_token: Optional[str] = None
    rate_limit: int = 100               # requests per minute per IP, 0 = unlimited
    whitelist_ips: Tuple[str, ...] = ()
    blacklist_ips: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProxyConfig:
    proxy: ProxySettings = field(default_factory=ProxySettings)
    scripts: ScriptSettings = field(default_factory=ScriptSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    source: Optional[str] = None

    def with_overrides(
        self,
        port: Optional[int] = None,
        bind_address: Optional[str] = None,
        scripts_dir: Optional[str] = None,
        log_level: Optional[str] = None
    ) -> "ProxyConfig":
        """Returns a copy with command line overrides applied."""
        proxy = self.proxy
        if port is not None:
            proxy = replace(proxy, port=port)
        if bind_address is not None:
            proxy = replace(proxy, bind_address=bind_address)
        scripts = replace(self.scripts, directory=scripts_dir) if scripts_dir else self.scripts
        logging_cfg = replace(self.logging, level=log_level) if log_level else self.logging
        cfg = replace(self, proxy=proxy, scripts=scripts, logging=logging_cfg)
        validate_config(cfg)
        return cfg


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = raw.get(name) or {}
    if not isinstance(sec, dict):
        raise ConfigError(f"Section '{name}' must be a table/mapping")
    return sec


def _str_list(sec: Dict[str, Any], key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = sec.get(key, list(default))
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list of strings")
    return tuple(str(x).strip() for x in value if str(x).strip())


def _number(sec: Dict[str, Any], key: str, default: Any, kind: type) -> Any:
    value = sec.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be a number, got a boolean")
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from exc


def _bool(sec: Dict[str, Any], key: str, default: bool) -> bool:
    value = sec.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false, got {value!r}")
    return value


def config_from_dict(raw: Dict[str, Any], source: Optional[str] = None) -> ProxyConfig:
    """Builds a validated ProxyConfig from a decoded mapping."""
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a table/mapping")

    px_raw = _section(raw, "proxy")
    sc_raw = _section(raw, "scripts")
    lg_raw = _section(raw, "logging")
    se_raw = _section(raw, "security")
    d_px, d_sc, d_se = ProxySettings(), ScriptSettings(), SecuritySettings()

    proxy = ProxySettings(
        bind_address=str(px_raw.get("bind_address", d_px.bind_address)),
        port=_number(px_raw, "port", d_px.port, int),
        upstream_timeout=_number(px_raw, "upstream_timeout", d_px.upstream_timeout, float),
        max_connections=_number(px_raw, "max_connections", d_px.max_connections, int),
        buffer_size=_number(px_raw, "buffer_size", d_px.buffer_size, int),
        client_timeout=_number(px_raw, "client_timeout", d_px.client_timeout, float),
        admission_timeout=_number(px_raw, "admission_timeout", d_px.admission_timeout, float),
        verify_upstream_tls=_bool(px_raw, "verify_upstream_tls", d_px.verify_upstream_tls),
    )
    scripts = ScriptSettings(
        directory=str(sc_raw.get("directory", d_sc.directory)),
        enabled=_bool(sc_raw, "enabled", d_sc.enabled),
        max_execution_time=_number(sc_raw, "max_execution_time", d_sc.max_execution_time, int),
        allowed_domains=_str_list(sc_raw, "allowed_domains", d_sc.allowed_domains),
        blocked_domains=_str_list(sc_raw, "blocked_domains", d_sc.blocked_domains),
        watch_interval=_number(sc_raw, "watch_interval", d_sc.watch_interval, float),
    )
    log_file = lg_raw.get("file")
    logging_cfg = LoggingSettings(
        level=str(lg_raw.get("level", LoggingSettings.level)),
        file=str(log_file) if log_file else None,
    )
    token = se_raw.get("auth_token")
    security = SecuritySettings(
        require_auth=_bool(se_raw, "require_auth", d_se.require_auth),
        auth_token=str(token) if token else None,
        rate_limit=_number(se_raw, "rate_limit", d_se.rate_limit, int),
        whitelist_ips=_str_list(se_raw, "whitelist_ips", d_se.whitelist_ips),
        blacklist_ips=_str_list(se_raw, "blacklist_ips", d_se.blacklist_ips),
    )

    cfg = ProxyConfig(proxy=proxy, scripts=scripts, logging=logging_cfg,
                      security=security, source=source)
    validate_config(cfg)
    return cfg


def validate_config(cfg: ProxyConfig) -> None:
    """Range checks shared by the loader and CLI overrides."""
    errors: List[str] = []
    if not 0 <= cfg.proxy.port <= 65535:
        errors.append(f"proxy.port out of range: {cfg.proxy.port}")
    if cfg.proxy.max_connections < 1:
        errors.append("proxy.max_connections must be >= 1")
    if cfg.proxy.buffer_size < 1:
        errors.append("proxy.buffer_size must be >= 1")
    if cfg.proxy.upstream_timeout <= 0:
        errors.append("proxy.upstream_timeout must be > 0")
    if cfg.proxy.client_timeout <= 0:
        errors.append("proxy.client_timeout must be > 0")
    if cfg.proxy.admission_timeout < 0:
        errors.append("proxy.admission_timeout must be >= 0")
    if cfg.scripts.max_execution_time < 0:
        errors.append("scripts.max_execution_time must be >= 0")
    if cfg.scripts.watch_interval < 0:
        errors.append("scripts.watch_interval must be >= 0")
    if cfg.security.rate_limit < 0:
        errors.append("security.rate_limit must be >= 0")
    if cfg.security.require_auth and not cfg.security.auth_token:
        errors.append("security.require_auth is set but security.auth_token is empty")
    if logging.getLevelName(cfg.logging.level.upper()) not in (
        logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL
    ):
        errors.append(f"logging.level is not a valid level: {cfg.logging.level}")
    if errors:
        raise ConfigError("; ".join(errors))


def config_to_dict(cfg: ProxyConfig) -> Dict[str, Any]:
    """File representation of a config: tuples become lists, unset values are omitted."""
    out: Dict[str, Any] = {}
    for name in ("proxy", "scripts", "logging", "security"):
        out[name] = {
            k: list(v) if isinstance(v, tuple) else v
            for k, v in asdict(getattr(cfg, name)).items() if v is not None
        }
    return out


def write_default_config(path: str) -> None:
    """Writes the default config to `path`, as YAML or TOML by suffix."""
    data = config_to_dict(ProxyConfig())
    if path.endswith((".yaml", ".yml")):
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
    else:
        with open(path, "wb") as f:
            tomli_w.dump(data, f)


def load_config(path: Optional[str]) -> ProxyConfig:
    """
    Loads the config file at `path`. A missing file is created with the defaults,
    which are returned; if it cannot be written the defaults apply without a source.
    Raises ConfigError on unreadable, malformed, or invalid content.
    """
    if not path:
        return ProxyConfig(source=None)
    if not os.path.exists(path):
        try:
            write_default_config(path)
        except OSError as exc:
            log.warning(f"Config file {path} not found and could not be created ({exc}), "
                        "using defaults")
            return ProxyConfig(source=None)
        log.warning(f"Config file {path} not found, wrote defaults")
        return ProxyConfig(source=path)

    try:
        if path.endswith((".yaml", ".yml")):
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        else:
            with open(path, "rb") as f:
                raw = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc

    return config_from_dict(raw, source=path)


def configure_logging(settings: LoggingSettings) -> None:
    """Installs the root handlers. Rotation of the log file is left to the host."""
    level = getattr(logging, settings.level.upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.file:
        handlers.append(logging.FileHandler(settings.file, encoding="utf-8"))
    logging.basicConfig(
        level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT, handlers=handlers, force=True
    )
