#Filename: security_gate.py
"""
SECURITY GATE
IP allow/deny lists, token auth and per-IP fixed-window rate limiting.
Evaluation order: blacklist -> whitelist -> auth -> rate limit.
"""

import base64
import binascii
import enum
import hmac
import ipaddress
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Union

from config import SecuritySettings

log = logging.getLogger("SecurityGate")

RATE_WINDOW_SECONDS = 60.0
SWEEP_THRESHOLD = 4096

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class DenyReason(enum.Enum):
    BLACKLISTED = "blacklisted"
    NOT_WHITELISTED = "not-whitelisted"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate-limited"

    @property
    def status(self) -> int:
        return 429 if self is DenyReason.RATE_LIMITED else 403


class Decision:
    """Allow, or Deny(reason)."""
    __slots__ = ('allowed', 'reason')

    def __init__(self, allowed: bool, reason: Optional[DenyReason] = None) -> None:
        self.allowed = allowed
        self.reason = reason

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Decision":
        return cls(False, reason)

    @property
    def status(self) -> int:
        return 200 if self.allowed or self.reason is None else self.reason.status

    def __bool__(self) -> bool:
        return self.allowed

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Decision):
            return NotImplemented
        return self.allowed == other.allowed and self.reason == other.reason

    def __repr__(self) -> str:
        return "Allow" if self.allowed else f"Deny({self.reason.value if self.reason else '?'})"


class RateLimiter:
    """
    Fixed-window counter per IP: [count, window_start].
    Stale entries are replaced when checked, and swept inline once the table grows
    past a threshold, so memory stays bounded without a reaper task.
    """
    __slots__ = ('limit', 'window', '_clock', '_lock', '_windows', '_sweep_at')

    def __init__(
        self,
        limit: int,
        window: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, List[float]] = {}
        self._sweep_at = SWEEP_THRESHOLD

    def check(self, key: str) -> bool:
        """Counts one request for `key`. Returns False once the window's limit is spent."""
        if self.limit <= 0:
            return True
        now = self._clock()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now - entry[1] >= self.window:
                if entry is None and len(self._windows) >= self._sweep_at:
                    self._sweep(now)
                self._windows[key] = [1, now]
                return True
            if entry[0] >= self.limit:
                return False
            entry[0] += 1
            return True

    def _sweep(self, now: float) -> None:
        # Caller holds the lock.
        stale = [k for k, (_, start) in self._windows.items() if now - start >= self.window]
        for k in stale:
            del self._windows[k]
        self._sweep_at = max(SWEEP_THRESHOLD, 2 * len(self._windows))

    def __len__(self) -> int:
        return len(self._windows)


def _parse_networks(entries: Iterable[str]) -> List[IPNetwork]:
    nets = []
    for entry in entries:
        try:
            nets.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            log.error(f"Invalid IP/CIDR entry ignored: {entry!r}")
    return nets


def _ip_in(ip: str, nets: List[IPNetwork]) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    return any(addr in n for n in nets)


def extract_token(header_value: Optional[str]) -> Optional[str]:
    """Pulls the credential out of a Proxy-Authorization value (Bearer, Basic or bare)."""
    if not header_value:
        return None
    value = header_value.strip()
    scheme, _, rest = value.partition(' ')
    scheme = scheme.lower()
    if scheme == 'bearer':
        return rest.strip() or None
    if scheme == 'basic':
        try:
            decoded = base64.b64decode(rest.strip(), validate=True).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError):
            return None
        _, sep, password = decoded.partition(':')
        return password if sep else decoded
    return value


class SecurityGate:
    """
    authorize(client_ip, token) -> Decision.
    The RateLimiter is injected so tests can drive a deterministic clock.
    """
    __slots__ = ('_policy', '_blacklist', '_whitelist', 'rate_limiter')

    def __init__(
        self,
        policy: SecuritySettings,
        rate_limiter: Optional[RateLimiter] = None
    ) -> None:
        self.rate_limiter = rate_limiter or RateLimiter(policy.rate_limit)
        self._apply(policy)

    def _apply(self, policy: SecuritySettings) -> None:
        self._blacklist = _parse_networks(policy.blacklist_ips)
        self._whitelist = _parse_networks(policy.whitelist_ips)
        self._policy = policy
        self.rate_limiter.limit = policy.rate_limit

    def reconfigure(self, policy: SecuritySettings) -> None:
        """Swaps the policy; per-IP rate state survives."""
        self._apply(policy)

    @property
    def policy(self) -> SecuritySettings:
        return self._policy

    def authorize(self, client_ip: str, auth_token: Optional[str] = None) -> Decision:
        policy = self._policy
        if self._blacklist and _ip_in(client_ip, self._blacklist):
            return Decision.deny(DenyReason.BLACKLISTED)
        if policy.whitelist_ips and not _ip_in(client_ip, self._whitelist):
            return Decision.deny(DenyReason.NOT_WHITELISTED)
        if policy.require_auth:
            expected = policy.auth_token or ""
            if not auth_token or not expected or not hmac.compare_digest(
                auth_token.encode('utf-8'), expected.encode('utf-8')
            ):
                return Decision.deny(DenyReason.UNAUTHORIZED)
        if not self.rate_limiter.check(client_ip):
            return Decision.deny(DenyReason.RATE_LIMITED)
        return Decision.allow()
