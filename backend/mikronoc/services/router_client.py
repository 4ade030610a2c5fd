"""
RouterOS API client
Opens one short-lived authenticated session per call and decodes the
attribute dictionaries returned by the device into typed snapshots.
"""
from __future__ import annotations

import logging
import re
import socket
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import routeros_api
from routeros_api.exceptions import (
    RouterOsApiCommunicationError,
    RouterOsApiConnectionError,
    RouterOsApiError,
    RouterOsApiParsingError,
)

from mikronoc.errors import (
    RouterAuthError,
    RouterClientError,
    RouterConnectionError,
    RouterProtocolError,
)

logger = logging.getLogger(__name__)

AUTH_FAILURE_MARKERS = (
    'invalid user name or password',
    'cannot log in',
    'not logged in',
    'login failure',
)
TRUE_VALUES = ('true', 'yes', '1', 'on')
UPTIME_UNITS = {'w': 7 * 86400, 'd': 86400, 'h': 3600, 'm': 60, 's': 1}
_UPTIME_PART = re.compile(r'(\d+)([wdhms])')


# ==================== DECODING ====================

def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in TRUE_VALUES


def parse_int(value: Any) -> Optional[int]:
    """Parse a RouterOS numeric attribute, tolerating `%` suffixes and blanks."""
    if value is None:
        return None
    text = str(value).strip().rstrip('%').strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except ValueError:
            return None


def parse_uptime(value: Any) -> Optional[int]:
    """Convert `1w2d3h4m5s` (or legacy `3d04:05:06`) uptime strings to seconds."""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    if text.isdigit():
        return int(text)

    total = 0
    clock = re.search(r'(\d+):(\d{2}):(\d{2})$', text)
    if clock:
        hours, minutes, seconds = (int(part) for part in clock.groups())
        total += hours * 3600 + minutes * 60 + seconds
        text = text[: clock.start()]
    for amount, unit in _UPTIME_PART.findall(text):
        total += int(amount) * UPTIME_UNITS[unit]
    return total


@dataclass
class RouterTarget:
    """Connection parameters detached from the ORM so workers never touch the session."""

    router_id: int
    tenant_id: Optional[int]
    name: str
    host: str
    port: int
    username: str
    password: str
    use_tls: bool = False

    @classmethod
    def from_router(cls, router) -> 'RouterTarget':
        return cls(
            router_id=router.id,
            tenant_id=router.tenant_id,
            name=router.name,
            host=router.host,
            port=int(router.port or (8729 if router.use_tls else 8728)),
            username=router.username,
            password=router.password,
            use_tls=bool(router.use_tls),
        )


@dataclass
class SystemResource:
    identity: Optional[str] = None
    ros_version: Optional[str] = None
    board_name: Optional[str] = None
    architecture: Optional[str] = None
    cpu_load: Optional[int] = None
    total_memory_bytes: Optional[int] = None
    free_memory_bytes: Optional[int] = None
    total_hdd_bytes: Optional[int] = None
    free_hdd_bytes: Optional[int] = None
    uptime_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InterfaceInfo:
    name: str
    type: Optional[str] = None
    running: bool = False
    disabled: bool = False
    mtu: Optional[int] = None
    mac_address: Optional[str] = None
    rx_byte: Optional[int] = None
    tx_byte: Optional[int] = None
    link_downs: Optional[int] = None
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InterfaceLiveCounter:
    name: str
    running: bool
    disabled: bool
    rx_byte: int = 0
    tx_byte: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RouterProbe:
    """Result of a connect + resource query used by connection tests and the poller."""

    resource: SystemResource
    latency_ms: int
    interfaces: List[InterfaceInfo] = field(default_factory=list)


def _first_row(rows: Any, path: str) -> Dict[str, Any]:
    if rows is None:
        return {}
    if not isinstance(rows, (list, tuple)):
        raise RouterProtocolError(f'unexpected reply type for {path}: {type(rows).__name__}')
    if not rows:
        return {}
    row = rows[0]
    if not isinstance(row, dict):
        raise RouterProtocolError(f'unexpected row type for {path}: {type(row).__name__}')
    return row


def decode_system_resource(resource_row: Dict[str, Any], identity_row: Optional[Dict[str, Any]] = None) -> SystemResource:
    identity_row = identity_row or {}
    return SystemResource(
        identity=identity_row.get('name') or None,
        ros_version=resource_row.get('version') or None,
        board_name=resource_row.get('board-name') or None,
        architecture=resource_row.get('architecture-name') or None,
        cpu_load=parse_int(resource_row.get('cpu-load')),
        total_memory_bytes=parse_int(resource_row.get('total-memory')),
        free_memory_bytes=parse_int(resource_row.get('free-memory')),
        # absent on boards without storage
        total_hdd_bytes=parse_int(resource_row.get('total-hdd-space')),
        free_hdd_bytes=parse_int(resource_row.get('free-hdd-space')),
        uptime_seconds=parse_uptime(resource_row.get('uptime')),
    )


def decode_interface(row: Dict[str, Any]) -> Optional[InterfaceInfo]:
    name = str(row.get('name') or '').strip()
    if not name:
        return None
    return InterfaceInfo(
        name=name,
        type=row.get('type') or None,
        running=parse_bool(row.get('running')),
        disabled=parse_bool(row.get('disabled')),
        mtu=parse_int(row.get('actual-mtu') or row.get('mtu')),
        mac_address=row.get('mac-address') or None,
        rx_byte=parse_int(row.get('rx-byte')),
        tx_byte=parse_int(row.get('tx-byte')),
        link_downs=parse_int(row.get('link-downs')),
        comment=row.get('comment') or None,
    )


def _is_auth_failure(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in AUTH_FAILURE_MARKERS)


# ==================== SESSION ====================

class RouterSession:
    """One authenticated API connection. Use as a context manager."""

    def __init__(self, target: RouterTarget, pool, api):
        self.target = target
        self._pool = pool
        self._api = api

    def __enter__(self) -> 'RouterSession':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _print(self, path: str) -> List[Dict[str, Any]]:
        if self._api is None:
            raise RouterConnectionError('session is closed', host=self.target.host)
        try:
            rows = self._api.get_resource(path).get()
        except RouterOsApiConnectionError as exc:
            raise RouterConnectionError(str(exc) or 'connection lost', host=self.target.host) from exc
        except (socket.timeout, OSError) as exc:
            raise RouterConnectionError(str(exc) or 'socket error', host=self.target.host) from exc
        except RouterOsApiParsingError as exc:
            raise RouterProtocolError(f'{path}: {exc}', host=self.target.host) from exc
        except RouterOsApiCommunicationError as exc:
            if _is_auth_failure(exc):
                raise RouterAuthError(str(exc), host=self.target.host) from exc
            raise RouterProtocolError(f'{path}: {exc}', host=self.target.host) from exc
        except RouterOsApiError as exc:
            raise RouterProtocolError(f'{path}: {exc}', host=self.target.host) from exc
        if rows is None:
            return []
        if not isinstance(rows, (list, tuple)):
            raise RouterProtocolError(
                f'unexpected reply type for {path}: {type(rows).__name__}', host=self.target.host
            )
        return list(rows)

    def query_system_resource(self) -> SystemResource:
        resource_row = _first_row(self._print('/system/resource'), '/system/resource')
        if not resource_row:
            raise RouterProtocolError('empty /system/resource reply', host=self.target.host)
        identity_row = _first_row(self._print('/system/identity'), '/system/identity')
        return decode_system_resource(resource_row, identity_row)

    def list_interfaces(self) -> List[InterfaceInfo]:
        interfaces = []
        for row in self._print('/interface'):
            if not isinstance(row, dict):
                raise RouterProtocolError('unexpected /interface row', host=self.target.host)
            decoded = decode_interface(row)
            if decoded is not None:
                interfaces.append(decoded)
        interfaces.sort(key=lambda item: item.name.lower())
        return interfaces

    def get_interface_counters(self, names: Iterable[str]) -> List[InterfaceLiveCounter]:
        """Counters for the requested interfaces; unknown names are left out."""
        wanted = {str(name).strip() for name in names if str(name).strip()}
        if not wanted:
            return []
        counters = []
        for iface in self.list_interfaces():
            if iface.name not in wanted:
                continue
            counters.append(
                InterfaceLiveCounter(
                    name=iface.name,
                    running=iface.running,
                    disabled=iface.disabled,
                    rx_byte=iface.rx_byte or 0,
                    tx_byte=iface.tx_byte or 0,
                )
            )
        return counters

    def close(self) -> None:
        pool, self._pool, self._api = self._pool, None, None
        if pool is None:
            return
        try:
            pool.disconnect()
        except (RouterOsApiError, OSError) as exc:
            logger.debug('Error disconnecting from %s: %s', self.target.host, exc)


# ==================== CLIENT ====================

class RouterClient:
    """Factory for RouterOS API sessions. Holds configuration only, no connections."""

    def __init__(
        self,
        timeout: float = 5.0,
        plaintext_login: bool = True,
        tls_verify: bool = False,
        pool_factory: Optional[Callable[..., Any]] = None,
    ):
        self.timeout = float(timeout)
        self.plaintext_login = plaintext_login
        self.tls_verify = tls_verify
        self.pool_factory = pool_factory or routeros_api.RouterOsApiPool

    @classmethod
    def from_config(cls, config) -> 'RouterClient':
        return cls(
            timeout=config.get('MIKROTIK_CONNECT_TIMEOUT_SECS', 5),
            plaintext_login=config.get('MIKROTIK_PLAINTEXT_LOGIN', True),
            tls_verify=config.get('MIKROTIK_TLS_VERIFY', False),
        )

    def _build_pool(self, target: RouterTarget):
        kwargs = {
            'host': target.host,
            'username': target.username,
            'password': target.password,
            'port': target.port,
            'plaintext_login': self.plaintext_login,
            'use_ssl': target.use_tls,
        }
        if target.use_tls:
            kwargs['ssl_verify'] = self.tls_verify
            kwargs['ssl_verify_hostname'] = self.tls_verify
        pool = self.pool_factory(**kwargs)
        pool.socket_timeout = self.timeout
        return pool

    def connect(self, target: RouterTarget) -> RouterSession:
        pool = self._build_pool(target)
        try:
            api = pool.get_api()
        except RouterOsApiCommunicationError as exc:
            if _is_auth_failure(exc):
                raise RouterAuthError('authentication failed: invalid user name or password', host=target.host) from exc
            raise RouterProtocolError(f'login failed: {exc}', host=target.host) from exc
        except RouterOsApiConnectionError as exc:
            raise RouterConnectionError(str(exc) or 'connection failed', host=target.host) from exc
        except (socket.timeout, OSError) as exc:
            raise RouterConnectionError(str(exc) or 'connection failed', host=target.host) from exc
        except RouterOsApiError as exc:
            if _is_auth_failure(exc):
                raise RouterAuthError(str(exc), host=target.host) from exc
            raise RouterProtocolError(f'login failed: {exc}', host=target.host) from exc
        logger.debug('Connected to RouterOS API %s:%s', target.host, target.port)
        return RouterSession(target, pool, api)

    def probe(self, target: RouterTarget, with_interfaces: bool = False) -> RouterProbe:
        """Connect, read /system/resource and time the round trip."""
        started = time.monotonic()
        with self.connect(target) as session:
            resource = session.query_system_resource()
            latency_ms = int(round((time.monotonic() - started) * 1000))
            interfaces = session.list_interfaces() if with_interfaces else []
        return RouterProbe(resource=resource, latency_ms=latency_ms, interfaces=interfaces)

    def test_connection(self, target: RouterTarget) -> Dict[str, Any]:
        try:
            probe = self.probe(target)
        except RouterClientError as exc:
            return {'reachable': False, 'error': str(exc), 'error_kind': exc.kind}
        return {
            'reachable': True,
            'latency_ms': probe.latency_ms,
            'identity': probe.resource.identity,
            'ros_version': probe.resource.ros_version,
        }
