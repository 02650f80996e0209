"""
Type definitions for tunnel manager
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, List, Dict, Any, Iterable, Set


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    DISCONNECTING = auto()
    SWITCHING = auto()


@dataclass
class Server:
    """Tunnel server profile"""
    id: str
    name: str
    address: str
    port: int
    protocol: str  # vless
    credentials: Dict[str, Any] = field(default_factory=dict)
    country_code: Optional[str] = None
    country_name: Optional[str] = None
    flag: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict) -> 'Server':
        return cls(
            id=config['id'],
            name=config.get('name') or f"Server {config['address']}:{config['port']}",
            address=config['address'],
            port=int(config['port']),
            protocol=config.get('protocol', 'vless'),
            credentials=dict(config.get('credentials') or {}),
            country_code=config.get('countryCode'),
            country_name=config.get('countryName'),
            flag=config.get('flag'),
        )

    def to_config(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'port': self.port,
            'protocol': self.protocol,
            'credentials': dict(self.credentials),
            'countryCode': self.country_code,
            'countryName': self.country_name,
            'flag': self.flag,
        }


@dataclass
class ServerSet:
    """Servers in display order plus the active pointer"""
    servers: List[Server] = field(default_factory=list)
    active_server_id: Optional[str] = None

    def find(self, server_id: Optional[str]) -> Optional[Server]:
        for server in self.servers:
            if server.id == server_id:
                return server
        return None

    @property
    def active_server(self) -> Optional[Server]:
        return self.find(self.active_server_id)

    def ids(self) -> List[str]:
        return [server.id for server in self.servers]


@dataclass
class HealthSample:
    """Latency measurement for a candidate server"""
    server: Server
    latency_ms: Optional[float] = None  # None means unreachable
    measured_at: float = field(default_factory=time.time)

    @property
    def reachable(self) -> bool:
        return self.latency_ms is not None


@dataclass
class ActiveConnectionRecord:
    """State of the live connection, owned by the supervisor"""
    server_id: str
    address: str
    connected_since: float
    process: Any = None

    @property
    def uptime(self) -> float:
        return max(0.0, time.time() - self.connected_since)


@dataclass
class InterfaceResult:
    """Outcome of configuring one proxy type on one interface"""
    interface: str
    proxy_type: str  # socks/http/https
    success: bool
    error: Optional[str] = None


@dataclass
class FailoverOutcome:
    """Result of one failover sequence"""
    success: bool
    server: Optional[Server] = None
    attempted: List[str] = field(default_factory=list)
    reason: str = ""


class FailoverSession:
    """Server ids that failed since the last manual connect"""

    def __init__(self, failed: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self._failed: Set[str] = set(failed or [])

    def add(self, server_id: str):
        with self._lock:
            self._failed.add(server_id)

    def clear(self):
        with self._lock:
            self._failed.clear()

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._failed)

    def __contains__(self, server_id: object) -> bool:
        with self._lock:
            return server_id in self._failed

    def __len__(self) -> int:
        with self._lock:
            return len(self._failed)
