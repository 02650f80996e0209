"""
Persisted server list with a single active pointer
"""

import json
import threading
import uuid
from pathlib import Path
from typing import Optional, Dict
from urllib.parse import urlsplit, parse_qsl, unquote
import logging

from .types import Server, ServerSet
from .errors import ServerNotFound, ActiveServerDeleteForbidden, ProfileParseError

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ('vless',)


def parse_profile_url(url: str) -> Dict:
    """
    Parse a vless:// share URL

    Args:
        url: vless://<uuid>@<host>:<port>?<params>#<name>

    Returns:
        Dict with name, address, port, protocol and credentials
    """
    if not url or '://' not in url:
        raise ProfileParseError(f"Not a profile URL: {url!r}")

    parts = urlsplit(url.strip())
    if parts.scheme.lower() not in SUPPORTED_SCHEMES:
        raise ProfileParseError(f"Unsupported protocol: {parts.scheme}")

    try:
        port = parts.port
    except ValueError:
        raise ProfileParseError(f"Invalid port in profile URL: {url!r}")

    user_id = unquote(parts.username or '')
    if not user_id or not parts.hostname or port is None:
        raise ProfileParseError(f"Incomplete profile URL: {url!r}")

    params = dict(parse_qsl(parts.query, keep_blank_values=False))
    name = unquote(parts.fragment) if parts.fragment else f"Server {parts.hostname}:{port}"

    return {
        'name': name,
        'address': parts.hostname,
        'port': port,
        'protocol': parts.scheme.lower(),
        'credentials': {'id': user_id, **params},
    }


def flag_emoji(country_code: Optional[str]) -> str:
    """Regional indicator flag for a two-letter country code"""
    if not country_code or len(country_code) != 2 or not country_code.isalpha():
        return '\U0001F310'
    return ''.join(chr(0x1F1E6 + ord(c) - ord('A')) for c in country_code.upper())


class ServerStore:
    """JSON-backed server store"""

    def __init__(self, servers_file: Path):
        self.servers_file = Path(servers_file)
        self._lock = threading.RLock()
        self._data = self._load()

    def _load(self) -> ServerSet:
        if not self.servers_file.exists():
            return ServerSet()

        try:
            with open(self.servers_file, 'r') as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load servers: {e}")
            return ServerSet()

        servers = []
        for entry in raw.get('servers', []):
            try:
                servers.append(Server.from_config(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed server entry: {e}")

        data = ServerSet(servers=servers, active_server_id=raw.get('activeServer'))
        if data.active_server_id and data.find(data.active_server_id) is None:
            logger.warning(
                f"Active server {data.active_server_id} no longer exists, clearing"
            )
            data.active_server_id = None
        return data

    def _save(self):
        self.servers_file.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            'servers': [server.to_config() for server in self._data.servers],
            'activeServer': self._data.active_server_id,
        }
        tmp_file = self.servers_file.with_suffix('.tmp')
        with open(tmp_file, 'w') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        tmp_file.replace(self.servers_file)

    def list(self) -> ServerSet:
        """Snapshot of the servers and active pointer"""
        with self._lock:
            return ServerSet(
                servers=list(self._data.servers),
                active_server_id=self._data.active_server_id,
            )

    def get(self, server_id: str) -> Server:
        with self._lock:
            server = self._data.find(server_id)
            if server is None:
                raise ServerNotFound(server_id)
            return server

    def get_active_id(self) -> Optional[str]:
        with self._lock:
            return self._data.active_server_id

    def add(self, profile_url: str) -> Server:
        """Parse and persist a new server; the first one becomes active"""
        profile = parse_profile_url(profile_url)
        server = Server(id=str(uuid.uuid4()), **profile)

        with self._lock:
            self._data.servers.append(server)
            if self._data.active_server_id is None:
                self._data.active_server_id = server.id
            self._save()

        logger.info(f"Server added: {server.name} ({server.address}:{server.port})")
        return server

    def delete(self, server_id: str):
        with self._lock:
            server = self._data.find(server_id)
            if server is None:
                raise ServerNotFound(server_id)
            if server_id == self._data.active_server_id:
                raise ActiveServerDeleteForbidden(server_id)

            self._data.servers.remove(server)
            self._save()

        logger.info(f"Server deleted: {server.name}")

    def set_active(self, server_id: str):
        with self._lock:
            if self._data.find(server_id) is None:
                raise ServerNotFound(server_id)
            self._data.active_server_id = server_id
            self._save()

        logger.debug(f"Active server set to {server_id}")

    def update_geo(self, server_id: str, country_code: str,
                   country_name: str, flag: Optional[str] = None) -> Server:
        """Replace the geo fields of a server"""
        with self._lock:
            server = self._data.find(server_id)
            if server is None:
                raise ServerNotFound(server_id)

            server.country_code = country_code
            server.country_name = country_name
            server.flag = flag or flag_emoji(country_code)
            self._save()
            return server
