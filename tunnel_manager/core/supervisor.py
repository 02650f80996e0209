"""
Connection supervisor: the state machine for connect, disconnect and switch
"""

import threading
import time
from dataclasses import asdict
from importlib.metadata import version, PackageNotFoundError
from typing import Optional, Dict, List, Callable

from .config_manager import ConfigManager
from .errors import TunnelManagerError, NoActiveServer, VerificationFailed
from .failover import FailoverController
from .health_monitor import NetworkHealthMonitor
from .server_store import ServerStore, flag_emoji
from .system_proxy import SystemProxyConfigurator
from .types import (
    ConnectionState, ActiveConnectionRecord, FailoverSession, Server, ServerSet
)
from .verifier import ConnectionVerifier
from ..providers.xray_config import generate_xray_config
from ..providers.xray_process import ProxyProcessManager, TunnelProcess
from ..utils.network_tools import NetworkTools
from ..utils.system_check import get_system_info
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)


def _package_version() -> str:
    try:
        return version('tunnel-manager')
    except PackageNotFoundError:
        return 'unknown'


class ConnectionSupervisor:
    """Sole owner of connection state; serializes connect, disconnect and switch"""

    EVENTS = (
        'state_change',
        'connected',
        'disconnected',
        'connection_error',
        'servers_updated',
        'auto_failover',
    )

    def __init__(self, config: Optional[ConfigManager] = None,
                 store: Optional[ServerStore] = None,
                 process_manager: Optional[ProxyProcessManager] = None,
                 configurator: Optional[SystemProxyConfigurator] = None,
                 verifier: Optional[ConnectionVerifier] = None,
                 network_tools: Optional[NetworkTools] = None,
                 monitor: Optional[NetworkHealthMonitor] = None,
                 prober: Optional[Callable[[Server], Optional[float]]] = None):
        self.config = config or ConfigManager()
        self.network_tools = network_tools or NetworkTools()
        self.store = store or ServerStore(self.config.servers_file)

        self.listen = self.config.get('tunnel.listen', '127.0.0.1')
        self.socks_port = int(self.config.get('tunnel.socks_port', 10808))
        self.http_port = int(self.config.get('tunnel.http_port', 10809))

        self.process_manager = process_manager or ProxyProcessManager(
            binary_path=self.config.get('tunnel.binary_path'),
            config_file=self.config.get('tunnel.config_file'),
        )
        self.configurator = configurator or SystemProxyConfigurator(
            host=self.listen,
            socks_port=self.socks_port,
            http_port=self.http_port,
            network_tools=self.network_tools,
            bypass=self.config.get('system_proxy.bypass'),
            manage_host=self.config.get('system_proxy.enabled', True),
        )
        self.verifier = verifier or ConnectionVerifier(
            host=self.listen,
            socks_port=self.socks_port,
            http_port=self.http_port,
            endpoints=self.config.get('verification.endpoints'),
            probe_timeout=float(self.config.get('verification.probe_timeout', 2)),
            max_attempts=int(self.config.get('verification.max_attempts', 6)),
        )
        self.monitor = monitor or NetworkHealthMonitor(
            self.verifier,
            check_interval=float(self.config.get('monitoring.check_interval', 10)),
            failure_threshold=int(self.config.get('monitoring.failure_threshold', 1)),
        )

        self.session = FailoverSession()
        self.failover = FailoverController(
            self, self.store, self.session, prober or self._measure_latency
        )

        self._state = ConnectionState.DISCONNECTED
        self._record: Optional[ActiveConnectionRecord] = None
        self._operation_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._callbacks: Dict[str, List[Callable]] = {event: [] for event in self.EVENTS}

    # ------------------------------------------------------------------ #
    # Observers
    # ------------------------------------------------------------------ #
    def register_callback(self, event: str, callback: Callable):
        """Register event callback"""
        if event not in self._callbacks:
            raise ValueError(f"Unknown event: {event}")
        self._callbacks[event].append(callback)

    def notify_callbacks(self, event: str, *args, **kwargs):
        """Notify registered callbacks"""
        for callback in list(self._callbacks.get(event, [])):
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Callback error ({event}): {e}")

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def active_record(self) -> Optional[ActiveConnectionRecord]:
        return self._record

    @property
    def auto_failover_enabled(self) -> bool:
        return bool(self.config.get('failover.enabled', True))

    def get_servers(self) -> ServerSet:
        return self.store.list()

    def get_status(self) -> Dict:
        """Get current connection status"""
        state = self._state
        record = self._record
        active = self.store.list().active_server

        status = {
            'state': state.name,
            'connected': state == ConnectionState.CONNECTED,
            'server': asdict(active) if active else None,
            'address': record.address if record else None,
            'auto_failover': self.auto_failover_enabled,
            'failover_in_progress': self.failover.in_progress,
            'uptime': 0,
        }

        if record is not None:
            uptime = int(record.uptime)
            status['uptime'] = uptime
            status['uptime_hms'] = {
                'hours': f"{uptime // 3600:02d}",
                'minutes': f"{(uptime % 3600) // 60:02d}",
                'seconds': f"{uptime % 60:02d}",
            }

        return status

    def get_diagnostics(self) -> Dict:
        """Platform, tunnel binary and address information"""
        info = get_system_info(self.config.get('tunnel.binary_path'))
        diagnostics = {
            'app': {
                'version': _package_version(),
                'platform': info['platform'],
                'arch': info['arch'],
            },
            'tunnel': {
                'path': info['tunnel_binary'],
                'version': info['tunnel_version'],
                'proxy_tools_present': info['proxy_tools_present'],
                'missing_commands': info['missing_commands'],
            },
            'network': {
                'original_ip': self.network_tools.get_public_ip(direct=True) or 'Unknown',
                'connected': self.is_connected,
            },
        }

        if self.is_connected:
            try:
                diagnostics['network']['proxy_ip'] = self.verifier.verify()
            except VerificationFailed:
                diagnostics['network']['proxy_ip'] = 'Unknown'

        return diagnostics

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #
    def connect(self, server_id: Optional[str] = None, failover: bool = False) -> bool:
        """
        Connect to a server

        Args:
            server_id: Server to make active first; the current active server if None
            failover: True when driven by the failover controller

        Returns:
            bool: True if a new connection was established, False if already
            connecting or connected

        Raises:
            NoActiveServer, ServerNotFound, or the error that aborted the
            connect sequence after rollback
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.info("Already connected or connecting")
            return False

        with self._operation_lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                logger.info("Already connected or connecting")
                return False
            self._connect_locked(server_id, failover)
            return True

    def disconnect(self, silent: bool = False) -> bool:
        """
        Disconnect; idempotent

        Args:
            silent: Suppress the 'disconnected' event (used by failover)

        Returns:
            bool: True if a connection was torn down
        """
        if not silent:
            self.failover.cancel()

        if self._state == ConnectionState.DISCONNECTING:
            return False

        with self._operation_lock:
            if self._state == ConnectionState.DISCONNECTED:
                return False
            self._disconnect_locked(silent)
            return True

    def set_active_server(self, server_id: str) -> Server:
        """
        Make server_id active, reconnecting if currently connected

        Raises:
            ServerNotFound: server_id is unknown
            TunnelManagerError: reconnecting to the new server failed (the
                previous server is restored on a best-effort basis)
        """
        server = self.store.get(server_id)
        logger.info(f"Setting active server to: {server.name}")

        # A deliberate teardown must not look like a failure
        self.monitor.stop()

        with self._operation_lock:
            was_connected = self._state == ConnectionState.CONNECTED
            previous_id = self.store.get_active_id()

            if was_connected:
                logger.info("Disconnecting from current server before switching...")
                self._change_state(ConnectionState.SWITCHING)
                self._teardown()

            self.store.set_active(server_id)
            self._notify_servers_updated()

            if not was_connected:
                return server

            try:
                logger.info("Reconnecting to new server...")
                self._connect_locked(None, failover=False,
                                     transitional=ConnectionState.SWITCHING)
                return server
            except TunnelManagerError:
                if previous_id and previous_id != server_id:
                    self._restore_previous(previous_id)
                raise

    def add_server(self, profile_url: str) -> Server:
        """Add a server from a share URL; the active server is preserved"""
        server = self.store.add(profile_url)
        self._notify_servers_updated()
        return server

    def delete_server(self, server_id: str):
        """Delete a server; the active one is refused"""
        self.store.delete(server_id)
        self._notify_servers_updated()

    def set_auto_failover(self, enabled: bool):
        """Persist the auto-failover toggle and start or stop monitoring"""
        logger.info(f"Setting auto-failover to: {enabled}")
        self.config.set('failover.enabled', bool(enabled))

        record = self._record
        if not enabled:
            self.monitor.stop()
        elif self.is_connected and record is not None:
            self.monitor.start(record.server_id, record.address,
                               self.failover, self._on_address_change)

    def emergency_disconnect(self):
        """Best-effort teardown without waiting for in-flight operations"""
        logger.critical("Emergency disconnect triggered")
        self.failover.cancel()
        self._teardown()
        self._change_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------ #
    # Internals (callers hold _operation_lock)
    # ------------------------------------------------------------------ #
    def _active_server(self) -> Server:
        active = self.store.list().active_server
        if active is None:
            logger.info("No active server selected")
            raise NoActiveServer()
        return active

    def _connect_locked(self, server_id: Optional[str], failover: bool,
                        transitional: ConnectionState = ConnectionState.CONNECTING):
        if server_id is not None:
            self.store.set_active(server_id)

        server = self._active_server()

        # Stop any lingering monitor
        self.monitor.stop()

        self._change_state(transitional)
        logger.info(f"Connecting to {server.name} ({server.address}:{server.port})"
                    f"{' [failover]' if failover else ''}")

        handle: Optional[TunnelProcess] = None
        proxy_touched = False

        try:
            config = generate_xray_config(
                server, socks_port=self.socks_port, http_port=self.http_port,
                listen=self.listen
            )
            handle = self.process_manager.start(config, on_exit=self._on_process_exit)
            self.process_manager.wait_until_ready(
                handle, self.listen, self.socks_port,
                timeout=float(self.config.get('tunnel.startup_timeout', 10)),
                interval=float(self.config.get('tunnel.readiness_interval', 0.2)),
            )

            logger.info("Configuring system proxy...")
            proxy_touched = True
            apply_result = self.configurator.apply(True)
            if apply_result.failures:
                logger.warning(f"System proxy partially applied on "
                               f"{apply_result.configured_interfaces}")

            logger.info("Verifying connection by detecting proxy IP...")
            address = self.verifier.verify()

        except Exception as e:
            logger.error(f"Error connecting to {server.name}: {e}")
            self._rollback(handle, proxy_touched)
            self._change_state(ConnectionState.DISCONNECTED, str(e))
            if not failover:
                self.notify_callbacks('connection_error', f"Failed to connect: {e}")
            if isinstance(e, TunnelManagerError):
                raise
            raise TunnelManagerError(f"Failed to connect: {e}") from e

        self._record = ActiveConnectionRecord(
            server_id=server.id,
            address=address,
            connected_since=time.time(),
            process=handle,
        )

        if not failover:
            self.session.clear()
            logger.info("[FAILOVER] Session failed server list has been reset on manual connect.")

        self._change_state(ConnectionState.CONNECTED)
        logger.info(f"Connected. Detected IP: {address}")

        servers = self._update_server_geo(server.id, address)
        self.notify_callbacks('connected', address, servers)

        if self.auto_failover_enabled:
            self.monitor.start(server.id, address, self.failover, self._on_address_change)
        else:
            logger.info("Auto-failover is disabled. Network monitor will not be started.")

    def _disconnect_locked(self, silent: bool):
        logger.info("Disconnecting...")
        self._change_state(ConnectionState.DISCONNECTING)
        self._teardown()
        self._change_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected successfully")

        if not silent:
            self.notify_callbacks('disconnected')

    def _teardown(self):
        """Stop monitor, process and system proxy; never raises"""
        self.monitor.stop()

        record = self._record
        self._record = None

        if record is not None and record.process is not None:
            try:
                self.process_manager.stop(record.process)
            except Exception as e:
                logger.error(f"Failed to stop tunnel process: {e}")

        try:
            self.configurator.apply(False)
        except Exception as e:
            logger.error(f"Failed to disable system proxy: {e}")

    def _rollback(self, handle: Optional[TunnelProcess], proxy_touched: bool):
        if handle is not None:
            try:
                self.process_manager.stop(handle)
            except Exception as e:
                logger.error(f"Rollback: failed to stop tunnel process: {e}")

        if proxy_touched:
            try:
                self.configurator.apply(False)
            except Exception as e:
                logger.error(f"Rollback: failed to disable system proxy: {e}")

    def _restore_previous(self, previous_id: str):
        logger.warning("Switch failed, attempting to reconnect to the previous server...")
        try:
            self.store.set_active(previous_id)
            self._connect_locked(None, failover=False)
        except TunnelManagerError as e:
            logger.error(f"Could not restore previous server: {e}")
        finally:
            self._notify_servers_updated()

    def _update_server_geo(self, server_id: str, address: str) -> ServerSet:
        geo = self.network_tools.get_geo_location(address)
        if geo.get('country_code'):
            code = geo['country_code']
            name = geo.get('country') or code
            try:
                self.store.update_geo(server_id, code, name, flag_emoji(code))
                logger.info(f"Updated server {server_id} with country: {name} ({code})")
            except (TunnelManagerError, OSError) as e:
                logger.warning(f"Failed to update server country info: {e}")
        return self.store.list()

    def _notify_servers_updated(self):
        servers = self.store.list()
        self.notify_callbacks('servers_updated', servers.servers, servers.active_server_id)

    def _change_state(self, new_state: ConnectionState, message: str = ""):
        """Change state with notification"""
        with self._state_lock:
            old_state = self._state
            self._state = new_state

        if old_state != new_state:
            logger.debug(f"State change: {old_state.name} -> {new_state.name} {message}")
            self.notify_callbacks('state_change', old_state, new_state, message)

    # ------------------------------------------------------------------ #
    # Background hooks
    # ------------------------------------------------------------------ #
    def _on_process_exit(self, handle: TunnelProcess, code: Optional[int]):
        # Runs on the process reader thread, which teardown would join
        threading.Thread(
            target=self._handle_process_exit,
            args=(handle, code),
            daemon=True,
            name="Tunnel-Exit"
        ).start()

    def _handle_process_exit(self, handle: TunnelProcess, code: Optional[int]):
        with self._operation_lock:
            record = self._record
            if (self._state != ConnectionState.CONNECTED
                    or record is None or record.process is not handle):
                return

            logger.warning(f"Tunnel process exited unexpectedly (code {code}), disconnecting")
            self._disconnect_locked(silent=False)

        self.notify_callbacks(
            'connection_error', f"Tunnel process exited unexpectedly (code {code})"
        )

    def _on_address_change(self, address: str):
        record = self._record
        if record is not None:
            record.address = address

    def _measure_latency(self, server: Server) -> Optional[float]:
        return self.network_tools.measure_latency(
            server.address, server.port,
            timeout=float(self.config.get('failover.ping_timeout', 2))
        )
