"""
Host-level proxy routing via networksetup / gsettings / the registry
"""

import platform
import subprocess
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Callable, Sequence
import logging

from .types import InterfaceResult
from .errors import ProxyConfigurationError, ProxyConfigurationPartialFailure
from ..utils.network_tools import NetworkTools

logger = logging.getLogger(__name__)

Runner = Callable[[Sequence[str]], str]

PRIMARY_SERVICE_MARKERS = ('Wi-Fi', 'Ethernet')
WINDOWS_INTERNET_SETTINGS = r'HKCU\Software\Microsoft\Windows\CurrentVersion\Internet Settings'


def run_command(cmd: Sequence[str]) -> str:
    """Run a command, raising CalledProcessError on failure"""
    result = subprocess.run(
        list(cmd),
        capture_output=True,
        text=True,
        check=True,
        timeout=10
    )
    return result.stdout


def prioritize_services(services: List[str]) -> List[str]:
    """
    Order network services Wi-Fi first, then Ethernet, then the rest

    Returns the Wi-Fi/Ethernet services, or the first two services when
    neither exists.
    """
    def rank(service: str) -> int:
        for index, marker in enumerate(PRIMARY_SERVICE_MARKERS):
            if marker in service:
                return index
        return len(PRIMARY_SERVICE_MARKERS)

    ordered = sorted(services, key=rank)
    primary = [s for s in ordered if rank(s) < len(PRIMARY_SERVICE_MARKERS)]
    return primary or ordered[:2]


@dataclass
class ProxyApplyResult:
    """Per-interface outcome of enabling or disabling the system proxy"""
    enabled: bool
    results: List[InterfaceResult] = field(default_factory=list)

    @property
    def interfaces(self) -> List[str]:
        seen: List[str] = []
        for item in self.results:
            if item.interface not in seen:
                seen.append(item.interface)
        return seen

    @property
    def configured_interfaces(self) -> List[str]:
        """Interfaces whose SOCKS proxy was applied"""
        return [
            name for name in self.interfaces
            if any(r.success for r in self.results
                   if r.interface == name and r.proxy_type == 'socks')
        ]

    @property
    def failures(self) -> List[InterfaceResult]:
        return [r for r in self.results if not r.success]

    @property
    def partial_failure(self) -> Optional[ProxyConfigurationPartialFailure]:
        if not self.failures:
            return None
        return ProxyConfigurationPartialFailure(self.failures)

    @property
    def success(self) -> bool:
        # Disabling is best-effort: attempted counts as done
        if not self.enabled:
            return True
        return bool(self.configured_interfaces)


class SystemProxyConfigurator:
    """Apply or remove SOCKS/HTTP/HTTPS proxy routing on the host"""

    def __init__(self, host: str = '127.0.0.1', socks_port: int = 10808,
                 http_port: int = 10809,
                 network_tools: Optional[NetworkTools] = None,
                 bypass: Optional[List[str]] = None,
                 manage_host: bool = True,
                 runner: Optional[Runner] = None,
                 system: Optional[str] = None):
        self.host = host
        self.socks_port = socks_port
        self.http_port = http_port
        self.network_tools = network_tools
        self.bypass = bypass or ['localhost', '127.0.0.1']
        self.manage_host = manage_host
        self.runner = runner or run_command
        self.system = (system or platform.system()).lower()
        self._lock = threading.RLock()

    @property
    def socks_url(self) -> str:
        return f"socks5h://{self.host}:{self.socks_port}"

    def apply(self, enable: bool) -> ProxyApplyResult:
        """
        Enable or disable the system proxy

        Args:
            enable: True to route through the tunnel, False to restore direct

        Returns:
            ProxyApplyResult with one entry per interface and proxy type

        Raises:
            ProxyConfigurationError: enabling configured no interface at all
        """
        with self._lock:
            logger.info(f"{'Enabling' if enable else 'Disabling'} proxy settings...")

            if not self.manage_host:
                result = ProxyApplyResult(enabled=enable)
            elif self.system == 'darwin':
                result = self._apply_macos(enable)
            elif self.system == 'linux':
                result = self._apply_linux(enable)
            elif self.system == 'windows':
                result = self._apply_windows(enable)
            else:
                if enable:
                    raise ProxyConfigurationError(f"Platform {self.system} not supported")
                result = ProxyApplyResult(enabled=False)

            if result.failures:
                logger.warning(str(result.partial_failure))

            if enable and self.manage_host and not result.success:
                raise ProxyConfigurationError(
                    "System proxy could not be enabled on any interface"
                )

            if self.network_tools is not None:
                self.network_tools.set_proxy(self.socks_url if enable else None)

            return result

    def _attempt(self, result: ProxyApplyResult, interface: str,
                 proxy_type: str, commands: List[List[str]]):
        """Run one isolated configuration step and record its outcome"""
        try:
            for cmd in commands:
                self.runner(cmd)
            result.results.append(InterfaceResult(interface, proxy_type, True))
            logger.debug(f"{proxy_type.upper()} proxy {'enabled' if result.enabled else 'disabled'} "
                         f"for {interface}")
        except (subprocess.SubprocessError, OSError) as e:
            detail = getattr(e, 'stderr', None) or str(e)
            logger.error(f"Error configuring {proxy_type.upper()} for {interface}: {detail}")
            result.results.append(InterfaceResult(interface, proxy_type, False, str(detail).strip()))

    def list_macos_services(self) -> List[str]:
        output = self.runner(['networksetup', '-listallnetworkservices'])
        # Header line and disabled services contain '*'
        return [line.strip() for line in output.split('\n')
                if line.strip() and '*' not in line]

    def _apply_macos(self, enable: bool) -> ProxyApplyResult:
        result = ProxyApplyResult(enabled=enable)

        try:
            services = prioritize_services(self.list_macos_services())
        except (subprocess.SubprocessError, OSError) as e:
            logger.error(f"Failed to list network services: {e}")
            return result

        logger.info(f"Configuring services: {services}")
        self._toggle_chrome_secure_dns(enable)

        host = self.host
        for service in services:
            if enable:
                self._attempt(result, service, 'socks', [
                    ['networksetup', '-setsocksfirewallproxy', service, host, str(self.socks_port)],
                    ['networksetup', '-setsocksfirewallproxystate', service, 'on'],
                ])
                self._attempt(result, service, 'http', [
                    ['networksetup', '-setwebproxy', service, host, str(self.http_port)],
                    ['networksetup', '-setwebproxystate', service, 'on'],
                ])
                self._attempt(result, service, 'https', [
                    ['networksetup', '-setsecurewebproxy', service, host, str(self.http_port)],
                    ['networksetup', '-setsecurewebproxystate', service, 'on'],
                ])
            else:
                self._attempt(result, service, 'socks', [
                    ['networksetup', '-setsocksfirewallproxystate', service, 'off'],
                ])
                self._attempt(result, service, 'http', [
                    ['networksetup', '-setwebproxystate', service, 'off'],
                ])
                self._attempt(result, service, 'https', [
                    ['networksetup', '-setsecurewebproxystate', service, 'off'],
                ])

        return result

    def _toggle_chrome_secure_dns(self, enable: bool):
        """Chrome's DNS-over-HTTPS bypasses the proxy; turn it off while connected"""
        try:
            if enable:
                self.runner(['defaults', 'write', 'com.google.Chrome',
                             'DnsOverHttpsMode', '-string', 'off'])
                logger.info("Chrome Secure DNS disabled.")
            else:
                self.runner(['defaults', 'delete', 'com.google.Chrome', 'DnsOverHttpsMode'])
                logger.info("Chrome Secure DNS restored.")
        except (subprocess.SubprocessError, OSError) as e:
            # Key is absent when it was never set
            logger.debug(f"Chrome Secure DNS policy unchanged: {e}")

    def _apply_linux(self, enable: bool) -> ProxyApplyResult:
        result = ProxyApplyResult(enabled=enable)
        interface = 'gnome'
        schema = 'org.gnome.system.proxy'

        if not enable:
            self._attempt(result, interface, 'socks', [
                ['gsettings', 'set', schema, 'mode', 'none'],
            ])
            return result

        ignore_hosts = '[' + ', '.join(f"'{h}'" for h in self.bypass) + ']'
        self._attempt(result, interface, 'socks', [
            ['gsettings', 'set', f'{schema}.socks', 'host', self.host],
            ['gsettings', 'set', f'{schema}.socks', 'port', str(self.socks_port)],
            ['gsettings', 'set', schema, 'ignore-hosts', ignore_hosts],
            ['gsettings', 'set', schema, 'mode', 'manual'],
        ])
        self._attempt(result, interface, 'http', [
            ['gsettings', 'set', f'{schema}.http', 'host', self.host],
            ['gsettings', 'set', f'{schema}.http', 'port', str(self.http_port)],
        ])
        self._attempt(result, interface, 'https', [
            ['gsettings', 'set', f'{schema}.https', 'host', self.host],
            ['gsettings', 'set', f'{schema}.https', 'port', str(self.http_port)],
        ])
        return result

    def _apply_windows(self, enable: bool) -> ProxyApplyResult:
        result = ProxyApplyResult(enabled=enable)
        interface = 'wininet'

        if not enable:
            self._attempt(result, interface, 'socks', [
                ['reg', 'add', WINDOWS_INTERNET_SETTINGS, '/v', 'ProxyEnable',
                 '/t', 'REG_DWORD', '/d', '0', '/f'],
            ])
            return result

        proxy_server = (
            f"http={self.host}:{self.http_port};"
            f"https={self.host}:{self.http_port};"
            f"socks={self.host}:{self.socks_port}"
        )
        self._attempt(result, interface, 'socks', [
            ['reg', 'add', WINDOWS_INTERNET_SETTINGS, '/v', 'ProxyServer',
             '/t', 'REG_SZ', '/d', proxy_server, '/f'],
            ['reg', 'add', WINDOWS_INTERNET_SETTINGS, '/v', 'ProxyOverride',
             '/t', 'REG_SZ', '/d', ';'.join(self.bypass + ['<local>']), '/f'],
            ['reg', 'add', WINDOWS_INTERNET_SETTINGS, '/v', 'ProxyEnable',
             '/t', 'REG_DWORD', '/d', '1', '/f'],
        ])
        return result
