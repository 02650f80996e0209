"""
Network utilities for tunnel management
"""

import socket
import time
import logging
import ipaddress
import threading
from typing import Optional, Dict, Callable

import requests
import dns.exception
import dns.resolver

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36'
GEO_LOOKUP_URL = 'http://ip-api.com/json/{ip}'
DIRECT_IP_URL = 'https://api.ipify.org'


def is_valid_ip(value: Optional[str]) -> bool:
    """Validate IP address"""
    if not value:
        return False
    try:
        ipaddress.ip_address(value.strip())
        return True
    except ValueError:
        return False


def wait_for_port(host: str, port: int, timeout: float = 10.0,
                  interval: float = 0.2,
                  abort: Optional[Callable[[], bool]] = None) -> bool:
    """
    Poll until a TCP connection to host:port is accepted

    Args:
        host: Host to connect to
        port: Port to connect to
        timeout: Total time budget in seconds
        interval: Delay between attempts
        abort: Optional predicate; polling stops early when it returns True

    Returns:
        bool: True once a connection was accepted, False on timeout or abort
    """
    deadline = time.monotonic() + timeout

    while time.monotonic() < deadline:
        if abort is not None and abort():
            return False

        remaining = max(0.05, deadline - time.monotonic())
        try:
            with socket.create_connection((host, port), timeout=min(1.0, remaining)):
                logger.debug(f"Port {host}:{port} is accepting connections")
                return True
        except OSError:
            time.sleep(interval)

    return False


class NetworkTools:
    """Network helpers sharing one requests session for in-process traffic"""

    def __init__(self, timeout: float = 5):
        self.timeout = timeout
        self._lock = threading.Lock()
        self.session = requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})
        self.proxy_url: Optional[str] = None

    def set_proxy(self, proxy_url: Optional[str]):
        """Route in-process requests through proxy_url, or directly when None"""
        with self._lock:
            self.proxy_url = proxy_url
            self.session.proxies.clear()
            if proxy_url:
                self.session.proxies.update({'http': proxy_url, 'https': proxy_url})
        logger.debug(f"In-process proxy routing: {proxy_url or 'direct'}")

    def get_public_ip(self, direct: bool = True) -> Optional[str]:
        """Get the public IP address, bypassing the tunnel unless direct is False"""
        try:
            if direct:
                response = requests.get(
                    DIRECT_IP_URL,
                    timeout=self.timeout,
                    headers={'User-Agent': USER_AGENT},
                    proxies={'http': None, 'https': None},
                )
            else:
                response = self.session.get(DIRECT_IP_URL, timeout=self.timeout)
            response.raise_for_status()
            ip = response.text.strip()
            return ip if is_valid_ip(ip) else None
        except requests.RequestException as e:
            logger.debug(f"Public IP lookup failed: {e}")
            return None

    def get_geo_location(self, ip_address: str) -> Dict:
        """Get geographical location for IP address"""
        try:
            response = self.session.get(
                GEO_LOOKUP_URL.format(ip=ip_address), timeout=self.timeout
            )
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Geo lookup failed for {ip_address}: {e}")
            return {}

        if data.get('status') != 'success' or not data.get('countryCode'):
            logger.debug(f"Geo lookup returned no country for {ip_address}: {data}")
            return {}

        return {
            'country': data.get('country', ''),
            'country_code': data.get('countryCode', ''),
            'city': data.get('city', ''),
            'isp': data.get('isp', ''),
        }

    def resolve_host(self, host: str) -> Optional[str]:
        """Resolve a hostname to an IPv4 address"""
        if is_valid_ip(host):
            return host

        try:
            answers = dns.resolver.resolve(host, 'A', lifetime=self.timeout)
            for answer in answers:
                return str(answer)
        except dns.exception.DNSException as e:
            logger.debug(f"DNS lookup for {host} failed: {e}")

        # Fall back to the system resolver (hosts file, mDNS)
        try:
            return socket.gethostbyname(host)
        except OSError:
            return None

    def measure_latency(self, host: str, port: int,
                        timeout: Optional[float] = None) -> Optional[float]:
        """Resolve host and time a single TCP connect; None if unreachable"""
        ip = self.resolve_host(host)
        if ip is None:
            logger.debug(f"Ping error for {host}:{port}: cannot resolve")
            return None

        try:
            start = time.perf_counter()
            with socket.create_connection((ip, port), timeout=timeout or self.timeout):
                pass
            return round((time.perf_counter() - start) * 1000)
        except OSError as e:
            logger.debug(f"Ping error for {host}:{port}: {e}")
            return None
