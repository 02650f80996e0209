"""
Verify that traffic flows through the tunnel by observing the public address
"""

import concurrent.futures
from dataclasses import dataclass
from typing import Optional, List, Sequence
import logging

import requests

from .errors import VerificationFailed
from ..utils.network_tools import is_valid_ip, USER_AGENT

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = ('https://api.ipify.org', 'https://ifconfig.me/ip')


@dataclass(frozen=True)
class ProbeMethod:
    """One way of reaching an endpoint through the local proxy"""
    name: str
    proxy_url: str
    timeout: float


class ConnectionVerifier:
    """
    Resolve the apparent public address through the tunnel

    Parallel probes with a short timeout are raced first. If none succeeds,
    each endpoint is retried sequentially with progressively more permissive
    proxy methods until the attempt budget runs out.
    """

    def __init__(self, host: str = '127.0.0.1', socks_port: int = 10808,
                 http_port: int = 10809,
                 endpoints: Optional[Sequence[str]] = None,
                 probe_timeout: float = 2.0,
                 max_attempts: int = 6):
        self.host = host
        self.socks_port = socks_port
        self.http_port = http_port
        self.endpoints: List[str] = list(endpoints or DEFAULT_ENDPOINTS)
        self.probe_timeout = probe_timeout
        self.max_attempts = max_attempts

    @property
    def fast_method(self) -> ProbeMethod:
        return ProbeMethod('socks5h', f"socks5h://{self.host}:{self.socks_port}",
                           self.probe_timeout)

    def fallback_methods(self) -> List[ProbeMethod]:
        return [
            ProbeMethod('socks5h', f"socks5h://{self.host}:{self.socks_port}", 3.0),
            ProbeMethod('socks5', f"socks5://{self.host}:{self.socks_port}", 10.0),
            ProbeMethod('http', f"http://{self.host}:{self.http_port}", 10.0),
        ]

    def probe(self, endpoint: str, method: ProbeMethod) -> Optional[str]:
        """Fetch endpoint through the proxy; return the IP or None"""
        try:
            response = requests.get(
                endpoint,
                proxies={'http': method.proxy_url, 'https': method.proxy_url},
                timeout=method.timeout,
                headers={'User-Agent': USER_AGENT},
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.debug(f"IP detection via {endpoint} ({method.name}) failed: {e}")
            return None

        ip = response.text.strip()
        if not is_valid_ip(ip):
            logger.debug(f"IP detection via {endpoint} returned non-IP payload")
            return None
        return ip

    def _race(self) -> Optional[str]:
        method = self.fast_method
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, len(self.endpoints)),
            thread_name_prefix="ip-probe"
        )
        try:
            futures = {
                executor.submit(self.probe, endpoint, method): endpoint
                for endpoint in self.endpoints
            }
            for future in concurrent.futures.as_completed(futures):
                ip = future.result()
                if ip:
                    logger.info(f"IP detected via {futures[future]}: {ip}")
                    return ip
        finally:
            # Losers finish in the background; their results are dropped
            executor.shutdown(wait=False)
        return None

    def _sequential(self) -> Optional[str]:
        attempts = 0
        for endpoint in self.endpoints:
            for method in self.fallback_methods():
                if attempts >= self.max_attempts:
                    return None
                attempts += 1
                logger.debug(f"Fallback: detecting IP using {endpoint} via {method.name}")
                ip = self.probe(endpoint, method)
                if ip:
                    logger.info(f"Successfully detected tunnel IP via {method.name}: {ip}")
                    return ip
        return None

    def verify(self) -> str:
        """
        Return the public address seen through the tunnel

        Raises:
            VerificationFailed: no probe produced an address
        """
        ip = self._race()
        if ip:
            return ip

        logger.info("All parallel IP detection requests failed, retrying sequentially")
        ip = self._sequential()
        if ip:
            return ip

        logger.error("All IP detection services failed")
        raise VerificationFailed()
