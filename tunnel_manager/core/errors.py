"""
Exceptions raised by the tunnel manager
"""


class TunnelManagerError(Exception):
    """Base class for tunnel manager errors"""
    pass


class NoActiveServer(TunnelManagerError):
    """Connect requested without a designated active server"""

    def __init__(self, message: str = "No active server selected"):
        super().__init__(message)


class ServerNotFound(TunnelManagerError):
    """Server id is not present in the store"""

    def __init__(self, server_id: str):
        self.server_id = server_id
        super().__init__(f"Server not found: {server_id}")


class ActiveServerDeleteForbidden(TunnelManagerError):
    """The active server cannot be deleted"""

    def __init__(self, server_id: str):
        self.server_id = server_id
        super().__init__(f"Cannot delete the active server: {server_id}")


class ProfileParseError(TunnelManagerError):
    """Server profile URL could not be parsed"""
    pass


class ProxyBinaryMissing(TunnelManagerError):
    """Tunnel binary could not be located"""
    pass


class ProxyStartupError(TunnelManagerError):
    """Tunnel process failed before becoming ready"""
    pass


class ProxyStartupTimeout(ProxyStartupError):
    """Tunnel process did not open its port in time"""
    pass


class ProxyConfigurationError(TunnelManagerError):
    """System proxy could not be configured on any interface"""
    pass


class ProxyConfigurationPartialFailure(ProxyConfigurationError):
    """Some interfaces or proxy types failed; recorded, not raised"""

    def __init__(self, failures):
        self.failures = list(failures)
        details = ', '.join(
            f"{item.interface}/{item.proxy_type}" for item in self.failures
        )
        super().__init__(f"Proxy configuration failed for: {details}")


class VerificationFailed(TunnelManagerError):
    """No probe could observe a public address through the tunnel"""

    def __init__(self, message: str = "Could not verify connection. IP detection failed"):
        super().__init__(message)


class FailoverExhausted(TunnelManagerError):
    """Every failover candidate failed or was unreachable"""

    def __init__(self, message: str, attempted=None):
        self.attempted = list(attempted or [])
        super().__init__(message)
