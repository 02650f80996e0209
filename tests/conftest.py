import threading

import pytest

from tunnel_manager.core.config_manager import ConfigManager
from tunnel_manager.core.errors import ProxyStartupError, VerificationFailed
from tunnel_manager.core.server_store import ServerStore
from tunnel_manager.core.supervisor import ConnectionSupervisor
from tunnel_manager.core.system_proxy import ProxyApplyResult


def vless_url(host, port=443, name=None):
    url = f"vless://11111111-2222-3333-4444-555555555555@{host}:{port}?security=tls&type=tcp"
    if name:
        url += f"#{name}"
    return url


class FakeHandle:
    def __init__(self, address, on_exit):
        self.address = address
        self.on_exit = on_exit
        self.running = True

    @property
    def is_running(self):
        return self.running

    def crash(self, code=1):
        self.running = False
        self.on_exit(self, code)


class FakeProcessManager:
    """Records starts/stops; addresses in fail_addresses never become ready"""

    def __init__(self):
        self.fail_addresses = set()
        self.started = []
        self.stopped = []
        self.active = 0
        self.max_active = 0
        self.ready_gate = None
        self._lock = threading.Lock()

    def start(self, config, on_exit=None):
        address = config['outbounds'][0]['settings']['vnext'][0]['address']
        handle = FakeHandle(address, on_exit)
        with self._lock:
            self.started.append(address)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        return handle

    def wait_until_ready(self, handle, host, port, timeout=10.0, interval=0.2):
        if self.ready_gate is not None:
            self.ready_gate.wait(5)
        if handle.address in self.fail_addresses:
            raise ProxyStartupError(f"{handle.address} did not start")

    def stop(self, handle=None):
        if handle is not None and handle.running:
            handle.running = False
        if handle is not None:
            with self._lock:
                self.stopped.append(handle.address)
                self.active -= 1


class FakeConfigurator:
    def __init__(self):
        self.calls = []
        self.active = False

    def apply(self, enable):
        self.calls.append(enable)
        self.active = enable
        return ProxyApplyResult(enabled=enable)


class FakeVerifier:
    def __init__(self, address='203.0.113.10'):
        self.address = address
        self.fail = False

    def verify(self):
        if self.fail:
            raise VerificationFailed()
        return self.address


class FakeMonitor:
    def __init__(self):
        self.starts = []
        self.stops = 0
        self.running = False
        self.listener = None
        self.on_address_change = None

    def start(self, server_id, address, listener, on_address_change=None):
        self.starts.append((server_id, address))
        self.listener = listener
        self.on_address_change = on_address_change
        self.running = True

    def stop(self, timeout=5.0):
        self.stops += 1
        self.running = False


class FakeNetworkTools:
    def __init__(self):
        self.geo = {'country': 'Netherlands', 'country_code': 'NL', 'city': '', 'isp': ''}

    def get_geo_location(self, ip_address):
        return dict(self.geo)

    def get_public_ip(self, direct=True):
        return '198.51.100.7'

    def set_proxy(self, proxy_url):
        pass


@pytest.fixture
def config(tmp_path):
    return ConfigManager(tmp_path / 'config')


@pytest.fixture
def store(config):
    return ServerStore(config.servers_file)


@pytest.fixture
def fakes():
    class Fakes:
        process = FakeProcessManager()
        configurator = FakeConfigurator()
        verifier = FakeVerifier()
        monitor = FakeMonitor()
        network = FakeNetworkTools()
        latencies = {}

    return Fakes


@pytest.fixture
def supervisor(config, store, fakes):
    return ConnectionSupervisor(
        config=config,
        store=store,
        process_manager=fakes.process,
        configurator=fakes.configurator,
        verifier=fakes.verifier,
        network_tools=fakes.network,
        monitor=fakes.monitor,
        prober=lambda server: fakes.latencies.get(server.address),
    )


@pytest.fixture
def events(supervisor):
    recorded = []
    for name in supervisor.EVENTS:
        supervisor.register_callback(
            name, lambda *args, _name=name: recorded.append((_name, args))
        )
    return recorded


@pytest.fixture
def vless():
    return vless_url
