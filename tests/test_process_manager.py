import json
import socket
import sys
import threading
from pathlib import Path

import pytest

from tunnel_manager.core.errors import ProxyBinaryMissing, ProxyStartupError
from tunnel_manager.providers.xray_process import ProxyProcessManager
from tunnel_manager.utils.network_tools import wait_for_port


@pytest.fixture
def listening_port():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(('127.0.0.1', 0))
    server.listen(5)
    yield server.getsockname()[1]
    server.close()


@pytest.fixture
def free_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def python_binary(monkeypatch):
    monkeypatch.setattr(
        'tunnel_manager.providers.xray_process.find_tunnel_binary',
        lambda configured=None: Path(sys.executable)
    )


class SleepingProcessManager(ProxyProcessManager):
    def build_command(self, binary, config_file):
        return [str(binary), '-c', 'import time; time.sleep(30)']


class GarbledOutputProcessManager(ProxyProcessManager):
    def build_command(self, binary, config_file):
        script = ("import sys; sys.stdout.buffer.write(b'log \\xff\\xfe bad\\n'); "
                  "sys.stdout.flush(); sys.exit(3)")
        return [str(binary), '-c', script]


def test_wait_for_port_accepts_open_port(listening_port):
    assert wait_for_port('127.0.0.1', listening_port, timeout=2) is True


def test_wait_for_port_times_out(free_port):
    assert wait_for_port('127.0.0.1', free_port, timeout=0.3, interval=0.05) is False


def test_wait_for_port_abort(free_port):
    assert wait_for_port('127.0.0.1', free_port, timeout=5, abort=lambda: True) is False


def test_missing_binary_raises(monkeypatch, tmp_path):
    monkeypatch.setattr(
        'tunnel_manager.providers.xray_process.find_tunnel_binary',
        lambda configured=None: None
    )
    manager = ProxyProcessManager(config_file=tmp_path / 'xray.json')

    with pytest.raises(ProxyBinaryMissing):
        manager.start({'log': {}})


def test_start_writes_config_and_stop_terminates(python_binary, tmp_path):
    exits = []
    manager = SleepingProcessManager(config_file=tmp_path / 'xray.json')

    handle = manager.start({'log': {'loglevel': 'warning'}}, on_exit=lambda h, code: exits.append(code))

    assert handle.is_running
    assert manager.current is handle
    assert (tmp_path / 'xray.json').exists()

    manager.stop(handle)

    assert not handle.is_running
    assert manager.current is None
    assert exits == []


def test_unexpected_exit_is_reported(python_binary, tmp_path, free_port):
    exited = threading.Event()
    codes = []

    def on_exit(handle, code):
        codes.append(code)
        exited.set()

    # "python -c <config path>" is not valid code and exits non-zero
    manager = ProxyProcessManager(config_file=tmp_path / 'xray.json')
    handle = manager.start({'log': {}}, on_exit=on_exit)

    with pytest.raises(ProxyStartupError):
        manager.wait_until_ready(handle, '127.0.0.1', free_port, timeout=5, interval=0.05)

    assert exited.wait(5)
    assert codes[0] != 0


def test_start_replaces_running_process(python_binary, tmp_path):
    manager = SleepingProcessManager(config_file=tmp_path / 'xray.json')

    first = manager.start({'log': {}})
    second = manager.start({'log': {}})

    assert not first.is_running
    assert second.is_running
    manager.stop()
    assert not second.is_running


def test_undecodable_output_still_reports_exit(python_binary, tmp_path):
    exited = threading.Event()
    codes = []

    def on_exit(handle, code):
        codes.append(code)
        exited.set()

    manager = GarbledOutputProcessManager(config_file=tmp_path / 'xray.json')
    manager.start({'log': {}}, on_exit=on_exit)

    assert exited.wait(10)
    assert codes == [3]


def test_default_config_file_is_reused(python_binary, tmp_path, monkeypatch):
    monkeypatch.setattr(Path, 'home', classmethod(lambda cls: tmp_path))
    manager = SleepingProcessManager()

    first = manager.start({'log': {'loglevel': 'warning'}})
    second = manager.start({'log': {'loglevel': 'debug'}})
    manager.stop()

    assert first.config_file == second.config_file
    assert first.config_file == tmp_path / '.config' / 'tunnel-manager' / 'xray_config.json'
    written = [path for path in tmp_path.rglob('*') if path.is_file()]
    assert written == [first.config_file]
    assert json.loads(first.config_file.read_text()) == {'log': {'loglevel': 'debug'}}
