import threading
import time

from tunnel_manager.core.errors import VerificationFailed
from tunnel_manager.core.health_monitor import NetworkHealthMonitor, FailureListener


class ScriptedVerifier:
    """Replays results; an exception instance is raised, anything else returned"""

    def __init__(self, results, repeat_last=True):
        self.results = list(results)
        self.repeat_last = repeat_last
        self.calls = 0
        self._lock = threading.Lock()

    def verify(self):
        with self._lock:
            self.calls += 1
            if len(self.results) > 1 or not self.repeat_last:
                result = self.results.pop(0)
            else:
                result = self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingListener(FailureListener):
    def __init__(self):
        self.reports = []
        self.reported = threading.Event()

    def on_connection_failure(self, report):
        self.reports.append(report)
        self.reported.set()


def test_failure_is_reported_once():
    verifier = ScriptedVerifier([VerificationFailed()])
    listener = RecordingListener()
    monitor = NetworkHealthMonitor(verifier, check_interval=0.01)

    monitor.start('server-1', '203.0.113.10', listener)

    assert listener.reported.wait(2)
    time.sleep(0.1)
    assert len(listener.reports) == 1
    report = listener.reports[0]
    assert report.server_id == 'server-1'
    assert report.last_address == '203.0.113.10'
    assert not monitor.is_running


def test_address_change_is_not_a_failure():
    verifier = ScriptedVerifier(['203.0.113.10', '203.0.113.77'])
    listener = RecordingListener()
    changes = []
    changed = threading.Event()
    monitor = NetworkHealthMonitor(verifier, check_interval=0.01)

    def on_change(address):
        changes.append(address)
        changed.set()

    monitor.start('server-1', '203.0.113.10', listener, on_change)

    assert changed.wait(2)
    monitor.stop()
    assert changes == ['203.0.113.77']
    assert listener.reports == []


def test_threshold_requires_consecutive_failures():
    verifier = ScriptedVerifier([
        VerificationFailed(), '203.0.113.10',
        VerificationFailed(), VerificationFailed(), VerificationFailed(),
    ])
    listener = RecordingListener()
    monitor = NetworkHealthMonitor(verifier, check_interval=0.01, failure_threshold=3)

    monitor.start('server-1', '203.0.113.10', listener)

    assert listener.reported.wait(2)
    assert verifier.calls == 5
    assert len(listener.reports) == 1


def test_stop_prevents_reports():
    verifier = ScriptedVerifier([VerificationFailed()])
    listener = RecordingListener()
    monitor = NetworkHealthMonitor(verifier, check_interval=0.3)

    monitor.start('server-1', '203.0.113.10', listener)
    monitor.stop()

    assert not listener.reported.wait(0.6)
    assert verifier.calls == 0
    assert not monitor.is_running


def test_restart_replaces_previous_run():
    verifier = ScriptedVerifier(['203.0.113.10'])
    listener = RecordingListener()
    monitor = NetworkHealthMonitor(verifier, check_interval=0.01)

    monitor.start('server-1', '203.0.113.10', listener)
    first_thread = monitor._thread
    monitor.start('server-2', '203.0.113.10', listener)

    assert not first_thread.is_alive()
    assert monitor.is_running
    monitor.stop()
    assert not monitor.is_running
