import threading

import pytest
import requests

from tunnel_manager.core.errors import VerificationFailed
from tunnel_manager.core.verifier import ConnectionVerifier


ENDPOINTS = ['https://ip-one.example', 'https://ip-two.example']


class FakeResponse:
    def __init__(self, text, status=200):
        self.text = text
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")


def make_verifier(**kwargs):
    return ConnectionVerifier(endpoints=ENDPOINTS, **kwargs)


def test_race_returns_first_success():
    verifier = make_verifier()
    calls = []
    lock = threading.Lock()

    def probe(endpoint, method):
        with lock:
            calls.append((endpoint, method.name, method.timeout))
        return '203.0.113.5' if endpoint == ENDPOINTS[1] else None

    verifier.probe = probe

    assert verifier.verify() == '203.0.113.5'
    assert all(timeout == 2.0 for _, _, timeout in calls)


def test_sequential_fallback_reaches_http_proxy():
    verifier = make_verifier()
    attempts = []

    def probe(endpoint, method):
        attempts.append((endpoint, method.name, method.timeout))
        return '198.51.100.20' if method.name == 'http' else None

    verifier.probe = probe

    assert verifier.verify() == '198.51.100.20'
    sequential = attempts[len(ENDPOINTS):]
    assert sequential == [
        (ENDPOINTS[0], 'socks5h', 3.0),
        (ENDPOINTS[0], 'socks5', 10.0),
        (ENDPOINTS[0], 'http', 10.0),
    ]


def test_attempt_budget_bounds_fallback():
    verifier = make_verifier(max_attempts=2)
    attempts = []

    def probe(endpoint, method):
        attempts.append(method.name)
        return None

    verifier.probe = probe

    with pytest.raises(VerificationFailed):
        verifier.verify()

    assert len(attempts) == len(ENDPOINTS) + 2


def test_probe_parses_address(monkeypatch):
    seen = {}

    def fake_get(url, proxies=None, timeout=None, headers=None):
        seen.update(url=url, proxies=proxies, timeout=timeout)
        return FakeResponse(' 203.0.113.9\n')

    monkeypatch.setattr('tunnel_manager.core.verifier.requests.get', fake_get)
    verifier = make_verifier()

    assert verifier.probe(ENDPOINTS[0], verifier.fast_method) == '203.0.113.9'
    assert seen['proxies'] == {
        'http': 'socks5h://127.0.0.1:10808',
        'https': 'socks5h://127.0.0.1:10808',
    }
    assert seen['timeout'] == 2.0


def test_probe_rejects_non_address_payload(monkeypatch):
    monkeypatch.setattr(
        'tunnel_manager.core.verifier.requests.get',
        lambda *args, **kwargs: FakeResponse('<html>blocked</html>')
    )
    verifier = make_verifier()

    assert verifier.probe(ENDPOINTS[0], verifier.fast_method) is None


def test_probe_handles_request_errors(monkeypatch):
    def fake_get(*args, **kwargs):
        raise requests.ConnectionError("SOCKS proxy refused")

    monkeypatch.setattr('tunnel_manager.core.verifier.requests.get', fake_get)
    verifier = make_verifier()

    assert verifier.probe(ENDPOINTS[0], verifier.fast_method) is None


def test_probe_handles_http_errors(monkeypatch):
    monkeypatch.setattr(
        'tunnel_manager.core.verifier.requests.get',
        lambda *args, **kwargs: FakeResponse('203.0.113.9', status=503)
    )
    verifier = make_verifier()

    assert verifier.probe(ENDPOINTS[0], verifier.fast_method) is None


def test_http_fallback_uses_http_port():
    verifier = ConnectionVerifier(host='127.0.0.1', socks_port=2080, http_port=2081)

    http_method = verifier.fallback_methods()[-1]

    assert http_method.proxy_url == 'http://127.0.0.1:2081'
