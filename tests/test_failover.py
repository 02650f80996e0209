from tunnel_manager.core.failover import rank_candidates
from tunnel_manager.core.health_monitor import FailureReport
from tunnel_manager.core.types import ConnectionState, HealthSample, Server


def make_server(name):
    return Server(id=name, name=name, address=f"{name}.example", port=443, protocol='vless')


def failure(supervisor):
    record = supervisor.active_record
    return FailureReport(record.server_id, record.address, "Could not verify connection")


def test_rank_drops_unreachable_and_sorts_by_latency():
    a, b, c = make_server('a'), make_server('b'), make_server('c')
    samples = [HealthSample(a, 50), HealthSample(b, None), HealthSample(c, 10)]

    assert [s.id for s in rank_candidates(samples)] == ['c', 'a']


def test_rank_ties_keep_input_order():
    a, b, c = make_server('a'), make_server('b'), make_server('c')
    samples = [HealthSample(a, 30), HealthSample(b, 30), HealthSample(c, 5)]

    assert [s.id for s in rank_candidates(samples)] == ['c', 'a', 'b']


def test_rank_all_unreachable():
    assert rank_candidates([HealthSample(make_server('a'), None)]) == []


def test_failover_tries_fastest_first_then_next(supervisor, store, fakes, events, vless):
    one = store.add(vless('one.example'))
    two = store.add(vless('two.example'))
    three = store.add(vless('three.example'))
    supervisor.connect()
    fakes.latencies.update({'two.example': 80, 'three.example': 20})
    fakes.process.fail_addresses.add('three.example')

    outcome = supervisor.failover.run(failure(supervisor))

    assert outcome.success is True
    assert outcome.server.id == two.id
    assert outcome.attempted == [three.id, two.id]
    assert fakes.process.started == ['one.example', 'three.example', 'two.example']
    assert supervisor.state == ConnectionState.CONNECTED
    assert supervisor.active_record.server_id == two.id
    assert one.id in supervisor.session
    assert three.id in supervisor.session
    assert ('auto_failover', (True, outcome.server)) in events


def test_failover_success_is_not_a_user_disconnect(supervisor, store, fakes, events, vless):
    store.add(vless('one.example'))
    store.add(vless('two.example'))
    supervisor.connect()
    fakes.latencies['two.example'] = 15

    supervisor.failover.run(failure(supervisor))

    names = [name for name, _ in events]
    assert 'disconnected' not in names
    assert 'connection_error' not in names


def test_failover_exhausts_when_every_candidate_fails(supervisor, store, fakes, events, vless):
    one = store.add(vless('one.example'))
    two = store.add(vless('two.example'))
    three = store.add(vless('three.example'))
    supervisor.connect()
    fakes.latencies.update({'two.example': 80, 'three.example': 20})
    fakes.process.fail_addresses.update({'two.example', 'three.example'})

    outcome = supervisor.failover.run(failure(supervisor))

    assert outcome.success is False
    assert outcome.attempted == [three.id, two.id]
    assert supervisor.state == ConnectionState.DISCONNECTED
    assert supervisor.session.snapshot() == {one.id, two.id, three.id}
    assert ('auto_failover', (False, None)) in events
    assert any(name == 'connection_error' for name, _ in events)


def test_single_server_exhausts_without_looping(supervisor, store, fakes, events, vless):
    store.add(vless('one.example'))
    supervisor.connect()

    outcome = supervisor.failover.run(failure(supervisor))

    assert outcome.success is False
    assert outcome.attempted == []
    assert fakes.process.started == ['one.example']
    assert supervisor.state == ConnectionState.DISCONNECTED
    assert ('auto_failover', (False, None)) in events


def test_unreachable_candidates_are_not_attempted(supervisor, store, fakes, vless):
    store.add(vless('one.example'))
    store.add(vless('two.example'))
    supervisor.connect()

    outcome = supervisor.failover.run(failure(supervisor))

    assert outcome.success is False
    assert fakes.process.started == ['one.example']
    assert supervisor.state == ConnectionState.DISCONNECTED


def test_manual_connect_after_exhaustion_resets_session(supervisor, store, fakes, vless):
    one = store.add(vless('one.example'))
    store.add(vless('two.example'))
    supervisor.connect()
    fakes.process.fail_addresses.add('two.example')
    fakes.latencies['two.example'] = 10
    supervisor.failover.run(failure(supervisor))
    fakes.process.fail_addresses.clear()

    supervisor.connect(one.id)

    assert len(supervisor.session) == 0
    assert supervisor.state == ConnectionState.CONNECTED


def test_failure_report_ignored_when_disabled(supervisor, store, fakes, vless):
    store.add(vless('one.example'))
    store.add(vless('two.example'))
    supervisor.connect()
    supervisor.set_auto_failover(False)

    supervisor.failover.on_connection_failure(failure(supervisor))

    assert not supervisor.failover.in_progress
    assert supervisor.state == ConnectionState.CONNECTED
    assert fakes.process.started == ['one.example']


def test_background_failover_from_monitor_report(supervisor, store, fakes, vless):
    store.add(vless('one.example'))
    two = store.add(vless('two.example'))
    supervisor.connect()
    fakes.latencies['two.example'] = 12

    supervisor.failover.on_connection_failure(failure(supervisor))

    assert supervisor.failover.wait(5)
    assert supervisor.state == ConnectionState.CONNECTED
    assert supervisor.active_record.server_id == two.id
    assert store.get_active_id() == two.id


def test_second_sequence_is_rejected_while_running(supervisor, store, vless):
    store.add(vless('one.example'))
    supervisor.connect()
    supervisor.failover._guard.acquire()
    try:
        outcome = supervisor.failover.run(failure(supervisor))
    finally:
        supervisor.failover._guard.release()

    assert outcome.success is False
    assert outcome.reason == "Failover already in progress"
    assert supervisor.state == ConnectionState.CONNECTED


def test_probe_errors_count_as_unreachable(supervisor):
    def prober(server):
        if server.id == 'a':
            raise OSError("network unreachable")
        return 40

    supervisor.failover.prober = prober
    samples = supervisor.failover.probe_candidates([make_server('a'), make_server('b')])

    assert [s.latency_ms for s in samples] == [None, 40]
