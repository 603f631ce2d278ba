import pytest

from sentineltrack.errors import InvalidInput
from sentineltrack.models import Alert, AlertKind, AlertSeverity, Protocol
from sentineltrack.services import deduplicate, dedup_connections, dedup_processes

from conftest import make_connection, make_process, make_stat


def test_keeps_latest_sample_per_pid(at):
    samples = [
        make_process(pid=1, cpu=5, observed_at=at(-30)),
        make_process(pid=2, cpu=6, observed_at=at(-20)),
        make_process(pid=1, cpu=7, observed_at=at(-10)),
    ]
    result = dedup_processes(samples)
    assert [(s.pid, s.cpu_pct) for s in result] == [(1, 7.0), (2, 6.0)]


def test_result_is_ordered_newest_first(at):
    samples = [make_process(pid=pid, observed_at=at(-pid)) for pid in (5, 1, 3, 2, 4)]
    result = dedup_processes(samples)
    assert [s.pid for s in result] == [1, 2, 3, 4, 5]


def test_tie_keeps_first_encountered(at):
    first = make_process(pid=1, name="first", observed_at=at(0))
    second = make_process(pid=1, name="second", observed_at=at(0))
    assert dedup_processes([first, second]) == [first]


def test_deduplicate_is_idempotent(at):
    samples = [
        make_process(pid=pid % 3, cpu=pid, observed_at=at(-(pid * 7) % 11))
        for pid in range(12)
    ]
    once = deduplicate(samples)
    assert deduplicate(once) == once
    assert len(once) == 3


def test_connection_key_includes_protocol(at):
    tcp = make_connection(protocol=Protocol.TCP, observed_at=at(-2))
    udp = make_connection(protocol=Protocol.UDP, observed_at=at(-1))
    newer_tcp = make_connection(protocol=Protocol.TCP, observed_at=at(0))

    result = dedup_connections([tcp, udp, newer_tcp])
    assert result == [newer_tcp, udp]


def test_custom_key(at):
    samples = [make_process(pid=1, name="a", observed_at=at(-1)), make_process(pid=2, name="a", observed_at=at(0))]
    result = deduplicate(samples, key=lambda s: s.name)
    assert [s.pid for s in result] == [2]


@pytest.mark.parametrize("record", [
    make_stat(),
    Alert(kind=AlertKind.CPU_SPIKE, severity=AlertSeverity.ERROR, message="m"),
])
def test_refuses_records_without_logical_key(record):
    with pytest.raises(InvalidInput):
        deduplicate([record])
