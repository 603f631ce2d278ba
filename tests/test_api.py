import asyncio
import time
from contextlib import ExitStack

import allure
import anyio
import anyio.to_thread
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sentineltrack import api
from sentineltrack.api import create_router, install_error_handlers
from sentineltrack.errors import QueryTimeout, StorageUnavailable
from sentineltrack.models import RecordKind

from conftest import make_connection, make_process, make_stat


@pytest.fixture
def client(queries, broadcaster):
    app = FastAPI()
    install_error_handlers(app)
    app.include_router(create_router(queries, broadcaster))
    with TestClient(app) as test_client:
        yield test_client


def test_processes_newest_first(client, store, at):
    for offset in (-30, -10, -20):
        store.append(make_process(observed_at=at(offset)))

    response = client.get("/api/processes")
    assert response.status_code == 200
    times = [row["observed_at"] for row in response.json()]
    assert times == sorted(times, reverse=True)


def test_limit_is_applied(client, store, at):
    for offset in range(10):
        store.append(make_connection(observed_at=at(offset)))
    assert len(client.get("/api/network", params={"limit": 3}).json()) == 3


@pytest.mark.parametrize("limit", ["0", "-5", "abc"])
@allure.title("非法 limit 返回 400")
def test_bad_limit_is_rejected(client, limit):
    response = client.get("/api/alerts", params={"limit": limit})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_input"
    assert "error" in response.json()


def test_system_stats_are_chronological(client, store, at):
    for offset in (-10, -40, -20, -30):
        store.append(make_stat(observed_at=at(offset)))
    times = [row["observed_at"] for row in client.get("/api/system-stats", params={"limit": 3}).json()]
    assert len(times) == 3
    assert times == sorted(times)


def test_current_processes_are_deduplicated(client, store, at):
    store.append(make_process(pid=1, cpu=10, observed_at=at(-20)))
    store.append(make_process(pid=1, cpu=90, observed_at=at(-10)))
    store.append(make_process(pid=2, cpu=60, observed_at=at(-15)))

    rows = client.get("/api/processes/current").json()
    assert [(row["pid"], row["status"]) for row in rows] == [(1, "high"), (2, "moderate")]


def test_current_network_has_labels(client, store, at):
    store.append(make_connection(remote=("8.8.8.8", 4444), observed_at=at(-2)))
    store.append(make_connection(remote=("8.8.8.8", 4444), observed_at=at(-1)))

    rows = client.get("/api/network/current").json()
    assert len(rows) == 1
    assert rows[0]["scope"] == "external"
    assert rows[0]["risk"] == "high"


def test_dashboard(client, ingest):
    ingest.ingest(make_stat(cpu=33))
    ingest.ingest(make_process(pid=5, cpu=99))

    body = client.get("/api/dashboard").json()
    assert body["latest_stats"]["cpu_pct"] == 33
    assert body["active_process_count"] == 1
    assert body["active_connection_count"] == 0
    assert body["recent_alert_count"] == 1
    assert "computed_at" in body


def test_storage_unavailable_maps_to_503(client, store, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StorageUnavailable("database is locked")

    monkeypatch.setattr(store, "query_recent", unavailable)
    response = client.get("/api/processes")
    assert response.status_code == 503
    assert response.json() == {"error": "database is locked", "code": "storage_unavailable"}


def test_aggregation_failure_maps_to_500(client, store, monkeypatch):
    def unavailable():
        raise StorageUnavailable("database is locked")

    monkeypatch.setattr(store, "snapshot", unavailable)
    response = client.get("/api/dashboard")
    assert response.status_code == 500
    assert response.json()["code"] == "aggregation_failure"


def test_slow_query_times_out(client, queries, store, monkeypatch):
    def slow(*args, **kwargs):
        time.sleep(0.5)
        return []

    monkeypatch.setattr(store, "query_recent", slow)
    with pytest.raises(QueryTimeout):
        queries.get_alerts(timeout=0.05)

    response = client.get("/api/alerts", params={"timeout": 0.05})
    assert response.status_code == 504
    assert response.json()["code"] == "query_timeout"


def test_system_stats_query_orders_ascending(queries, store, at):
    for offset in (-3, -1, -2):
        store.append(make_stat(observed_at=at(offset)))
    assert [s.observed_at for s in queries.get_system_stats()] == [at(-3), at(-2), at(-1)]


def test_health(client, broadcaster):
    broadcaster.subscribe()
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["subscribers"] == 1


@allure.title("WebSocket 推送 {type, data} 消息")
def test_websocket_receives_published_events(client, broadcaster, ingest):
    with client.websocket_connect("/ws") as websocket:
        assert broadcaster.subscriber_count == 1
        ingest.ingest(make_process(pid=42, cpu=95))

        first = websocket.receive_json()
        second = websocket.receive_json()
        assert first["type"] == "process_sample"
        assert first["data"]["pid"] == 42
        assert second["type"] == "alert"
        assert second["data"]["kind"] == "HIGH_CPU"


def test_websocket_closed_on_shutdown(client, broadcaster):
    with client.websocket_connect("/ws") as websocket:
        broadcaster.close_all()
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()
        assert exc_info.value.code == 1001


def test_websocket_unsubscribes_on_disconnect(client, broadcaster):
    with client.websocket_connect("/ws"):
        assert broadcaster.subscriber_count == 1

    deadline = time.monotonic() + 2
    while broadcaster.subscriber_count and time.monotonic() < deadline:
        time.sleep(0.02)
    assert broadcaster.subscriber_count == 0


@allure.title("推送积压的查看端被立即以 1013 关闭")
def test_websocket_closed_with_1013_when_buffer_overflows(client, broadcaster, config, monkeypatch):
    async def stalled_pump(websocket, subscriber):
        await asyncio.Event().wait()

    monkeypatch.setattr(api, "_pump", stalled_pump)
    with client.websocket_connect("/ws") as websocket:
        for index in range(config.SUBSCRIBER_BUFFER_SIZE + 1):
            broadcaster.publish("system_stats", {"n": index})

        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()
        assert exc_info.value.code == 1013
    assert broadcaster.subscriber_count == 0


def test_idle_viewers_do_not_hold_worker_threads(client, broadcaster):
    with ExitStack() as stack:
        sockets = [stack.enter_context(client.websocket_connect("/ws")) for _ in range(5)]
        broadcaster.publish("alert", {"n": 1})
        for websocket in sockets:
            assert websocket.receive_json() == {"type": "alert", "data": {"n": 1}}

        borrowed = client.portal.call(lambda: anyio.to_thread.current_default_thread_limiter().borrowed_tokens)
        assert borrowed == 0
        assert client.get("/api/health").json()["subscribers"] == 5
