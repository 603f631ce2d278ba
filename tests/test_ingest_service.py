import json
import threading
from datetime import datetime

import allure
import pytest

from sentineltrack.errors import ClassificationFailure, InvalidInput, StorageUnavailable
from sentineltrack.models import Alert, AlertKind, AlertSeverity, RecordKind
from sentineltrack.services import EventLogService, IngestService

from conftest import make_connection, make_process, make_stat


def drain(subscriber):
    messages = []
    while (message := subscriber.get(timeout=0)) is not None:
        messages.append(message)
    return messages


@allure.title("样本入库、推送并产生告警")
def test_ingest_process_publishes_sample_and_alert(ingest, store, broadcaster, config):
    subscriber = broadcaster.subscribe()
    result = ingest.ingest(make_process(pid=42, name="miner", cpu=95))

    assert result.sample.id is not None
    assert [alert.kind for alert in result.alerts] == [AlertKind.HIGH_CPU]
    assert result.alerts[0].id is not None

    messages = drain(subscriber)
    assert [m["type"] for m in messages] == ["process_sample", "alert"]
    assert messages[0]["data"]["pid"] == 42
    assert messages[1]["data"]["kind"] == "HIGH_CPU"

    assert len(store.query_recent(RecordKind.PROCESS)) == 1
    assert len(store.query_recent(RecordKind.ALERT)) == 1


def test_connection_event_type(ingest, broadcaster):
    subscriber = broadcaster.subscribe()
    ingest.ingest(make_connection(remote=("127.0.0.1", 80)))
    assert [m["type"] for m in drain(subscriber)] == ["connection_sample"]


def test_spike_compares_with_previous_stored_stat(ingest, at):
    first = ingest.ingest(make_stat(cpu=40, observed_at=at(-10)))
    second = ingest.ingest(make_stat(cpu=85, observed_at=at(0)))
    assert first.alerts == []
    assert [alert.kind for alert in second.alerts] == [AlertKind.CPU_SPIKE]


def test_stats_event_type(ingest, broadcaster):
    subscriber = broadcaster.subscribe()
    ingest.ingest(make_stat())
    assert [m["type"] for m in drain(subscriber)] == ["system_stats"]


def test_classifier_failure_keeps_sample(store, broadcaster):
    class FailingClassifier:
        def classify(self, sample, previous=None):
            raise ClassificationFailure("all", RuntimeError("boom"))

    ingest = IngestService(store, FailingClassifier(), broadcaster)
    result = ingest.ingest(make_process(cpu=99))
    assert result.alerts == []
    assert len(store.query_recent(RecordKind.PROCESS)) == 1


def test_storage_failure_publishes_nothing(ingest, store, broadcaster, monkeypatch):
    subscriber = broadcaster.subscribe()

    def unavailable(record):
        raise StorageUnavailable("locked")

    monkeypatch.setattr(store, "append", unavailable)
    with pytest.raises(StorageUnavailable):
        ingest.ingest(make_process(cpu=99))
    assert drain(subscriber) == []


def test_rejects_alerts(ingest):
    with pytest.raises(InvalidInput):
        ingest.ingest(Alert(kind=AlertKind.HIGH_CPU, severity=AlertSeverity.WARNING, message="m"))


def test_ingest_batch(ingest, store):
    results = ingest.ingest_batch([make_process(pid=pid) for pid in range(5)])
    assert len(results) == 5
    assert len(store.query_recent(RecordKind.PROCESS)) == 5


def test_concurrent_stats_are_each_classified_once(ingest, store):
    # 交替的 10% / 90% 样本，串行化后每次上升都恰好产生一次突增
    def worker():
        for _ in range(5):
            ingest.ingest(make_stat(cpu=10))
            ingest.ingest(make_stat(cpu=90))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stats = store.query_recent(RecordKind.SYSTEM_STAT, limit=100, order_desc=False)
    assert len(stats) == 40
    expected = sum(
        1 for previous, current in zip(stats, stats[1:])
        if current.cpu_pct - previous.cpu_pct > 30
    )
    alerts = store.query_recent(RecordKind.ALERT, limit=100)
    assert len(alerts) == expected


@allure.title("样本和告警追加写入 JSON lines 事件日志")
def test_events_are_appended_to_json_log(store, classifier, broadcaster, tmp_path):
    path = tmp_path / "events" / "events.jsonl"
    ingest = IngestService(store, classifier, broadcaster, EventLogService(str(path)))

    ingest.ingest(make_process(pid=42, name="miner", cpu=95))
    ingest.ingest(make_stat(cpu=10))

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["type"] for line in lines] == ["process_sample", "alert", "system_stats"]
    assert lines[0]["data"]["pid"] == 42
    assert lines[1]["data"]["kind"] == "HIGH_CPU"
    assert all(datetime.fromisoformat(line["timestamp"]) for line in lines)


def test_event_log_write_failure_does_not_block_ingest(store, classifier, broadcaster, tmp_path):
    event_log = EventLogService(str(tmp_path / "events.jsonl"))
    event_log.path = str(tmp_path)  # 目录无法以追加方式打开
    ingest = IngestService(store, classifier, broadcaster, event_log)

    result = ingest.ingest(make_process(pid=7))
    assert result.sample.id is not None


def test_event_log_is_optional(config):
    assert EventLogService.from_settings(config) is None
    path = config.LOG_PATH + "/events.jsonl"
    assert EventLogService.from_settings(config.model_copy(update={"JSON_LOG_PATH": path})).path == path
