from datetime import datetime, timedelta
from typing import List

import pytest

from config.settings import Settings
from sentineltrack.models import (
    ConnectionSample,
    ConnectionState,
    ProcessSample,
    Protocol,
    SystemStatSample,
)
from sentineltrack.services import (
    AggregatorService,
    BroadcastService,
    ClassifierService,
    ClassifierThresholds,
    IngestService,
    QueryService,
    StorageService,
)


class FakeCollector:
    """固定返回预设样本的采集器"""

    def __init__(self, processes=None, connections=None, stats=None):
        self.processes: List[ProcessSample] = processes or []
        self.connections: List[ConnectionSample] = connections or []
        self.stats = stats or SystemStatSample(cpu_pct=10, mem_pct=20, disk_pct=30, load_avg=0.5)
        self.calls = 0

    def collect_processes(self):
        self.calls += 1
        return list(self.processes)

    def collect_connections(self):
        self.calls += 1
        return list(self.connections)

    def collect_system_stats(self):
        self.calls += 1
        return self.stats


@pytest.fixture
def config(tmp_path):
    return Settings(
        DB_PATH=str(tmp_path / "sentineltrack.db"),
        LOG_PATH=str(tmp_path / "logs"),
        CPU_CORE_COUNT=4,
        PROCESS_ALLOWLIST=[],
        PROCESS_ALLOWLIST_FILE=None,
        JSON_LOG_PATH=None,
        SUBSCRIBER_BUFFER_SIZE=4,
        STORAGE_RETRY_ATTEMPTS=3,
        STORAGE_RETRY_BACKOFF=0.01,
        QUERY_TIMEOUT=2.0,
        MIN_SAMPLE_INTERVAL=0.01,
        PROCESS_SAMPLE_INTERVAL=0.05,
        CONNECTION_SAMPLE_INTERVAL=0.05,
        SYSTEM_STAT_INTERVAL=0.05,
    )


@pytest.fixture
def store(config):
    return StorageService(config=config)


@pytest.fixture
def classifier(config):
    return ClassifierService(ClassifierThresholds.from_settings(config))


@pytest.fixture
def broadcaster(config):
    return BroadcastService(config)


@pytest.fixture
def ingest(store, classifier, broadcaster):
    return IngestService(store, classifier, broadcaster)


@pytest.fixture
def aggregator(store, config):
    return AggregatorService(store, config)


@pytest.fixture
def queries(store, aggregator, classifier, config):
    service = QueryService(store, aggregator, classifier, config)
    yield service
    service.shutdown()


@pytest.fixture
def now():
    return datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def at(now):
    """相对 now 的时间点，at(-30) 表示 30 秒前"""
    def _at(seconds: float) -> datetime:
        return now + timedelta(seconds=seconds)
    return _at


def make_process(pid=1, name="proc", cpu=1.0, mem=1024, observed_at=None):
    return ProcessSample(pid=pid, name=name, cpu_pct=cpu, mem_kb=mem, observed_at=observed_at)


def make_connection(local=("10.0.0.2", 50000), remote=("93.184.216.34", 443),
                    protocol=Protocol.TCP, state=ConnectionState.ESTABLISHED, observed_at=None):
    return ConnectionSample(
        local_ip=local[0], local_port=local[1],
        remote_ip=remote[0], remote_port=remote[1],
        protocol=protocol, state=state, observed_at=observed_at,
    )


def make_stat(cpu=10.0, mem=20.0, disk=30.0, load=0.5, observed_at=None):
    return SystemStatSample(cpu_pct=cpu, mem_pct=mem, disk_pct=disk, load_avg=load, observed_at=observed_at)
