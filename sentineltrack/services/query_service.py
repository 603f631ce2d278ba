import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Optional

from config.settings import Settings, settings
from sentineltrack.errors import InvalidInput, QueryTimeout
from sentineltrack.models import (
    Alert,
    ConnectionSample,
    DashboardSummary,
    ProcessSample,
    RecordKind,
    SystemStatSample,
)
from sentineltrack.services.aggregator_service import AggregatorService
from sentineltrack.services.classifier_service import ClassifierService
from sentineltrack.services.dedup_service import dedup_connections, dedup_processes
from sentineltrack.services.storage_service import StorageService

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.QueryService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()


class QueryService:
    """查询入口：限定条数、排序和超时

    所有查询在共享线程池中执行，超过超时时间抛出 QueryTimeout。
    """

    def __init__(self, store: StorageService, aggregator: AggregatorService,
                 classifier: ClassifierService, config: Settings = settings):
        self.store = store
        self.aggregator = aggregator
        self.classifier = classifier
        self.default_timeout = config.QUERY_TIMEOUT
        self._executor = ThreadPoolExecutor(max_workers=config.QUERY_WORKERS, thread_name_prefix="query")

    def _run(self, name: str, func: Callable, timeout: Optional[float] = None):
        if timeout is None:
            timeout = self.default_timeout
        elif isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise InvalidInput(f"timeout 必须是正数，实际为: {timeout!r}")

        future = self._executor.submit(func)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning(f"查询 {name} 超时（{timeout} 秒）")
            raise QueryTimeout(f"查询 {name} 超过 {timeout} 秒未完成") from None

    def get_processes(self, limit: Optional[int] = None, timeout: Optional[float] = None) -> List[ProcessSample]:
        """最近的进程样本，新的在前"""
        self.store.resolve_limit(RecordKind.PROCESS, limit)
        return self._run("processes", lambda: self.store.query_recent(RecordKind.PROCESS, limit), timeout)

    def get_current_processes(self, limit: Optional[int] = None,
                              timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """每个 pid 的最新状态，附带资源占用等级"""
        samples = self.get_processes(limit, timeout)
        return [
            {**sample.model_dump(mode="json"), "status": self.classifier.usage_status(sample)}
            for sample in dedup_processes(samples)
        ]

    def get_connections(self, limit: Optional[int] = None,
                        timeout: Optional[float] = None) -> List[ConnectionSample]:
        """最近的连接样本，新的在前"""
        self.store.resolve_limit(RecordKind.CONNECTION, limit)
        return self._run("network", lambda: self.store.query_recent(RecordKind.CONNECTION, limit), timeout)

    def get_current_connections(self, limit: Optional[int] = None,
                                timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """每个连接的最新状态，附带范围和风险等级"""
        samples = self.get_connections(limit, timeout)
        return [
            {
                **sample.model_dump(mode="json"),
                "scope": self.classifier.connection_scope(sample),
                "risk": self.classifier.connection_risk(sample),
            }
            for sample in dedup_connections(samples)
        ]

    def get_alerts(self, limit: Optional[int] = None, timeout: Optional[float] = None) -> List[Alert]:
        """最近的告警，新的在前"""
        self.store.resolve_limit(RecordKind.ALERT, limit)
        return self._run("alerts", lambda: self.store.query_recent(RecordKind.ALERT, limit), timeout)

    def get_system_stats(self, limit: Optional[int] = None,
                         timeout: Optional[float] = None) -> List[SystemStatSample]:
        """最近的系统样本，按时间正序，便于绘制曲线"""
        self.store.resolve_limit(RecordKind.SYSTEM_STAT, limit)
        return self._run(
            "system-stats",
            lambda: self.store.query_recent(RecordKind.SYSTEM_STAT, limit, order_desc=False),
            timeout,
        )

    def get_dashboard(self, timeout: Optional[float] = None) -> DashboardSummary:
        return self._run("dashboard", self.aggregator.compute_summary, timeout)

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
