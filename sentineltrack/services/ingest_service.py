import logging
import threading
from typing import Dict, Iterable, List, NamedTuple, Optional

from sentineltrack.errors import InvalidInput, SentinelTrackError
from sentineltrack.models import (
    Alert,
    ConnectionSample,
    ProcessSample,
    RecordKind,
    SystemStatSample,
    kind_of,
)
from sentineltrack.services.broadcast_service import BroadcastService
from sentineltrack.services.classifier_service import ClassifierService
from sentineltrack.services.event_log_service import EventLogService
from sentineltrack.services.storage_service import StorageService

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.IngestService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()

EVENT_TYPES: Dict[RecordKind, str] = {
    RecordKind.PROCESS: "process_sample",
    RecordKind.CONNECTION: "connection_sample",
    RecordKind.SYSTEM_STAT: "system_stats",
    RecordKind.ALERT: "alert",
}


class IngestResult(NamedTuple):
    sample: object
    alerts: List[Alert]


class IngestService:
    """单个样本的处理流水线：入库 -> 推送 -> 分类 -> 告警入库并推送"""

    def __init__(self, store: StorageService, classifier: ClassifierService, broadcaster: BroadcastService,
                 event_log: Optional[EventLogService] = None):
        self.store = store
        self.classifier = classifier
        self.broadcaster = broadcaster
        self.event_log = event_log
        # 同一类样本的 读前值 -> 入库 -> 分类 必须串行，保证每个样本只分类一次
        self._kind_locks: Dict[RecordKind, threading.Lock] = {
            kind: threading.Lock()
            for kind in (RecordKind.PROCESS, RecordKind.CONNECTION, RecordKind.SYSTEM_STAT)
        }

    def ingest(self, sample) -> IngestResult:
        """处理一个样本

        样本写入失败时抛出 StorageUnavailable，此时不会分类也不会推送；
        样本写入成功后，分类或告警写入的失败只记录日志。
        """
        if not isinstance(sample, (ProcessSample, ConnectionSample, SystemStatSample)):
            raise InvalidInput(f"不支持的样本类型: {type(sample).__name__}")
        kind = kind_of(sample)

        with self._kind_locks[kind]:
            previous: Optional[SystemStatSample] = None
            if kind is RecordKind.SYSTEM_STAT:
                recent = self.store.query_recent(RecordKind.SYSTEM_STAT, limit=1)
                previous = recent[0] if recent else None

            stored = self.store.append(sample)
            self._emit(EVENT_TYPES[kind], stored.model_dump(mode="json"))

            try:
                candidates = self.classifier.classify(stored, previous)
            except SentinelTrackError as e:
                logger.error(f"样本分类失败: {e}")
                candidates = []

        alerts: List[Alert] = []
        for candidate in candidates:
            try:
                alert = self.store.append(candidate)
            except SentinelTrackError as e:
                logger.error(f"告警写入失败 {candidate.kind.value}: {e}")
                continue
            alerts.append(alert)
            self._emit(EVENT_TYPES[RecordKind.ALERT], alert.model_dump(mode="json"))
            logger.info(f"[{alert.severity.value}] {alert.kind.value}: {alert.message}")

        return IngestResult(stored, alerts)

    def ingest_batch(self, samples: Iterable) -> List[IngestResult]:
        """依次处理一批样本，遇到写入失败立即向上抛出"""
        return [self.ingest(sample) for sample in samples]

    def _emit(self, event_type: str, payload: Dict):
        self.broadcaster.publish(event_type, payload)
        if self.event_log is not None:
            self.event_log.write(event_type, payload)
