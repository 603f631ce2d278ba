import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from config.settings import Settings, settings
from sentineltrack.errors import InvalidInput, SentinelTrackError, StorageUnavailable
from sentineltrack.models import RecordKind
from sentineltrack.services.ingest_service import IngestService
from sentineltrack.utils.process_utils import Collector

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.MonitorService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()

SAMPLED_KINDS = (RecordKind.PROCESS, RecordKind.CONNECTION, RecordKind.SYSTEM_STAT)


class MonitorService:
    """按各自节拍驱动采集器，把样本送入处理流水线

    每类样本一个后台线程，互不阻塞。单个样本失败只记录日志；
    写入存储失败会按指数退避重试，重试用尽则放弃本轮。
    """

    def __init__(self, collector: Collector, ingest: IngestService, config: Settings = settings):
        self.collector = collector
        self.ingest = ingest
        self.min_interval = config.MIN_SAMPLE_INTERVAL
        self.max_interval = config.MAX_SAMPLE_INTERVAL
        self.retry_attempts = max(1, config.STORAGE_RETRY_ATTEMPTS)
        self.retry_backoff = config.STORAGE_RETRY_BACKOFF
        self._intervals: Dict[RecordKind, float] = {
            RecordKind.PROCESS: config.PROCESS_SAMPLE_INTERVAL,
            RecordKind.CONNECTION: config.CONNECTION_SAMPLE_INTERVAL,
            RecordKind.SYSTEM_STAT: config.SYSTEM_STAT_INTERVAL,
        }
        self._threads: Dict[RecordKind, threading.Thread] = {}
        self._stop_event = threading.Event()
        self._monitoring = False
        self.join_timeout = 5.0

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    def start_monitoring(self):
        """启动监控服务"""
        if self._monitoring:
            return
        self._monitoring = True
        # 每轮启动使用独立的停止信号
        self._stop_event = stop_event = threading.Event()
        for kind in SAMPLED_KINDS:
            thread = threading.Thread(
                target=self._monitor_loop, args=(kind, stop_event),
                name=f"monitor-{kind.value}", daemon=True,
            )
            self._threads[kind] = thread
            thread.start()
        logger.info("监控服务已启动")

    def stop_monitoring(self):
        """停止监控服务"""
        self._monitoring = False
        self._stop_event.set()
        for kind, thread in list(self._threads.items()):
            thread.join(timeout=self.join_timeout)
            if thread.is_alive():
                logger.warning(f"{thread.name} 未在 {self.join_timeout} 秒内退出，将在本轮结束后停止")
            else:
                del self._threads[kind]
        logger.info("监控服务已停止")

    def set_interval(self, kind: RecordKind, interval: float):
        """设置某类样本的采样频率（秒）"""
        if not self.min_interval <= interval <= self.max_interval:
            raise InvalidInput(
                f"采样间隔必须在 {self.min_interval} 到 {self.max_interval} 秒之间，实际为: {interval}"
            )
        self._intervals[RecordKind(kind)] = interval

    def get_interval(self, kind: RecordKind) -> float:
        """获取当前采样频率"""
        return self._intervals[RecordKind(kind)]

    def _monitor_loop(self, kind: RecordKind, stop_event: threading.Event):
        """监控循环"""
        while not stop_event.is_set():
            start_time = time.time()
            self.run_tick(kind, stop_event)

            # 等待下一个监控周期
            elapsed_time = time.time() - start_time
            stop_event.wait(max(0.0, self._intervals[kind] - elapsed_time))

    def run_tick(self, kind: RecordKind, stop_event: Optional[threading.Event] = None) -> int:
        """执行一轮采集，返回成功处理的样本数"""
        stop_event = stop_event or self._stop_event
        try:
            samples = self._collect(kind)
        except Exception as e:
            logger.error(f"采集 {kind.value} 失败: {e}", exc_info=True)
            return 0

        processed = 0
        for sample in samples:
            try:
                self._ingest_with_retry(sample, stop_event)
            except StorageUnavailable as e:
                logger.error(f"存储不可用，放弃本轮 {kind.value} 采样: {e}")
                break
            except SentinelTrackError as e:
                logger.error(f"样本处理失败，已跳过: {e}")
                continue
            processed += 1
        return processed

    def _collect(self, kind: RecordKind) -> List:
        collectors: Dict[RecordKind, Callable] = {
            RecordKind.PROCESS: self.collector.collect_processes,
            RecordKind.CONNECTION: self.collector.collect_connections,
            RecordKind.SYSTEM_STAT: lambda: [self.collector.collect_system_stats()],
        }
        return list(collectors[kind]())

    def _ingest_with_retry(self, sample, stop_event: threading.Event):
        delay = self.retry_backoff
        last_error: Optional[StorageUnavailable] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self.ingest.ingest(sample)
            except StorageUnavailable as e:
                last_error = e
                if attempt == self.retry_attempts:
                    break
                logger.warning(f"写入失败（第 {attempt} 次），{delay:.2f} 秒后重试: {e}")
                if stop_event.wait(delay):
                    break
                delay *= 2
        raise last_error
