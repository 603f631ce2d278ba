import logging
from datetime import datetime, timedelta
from typing import Optional

from config.settings import Settings, settings
from sentineltrack.errors import AggregationFailure
from sentineltrack.models import DashboardSummary, RecordKind
from sentineltrack.services.storage_service import StorageService

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.AggregatorService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()


class AggregatorService:
    """按需计算仪表板汇总，不保存任何状态"""

    def __init__(self, store: StorageService, config: Settings = settings):
        self.store = store
        self.active_window = timedelta(seconds=config.ACTIVE_WINDOW_SECONDS)
        self.alert_window = timedelta(seconds=config.ALERT_WINDOW_SECONDS)

    def compute_summary(self, now: Optional[datetime] = None) -> DashboardSummary:
        """在同一个存储快照内依次计算四项指标，任一步失败则整体失败"""
        now = now or datetime.now()
        step = "open_snapshot"
        try:
            with self.store.snapshot() as view:
                step = "latest_stats"
                latest = view.query_recent(RecordKind.SYSTEM_STAT, limit=1)
                latest_stats = latest[0] if latest else None

                step = "active_processes"
                active_process_count = view.count_window(
                    RecordKind.PROCESS, now - self.active_window, distinct="pid"
                )

                step = "active_connections"
                active_connection_count = view.count_window(RecordKind.CONNECTION, now - self.active_window)

                step = "recent_alerts"
                recent_alert_count = view.count_window(RecordKind.ALERT, now - self.alert_window)
        except Exception as e:
            logger.error(f"仪表板汇总失败，步骤 {step}: {e}")
            raise AggregationFailure(step, e) from e

        return DashboardSummary(
            latest_stats=latest_stats,
            active_process_count=active_process_count,
            active_connection_count=active_connection_count,
            recent_alert_count=recent_alert_count,
            computed_at=now,
        )
