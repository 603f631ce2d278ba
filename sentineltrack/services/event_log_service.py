import json
import logging
import os
import threading
from datetime import datetime
from typing import Any, Optional

from config.settings import Settings, settings

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.EventLogService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()


class EventLogService:
    """把入库的样本和告警追加写入 JSON lines 事件日志

    每行一个 {"timestamp", "type", "data"} 对象。写入失败只记录日志，
    不影响样本处理。
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> Optional["EventLogService"]:
        """未配置 JSON_LOG_PATH 时返回 None"""
        if not config.JSON_LOG_PATH:
            return None
        return cls(config.JSON_LOG_PATH)

    def write(self, event_type: str, data: Any):
        line = json.dumps({
            "timestamp": datetime.now().isoformat(),
            "type": event_type,
            "data": data,
        }, ensure_ascii=False)
        try:
            with self._lock, open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error(f"写入事件日志 {self.path} 失败: {e}")
