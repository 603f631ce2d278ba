from pydantic import BaseModel, ConfigDict, field_validator
from datetime import datetime
from enum import Enum
from typing import Optional

from sentineltrack.models.telemetry_data import _to_local_naive


class AlertKind(str, Enum):
    """告警类型"""
    HIGH_CPU = "HIGH_CPU"
    HIGH_MEMORY = "HIGH_MEMORY"
    CPU_SPIKE = "CPU_SPIKE"
    MEMORY_SPIKE = "MEMORY_SPIKE"
    SYSTEM_OVERLOAD = "SYSTEM_OVERLOAD"
    SUSPICIOUS_PORT = "SUSPICIOUS_PORT"
    EXTERNAL_CONNECTION = "EXTERNAL_CONNECTION"
    UNKNOWN_PROCESS = "UNKNOWN_PROCESS"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Alert(BaseModel):
    """告警记录模型，只追加，重复触发产生新记录"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[str] = None
    kind: AlertKind
    severity: AlertSeverity
    message: str
    details: str = ""
    raised_at: Optional[datetime] = None

    @field_validator("raised_at")
    @classmethod
    def normalize_raised_at(cls, value):
        return _to_local_naive(value)
