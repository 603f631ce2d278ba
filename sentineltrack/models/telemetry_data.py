from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


def _to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """带时区的时间统一转换为本地无时区时间，保证存储后的字符串可排序"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class RecordKind(str, Enum):
    """存储中的四类追加日志"""
    PROCESS = "process"
    CONNECTION = "connection"
    SYSTEM_STAT = "system_stat"
    ALERT = "alert"


class Protocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"


class ConnectionState(str, Enum):
    ESTABLISHED = "ESTABLISHED"
    LISTEN = "LISTEN"
    TIME_WAIT = "TIME_WAIT"
    CLOSE_WAIT = "CLOSE_WAIT"
    OTHER = "OTHER"


class ProcessSample(BaseModel):
    """进程采样数据模型"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    pid: int = Field(ge=0)
    name: str
    cpu_pct: float = Field(ge=0)
    mem_kb: int = Field(ge=0)
    observed_at: Optional[datetime] = None

    @field_validator("observed_at")
    @classmethod
    def normalize_observed_at(cls, value):
        return _to_local_naive(value)

    @property
    def dedup_key(self) -> int:
        return self.pid


class ConnectionSample(BaseModel):
    """网络连接采样数据模型"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    local_ip: str
    local_port: int = Field(ge=0, le=65535)
    remote_ip: str = ""
    remote_port: int = Field(default=0, ge=0, le=65535)
    protocol: Protocol
    state: ConnectionState = ConnectionState.OTHER
    observed_at: Optional[datetime] = None

    @field_validator("observed_at")
    @classmethod
    def normalize_observed_at(cls, value):
        return _to_local_naive(value)

    @property
    def local_addr(self) -> Tuple[str, int]:
        return (self.local_ip, self.local_port)

    @property
    def remote_addr(self) -> Tuple[str, int]:
        return (self.remote_ip, self.remote_port)

    @property
    def dedup_key(self) -> Tuple[str, Tuple[str, int], Tuple[str, int]]:
        return (self.protocol.value, self.local_addr, self.remote_addr)


class SystemStatSample(BaseModel):
    """系统资源采样数据模型"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: Optional[int] = None
    cpu_pct: float = Field(ge=0, le=100)
    mem_pct: float = Field(ge=0, le=100)
    disk_pct: float = Field(ge=0, le=100)
    load_avg: float = Field(ge=0)
    observed_at: Optional[datetime] = None

    @field_validator("observed_at")
    @classmethod
    def normalize_observed_at(cls, value):
        return _to_local_naive(value)


class DashboardSummary(BaseModel):
    """仪表板汇总（按需计算，不落库）"""
    model_config = ConfigDict(frozen=True)

    latest_stats: Optional[SystemStatSample] = None
    active_process_count: int = 0
    active_connection_count: int = 0
    recent_alert_count: int = 0
    computed_at: datetime
