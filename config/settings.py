from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
import os

class Settings(BaseSettings):
    # 应用配置
    APP_NAME: str = "SentinelTrack"
    APP_VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 3001

    # 数据库配置
    DB_PATH: str = os.path.join("data", "sentineltrack.db")

    # 采样配置（秒），各类样本独立节拍
    PROCESS_SAMPLE_INTERVAL: float = 5.0
    CONNECTION_SAMPLE_INTERVAL: float = 5.0
    SYSTEM_STAT_INTERVAL: float = 10.0
    MIN_SAMPLE_INTERVAL: float = 1.0
    MAX_SAMPLE_INTERVAL: float = 60.0
    PROCESS_MAX_ROWS: int = 50  # 每次采样最多记录的进程数（按CPU排序）
    CONNECTION_MAX_ROWS: int = 200  # 每次采样最多记录的连接数

    # 写入失败重试（指数退避）
    STORAGE_RETRY_ATTEMPTS: int = 3
    STORAGE_RETRY_BACKOFF: float = 0.5

    # 查询配置
    PROCESS_QUERY_LIMIT: int = 100
    CONNECTION_QUERY_LIMIT: int = 100
    ALERT_QUERY_LIMIT: int = 50
    SYSTEM_STAT_QUERY_LIMIT: int = 24
    QUERY_TIMEOUT: float = 5.0  # 查询超时（秒）
    QUERY_WORKERS: int = 8

    # 仪表板窗口（秒）
    ACTIVE_WINDOW_SECONDS: int = 60
    ALERT_WINDOW_SECONDS: int = 3600

    # 实时推送配置
    SUBSCRIBER_BUFFER_SIZE: int = 256  # 每个订阅者的发送缓冲区上限

    # 告警阈值配置
    HIGH_CPU_THRESHOLD: float = 80.0  # 进程 CPU 使用率（%）
    HIGH_MEMORY_THRESHOLD_KB: int = 1024 * 1024  # 进程内存（KB），1 GiB
    CPU_SPIKE_DELTA: float = 30.0  # 相邻两次系统 CPU 采样的涨幅（百分点）
    MEMORY_SPIKE_DELTA: float = 30.0  # 相邻两次系统内存采样的涨幅（百分点）
    OVERLOAD_LOAD_FACTOR: float = 2.0  # 负载超过 核心数 × 系数 即过载
    CPU_CORE_COUNT: Optional[int] = None  # 为空时由 psutil 探测
    SUSPICIOUS_PORTS: List[int] = [
        4444, 5555, 6666, 7777, 8888, 9999,  # 常见后门端口
        1234, 12345, 54321,
        31337, 1337,
        6667, 6668, 6669,  # IRC，常被僵尸网络使用
    ]
    PROCESS_ALLOWLIST: List[str] = []  # 为空时不启用未知进程检测
    PROCESS_ALLOWLIST_FILE: Optional[str] = None  # 每行一个进程名，# 开头为注释，与 PROCESS_ALLOWLIST 合并

    # 展示标签阈值
    MODERATE_CPU_THRESHOLD: float = 50.0
    MODERATE_MEMORY_THRESHOLD_KB: int = 512 * 1024
    COMMON_PORTS: List[int] = [80, 443, 22, 21, 25, 53, 110, 143, 993, 995]

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_PATH: str = os.path.join("data", "logs")
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    JSON_LOG_PATH: Optional[str] = None  # 样本和告警的 JSON lines 事件日志，为空时不写

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
