import logging
import os
import socket
from typing import List, Protocol as TypingProtocol

import psutil

from config.settings import Settings, settings
from sentineltrack.models import (
    ConnectionSample,
    ConnectionState,
    ProcessSample,
    Protocol,
    SystemStatSample,
)

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.Collector')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()

_STATES = {
    psutil.CONN_ESTABLISHED: ConnectionState.ESTABLISHED,
    psutil.CONN_LISTEN: ConnectionState.LISTEN,
    psutil.CONN_TIME_WAIT: ConnectionState.TIME_WAIT,
    psutil.CONN_CLOSE_WAIT: ConnectionState.CLOSE_WAIT,
}


class Collector(TypingProtocol):
    """主机探测接口，返回不带 id 和时间戳的样本"""

    def collect_processes(self) -> List[ProcessSample]: ...

    def collect_connections(self) -> List[ConnectionSample]: ...

    def collect_system_stats(self) -> SystemStatSample: ...


class PsutilCollector:
    """基于 psutil 的默认采集器"""

    def __init__(self, config: Settings = settings):
        self.process_max_rows = config.PROCESS_MAX_ROWS
        self.connection_max_rows = config.CONNECTION_MAX_ROWS
        self._cpu_count = psutil.cpu_count(logical=True) or 1
        self._disk_path = os.path.abspath(os.sep)

        # 进程 CPU 使用率需要先预热一次
        for process in psutil.process_iter():
            try:
                process.cpu_percent(None)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        psutil.cpu_percent(interval=None)

    def collect_processes(self) -> List[ProcessSample]:
        """获取所有进程的资源占用，按CPU取前 N 个"""
        samples = []
        for process in psutil.process_iter(['pid', 'name', 'memory_info']):
            try:
                cpu = process.cpu_percent(interval=None) / self._cpu_count
                memory = process.info['memory_info']
                samples.append(ProcessSample(
                    pid=process.info['pid'],
                    name=process.info['name'] or "",
                    cpu_pct=max(0.0, float(cpu)),
                    mem_kb=int(memory.rss // 1024) if memory else 0,
                ))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        samples.sort(key=lambda sample: sample.cpu_pct, reverse=True)
        return samples[:self.process_max_rows]

    def collect_connections(self) -> List[ConnectionSample]:
        """获取 TCP/UDP 连接"""
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, OSError) as e:
            logger.warning(f"无法获取网络连接: {e}")
            return []

        samples = []
        for conn in connections[:self.connection_max_rows]:
            if not conn.laddr:
                continue
            samples.append(ConnectionSample(
                local_ip=conn.laddr.ip,
                local_port=conn.laddr.port,
                remote_ip=conn.raddr.ip if conn.raddr else "",
                remote_port=conn.raddr.port if conn.raddr else 0,
                protocol=Protocol.TCP if conn.type == socket.SOCK_STREAM else Protocol.UDP,
                state=_STATES.get(conn.status, ConnectionState.OTHER),
            ))
        return samples

    def collect_system_stats(self) -> SystemStatSample:
        """获取系统级资源使用情况"""
        cpu_pct = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(self._disk_path)
        try:
            load_avg = psutil.getloadavg()[0]
        except (AttributeError, OSError):
            load_avg = 0.0
        return SystemStatSample(
            cpu_pct=min(100.0, float(cpu_pct)),
            mem_pct=float(memory.percent),
            disk_pct=float(disk.percent),
            load_avg=max(0.0, float(load_avg)),
        )
