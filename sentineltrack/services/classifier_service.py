import ipaddress
import logging
from typing import Callable, FrozenSet, List, Optional

import psutil
from pydantic import BaseModel, ConfigDict

from config.settings import Settings, settings
from sentineltrack.errors import ClassificationFailure, InvalidInput
from sentineltrack.models import (
    Alert,
    AlertKind,
    AlertSeverity,
    ConnectionSample,
    ConnectionState,
    ProcessSample,
    SystemStatSample,
)

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.ClassifierService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()


def load_allowlist(path: Optional[str]) -> FrozenSet[str]:
    """读取进程白名单文件，每行一个进程名，跳过空行和 # 开头的注释"""
    if not path:
        return frozenset()
    try:
        with open(path, encoding="utf-8") as f:
            lines = [line.strip() for line in f]
    except OSError as e:
        logger.warning(f"无法读取进程白名单 {path}: {e}")
        return frozenset()
    return frozenset(line for line in lines if line and not line.startswith("#"))


class ClassifierThresholds(BaseModel):
    """告警规则阈值，作为配置数据交给分类器"""
    model_config = ConfigDict(frozen=True)

    high_cpu: float = 80.0
    high_memory_kb: int = 1024 * 1024
    cpu_spike_delta: float = 30.0
    memory_spike_delta: float = 30.0
    overload_load_factor: float = 2.0
    core_count: int = 1
    suspicious_ports: FrozenSet[int] = frozenset()
    process_allowlist: FrozenSet[str] = frozenset()
    moderate_cpu: float = 50.0
    moderate_memory_kb: int = 512 * 1024
    common_ports: FrozenSet[int] = frozenset()

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "ClassifierThresholds":
        core_count = config.CPU_CORE_COUNT or psutil.cpu_count() or 1
        return cls(
            high_cpu=config.HIGH_CPU_THRESHOLD,
            high_memory_kb=config.HIGH_MEMORY_THRESHOLD_KB,
            cpu_spike_delta=config.CPU_SPIKE_DELTA,
            memory_spike_delta=config.MEMORY_SPIKE_DELTA,
            overload_load_factor=config.OVERLOAD_LOAD_FACTOR,
            core_count=core_count,
            suspicious_ports=frozenset(config.SUSPICIOUS_PORTS),
            process_allowlist=frozenset(config.PROCESS_ALLOWLIST) | load_allowlist(config.PROCESS_ALLOWLIST_FILE),
            moderate_cpu=config.MODERATE_CPU_THRESHOLD,
            moderate_memory_kb=config.MODERATE_MEMORY_THRESHOLD_KB,
            common_ports=frozenset(config.COMMON_PORTS),
        )


def is_loopback(ip: str) -> bool:
    """判断地址是否为本机回环地址，兼容 IPv4 映射的 IPv6 地址"""
    if not ip:
        return False
    if ip.lower() == "localhost":
        return True
    try:
        address = ipaddress.ip_address(ip.split("%", 1)[0])
    except ValueError:
        return False
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return address.is_loopback


class ClassifierService:
    """根据阈值把样本转换为告警

    每类样本对应一组 _check_* 规则，规则之间互不影响：某条规则抛出异常时
    记录 ClassificationFailure 并跳过，其它规则照常执行。
    同样的阈值、样本和前一条样本，产生的告警内容完全相同。
    """

    def __init__(self, thresholds: Optional[ClassifierThresholds] = None):
        self.thresholds = thresholds or ClassifierThresholds.from_settings()

    def classify(self, sample, previous: Optional[SystemStatSample] = None) -> List[Alert]:
        """对单个样本执行全部适用规则"""
        if isinstance(sample, ProcessSample):
            return self.classify_process(sample)
        if isinstance(sample, ConnectionSample):
            return self.classify_connection(sample)
        if isinstance(sample, SystemStatSample):
            return self.classify_system_stat(sample, previous)
        raise InvalidInput(f"无法分类的样本类型: {type(sample).__name__}")

    def classify_process(self, sample: ProcessSample) -> List[Alert]:
        return self._run_rules(
            [self._check_high_cpu, self._check_high_memory, self._check_unknown_process],
            sample,
        )

    def classify_connection(self, sample: ConnectionSample) -> List[Alert]:
        return self._run_rules(
            [self._check_suspicious_port, self._check_external_connection],
            sample,
        )

    def classify_system_stat(self, sample: SystemStatSample,
                             previous: Optional[SystemStatSample] = None) -> List[Alert]:
        rules = [
            lambda s: self._check_cpu_spike(s, previous),
            lambda s: self._check_memory_spike(s, previous),
            self._check_overload,
        ]
        names = ["cpu_spike", "memory_spike", "overload"]
        return self._run_rules(rules, sample, names)

    def _run_rules(self, rules: List[Callable], sample, names: Optional[List[str]] = None) -> List[Alert]:
        alerts: List[Alert] = []
        for index, rule in enumerate(rules):
            name = names[index] if names else rule.__name__.replace("_check_", "")
            try:
                alert = rule(sample)
            except Exception as e:
                failure = ClassificationFailure(name, e)
                logger.error(failure.message, exc_info=True)
                continue
            if alert is not None:
                alerts.append(alert)
        return alerts

    # 进程规则

    def _check_high_cpu(self, sample: ProcessSample) -> Optional[Alert]:
        if sample.cpu_pct <= self.thresholds.high_cpu:
            return None
        return Alert(
            kind=AlertKind.HIGH_CPU,
            severity=AlertSeverity.WARNING,
            message=f"进程 {sample.name} CPU使用率过高",
            details=f"PID: {sample.pid}, CPU: {sample.cpu_pct:.1f}%",
        )

    def _check_high_memory(self, sample: ProcessSample) -> Optional[Alert]:
        if sample.mem_kb <= self.thresholds.high_memory_kb:
            return None
        return Alert(
            kind=AlertKind.HIGH_MEMORY,
            severity=AlertSeverity.WARNING,
            message=f"进程 {sample.name} 内存占用过高",
            details=f"PID: {sample.pid}, Memory: {sample.mem_kb} KB",
        )

    def _check_unknown_process(self, sample: ProcessSample) -> Optional[Alert]:
        allowlist = self.thresholds.process_allowlist
        if not allowlist or sample.name in allowlist:
            return None
        return Alert(
            kind=AlertKind.UNKNOWN_PROCESS,
            severity=AlertSeverity.WARNING,
            message=f"发现未知进程: {sample.name}",
            details=f"PID: {sample.pid}",
        )

    # 连接规则

    def _check_suspicious_port(self, sample: ConnectionSample) -> Optional[Alert]:
        suspicious = self.thresholds.suspicious_ports
        ports = [port for port in (sample.local_port, sample.remote_port) if port in suspicious]
        if not ports:
            return None
        # 本地和远端端口同时可疑也只产生一条告警
        return Alert(
            kind=AlertKind.SUSPICIOUS_PORT,
            severity=AlertSeverity.WARNING,
            message=f"检测到可疑端口: {', '.join(str(port) for port in ports)}",
            details=(
                f"Local: {sample.local_ip}:{sample.local_port} -> "
                f"Remote: {sample.remote_ip}:{sample.remote_port}, "
                f"Protocol: {sample.protocol.value}, State: {sample.state.value}"
            ),
        )

    def _check_external_connection(self, sample: ConnectionSample) -> Optional[Alert]:
        if sample.state is not ConnectionState.ESTABLISHED:
            return None
        if not sample.remote_ip or is_loopback(sample.remote_ip):
            return None
        return Alert(
            kind=AlertKind.EXTERNAL_CONNECTION,
            severity=AlertSeverity.INFO,
            message="检测到外部连接",
            details=(
                f"Local: {sample.local_ip}:{sample.local_port} -> "
                f"Remote: {sample.remote_ip}:{sample.remote_port}"
            ),
        )

    # 系统规则，首个样本没有 previous，不会触发突增

    def _check_cpu_spike(self, sample: SystemStatSample,
                         previous: Optional[SystemStatSample]) -> Optional[Alert]:
        if previous is None:
            return None
        delta = sample.cpu_pct - previous.cpu_pct
        if delta <= self.thresholds.cpu_spike_delta:
            return None
        return Alert(
            kind=AlertKind.CPU_SPIKE,
            severity=AlertSeverity.ERROR,
            message="系统CPU使用率突增",
            details=f"CPU: {previous.cpu_pct:.1f}% -> {sample.cpu_pct:.1f}% (+{delta:.1f})",
        )

    def _check_memory_spike(self, sample: SystemStatSample,
                            previous: Optional[SystemStatSample]) -> Optional[Alert]:
        if previous is None:
            return None
        delta = sample.mem_pct - previous.mem_pct
        if delta <= self.thresholds.memory_spike_delta:
            return None
        return Alert(
            kind=AlertKind.MEMORY_SPIKE,
            severity=AlertSeverity.ERROR,
            message="系统内存使用率突增",
            details=f"Memory: {previous.mem_pct:.1f}% -> {sample.mem_pct:.1f}% (+{delta:.1f})",
        )

    def _check_overload(self, sample: SystemStatSample) -> Optional[Alert]:
        limit = self.thresholds.core_count * self.thresholds.overload_load_factor
        if sample.load_avg <= limit:
            return None
        return Alert(
            kind=AlertKind.SYSTEM_OVERLOAD,
            severity=AlertSeverity.CRITICAL,
            message="系统负载过高",
            details=f"Load: {sample.load_avg:.2f}, Limit: {limit:.2f} ({self.thresholds.core_count} cores)",
        )

    # 展示标签

    def usage_status(self, sample: ProcessSample) -> str:
        """进程资源占用等级: high / moderate / normal"""
        if sample.cpu_pct > self.thresholds.high_cpu or sample.mem_kb > self.thresholds.high_memory_kb:
            return "high"
        if sample.cpu_pct > self.thresholds.moderate_cpu or sample.mem_kb > self.thresholds.moderate_memory_kb:
            return "moderate"
        return "normal"

    def port_risk(self, port: int) -> str:
        """端口风险等级: high / medium / low"""
        if port in self.thresholds.suspicious_ports:
            return "high"
        if 0 < port < 1024 and port not in self.thresholds.common_ports:
            return "medium"
        return "low"

    def connection_risk(self, sample: ConnectionSample) -> str:
        """连接风险取本地与远端端口中较高的一级"""
        levels = [self.port_risk(sample.local_port), self.port_risk(sample.remote_port)]
        for level in ("high", "medium"):
            if level in levels:
                return level
        return "low"

    def connection_scope(self, sample: ConnectionSample) -> str:
        """连接范围: listening / local / external"""
        if sample.state is ConnectionState.LISTEN:
            return "listening"
        if not sample.remote_ip or is_loopback(sample.remote_ip):
            return "local"
        return "external"
