from datetime import datetime
from typing import Callable, Dict, Hashable, Iterable, List, Optional, TypeVar

from sentineltrack.errors import InvalidInput
from sentineltrack.models import Alert, ConnectionSample, ProcessSample, SystemStatSample

T = TypeVar("T")


def _observed_at(sample) -> datetime:
    return sample.observed_at or datetime.min


def deduplicate(samples: Iterable[T], key: Optional[Callable[[T], Hashable]] = None) -> List[T]:
    """把同一逻辑实体的多次观测折叠为当前状态

    每个键只保留时间戳最大的样本（相同时间保留先遇到的，因此对按时间倒序的输入
    就是第一次出现的那条），结果按各样本自身的时间戳倒序稳定排序。
    纯函数且幂等：deduplicate(deduplicate(xs)) == deduplicate(xs)。
    """
    key = key or (lambda sample: sample.dedup_key)
    latest: Dict[Hashable, T] = {}
    for sample in samples:
        if isinstance(sample, (SystemStatSample, Alert)):
            raise InvalidInput(f"{type(sample).__name__} 没有逻辑键，不能去重")
        k = key(sample)
        current = latest.get(k)
        if current is None or _observed_at(sample) > _observed_at(current):
            latest[k] = sample
    return sorted(latest.values(), key=_observed_at, reverse=True)


def dedup_processes(samples: Iterable[ProcessSample]) -> List[ProcessSample]:
    """按 pid 去重"""
    return deduplicate(samples, key=lambda sample: sample.pid)


def dedup_connections(samples: Iterable[ConnectionSample]) -> List[ConnectionSample]:
    """按 协议 + 本地地址 + 远端地址 去重"""
    return deduplicate(samples, key=lambda sample: sample.dedup_key)
