from typing import Any, Dict, Type, Union

from pydantic import BaseModel, ValidationError

from sentineltrack.errors import InvalidInput
from sentineltrack.models.alert_data import Alert
from sentineltrack.models.telemetry_data import (
    ConnectionSample,
    ProcessSample,
    RecordKind,
    SystemStatSample,
)

Record = Union[ProcessSample, ConnectionSample, SystemStatSample, Alert]

RECORD_MODELS: Dict[RecordKind, Type[BaseModel]] = {
    RecordKind.PROCESS: ProcessSample,
    RecordKind.CONNECTION: ConnectionSample,
    RecordKind.SYSTEM_STAT: SystemStatSample,
    RecordKind.ALERT: Alert,
}


def kind_of(record: Any) -> RecordKind:
    """根据记录类型返回对应的存储类别"""
    for kind, model in RECORD_MODELS.items():
        if isinstance(record, model):
            return kind
    raise InvalidInput(f"不支持的记录类型: {type(record).__name__}")


def parse_record(kind: Union[RecordKind, str], data: Dict[str, Any]) -> Record:
    """把原始字典解析为记录模型，格式错误时抛出 InvalidInput"""
    try:
        kind = RecordKind(kind)
    except ValueError:
        raise InvalidInput(f"未知的记录类别: {kind}")
    try:
        return RECORD_MODELS[kind].model_validate(data)
    except ValidationError as e:
        raise InvalidInput(f"{kind.value} 样本格式错误: {e.error_count()} 处校验失败", errors=e.errors())
