from typing import Any, Dict, Optional


class SentinelTrackError(Exception):
    """所有业务异常的基类，code 用于对外返回的错误码"""
    code = "sentineltrack_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class StorageUnavailable(SentinelTrackError):
    """存储无法读写（数据库文件不可用、被锁定等）"""
    code = "storage_unavailable"


class InvalidInput(SentinelTrackError):
    """样本格式错误或查询参数越界，立即拒绝"""
    code = "invalid_input"


class ClassificationFailure(SentinelTrackError):
    """某条告警规则执行异常，不影响样本入库"""
    code = "classification_failure"

    def __init__(self, rule: str, cause: Optional[BaseException] = None):
        super().__init__(f"告警规则 {rule} 执行失败: {cause}", rule=rule)
        self.rule = rule
        self.cause = cause


class BroadcastDeliveryFailure(SentinelTrackError):
    """向订阅者推送失败，订阅者将被移除"""
    code = "broadcast_delivery_failure"

    def __init__(self, subscriber_id: str, reason: str):
        super().__init__(f"订阅者 {subscriber_id} 推送失败: {reason}", subscriber_id=subscriber_id)
        self.subscriber_id = subscriber_id
        self.reason = reason


class AggregationFailure(SentinelTrackError):
    """仪表板汇总的某个步骤失败，整个请求失败"""
    code = "aggregation_failure"

    def __init__(self, step: str, cause: Optional[BaseException] = None):
        super().__init__(f"仪表板汇总失败（步骤: {step}）: {cause}", step=step)
        self.step = step
        self.cause = cause


class QueryTimeout(SentinelTrackError):
    """查询超过调用方指定的超时时间"""
    code = "query_timeout"
