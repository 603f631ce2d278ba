from .telemetry_data import (
    RecordKind,
    Protocol,
    ConnectionState,
    ProcessSample,
    ConnectionSample,
    SystemStatSample,
    DashboardSummary,
)
from .alert_data import Alert, AlertKind, AlertSeverity
from .records import Record, RECORD_MODELS, kind_of, parse_record

__all__ = [
    "RecordKind",
    "Protocol",
    "ConnectionState",
    "ProcessSample",
    "ConnectionSample",
    "SystemStatSample",
    "DashboardSummary",
    "Alert",
    "AlertKind",
    "AlertSeverity",
    "Record",
    "RECORD_MODELS",
    "kind_of",
    "parse_record",
]
