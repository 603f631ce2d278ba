"""SentinelTrack：主机遥测采集、告警分类与实时推送服务"""

__version__ = "1.0.0"
