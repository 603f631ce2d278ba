import logging
import os
import threading
from datetime import datetime

from nicegui import app, ui

from config.settings import Settings, settings
from sentineltrack.api import create_router, install_error_handlers
from sentineltrack.services import (
    AggregatorService,
    BroadcastService,
    ClassifierService,
    ClassifierThresholds,
    EventLogService,
    IngestService,
    MonitorService,
    QueryService,
    StorageService,
)
from sentineltrack.utils.process_utils import Collector, PsutilCollector


class SentinelTrackApp:
    """组装各个服务并负责启动和停止

    所有服务都在这里显式创建，彼此通过构造参数引用，没有模块级单例。
    """

    def __init__(self, config: Settings = settings, collector: Collector = None):
        self.config = config
        self.log_dir = config.LOG_PATH
        os.makedirs(self.log_dir, exist_ok=True)
        self._setup_logging()

        self.store = StorageService(config=config)
        self.classifier = ClassifierService(ClassifierThresholds.from_settings(config))
        self.broadcaster = BroadcastService(config)
        self.event_log = EventLogService.from_settings(config)
        self.ingest = IngestService(self.store, self.classifier, self.broadcaster, self.event_log)
        self.aggregator = AggregatorService(self.store, config)
        self.queries = QueryService(self.store, self.aggregator, self.classifier, config)
        self.monitor = MonitorService(collector or PsutilCollector(config), self.ingest, config)

    def _setup_logging(self):
        """设置日志记录"""
        log_file = os.path.join(self.log_dir, f"app_{datetime.now().strftime('%Y%m%d')}.log")

        logging.basicConfig(
            level=getattr(logging, self.config.LOG_LEVEL.upper(), logging.INFO),
            format=self.config.LOG_FORMAT,
            datefmt=self.config.LOG_DATE_FORMAT,
            handlers=[
                logging.FileHandler(log_file, encoding='utf-8'),
                logging.StreamHandler(),
            ]
        )

        self.logger = logging.getLogger('SentinelTrack')
        self.logger.info("应用日志系统已启动")

    def _setup_exception_handler(self):
        """记录服务端未处理的异常"""
        def handle_exception(e: Exception):
            self.logger.error(f"捕获到异常: {type(e).__name__}: {str(e)}", exc_info=e)

        app.on_exception(handle_exception)

    def _on_startup(self):
        self.monitor.start_monitoring()

    def _on_shutdown(self):
        self.monitor.stop_monitoring()
        self.broadcaster.close_all()
        self.queries.shutdown()
        self.logger.info("应用已停止")

    def run(self):
        """运行应用（Web服务 + 采集）"""
        self._setup_exception_handler()
        install_error_handlers(app)
        app.include_router(create_router(self.queries, self.broadcaster))
        app.on_startup(self._on_startup)
        app.on_shutdown(self._on_shutdown)

        self.logger.info(f"{self.config.APP_NAME} {self.config.APP_VERSION} 监听 {self.config.HOST}:{self.config.PORT}")
        ui.run(
            title=self.config.APP_NAME,
            host=self.config.HOST,
            port=self.config.PORT,
            show=False,
            reload=False,
        )

    def run_monitor_only(self, stop_event: threading.Event = None):
        """只运行采集，不启动Web服务，直到 stop_event 被设置或 Ctrl+C"""
        stop_event = stop_event or threading.Event()
        self.monitor.start_monitoring()
        self.logger.info("监控服务已启动，按 Ctrl+C 停止")
        try:
            while not stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            self.logger.info("收到中断信号")
        finally:
            self.monitor.stop_monitoring()
            self.broadcaster.close_all()
            self.queries.shutdown()
