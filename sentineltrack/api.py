import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sentineltrack import __version__
from sentineltrack.errors import (
    AggregationFailure,
    InvalidInput,
    QueryTimeout,
    SentinelTrackError,
    StorageUnavailable,
)
from sentineltrack.models import Alert, ConnectionSample, DashboardSummary, ProcessSample, SystemStatSample
from sentineltrack.services.broadcast_service import BroadcastService, Subscriber
from sentineltrack.services.query_service import QueryService

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.API')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()

STATUS_CODES = {
    InvalidInput.code: 400,
    StorageUnavailable.code: 503,
    AggregationFailure.code: 500,
    QueryTimeout.code: 504,
}

# 订阅者因推送失败被移除时使用的关闭码（Try Again Later）
WS_CLOSE_DROPPED = 1013
WS_CLOSE_SHUTDOWN = 1001
WS_CLOSE_TIMEOUT = 1.0


def install_error_handlers(app: FastAPI):
    """把业务异常映射为 HTTP 状态码，响应体为 {"error", "code"}"""

    @app.exception_handler(SentinelTrackError)
    async def sentineltrack_error_handler(request: Request, exc: SentinelTrackError):
        status_code = STATUS_CODES.get(exc.code, 500)
        if status_code >= 500:
            logger.error(f"{request.url.path} 请求失败: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = InvalidInput(f"请求参数无效: {exc.errors()}")
        return JSONResponse(status_code=400, content=error.to_dict())


def create_router(queries: QueryService, broadcaster: BroadcastService) -> APIRouter:
    router = APIRouter()

    @router.get("/api/processes", response_model=List[ProcessSample])
    def get_processes(limit: Optional[int] = Query(None), timeout: Optional[float] = Query(None)):
        return queries.get_processes(limit, timeout)

    @router.get("/api/processes/current")
    def get_current_processes(limit: Optional[int] = Query(None), timeout: Optional[float] = Query(None)):
        return queries.get_current_processes(limit, timeout)

    @router.get("/api/network", response_model=List[ConnectionSample])
    def get_network(limit: Optional[int] = Query(None), timeout: Optional[float] = Query(None)):
        return queries.get_connections(limit, timeout)

    @router.get("/api/network/current")
    def get_current_network(limit: Optional[int] = Query(None), timeout: Optional[float] = Query(None)):
        return queries.get_current_connections(limit, timeout)

    @router.get("/api/alerts", response_model=List[Alert])
    def get_alerts(limit: Optional[int] = Query(None), timeout: Optional[float] = Query(None)):
        return queries.get_alerts(limit, timeout)

    @router.get("/api/system-stats", response_model=List[SystemStatSample])
    def get_system_stats(limit: Optional[int] = Query(None), timeout: Optional[float] = Query(None)):
        return queries.get_system_stats(limit, timeout)

    @router.get("/api/dashboard", response_model=DashboardSummary)
    def get_dashboard(timeout: Optional[float] = Query(None)):
        return queries.get_dashboard(timeout)

    @router.get("/api/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__, "subscribers": broadcaster.subscriber_count}

    @router.websocket("/ws")
    async def live_updates(websocket: WebSocket):
        """实时推送，客户端发来的数据只用于感知断开"""
        subscriber = broadcaster.subscribe(loop=asyncio.get_running_loop())
        await websocket.accept()
        tasks = {
            asyncio.create_task(_pump(websocket, subscriber)),
            asyncio.create_task(_receive(websocket)),
            asyncio.create_task(subscriber.wait_closed()),
        }
        try:
            _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if subscriber.closed:
                await _close(websocket, subscriber)
        finally:
            broadcaster.unsubscribe(subscriber)

    return router


async def _pump(websocket: WebSocket, subscriber: Subscriber):
    while True:
        message = await subscriber.next_message()
        if message is None:
            return
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            return


async def _close(websocket: WebSocket, subscriber: Subscriber):
    # 被移除的订阅者不再等待缓冲区发完，立即关闭
    code = WS_CLOSE_DROPPED if subscriber.dropped else WS_CLOSE_SHUTDOWN
    try:
        await asyncio.wait_for(websocket.close(code=code), WS_CLOSE_TIMEOUT)
    except (RuntimeError, asyncio.TimeoutError) as e:
        logger.debug(f"关闭订阅者 {subscriber.id} 的连接失败: {e!r}")


async def _receive(websocket: WebSocket):
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
