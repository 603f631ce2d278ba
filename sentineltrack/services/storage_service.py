import csv
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type

from pydantic import BaseModel

from config.settings import Settings, settings
from sentineltrack.errors import InvalidInput, StorageUnavailable
from sentineltrack.models import (
    Alert,
    ConnectionSample,
    ProcessSample,
    Record,
    RecordKind,
    SystemStatSample,
    kind_of,
)

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.StorageService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()


@dataclass(frozen=True)
class _Table:
    """一张追加日志表的元数据"""
    name: str
    model: Type[BaseModel]
    time_column: str
    columns: Tuple[str, ...]

    @property
    def names(self) -> Tuple[str, ...]:
        # alerts 表的 id 由应用生成，其它表的 id 是自增主键
        return self.columns if "id" in self.columns else ("id",) + self.columns

    @property
    def select_columns(self) -> str:
        return ", ".join(self.names)

    @property
    def insert_sql(self) -> str:
        placeholders = ", ".join("?" for _ in self.columns)
        return f"INSERT INTO {self.name} ({', '.join(self.columns)}) VALUES ({placeholders})"


TABLES: Dict[RecordKind, _Table] = {
    RecordKind.PROCESS: _Table(
        "processes", ProcessSample, "observed_at",
        ("pid", "name", "cpu_pct", "mem_kb", "observed_at"),
    ),
    RecordKind.CONNECTION: _Table(
        "network_connections", ConnectionSample, "observed_at",
        ("local_ip", "local_port", "remote_ip", "remote_port", "protocol", "state", "observed_at"),
    ),
    RecordKind.SYSTEM_STAT: _Table(
        "system_stats", SystemStatSample, "observed_at",
        ("cpu_pct", "mem_pct", "disk_pct", "load_avg", "observed_at"),
    ),
    RecordKind.ALERT: _Table(
        "alerts", Alert, "raised_at",
        ("id", "kind", "severity", "message", "details", "raised_at"),
    ),
}

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS processes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pid INTEGER NOT NULL,
    name TEXT NOT NULL,
    cpu_pct REAL NOT NULL,
    mem_kb INTEGER NOT NULL,
    observed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS network_connections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    local_ip TEXT NOT NULL,
    local_port INTEGER NOT NULL,
    remote_ip TEXT NOT NULL,
    remote_port INTEGER NOT NULL,
    protocol TEXT NOT NULL,
    state TEXT NOT NULL,
    observed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cpu_pct REAL NOT NULL,
    mem_pct REAL NOT NULL,
    disk_pct REAL NOT NULL,
    load_avg REAL NOT NULL,
    observed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS alerts (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    details TEXT,
    raised_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_processes_observed_at ON processes(observed_at);
CREATE INDEX IF NOT EXISTS idx_connections_observed_at ON network_connections(observed_at);
CREATE INDEX IF NOT EXISTS idx_system_stats_observed_at ON system_stats(observed_at);
CREATE INDEX IF NOT EXISTS idx_alerts_raised_at ON alerts(raised_at);
"""


def _format_time(value: datetime) -> str:
    # 固定到微秒，保证字符串比较与时间先后一致
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _format_time(value)
    return value


class StorageSnapshot:
    """绑定在单个读事务上的只读视图，同一视图内的多次读取看到同一份已提交数据"""

    def __init__(self, storage: "StorageService", conn: sqlite3.Connection):
        self._storage = storage
        self._conn = conn

    def query_recent(self, kind: RecordKind, limit: Optional[int] = None, order_desc: bool = True) -> List[Record]:
        """按时间排序返回最近的 limit 条记录"""
        kind = RecordKind(kind)
        limit = self._storage.resolve_limit(kind, limit)
        table = TABLES[kind]
        direction = "DESC" if order_desc else "ASC"
        sql = (
            f"SELECT {table.select_columns} FROM ("
            f"SELECT rowid AS _seq, {table.select_columns} FROM {table.name} "
            f"ORDER BY {table.time_column} DESC, _seq DESC LIMIT ?"
            f") ORDER BY {table.time_column} {direction}, _seq {direction}"
        )
        rows = self._execute(sql, (limit,))
        return [self._to_record(table, row) for row in rows]

    def query_window(self, kind: RecordKind, since: datetime) -> List[Record]:
        """返回时间戳严格大于 since 的全部记录（新的在前）"""
        kind = RecordKind(kind)
        if not isinstance(since, datetime):
            raise InvalidInput(f"since 必须是时间类型，实际为: {type(since).__name__}")
        table = TABLES[kind]
        sql = (
            f"SELECT {table.select_columns} FROM {table.name} "
            f"WHERE {table.time_column} > ? "
            f"ORDER BY {table.time_column} DESC, rowid DESC"
        )
        rows = self._execute(sql, (_format_time(since),))
        return [self._to_record(table, row) for row in rows]

    def count_window(self, kind: RecordKind, since: datetime, distinct: Optional[str] = None) -> int:
        """统计时间戳严格大于 since 的记录数，distinct 指定按某列去重计数"""
        kind = RecordKind(kind)
        if not isinstance(since, datetime):
            raise InvalidInput(f"since 必须是时间类型，实际为: {type(since).__name__}")
        table = TABLES[kind]
        if distinct is None:
            expression = "COUNT(*)"
        elif distinct in table.names:
            expression = f"COUNT(DISTINCT {distinct})"
        else:
            raise InvalidInput(f"{table.name} 没有列: {distinct}")
        sql = f"SELECT {expression} FROM {table.name} WHERE {table.time_column} > ?"
        [(count,)] = self._execute(sql, (_format_time(since),))
        return count

    def _execute(self, sql: str, params: Tuple[Any, ...]) -> List[Tuple[Any, ...]]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"读取数据库失败: {e}") from e

    @staticmethod
    def _to_record(table: _Table, row: Tuple[Any, ...]) -> Record:
        return table.model.model_validate(dict(zip(table.names, row)))


class StorageService:
    def __init__(self, db_path: Optional[str] = None, config: Settings = settings):
        self.db_path = db_path or config.DB_PATH
        self.default_limits: Dict[RecordKind, int] = {
            RecordKind.PROCESS: config.PROCESS_QUERY_LIMIT,
            RecordKind.CONNECTION: config.CONNECTION_QUERY_LIMIT,
            RecordKind.ALERT: config.ALERT_QUERY_LIMIT,
            RecordKind.SYSTEM_STAT: config.SYSTEM_STAT_QUERY_LIMIT,
        }
        # 每张表一个写锁，不同表可以并发写入
        self._write_locks: Dict[RecordKind, threading.Lock] = {kind: threading.Lock() for kind in TABLES}
        self._initialize_db()

    def _initialize_db(self):
        """初始化数据库，创建四张追加日志表"""
        directory = os.path.dirname(self.db_path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"无法创建数据库目录 {directory}: {e}") from e

        with self._connect() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.info(f"数据库已初始化: {self.db_path}")

    @contextmanager
    def _connect(self, autocommit: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=10.0,
                isolation_level=None if autocommit else "",
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageUnavailable(f"无法打开数据库 {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageUnavailable(f"数据库操作失败: {e}") from e
        finally:
            conn.close()

    def resolve_limit(self, kind: RecordKind, limit: Optional[int]) -> int:
        """校验查询条数，None 时使用该类别的默认值"""
        if limit is None:
            return self.default_limits[RecordKind(kind)]
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidInput(f"limit 必须是正整数，实际为: {limit!r}")
        if limit <= 0:
            raise InvalidInput(f"limit 必须大于 0，实际为: {limit}")
        return limit

    def append(self, record: Record) -> Record:
        """追加一条记录，返回补全 id 和时间戳后的记录"""
        kind = kind_of(record)
        table = TABLES[kind]
        now = datetime.now()

        if kind is RecordKind.ALERT:
            record = record.model_copy(update={
                "id": record.id or str(uuid.uuid4()),
                "raised_at": record.raised_at or now,
            })
        elif record.observed_at is None:
            record = record.model_copy(update={"observed_at": now})

        values = tuple(_encode(getattr(record, column)) for column in table.columns)
        with self._write_locks[kind]:
            with self._connect() as conn:
                cursor = conn.execute(table.insert_sql, values)
                conn.commit()
                row_id = cursor.lastrowid

        if kind is not RecordKind.ALERT:
            record = record.model_copy(update={"id": row_id})
        logger.debug(f"已写入 {table.name}: id={record.id}")
        return record

    @contextmanager
    def snapshot(self) -> Iterator[StorageSnapshot]:
        """打开一个只读事务，在其中进行的多次查询看到一致的数据"""
        with self._connect(autocommit=True) as conn:
            conn.execute("BEGIN")
            try:
                yield StorageSnapshot(self, conn)
            finally:
                conn.execute("COMMIT")

    def query_recent(self, kind: RecordKind, limit: Optional[int] = None, order_desc: bool = True) -> List[Record]:
        """获取最近的记录，默认按时间倒序"""
        with self.snapshot() as view:
            return view.query_recent(kind, limit, order_desc)

    def query_window(self, kind: RecordKind, since: datetime) -> List[Record]:
        """获取 since 之后的全部记录"""
        with self.snapshot() as view:
            return view.query_window(kind, since)

    def export_to_csv(self, kind: RecordKind, file_path: str, since: Optional[datetime] = None) -> int:
        """导出一张表（或其时间窗口）到CSV文件，返回导出行数"""
        kind = RecordKind(kind)
        table = TABLES[kind]
        query = f"SELECT {table.select_columns} FROM {table.name}"
        params: List[Any] = []
        if since is not None:
            query += f" WHERE {table.time_column} > ?"
            params.append(_format_time(since))
        query += f" ORDER BY {table.time_column}, rowid"

        with self._connect() as conn:
            cursor = conn.execute(query, params)
            rows = cursor.fetchall()
            headers = [description[0] for description in cursor.description]

        directory = os.path.dirname(file_path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(file_path, 'w', newline='', encoding='utf-8') as csvfile:
                writer = csv.writer(csvfile)
                writer.writerow(headers)
                writer.writerows(rows)
        except OSError as e:
            raise StorageUnavailable(f"无法写入导出文件 {file_path}: {e}") from e

        logger.info(f"已导出 {len(rows)} 条 {table.name} 记录到 {file_path}")
        return len(rows)
